"""
Exception classes for chillfi-client.

This module defines all custom exceptions used throughout the client.
Each exception carries a human-readable message plus an optional details
dictionary, and the hierarchy mirrors the failure taxonomy of the client:
connection problems, call failures, transfer failures and local issues.

Exception Hierarchy:
    ChillfiError (base)
        ConfigError - Configuration file issues
        StoreError - Durable local store issues
        TransportError - Connection-level failures
            AuthenticationError - Missing or rejected bearer token
            ConnectionFailedError - Handshake or socket failure
        RpcError - Remote call failures
            NotConnectedError - Call issued while disconnected, no fallback
            CallTimeoutError - No response within the call's budget
            ServerError - Response carried an explicit failure indicator
            EmptyResponseError - Response was empty or absent
        TransferError - Bulk channel failures
            TransientNetworkError - Network blip, resumable
            TerminalTransferError - Rejected content, never retried
        ChunkUploadError - A chunked blob session was abandoned
"""


class ChillfiError(Exception):
    """
    Base exception for all chillfi-client errors.

    All custom exceptions in this project inherit from this class,
    allowing callers to catch every client error with a single
    except clause if desired.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (event names,
                 file paths, HTTP statuses).

    Example:
        try:
            await client.api.get_songs()
        except ChillfiError as e:
            logger.error(f"Operation failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description that will be shown to the user.
            details: Optional dictionary containing additional context about the error.
                     Common keys include:
                     - 'event': Call event name involved in the error
                     - 'path': Local file involved in the error
                     - 'status': HTTP status returned by the bulk channel
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(ChillfiError):
    """
    Raised when there's an issue with the configuration file.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - config.yaml not found
        - config.yaml has invalid YAML syntax
        - Required fields missing (server.url)
        - Invalid field values (e.g., negative reconnect delay)
    """
    pass


class StoreError(ChillfiError):
    """
    Raised when the durable local store cannot be opened or written.

    Malformed cached entries never raise this error: they are treated
    as cache misses. StoreError means the SQLite file itself is unusable
    (missing parent directory, permission denied, schema mismatch).
    """
    pass


class TransportError(ChillfiError):
    """
    Raised when the persistent connection cannot be established or is lost.

    Connection errors are normally absorbed by the reconnection policy and
    surface to the UI only as state changes. They are raised directly only
    by the first connect() attempt.
    """
    pass


class AuthenticationError(TransportError):
    """
    Raised when the handshake has no bearer token or the server rejects it.

    Never retried automatically: the same credential cannot succeed on a
    later attempt, and an anonymous session must never be opened silently.
    """
    pass


class ConnectionFailedError(TransportError):
    """Raised when the transport handshake or socket fails."""
    pass


class RpcError(ChillfiError):
    """
    Base class for failures of a single remote call.

    Attributes:
        event: Name of the call event that failed.
    """

    def __init__(self, message: str, event: str = "", details: dict | None = None) -> None:
        super().__init__(message, details)
        self.event = event


class NotConnectedError(RpcError):
    """Raised when a call is issued while disconnected and no fallback exists."""
    pass


class CallTimeoutError(RpcError):
    """
    Raised when no matching response arrives within the call's timeout.

    The call is NOT retried automatically. Retrying is a caller decision.
    """
    pass


class ServerError(RpcError):
    """
    Raised when the response carries an explicit failure indicator.

    The message is the server-supplied message, propagated verbatim.

    Attributes:
        response: The raw response document.
    """

    def __init__(
        self,
        message: str,
        event: str = "",
        response: dict | None = None,
        details: dict | None = None
    ) -> None:
        super().__init__(message, event, details)
        self.response = response or {}


class EmptyResponseError(RpcError):
    """Raised when a response arrives empty or absent."""
    pass


class TransferError(ChillfiError):
    """
    Base class for bulk channel failures.

    The bulk client raises one of the two subclasses, never this class,
    so the pipeline can branch on type instead of parsing messages.
    """
    pass


class TransientNetworkError(TransferError):
    """
    Raised when a bulk transfer fails because of the network.

    Common causes:
        - Connection refused or reset mid-transfer
        - Transfer timed out
        - Gateway errors (502, 503, 504) from a proxy in front of the service

    The upload pipeline pauses the task and retransfers it after the
    connection manager reports recovery.
    """
    pass


class TerminalTransferError(TransferError):
    """
    Raised when the service rejects a bulk transfer.

    Common causes:
        - Unsupported file type
        - File too large
        - Authentication rejected
        - Response body is not valid JSON

    Terminal failures are reported once per file and never retried.
    """
    pass


class ChunkUploadError(ChillfiError):
    """
    Raised when a chunked blob session is abandoned.

    Any chunk failure aborts the whole session. There is no partial
    resume: a retry starts again at chunk zero.

    Example:
        raise ChunkUploadError(
            "Chunk upload failed",
            details={'session_id': 'album_1700000000000_ab12cd', 'chunk_index': 2}
        )
    """
    pass
