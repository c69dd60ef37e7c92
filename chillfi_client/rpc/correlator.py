"""
Call/response correlation over the fire-and-forget call channel.

The transport only publishes named messages. A call sends a message on an
event and waits for the next message on the same event that it accepts:

    - a call without a request id accepts any response on its event
    - a call with a request id accepts only a response echoing that id

Incoming messages are offered to pending calls in the order the calls were
issued, and the first call that accepts one is settled by it. Responses no
call accepts are dropped.

Timeouts: 300 s for transfer-class events (name contains "upload"),
10 s for everything else, unless the call overrides it. A timed-out call is
never retried here.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from chillfi_client.core.exceptions import (
    CallTimeoutError,
    ConnectionFailedError,
    EmptyResponseError,
    NotConnectedError,
    ServerError,
)
from chillfi_client.core.logger import get_logger
from chillfi_client.rpc.connection import ConnectionManager
from chillfi_client.transport.messages import CallResponse


logger = get_logger(__name__)


DEFAULT_CALL_TIMEOUT = 10.0
DEFAULT_TRANSFER_TIMEOUT = 300.0
TRANSFER_EVENT_MARKER = "upload"


class _NoFallback:
    """Sentinel returned by the offline router when it declines a call."""

    def __repr__(self) -> str:
        return "NO_FALLBACK"


NO_FALLBACK = _NoFallback()


@dataclass(frozen=True)
class CallOptions:
    """
    Per-call options.

    Attributes:
        request_id: Correlation id attached to the payload as 'requestId'.
        timeout: Overrides the default timeout, in seconds.
        allow_fallback: When False a disconnected call fails instead of
                        being served or queued offline.
    """
    request_id: str | None = None
    timeout: float | None = None
    allow_fallback: bool = True


@dataclass(eq=False)
class PendingCall:
    """An issued call waiting for its response."""
    event: str
    payload: dict[str, Any]
    future: asyncio.Future
    request_id: str | None = None
    created_at: float = field(default_factory=time.monotonic)
    timeout_handle: asyncio.TimerHandle | None = None

    def accepts(self, message: CallResponse) -> bool:
        if message.event != self.event or self.future.done():
            return False
        if self.request_id is None:
            return True
        return message.request_id == self.request_id


class RpcCorrelator:
    """
    Issues calls through the connection manager and matches responses.

    Args:
        connection: The connection manager (source of incoming messages).
        router: Optional offline fallback router consulted while not connected.
        timeout: Default timeout for regular calls.
        transfer_timeout: Default timeout for transfer-class calls.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        router: Any = None,
        timeout: float = DEFAULT_CALL_TIMEOUT,
        transfer_timeout: float = DEFAULT_TRANSFER_TIMEOUT,
    ) -> None:
        self.connection = connection
        self.router = router
        self.timeout = timeout
        self.transfer_timeout = transfer_timeout
        self._pending: list[PendingCall] = []

        connection.add_message_listener(self._handle_message)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def timeout_for(self, event: str, options: CallOptions | None = None) -> float:
        if options is not None and options.timeout is not None:
            return options.timeout
        if TRANSFER_EVENT_MARKER in event:
            return self.transfer_timeout
        return self.timeout

    async def call(
        self,
        event: str,
        payload: dict[str, Any] | None = None,
        options: CallOptions | None = None,
    ) -> Any:
        """
        Issue a call and wait for its response.

        Args:
            event: Event name, e.g. "song:list".
            payload: Call payload (copied, never mutated).
            options: Request id, timeout override, fallback permission.

        Returns:
            The response document. While disconnected, possibly a document
            synthesized by the offline router (tagged 'offline').

        Raises:
            NotConnectedError: Not connected and no offline fallback applies,
                               or the transport failed while sending.
            CallTimeoutError: No accepted response in time.
            ServerError: The response carried success=false or error=true.
            EmptyResponseError: The response was empty.
        """
        options = options or CallOptions()
        payload = dict(payload or {})

        if not self.connection.is_connected:
            if options.allow_fallback and self.router is not None:
                fallback = self.router.try_fallback(event, payload)
                if fallback is not NO_FALLBACK:
                    logger.debug(f"Served '{event}' offline")
                    return fallback
            raise NotConnectedError("Not connected to server", event=event)

        if options.request_id is not None:
            payload["requestId"] = options.request_id

        loop = asyncio.get_running_loop()
        pending = PendingCall(
            event=event,
            payload=payload,
            future=loop.create_future(),
            request_id=options.request_id,
        )
        pending.timeout_handle = loop.call_later(
            self.timeout_for(event, options), self._expire, pending
        )
        self._pending.append(pending)

        try:
            try:
                await self.connection.send(event, payload)
            except ConnectionFailedError as e:
                raise NotConnectedError(
                    f"Not connected to server: {e.message}", event=event
                ) from e
            response = await pending.future
        finally:
            self._discard(pending)

        return _interpret(event, response)

    def cancel_all(self) -> int:
        """
        Cancel every pending call. Callers awaiting them see CancelledError.

        Returns:
            Number of calls cancelled.
        """
        pending, self._pending = self._pending, []
        for call in pending:
            if call.timeout_handle is not None:
                call.timeout_handle.cancel()
            if not call.future.done():
                call.future.cancel()
        if pending:
            logger.debug(f"Cancelled {len(pending)} pending calls")
        return len(pending)

    def _handle_message(self, message: CallResponse) -> None:
        for pending in self._pending:
            if pending.accepts(message):
                pending.future.set_result(message.data)
                self._discard(pending)
                return

    def _expire(self, pending: PendingCall) -> None:
        if not pending.future.done():
            logger.debug(f"Call '{pending.event}' timed out")
            pending.future.set_exception(
                CallTimeoutError("Request timeout", event=pending.event)
            )
        self._discard(pending)

    def _discard(self, pending: PendingCall) -> None:
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if pending in self._pending:
            self._pending.remove(pending)


def _interpret(event: str, response: Any) -> Any:
    if response is None or response == {} or response == "":
        raise EmptyResponseError("No response from server", event=event)

    if isinstance(response, dict) and (
        response.get("success") is False or bool(response.get("error"))
    ):
        raise ServerError(_server_message(response), event=event, response=response)

    return response


def _server_message(response: dict[str, Any]) -> str:
    error = response.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    if response.get("message"):
        return str(response["message"])
    return "Server error"
