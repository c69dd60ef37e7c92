"""
Transport abstraction for the call channel.

A transport is a bare publish/subscribe pipe: it can open, send a named
message, deliver incoming messages and report that it closed. It knows
nothing about requests, responses or reconnection. The connection manager
layers the lifecycle on top, the correlator layers call/response.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable

from chillfi_client.transport.messages import CallResponse


MessageHandler = Callable[[CallResponse], None]
CloseHandler = Callable[[Exception | None], None]


class Transport(ABC):
    """
    Abstract bidirectional message transport.

    Implementations must:
        - raise AuthenticationError from open() when the credential is rejected
        - raise ConnectionFailedError from open() for any other failure
        - call the close handler exactly once when an open connection is
          lost without close() having been called
    """

    def __init__(self) -> None:
        self._on_message: MessageHandler | None = None
        self._on_close: CloseHandler | None = None

    def set_handlers(self, on_message: MessageHandler, on_close: CloseHandler) -> None:
        """Register the callbacks for incoming messages and unexpected closes."""
        self._on_message = on_message
        self._on_close = on_close

    def _deliver(self, message: CallResponse) -> None:
        if self._on_message is not None:
            self._on_message(message)

    def _closed(self, reason: Exception | None) -> None:
        if self._on_close is not None:
            self._on_close(reason)

    @property
    @abstractmethod
    def is_open(self) -> bool:
        pass

    @abstractmethod
    async def open(self, token: str) -> None:
        """Open the connection, presenting token as a bearer credential."""
        pass

    @abstractmethod
    async def send(self, event: str, data: Any) -> None:
        """Send one message. Raises ConnectionFailedError if not open."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close deliberately. Does not call the close handler."""
        pass
