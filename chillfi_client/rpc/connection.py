"""
Connection manager: owns the single transport connection and its lifecycle.

States:
    DISCONNECTED  -> CONNECTING    connect()
    CONNECTING    -> CONNECTED     handshake succeeded
    CONNECTING    -> DISCONNECTED  authentication failed (never retried)
    CONNECTING    -> RECONNECTING  any other failure
    CONNECTED     -> RECONNECTING  connection lost
    RECONNECTING  -> CONNECTED     an attempt succeeded (counter reset)
    RECONNECTING  -> OFFLINE       attempt cap reached (nothing scheduled)
    OFFLINE       -> RECONNECTING  recover()
    any           -> DISCONNECTED  disconnect()

Reconnection uses a fixed delay between attempts and a cap on the number
of attempts. The attempt counter is incremented before each attempt runs,
so after a fully failed cycle it equals the cap.

Every transition is broadcast synchronously to registered listeners as a
StateChange. Reconnection attempts are also broadcast as
RECONNECTING -> RECONNECTING with the new attempt number.
"""

import asyncio
from typing import Any, Awaitable, Callable

from chillfi_client.core.exceptions import (
    AuthenticationError,
    ConnectionFailedError,
    NotConnectedError,
)
from chillfi_client.core.logger import get_logger
from chillfi_client.transport.base import Transport
from chillfi_client.transport.messages import CallResponse, ConnectionState, StateChange


logger = get_logger(__name__)


DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10

StateListener = Callable[[StateChange], None]
MessageListener = Callable[[CallResponse], None]


class ConnectionManager:
    """
    Connection lifecycle with fixed-delay, capped reconnection.

    Args:
        transport: The call channel transport.
        token: Bearer token presented on every handshake.
        reconnect_delay: Seconds to wait before each reconnection attempt.
        max_reconnect_attempts: Attempts before going Offline.
        sleep: Awaitable delay function (tests pass a fast fake).

    Example:
        manager = ConnectionManager(WebSocketTransport(url), token)
        manager.add_listener(lambda change: print(change.current))
        await manager.connect()
    """

    def __init__(
        self,
        transport: Transport,
        token: str | None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.token = token
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0

        self._state_listeners: list[StateListener] = []
        self._message_listeners: list[MessageListener] = []
        self._connect_task: asyncio.Future | None = None
        self._reconnect_task: asyncio.Future | None = None
        self._closing = False

        transport.set_handlers(self._handle_message, self._handle_close)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def reconnect_task(self) -> asyncio.Future | None:
        """The running reconnection cycle, if any."""
        return self._reconnect_task

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a state change listener.

        Returns:
            A function that unregisters the listener.
        """
        self._state_listeners.append(listener)

        def remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return remove

    def add_message_listener(self, listener: MessageListener) -> Callable[[], None]:
        """Register a listener for every incoming call channel message."""
        self._message_listeners.append(listener)

        def remove() -> None:
            if listener in self._message_listeners:
                self._message_listeners.remove(listener)

        return remove

    def _set_state(self, state: ConnectionState) -> None:
        change = StateChange(previous=self.state, current=state, attempt=self.reconnect_attempts)
        self.state = state

        if change.previous != change.current:
            logger.debug(f"Connection: {change.previous.value} -> {change.current.value}")

        for listener in list(self._state_listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Connection state listener failed")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """
        Establish the connection.

        Idempotent: returns at once when already connected, and concurrent
        callers share one attempt. While a reconnection cycle is running
        this waits for it to finish.

        Raises:
            AuthenticationError: No token, or the server rejected it.
                                 The manager stays Disconnected.
            ConnectionFailedError: The first attempt failed. The
                                   reconnection policy has been started.
        """
        if self.is_connected:
            return

        if self._reconnect_task is not None and not self._reconnect_task.done():
            await asyncio.shield(self._reconnect_task)
            if not self.is_connected:
                raise ConnectionFailedError(
                    "Could not reconnect to server",
                    details={"attempts": self.reconnect_attempts}
                )
            return

        if self._connect_task is None:
            self._connect_task = asyncio.ensure_future(self._first_connect())
        await asyncio.shield(self._connect_task)

    async def _first_connect(self) -> None:
        try:
            self._closing = False
            self.reconnect_attempts = 0
            self._set_state(ConnectionState.CONNECTING)

            try:
                await self._open_transport()
            except AuthenticationError as e:
                logger.error(f"Authentication failed: {e.message}")
                self._set_state(ConnectionState.DISCONNECTED)
                raise
            except ConnectionFailedError as e:
                logger.warning(f"Connection failed: {e.message}")
                self._start_reconnecting()
                raise

            logger.info("Connected to server")
            self._set_state(ConnectionState.CONNECTED)
        finally:
            self._connect_task = None

    async def _open_transport(self) -> None:
        if not self.token:
            raise AuthenticationError("Authentication token required")
        await self.transport.open(self.token)

    def _start_reconnecting(self, immediate: bool = False) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.ensure_future(self._reconnect_loop(immediate))

    async def _reconnect_loop(self, immediate: bool) -> None:
        first = True

        while self.reconnect_attempts < self.max_reconnect_attempts:
            if not (immediate and first):
                await self._sleep(self.reconnect_delay)
            first = False

            if self._closing:
                return

            self.reconnect_attempts += 1
            self._set_state(ConnectionState.RECONNECTING)
            logger.info(
                f"Reconnecting (attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})"
            )

            try:
                await self._open_transport()
            except AuthenticationError as e:
                logger.error(f"Authentication failed while reconnecting: {e.message}")
                self._set_state(ConnectionState.DISCONNECTED)
                return
            except ConnectionFailedError as e:
                logger.debug(f"Reconnection attempt {self.reconnect_attempts} failed: {e.message}")
                continue

            if self._closing:
                await self.transport.close()
                return

            logger.info("Reconnected to server")
            self.reconnect_attempts = 0
            self._set_state(ConnectionState.CONNECTED)
            return

        logger.warning(
            f"Could not reconnect after {self.reconnect_attempts} attempts, working offline"
        )
        self._set_state(ConnectionState.OFFLINE)

    def recover(self) -> asyncio.Future | None:
        """
        External recovery signal (network came back, user pressed retry).

        From Offline or Disconnected, resets the attempt counter and runs
        the reconnection policy again, first attempt immediately.
        Ignored in any other state.

        Returns:
            The reconnection task, or None when the signal was ignored.
        """
        if self.state not in (ConnectionState.OFFLINE, ConnectionState.DISCONNECTED):
            return None

        self._closing = False
        self.reconnect_attempts = 0
        self._start_reconnecting(immediate=True)
        return self._reconnect_task

    async def disconnect(self) -> None:
        """Close deliberately. No reconnection follows."""
        self._closing = True

        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.transport.close()
        self.reconnect_attempts = 0
        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from server")

    # =========================================================================
    # Messaging
    # =========================================================================

    async def send(self, event: str, data: Any) -> None:
        """
        Send one message on the call channel.

        Raises:
            NotConnectedError: The manager is not Connected.
            ConnectionFailedError: The transport failed while sending.
        """
        if not self.is_connected:
            raise NotConnectedError("Not connected to server", event=event)
        await self.transport.send(event, data)

    def _handle_message(self, message: CallResponse) -> None:
        for listener in list(self._message_listeners):
            listener(message)

    def _handle_close(self, reason: Exception | None) -> None:
        if self._closing or self.state != ConnectionState.CONNECTED:
            return

        logger.warning(f"Connection lost{f': {reason}' if reason else ''}")
        self._start_reconnecting()
