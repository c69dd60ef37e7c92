"""
aiohttp WebSocket implementation of the call channel transport.

The handshake carries "Authorization: Bearer <token>". A 401 or 403 answer
to the handshake is reported as AuthenticationError; everything else that
prevents the socket from opening is a ConnectionFailedError.

Incoming text frames are decoded and delivered to the registered message
handler from a background reader task. When the socket closes without
close() having been called, the close handler is told once.
"""

import asyncio
from typing import Any

import aiohttp

from chillfi_client.core.exceptions import AuthenticationError, ConnectionFailedError
from chillfi_client.core.logger import get_logger
from chillfi_client.transport.base import Transport
from chillfi_client.transport.messages import decode_frame, encode_frame


logger = get_logger(__name__)


WEBSOCKET_PATH = "/ws"
HANDSHAKE_TIMEOUT = 20.0
HEARTBEAT_INTERVAL = 25.0
AUTH_REJECTED_STATUSES = (401, 403)


class WebSocketTransport(Transport):
    """
    Single WebSocket connection to the service.

    Args:
        url: Full ws:// or wss:// URL of the socket endpoint.
        session: Optional shared aiohttp session. When omitted the
                 transport creates one on open() and closes it on close().
    """

    def __init__(self, url: str, session: aiohttp.ClientSession | None = None) -> None:
        super().__init__()
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self, token: str) -> None:
        if self.is_open:
            return

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=HANDSHAKE_TIMEOUT)
            )
            self._owns_session = True

        self._closing = False
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                headers={"Authorization": f"Bearer {token}"},
                heartbeat=HEARTBEAT_INTERVAL,
            )
        except aiohttp.WSServerHandshakeError as e:
            if e.status in AUTH_REJECTED_STATUSES:
                raise AuthenticationError(
                    "Authentication rejected by server",
                    details={"status": e.status, "url": self.url}
                ) from e
            raise ConnectionFailedError(
                f"WebSocket handshake failed ({e.status}): {e.message}",
                details={"status": e.status, "url": self.url}
            ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise ConnectionFailedError(
                f"Could not connect to {self.url}: {e}",
                details={"url": self.url, "original_error": str(e)}
            ) from e

        logger.debug(f"WebSocket open: {self.url}")
        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def send(self, event: str, data: Any) -> None:
        if not self.is_open:
            raise ConnectionFailedError("WebSocket is not open", details={"event": event})
        try:
            await self._ws.send_str(encode_frame(event, data))
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise ConnectionFailedError(
                f"Failed to send '{event}': {e}",
                details={"event": event}
            ) from e

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None

        if ws is not None and not ws.closed:
            await ws.close()

        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        reason: Exception | None = None

        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = decode_frame(msg.data)
                except ValueError as e:
                    logger.warning(f"Ignoring malformed frame: {e}")
                    continue
                self._deliver(message)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                reason = ws.exception()
                break

        if self._ws is ws:
            self._ws = None
        if not self._closing:
            logger.debug(f"WebSocket closed by peer (code={ws.close_code})")
            self._closed(reason)
