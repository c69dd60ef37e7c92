"""
Composition root for chillfi-client.

ChillfiClient builds every service from a Config and wires them together
explicitly; nothing in the package is a module-level singleton.

    transport   WebSocketTransport (call channel)
    connection  ConnectionManager
    router      OfflineRouter over the LocalStore
    correlator  RpcCorrelator
    sync        OfflineSync (replays the offline queue on reconnect)
    api         ServiceApi
    hasher      ContentHasher / DedupChecker
    chunked     ChunkedUploader (avatars, album art)
    bulk        BulkTransferClient (bulk channel)
    pipeline    UploadPipeline

Usage:
    async with ChillfiClient(load_config()) as client:
        songs = await client.api.get_songs()
"""

from pathlib import Path

from chillfi_client.core.config import Config
from chillfi_client.core.exceptions import ConnectionFailedError
from chillfi_client.core.logger import get_logger
from chillfi_client.core.store import LocalStore
from chillfi_client.rpc.api import ServiceApi
from chillfi_client.rpc.connection import ConnectionManager
from chillfi_client.rpc.correlator import RpcCorrelator
from chillfi_client.rpc.offline import OfflineRouter, OfflineSync
from chillfi_client.transport.base import Transport
from chillfi_client.transport.bulk import BulkTransferClient
from chillfi_client.transport.websocket import WEBSOCKET_PATH, WebSocketTransport
from chillfi_client.upload.chunked import ChunkedUploader
from chillfi_client.upload.hashing import ContentHasher, DedupChecker
from chillfi_client.upload.pipeline import UploadPipeline
from chillfi_client.utils import ensure_directory


logger = get_logger(__name__)


STORE_FILENAME = "chillfi.db"


class ChillfiClient:
    """
    All client services built from one Config.

    Args:
        config: Client configuration.
        transport: Call channel transport. A WebSocketTransport to
                   the configured server is built when omitted.
        bulk: Bulk channel client. Built from config when omitted.
        store: Local store. Opened under config.cache.directory when omitted.
    """

    def __init__(
        self,
        config: Config,
        transport: Transport | None = None,
        bulk: BulkTransferClient | None = None,
        store: LocalStore | None = None,
    ) -> None:
        self.config = config

        if store is None:
            ensure_directory(config.cache.directory)
            store = LocalStore(Path(config.cache.directory) / STORE_FILENAME)
        self.store = store

        self.transport = transport or WebSocketTransport(
            config.server.websocket_url.rstrip("/") + WEBSOCKET_PATH
        )
        self.connection = ConnectionManager(
            self.transport,
            config.auth.token,
            reconnect_delay=config.connection.reconnect_delay,
            max_reconnect_attempts=config.connection.max_reconnect_attempts,
        )
        self.router = OfflineRouter(self.store)
        self.correlator = RpcCorrelator(
            self.connection,
            router=self.router,
            timeout=config.rpc.timeout,
            transfer_timeout=config.rpc.transfer_timeout,
        )
        self.sync = OfflineSync(self.store, self.correlator, self.connection)
        self.api = ServiceApi(
            self.correlator,
            self.store,
            snapshot_ttl=config.cache.snapshot_ttl,
            playback_url_ttl=config.cache.playback_url_ttl,
        )

        self.hasher = ContentHasher()
        self.dedup = DedupChecker(self.correlator)
        self.chunked = ChunkedUploader(
            self.correlator,
            avatar_chunk_size=config.upload.avatar_chunk_size,
            album_art_chunk_size=config.upload.album_art_chunk_size,
        )
        self.bulk = bulk or BulkTransferClient(
            config.server.url,
            config.auth.token,
            timeout=config.rpc.transfer_timeout,
            read_block_size=config.upload.read_block_size,
        )
        self.pipeline = UploadPipeline(
            self.hasher,
            self.dedup,
            self.bulk,
            self.connection,
            max_resume_attempts=config.upload.max_resume_attempts,
        )

    async def __aenter__(self) -> "ChillfiClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self, require_connection: bool = False) -> bool:
        """
        Connect to the server.

        A connection failure is not fatal by default: the manager keeps
        reconnecting in the background and calls are served offline.
        Authentication failures always propagate.

        Returns:
            True if connected.

        Raises:
            AuthenticationError: The token was rejected or is missing.
            ConnectionFailedError: Not connected and require_connection is set.
        """
        try:
            await self.connection.connect()
        except ConnectionFailedError as e:
            if require_connection:
                raise
            logger.warning(f"Working offline: {e.message}")
            return False
        return True

    async def close(self) -> None:
        self.pipeline.cancel()
        await self.pipeline.join()
        self.correlator.cancel_all()
        await self.connection.disconnect()
        await self.bulk.close()
        self.store.close()
        logger.debug("Client closed")
