"""
Core module for chillfi-client.

This module provides the foundational components used throughout the client:
    - exceptions: Custom exception classes for error handling
    - config: Configuration loading and validation
    - store: Durable SQLite store (cache, offline queue, offline playlists)
    - logger: Logging system with multiple outputs

Usage:
    from chillfi_client.core import (
        Config, load_config,
        LocalStore,
        setup_logging, get_logger,
        ChillfiError, ConfigError, StoreError
    )
"""

from chillfi_client.core.config import (
    AuthConfig,
    CacheConfig,
    Config,
    ConnectionConfig,
    RpcConfig,
    ServerConfig,
    UploadConfig,
    default_config,
    load_config,
)
from chillfi_client.core.exceptions import (
    AuthenticationError,
    CallTimeoutError,
    ChillfiError,
    ChunkUploadError,
    ConfigError,
    ConnectionFailedError,
    EmptyResponseError,
    NotConnectedError,
    RpcError,
    ServerError,
    StoreError,
    TerminalTransferError,
    TransferError,
    TransientNetworkError,
    TransportError,
)
from chillfi_client.core.logger import (
    get_logger,
    log_upload_failure,
    setup_logging,
    shutdown_logging,
)
from chillfi_client.core.store import CacheEntry, LocalStore, OfflineQueueEntry

__all__ = [
    # Config
    "Config",
    "ServerConfig",
    "AuthConfig",
    "ConnectionConfig",
    "RpcConfig",
    "CacheConfig",
    "UploadConfig",
    "default_config",
    "load_config",
    # Store
    "LocalStore",
    "CacheEntry",
    "OfflineQueueEntry",
    # Exceptions
    "ChillfiError",
    "ConfigError",
    "StoreError",
    "TransportError",
    "AuthenticationError",
    "ConnectionFailedError",
    "RpcError",
    "NotConnectedError",
    "CallTimeoutError",
    "ServerError",
    "EmptyResponseError",
    "TransferError",
    "TransientNetworkError",
    "TerminalTransferError",
    "ChunkUploadError",
    # Logger
    "setup_logging",
    "get_logger",
    "log_upload_failure",
    "shutdown_logging",
]
