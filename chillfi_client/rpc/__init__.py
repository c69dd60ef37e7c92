"""
Remote call layer for chillfi-client.

Components, leaves first:
    - connection: ConnectionManager, lifecycle and reconnection policy
    - correlator: RpcCorrelator, call/response over the call channel
    - offline: OfflineRouter and OfflineSync, disconnected operation
    - api: ServiceApi, typed calls with snapshot caching
"""

from chillfi_client.rpc.api import ServiceApi
from chillfi_client.rpc.connection import ConnectionManager
from chillfi_client.rpc.correlator import NO_FALLBACK, CallOptions, RpcCorrelator
from chillfi_client.rpc.offline import OfflineRouter, OfflineSync, SyncResult

__all__ = [
    "ConnectionManager",
    "RpcCorrelator",
    "CallOptions",
    "NO_FALLBACK",
    "OfflineRouter",
    "OfflineSync",
    "SyncResult",
    "ServiceApi",
]
