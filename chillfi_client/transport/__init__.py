"""
Transports for chillfi-client.

Two channels reach the service:
    - call channel: one persistent WebSocket carrying JSON frames
      (Transport, WebSocketTransport)
    - bulk channel: HTTP multipart uploads of whole files
      (BulkTransferClient)
"""

from chillfi_client.transport.base import Transport
from chillfi_client.transport.bulk import BulkTransferClient
from chillfi_client.transport.messages import (
    CallResponse,
    ConnectionState,
    StateChange,
    decode_frame,
    encode_frame,
)
from chillfi_client.transport.websocket import WebSocketTransport

__all__ = [
    "Transport",
    "WebSocketTransport",
    "BulkTransferClient",
    "CallResponse",
    "ConnectionState",
    "StateChange",
    "encode_frame",
    "decode_frame",
]
