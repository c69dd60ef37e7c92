"""
Message kinds for the call and connection channels.

Each channel carries a closed set of message types. Consumers dispatch on
the concrete type, never on string tags.

    Call channel:        CallResponse
    Connection channel:  StateChange

Wire frames are JSON text: {"event": "<name>", "data": <object>}.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ConnectionState(str, Enum):
    """Lifecycle states of the single service connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"


@dataclass(frozen=True)
class CallResponse:
    """
    A message received on the call channel.

    Attributes:
        event: Event name the server replied on (same as the call's).
        data: Decoded response document, usually a dict.
    """
    event: str
    data: Any

    @property
    def request_id(self) -> str | None:
        if isinstance(self.data, dict):
            value = self.data.get("requestId")
            return str(value) if value is not None else None
        return None


@dataclass(frozen=True)
class StateChange:
    """
    Broadcast on every connection state transition.

    Attributes:
        previous: State before the transition.
        current: State after the transition.
        attempt: Reconnection attempts made so far in the current cycle.
    """
    previous: ConnectionState
    current: ConnectionState
    attempt: int = 0


def encode_frame(event: str, data: Any) -> str:
    """Serialize an outgoing message to a JSON text frame."""
    return json.dumps({"event": event, "data": data})


def decode_frame(text: str) -> CallResponse:
    """
    Parse an incoming JSON text frame.

    Raises:
        ValueError: If the frame is not JSON or has no string 'event'.
    """
    try:
        frame = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid frame: {e}") from e

    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise ValueError("Invalid frame: missing event name")

    return CallResponse(event=frame["event"], data=frame.get("data"))
