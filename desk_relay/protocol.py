"""
Wire vocabulary of the broker channel.

Control and signaling messages are JSON objects with a ``type`` field;
screen frames travel as raw binary messages.
"""

import json
from typing import Any, Dict, Optional


# Peer -> broker
REGISTER_HOST = "register-host"
REGISTER_VIEWER = "register-viewer"
PING = "ping"

# Broker -> peer
REGISTERED = "registered"
HOST_READY = "host-ready"
HOST_DISCONNECTED = "host-disconnected"
VIEWER_JOINED = "viewer-joined"
VIEWER_LEFT = "viewer-left"
PONG = "pong"

# Relayed between host and viewers
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

# Executed locally, never relayed
MOUSEMOVE = "mousemove"
CLICK = "click"
MOUSEDOWN = "mousedown"
MOUSEUP = "mouseup"
SCROLL = "scroll"
KEYPRESS = "keypress"
TYPE = "type"

CONTROL_TYPES = frozenset({MOUSEMOVE, CLICK, MOUSEDOWN, MOUSEUP, SCROLL, KEYPRESS, TYPE})

# WebSocket close codes (4000-4999 are free for applications)
CLOSE_UNAUTHORIZED = 4001
CLOSE_UNAUTHORIZED_REASON = "Unauthorized"


class MalformedMessage(ValueError):
    """Raised when an inbound text message is not a typed JSON object."""


def encode(message_type: str, **fields: Any) -> str:
    """Build a JSON message, leaving out fields that are None."""
    payload: Dict[str, Any] = {"type": message_type}
    payload.update({k: v for k, v in fields.items() if v is not None})
    return json.dumps(payload)


def decode(raw: str) -> Dict[str, Any]:
    """Parse an inbound text message."""
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedMessage(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("message is not an object")
    if not isinstance(data.get("type"), str):
        raise MalformedMessage("message has no type")
    return data


def viewer_id_of(message: Dict[str, Any]) -> Optional[int]:
    """Read the ``viewerId`` field as an int, or None if missing/invalid."""
    value = message.get("viewerId")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None
