"""
Relay wire protocol — NIP-01 frames, serialization, and validation.

Frames are JSON arrays sent as single text messages over a websocket:

    client → relay   ["EVENT", event]
                     ["REQ", subscription_id, filter]
                     ["CLOSE", subscription_id]
    relay → client   ["OK", event_id, accepted, message]
                     ["EVENT", subscription_id, event]
                     ["EOSE", subscription_id]
                     ["NOTICE", text]
                     ["CLOSED", subscription_id, message]
"""

from __future__ import annotations

import json
import secrets
from typing import Any

from nac.nostr.event import Event

# Frame types
EVENT = "EVENT"
REQ = "REQ"
CLOSE = "CLOSE"
OK = "OK"
EOSE = "EOSE"
NOTICE = "NOTICE"
CLOSED = "CLOSED"

VALID_TYPES = frozenset({EVENT, REQ, CLOSE, OK, EOSE, NOTICE, CLOSED})

# Minimum array length per frame type (including the type itself)
_MIN_LENGTH: dict[str, int] = {
    EVENT: 2,
    REQ: 3,
    CLOSE: 2,
    OK: 3,
    EOSE: 2,
    NOTICE: 2,
    CLOSED: 2,
}


class ProtocolError(Exception):
    """Malformed relay frame."""


def new_subscription_id() -> str:
    """Fresh random subscription id (16 hex chars)."""
    return secrets.token_hex(8)


# ---------------------------------------------------------------------------
# Client → relay
# ---------------------------------------------------------------------------

def make_event(event: Event | dict) -> list:
    data = event.to_dict() if isinstance(event, Event) else event
    return [EVENT, data]


def make_req(subscription_id: str, filter_: dict[str, Any]) -> list:
    return [REQ, subscription_id, filter_]


def make_close(subscription_id: str) -> list:
    return [CLOSE, subscription_id]


# ---------------------------------------------------------------------------
# Encoding / decoding
# ---------------------------------------------------------------------------

def validate_frame(frame: Any) -> None:
    """Validate a decoded frame. Raises ProtocolError on failure."""
    if not isinstance(frame, list) or not frame:
        raise ProtocolError("Frame must be a non-empty JSON array")

    frame_type = frame[0]
    if frame_type not in VALID_TYPES:
        raise ProtocolError(f"Unknown frame type: {frame_type!r}")

    if len(frame) < _MIN_LENGTH[frame_type]:
        raise ProtocolError(f"{frame_type} frame too short: {len(frame)} elements")

    if frame_type == OK:
        if not isinstance(frame[1], str) or not isinstance(frame[2], bool):
            raise ProtocolError("OK frame must carry an event id and a boolean")
        if len(frame) > 3 and not isinstance(frame[3], str):
            raise ProtocolError("OK message must be a string")
    elif frame_type == EVENT:
        # relay form carries a subscription id, client form does not
        payload = frame[2] if len(frame) >= 3 else frame[1]
        if not isinstance(payload, dict):
            raise ProtocolError("EVENT frame must carry an event object")
    elif frame_type == REQ:
        if not isinstance(frame[1], str) or not all(isinstance(f, dict) for f in frame[2:]):
            raise ProtocolError("REQ frame must carry a subscription id and filters")
    elif not isinstance(frame[1], str):
        raise ProtocolError(f"{frame_type} frame must carry a string")


def encode_frame(frame: list) -> str:
    """Serialize a frame to the text sent over the transport."""
    validate_frame(frame)
    return json.dumps(frame, separators=(",", ":"), ensure_ascii=False)


def decode_frame(raw: str | bytes) -> list:
    """Parse and validate a frame received from a relay."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}") from e
    try:
        frame = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    validate_frame(frame)
    return frame
