# presence_common/protocol.py

"""
Envelope shapes and validation for the presence wire protocol.

Every frame is a single line of JSON: {"type": <str>, "payload": <any>}.
The handshake frames travel in plaintext; everything after
``handshake_complete`` is wrapped in an ``encrypted_payload`` envelope whose
payload is a SecureChannel blob of the inner envelope.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

# --- Handshake ---
HANDSHAKE_START = "handshake_start"
KEY_EXCHANGE = "key_exchange"
HANDSHAKE_COMPLETE = "handshake_complete"
ENCRYPTED_PAYLOAD = "encrypted_payload"

# --- Transport ---
PING = "ping"
PONG = "pong"
DISCONNECT = "disconnect"

# --- Presence ---
PRESENCE_UPDATE = "presence.update"

# --- Direct messages ---
SEND_MESSAGE = "send_message"
MESSAGE_SENT = "message_sent"
NEW_MESSAGE = "newMessage"
GET_MESSAGES = "get_messages"
MESSAGES = "messages"
RESPONSE = "response"

MAX_MESSAGE_LENGTH = 4000


class ProtocolError(ValueError):
    """Raised when a frame or payload does not match the wire contract."""


@dataclass(frozen=True)
class HandshakeMetadata:
    user_id: Optional[str] = None
    origin: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


def envelope(msg_type: str, payload: Any = None) -> Dict[str, Any]:
    return {"type": msg_type, "payload": payload}


def error_response(message: str) -> Dict[str, Any]:
    return envelope(RESPONSE, {"status": "error", "message": message})


def encode_line(obj: Dict[str, Any]) -> bytes:
    return (json.dumps(obj) + "\n").encode("utf-8")


def decode_json(text: str) -> Dict[str, Any]:
    """Parses one envelope, checking that it is an object with a string type."""
    try:
        obj = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ProtocolError("envelope must be a JSON object")
    if not isinstance(obj.get("type"), str):
        raise ProtocolError("envelope is missing a 'type'")
    return obj


def decode_line(line: bytes) -> Dict[str, Any]:
    try:
        text = line.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError("frame is not valid UTF-8") from e
    return decode_json(text)


def _optional_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def parse_handshake_metadata(raw: Any) -> HandshakeMetadata:
    """
    Reads the connection metadata sent with ``key_exchange``.

    Missing or blank identifiers are not an error: the connection is simply
    anonymous and takes no part in presence tracking.
    """
    if not isinstance(raw, dict):
        return HandshakeMetadata()
    return HandshakeMetadata(
        user_id=_optional_str(raw.get("user_id")),
        origin=_optional_str(raw.get("origin")),
    )


def presence_payload(user_ids: Iterable[str]) -> List[str]:
    return sorted(set(user_ids))


def parse_presence_update(payload: Any) -> FrozenSet[str]:
    if not isinstance(payload, list):
        raise ProtocolError("presence.update payload must be a list")
    if not all(isinstance(user_id, str) and user_id for user_id in payload):
        raise ProtocolError("presence.update entries must be non-empty strings")
    return frozenset(payload)


def parse_direct_message(payload: Any) -> Tuple[str, str]:
    """Returns (recipient_id, text) from a ``send_message`` payload."""
    if not isinstance(payload, dict):
        raise ProtocolError("send_message payload must be an object")
    recipient_id = _optional_str(payload.get("recipient_id"))
    if recipient_id is None:
        raise ProtocolError("Missing recipient_id")
    text = payload.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ProtocolError("Message text cannot be empty")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ProtocolError("Message text is too long")
    return recipient_id, text


def parse_history_request(payload: Any, default_limit: int) -> Tuple[str, int]:
    """Returns (peer_id, limit) from a ``get_messages`` payload."""
    if not isinstance(payload, dict):
        raise ProtocolError("get_messages payload must be an object")
    peer_id = _optional_str(payload.get("peer_id"))
    if peer_id is None:
        raise ProtocolError("Missing peer_id")
    limit = payload.get("limit", default_limit)
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ProtocolError("limit must be a positive integer")
    return peer_id, min(limit, default_limit)


def _positive_number(payload: Dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ProtocolError(f"{key} must be a positive number")
    return float(value)


def parse_handshake_complete(payload: Any) -> Dict[str, Any]:
    """
    Validates the server's ``handshake_complete`` payload.

    Heartbeat fields the server leaves out come back as None so the client
    can fall back to its own defaults.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ProtocolError("handshake_complete payload must be an object")
    return {
        "user_id": _optional_str(payload.get("user_id")),
        "heartbeat_interval": _positive_number(payload, "heartbeat_interval"),
        "heartbeat_timeout": _positive_number(payload, "heartbeat_timeout"),
    }
