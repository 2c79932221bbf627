import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .framing import MAX_FRAME_SIZE
from .physics import ProcessedContent

"""
messages.py — event names, the in-transit Message, and payload shapes.

What this module does:
- Names the events that cross the wire (same names the web clients use).
- Validates an inbound send_message payload and turns it into a Message with
  a relay-issued id and timestamp.
- Builds the outbound receive_message / message_failed payloads.

The relay never persists a Message: it lives from receipt until its one
delivery (or failure) fires, then it's gone.
"""

# -----------------------
# Event names
# -----------------------
SEND_MESSAGE = "send_message"
RECEIVE_MESSAGE = "receive_message"
MESSAGE_FAILED = "message_failed"
PING = "ping"
PONG = "pong"
ERROR = "error"

# Error codes for the "error" event.
INVALID_FRAME = "INVALID_FRAME"
UNKNOWN_EVENT = "UNKNOWN_EVENT"

TIMEOUT_ERROR = "Connection Timed Out (Error 503)"

# Room left in a frame for the receive_message envelope (keys, id, timestamp).
ENVELOPE_HEADROOM = 4096
# Budget for the echoed fields (text, era, sender) as JSON on the way out.
MAX_CONTENT_BYTES = MAX_FRAME_SIZE - ENVELOPE_HEADROOM


class MalformedMessage(ValueError):
    """A send_message payload with a missing, non-string or oversized field."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(ts: datetime) -> str:
    """ISO-8601 with millisecond precision and a trailing Z (like JS toISOString)."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Message:
    content: str
    era: str                 # raw label as the client sent it; echoed back untouched
    sender: str              # free-text label, not validated
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    issued_at: datetime = field(default_factory=utc_now)


def _json_size(text: str) -> int:
    try:
        return len(json.dumps(text, ensure_ascii=False).encode("utf-8"))
    except UnicodeEncodeError as exc:
        # Lone surrogates survive json.loads but can't be written back out.
        raise MalformedMessage("text is not valid unicode") from exc


def outbound_size(content: str, era: str, sender: str) -> int:
    """
    Bytes the echoed fields take up in the receive_message JSON. Measured on
    the upper-cased text too, since the telegraph can grow it ('ŉ' -> 'ʼN').
    """
    text = max(_json_size(content), _json_size(content.upper()))
    return text + _json_size(era) + _json_size(sender)


def parse_send_message(data: Dict[str, Any]) -> Message:
    """
    Validate a send_message payload {content, era, sender} and wrap it.

    Raises:
        MalformedMessage: if any field is missing or not a string, or the
            broadcast it would turn into cannot fit in one frame.
    """
    if not isinstance(data, dict):
        raise MalformedMessage("payload must be an object")
    missing = [k for k in ("content", "era", "sender") if not isinstance(data.get(k), str)]
    if missing:
        raise MalformedMessage(f"missing or non-string field(s): {', '.join(missing)}")
    size = outbound_size(data["content"], data["era"], data["sender"])
    if size > MAX_CONTENT_BYTES:
        raise MalformedMessage(f"message too large: {size} > {MAX_CONTENT_BYTES} bytes")
    return Message(content=data["content"], era=data["era"], sender=data["sender"])


def receive_message_payload(message: Message, processed: ProcessedContent,
                            delivered_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Broadcast body. The timestamp is the delivery time, not the send time."""
    return {
        "id": message.id,
        "text": processed.content,
        "sender": message.sender,
        "era": message.era,
        "isSecured": processed.secured,
        "timestamp": iso(delivered_at or utc_now()),
    }


def message_failed_payload(error: str = TIMEOUT_ERROR, failed_at: Optional[datetime] = None) -> Dict[str, Any]:
    return {"error": error, "timestamp": iso(failed_at or utc_now())}


def error_payload(code: str, **extra: Any) -> Dict[str, Any]:
    return {"code": code, **extra}
