import asyncio
import json
import struct
from typing import Any, Dict, Tuple

"""
framing.py — length-prefixed JSON event frames for asyncio streams.

Wire format:
- Each frame = 4-byte little-endian unsigned length (N) + N bytes of UTF-8 JSON.
- The JSON body is an event object: {"event": "<name>", "data": {...}}.
- Hard cap at 1 MiB; chat lines are tiny and a bad peer shouldn't cost memory.

A frame whose JSON is broken has still been read in full, so the stream stays
in sync and the caller can carry on. An oversized frame leaves its body unread
and the connection has to go.
"""

MAX_FRAME_SIZE = 1024 * 1024  # 1 MiB hard limit
LENGTH_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit length


class FrameError(ValueError):
    """Base class for frames we can't turn into an event."""


class FrameTooLarge(FrameError):
    """Length prefix over MAX_FRAME_SIZE. The body is left unread."""


class InvalidFrame(FrameError):
    """Body was read but isn't a JSON event object."""


def encode_event(event: str, data: Dict[str, Any]) -> bytes:
    """Build the bytes for one frame (prefix + compact JSON body)."""
    body = json.dumps({"event": event, "data": data}, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    if len(body) > MAX_FRAME_SIZE:
        raise FrameTooLarge(f"Frame too large: {len(body)} > {MAX_FRAME_SIZE}")
    return LENGTH_STRUCT.pack(len(body)) + body


def decode_event(body: bytes) -> Tuple[str, Dict[str, Any]]:
    """
    Parse one frame body into (event, data).

    Raises:
        InvalidFrame: not UTF-8 JSON, not an object, or no string "event".
    """
    try:
        obj = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        # No payload echo; the body could be anything.
        raise InvalidFrame(f"Invalid JSON frame: {exc}") from exc

    if not isinstance(obj, dict) or not isinstance(obj.get("event"), str):
        raise InvalidFrame("Frame is not an event object")

    data = obj.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidFrame("Event data must be an object")
    return obj["event"], data


async def read_event(reader: asyncio.StreamReader) -> Tuple[str, Dict[str, Any]]:
    """
    Read one frame and return (event, data).

    Raises:
        asyncio.IncompleteReadError: the peer went away (clean EOF included).
        FrameTooLarge / InvalidFrame: see module notes.
    """
    (length,) = LENGTH_STRUCT.unpack(await reader.readexactly(LENGTH_STRUCT.size))
    if length > MAX_FRAME_SIZE:
        raise FrameTooLarge(f"Frame too large: {length} > {MAX_FRAME_SIZE}")
    body = await reader.readexactly(length)
    return decode_event(body)


async def write_event(writer: asyncio.StreamWriter, event: str, data: Dict[str, Any]) -> None:
    """Serialize and write one event frame, then let the transport flush."""
    writer.write(encode_event(event, data))
    await writer.drain()
