"""Chrome Native Messaging framing (stdin/stdout).

Chrome launches the host and exchanges messages over its stdio. Each message
is a 32-bit unsigned length in *native* byte order followed by that many bytes
of UTF-8 JSON.
"""

from __future__ import annotations

import json
import re
import struct
from typing import Any, BinaryIO

# Native byte order, standard 4-byte size.
_HEADER = struct.Struct("=I")

MAX_INBOUND_BYTES = 1 << 31
MAX_OUTBOUND_BYTES = 1 << 20

# Lone surrogates survive json.loads but cannot be encoded as UTF-8.
_SURROGATE_RE = re.compile("[\ud800-\udfff]")


class NativeMessagingError(Exception):
    pass


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    buf = bytearray()
    while len(buf) < n:
        try:
            chunk = stream.read(n - len(buf))
        except OSError as exc:
            raise NativeMessagingError(f"read failed: {exc}") from exc
        if not chunk:
            if not buf:
                raise NativeMessagingError("EOF")
            raise NativeMessagingError(f"unexpected EOF after {len(buf)} of {n} bytes")
        buf.extend(chunk)
    return bytes(buf)


def decode_native_length(header: bytes) -> int:
    """Return the payload length declared by a 4-byte frame header."""
    if len(header) != _HEADER.size:
        raise NativeMessagingError(f"frame header must be {_HEADER.size} bytes, got {len(header)}")
    (length,) = _HEADER.unpack(header)
    if length >= MAX_INBOUND_BYTES:
        raise NativeMessagingError("message from Chrome was >= 2 GB")
    return int(length)


def encode_native_message(payload: dict[str, Any]) -> bytes:
    """Serialize one frame (header + compact JSON)."""
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    raw = _SURROGATE_RE.sub("\ufffd", text).encode("utf-8")
    if len(raw) > MAX_OUTBOUND_BYTES:
        raise NativeMessagingError("cannot send message over 1 MB")
    return _HEADER.pack(len(raw)) + raw


def read_native_message(stream: BinaryIO) -> dict[str, Any]:
    """Read one Chrome Native Messaging frame (length-prefixed JSON)."""
    length = decode_native_length(_read_exact(stream, _HEADER.size))
    raw = _read_exact(stream, length) if length else b""
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise NativeMessagingError(f"invalid JSON payload: {exc}") from exc
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise NativeMessagingError(f"expected a JSON object, got {type(obj).__name__}")
    return obj


def write_native_message(stream: BinaryIO, payload: dict[str, Any]) -> None:
    """Write one Chrome Native Messaging frame as a single write."""
    frame = encode_native_message(payload)
    stream.write(frame)
    stream.flush()


__all__ = [
    "MAX_INBOUND_BYTES",
    "MAX_OUTBOUND_BYTES",
    "NativeMessagingError",
    "decode_native_length",
    "encode_native_message",
    "read_native_message",
    "write_native_message",
]
