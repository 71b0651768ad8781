"""
utils/visitor_data.py
Generate YouTube visitor data locally, without loading youtube.com.

Visitor data is a tiny protobuf message, web-safe base64 encoded and then
URL-quoted:
  field 1 (string) — 11 random chars from [A-Za-z0-9_-]
  field 5 (varint) — unix timestamp in seconds

It identifies the session to the attestation service and is also the
identifier the session PO token is bound to.
"""

import secrets
import string
import time
from urllib.parse import quote, unquote

from utils.encoding import base64_to_bytes, bytes_to_websafe

_ID_ALPHABET = string.ascii_letters + string.digits + "-_"
_ID_LENGTH = 11


def generate_visitor_data(timestamp: int | None = None) -> str:
    visitor_id = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))
    if timestamp is None:
        timestamp = int(time.time())
    return encode_visitor_data(visitor_id, timestamp)


def encode_visitor_data(visitor_id: str, timestamp: int) -> str:
    raw_id = visitor_id.encode("utf-8")
    message = (
        b"\x0a" + _varint(len(raw_id)) + raw_id   # field 1, length-delimited
        + b"\x28" + _varint(timestamp)            # field 5, varint
    )
    return quote(bytes_to_websafe(message), safe="")


def decode_visitor_data(visitor_data: str) -> tuple[str, int]:
    """Return (visitor_id, timestamp). Raises ValueError on anything malformed."""
    try:
        message = base64_to_bytes(unquote(visitor_data))
    except ValueError as e:
        raise ValueError(f"Visitor data is not base64: {visitor_data!r}") from e

    visitor_id, timestamp = None, None
    pos = 0
    while pos < len(message):
        key, pos = _read_varint(message, pos)
        field_no, wire_type = key >> 3, key & 0x07
        if wire_type == 0:
            value, pos = _read_varint(message, pos)
            if field_no == 5:
                timestamp = value
        elif wire_type == 2:
            length, pos = _read_varint(message, pos)
            chunk = message[pos:pos + length]
            pos += length
            if field_no == 1:
                visitor_id = chunk.decode("utf-8")
        else:
            raise ValueError(f"Unsupported wire type {wire_type} in visitor data")

    if visitor_id is None or timestamp is None:
        raise ValueError("Visitor data is missing the id or timestamp field")
    return visitor_id, timestamp


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        bits = value & 0x7F
        value >>= 7
        if value:
            out.append(bits | 0x80)
        else:
            out.append(bits)
            return bytes(out)


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    result, shift = 0, 0
    while True:
        if pos >= len(data):
            raise ValueError("Truncated varint in visitor data")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
