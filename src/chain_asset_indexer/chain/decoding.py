"""Typed decoders for raw log topics and data payloads.

Each helper decodes one target shape (unsigned integer, hex string,
address). Callers pick the helper for the shape they expect.
"""

from __future__ import annotations

from typing import Any

WORD_SIZE = 32
ADDRESS_SIZE = 20


class DecodeError(ValueError):
    """Raised when a byte range cannot be decoded into the requested shape."""


def to_bytes(value: Any) -> bytes:
    """Coerce HexBytes, bytes or a hex string into bytes."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        hexed = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return bytes.fromhex(hexed)
        except ValueError as e:
            raise DecodeError(f"Invalid hex string: {value!r}") from e
    raise DecodeError(f"Cannot decode bytes from {type(value).__name__}")


def to_hex(value: Any) -> str:
    """Render bytes-like or hex input as a lowercase 0x-prefixed string."""
    return "0x" + to_bytes(value).hex()


def _slice(data: bytes, start: int, end: int) -> bytes:
    if start < 0 or end < start or end > len(data):
        raise DecodeError(
            f"Byte range [{start}:{end}] out of range for {len(data)}-byte payload"
        )
    return data[start:end]


def decode_uint(data: Any, start: int = 0, end: int = WORD_SIZE) -> int:
    """Decode a big-endian unsigned integer from ``data[start:end]``."""
    return int.from_bytes(_slice(to_bytes(data), start, end), "big")


def decode_hex(data: Any, start: int = 0, end: int = WORD_SIZE) -> str:
    """Return ``data[start:end]`` as a lowercase 0x-prefixed hex string."""
    return "0x" + _slice(to_bytes(data), start, end).hex()


def decode_topic_address(topic: Any) -> str:
    """Decode an address from the last 20 bytes of a 32-byte topic."""
    raw = to_bytes(topic)
    if len(raw) != WORD_SIZE:
        raise DecodeError(f"Topic must be {WORD_SIZE} bytes, got {len(raw)}")
    return decode_hex(raw, WORD_SIZE - ADDRESS_SIZE, WORD_SIZE)
