# ════════════════════════════════════════════════════════════════════════════════
# Training Criteria - Binary Stream Helpers
# ════════════════════════════════════════════════════════════════════════════════
# Fixed-width little-endian encoding for persisted node state.
# Works on any seekable binary stream (open(..., "rb"), io.BytesIO).
# ════════════════════════════════════════════════════════════════════════════════

from __future__ import annotations

import struct
from typing import BinaryIO, Final

from training_criteria.core.errors import SerializationError

INT32: Final[struct.Struct] = struct.Struct("<i")
UINT32: Final[struct.Struct] = struct.Struct("<I")

# Serialized width of one persisted enum value
ENUM_WIDTH: Final[int] = INT32.size


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    position = stream.tell()
    data = stream.read(size)
    if len(data) != size:
        raise SerializationError(
            message=f"Unexpected end of stream: wanted {size} bytes, got {len(data)}",
            position=position,
        )
    return data


def write_int32(stream: BinaryIO, value: int) -> None:
    stream.write(INT32.pack(int(value)))


def read_int32(stream: BinaryIO) -> int:
    return INT32.unpack(_read_exact(stream, INT32.size))[0]


def write_string(stream: BinaryIO, value: str) -> None:
    """Write a length-prefixed UTF-8 string."""
    encoded = value.encode("utf-8")
    stream.write(UINT32.pack(len(encoded)))
    stream.write(encoded)


def read_string(stream: BinaryIO) -> str:
    length = UINT32.unpack(_read_exact(stream, UINT32.size))[0]
    position = stream.tell()
    try:
        return _read_exact(stream, length).decode("utf-8")
    except UnicodeDecodeError as e:
        raise SerializationError(
            message="String field is not valid UTF-8",
            position=position,
            cause=e,
        )


def rewind(stream: BinaryIO, num_bytes: int) -> None:
    """Move the stream cursor back by num_bytes."""
    stream.seek(stream.tell() - num_bytes)


__all__ = [
    "ENUM_WIDTH",
    "write_int32",
    "read_int32",
    "write_string",
    "read_string",
    "rewind",
]
