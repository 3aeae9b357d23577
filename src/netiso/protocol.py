"""Binary wire format spoken between netiso.xex clients and the host."""

from __future__ import annotations

import asyncio
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .image_catalog import SECTOR_SIZE

NETISO_PORT = 4323
MAGIC = b"ISVR"
PING_REPLY = b"ISVRokOK"
DISABLE_ISO_NAME = "[Disable Current ISO]"

# magic, command, image index, offset, length
FRAME = struct.Struct(">4sHHQI")
FRAME_SIZE = FRAME.size

_U32 = struct.Struct(">I")
_ISO_SIZE = struct.Struct(">II")


class FrameError(ValueError):
    """Raised when a request frame cannot be decoded."""


class Command(IntEnum):
    """Request codes carried in the frame's command field."""

    PING = 0
    GET_ISO_SIZE = 1
    HAS_TYPE1_FILE = 2
    READ_DATA = 3
    GET_ISO_NAME = 4
    MOUNT_ISO = 5


@dataclass(frozen=True)
class Message:
    """Decoded request frame."""

    command: Command
    image_index: int = 0
    offset: int = 0
    length: int = 0


def decode_frame(data: bytes) -> Message:
    """Parse a 20-byte request frame into a :class:`Message`."""

    if len(data) != FRAME_SIZE:
        raise FrameError(f"expected {FRAME_SIZE} byte frame, received {len(data)}")
    magic, command, image_index, offset, length = FRAME.unpack(data)
    if magic != MAGIC:
        raise FrameError(f"bad frame magic {magic!r}")
    try:
        resolved = Command(command)
    except ValueError as exc:
        raise FrameError(f"unknown command code {command}") from exc
    return Message(resolved, image_index, offset, length)


def encode_frame(message: Message) -> bytes:
    """Serialise ``message`` as a request frame (client side)."""

    return FRAME.pack(
        MAGIC,
        int(message.command),
        message.image_index,
        message.offset,
        message.length,
    )


async def read_message(reader: asyncio.StreamReader) -> Optional[Message]:
    """Read one frame from ``reader``; ``None`` when the peer closed cleanly."""

    try:
        data = await reader.readexactly(FRAME_SIZE)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise FrameError(
            f"connection closed mid-frame after {len(exc.partial)} bytes"
        ) from exc
    return decode_frame(data)


async def read_payload(reader: asyncio.StreamReader, length: int) -> bytes:
    """Read the ``length`` bytes that trail a frame."""

    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise FrameError(
            f"expected {length} payload bytes, received {len(exc.partial)}"
        ) from exc


def normalize_mount_name(raw: bytes) -> str:
    """Strip the client's ``\\Mount`` prefix, backslashes and NUL padding."""

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FrameError("mount name is not valid UTF-8") from exc
    return text.replace("\\Mount", "").replace("\\", "").replace("\x00", "")


def encode_iso_size(sector_count: int, sector_size: int = SECTOR_SIZE) -> bytes:
    return _ISO_SIZE.pack(sector_count & 0xFFFFFFFF, sector_size)


def encode_u32(value: int) -> bytes:
    return _U32.pack(value & 0xFFFFFFFF)


def encode_name(name: str, length: int) -> bytes:
    """Return ``name`` as exactly ``length`` bytes, NUL padded or truncated."""

    return name.encode("utf-8")[:length].ljust(length, b"\x00")


# Why: the client expects both size fields cleared, not just the sector count.
ZERO_ISO_SIZE = encode_iso_size(0, 0)


__all__ = [
    "Command",
    "DISABLE_ISO_NAME",
    "FRAME_SIZE",
    "FrameError",
    "MAGIC",
    "NETISO_PORT",
    "Message",
    "PING_REPLY",
    "ZERO_ISO_SIZE",
    "decode_frame",
    "encode_frame",
    "encode_iso_size",
    "encode_name",
    "encode_u32",
    "normalize_mount_name",
    "read_message",
    "read_payload",
]
