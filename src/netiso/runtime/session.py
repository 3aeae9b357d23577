"""Per-connection mount state machine for NetISO clients."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import BinaryIO, Callable, Optional

from ..image_catalog import ImageCatalog, ImageRecord
from ..protocol import (
    DISABLE_ISO_NAME,
    PING_REPLY,
    ZERO_ISO_SIZE,
    Command,
    Message,
    encode_iso_size,
    encode_name,
    encode_u32,
    normalize_mount_name,
)

LOGGER = logging.getLogger(__name__)

# netiso.xex probes this index and expects an empty size reply.
QUIRK_ZERO_SIZE_INDEX = 132

MOUNT_FOUND = 1
MOUNT_NOT_FOUND = 0
UNMOUNT_OK = 0

ImageOpener = Callable[[ImageRecord], BinaryIO]


def _open_image(record: ImageRecord) -> BinaryIO:
    return record.path.open("rb")


class MountState(Enum):
    """Lifecycle states exposed by :class:`NetIsoSession`."""

    UNMOUNTED = auto()
    MOUNTED = auto()


@dataclass
class NetIsoSession:
    """Dispatch decoded requests against a catalog snapshot and mount state."""

    catalog: ImageCatalog
    opener: ImageOpener = _open_image
    mounted: Optional[ImageRecord] = field(init=False, default=None)
    suppress_next_size: bool = field(init=False, default=False)
    _handle: Optional[BinaryIO] = field(init=False, default=None, repr=False)

    @property
    def state(self) -> MountState:
        if self._handle is None:
            return MountState.UNMOUNTED
        return MountState.MOUNTED

    async def dispatch(self, message: Message, payload: bytes = b"") -> Optional[bytes]:
        """Return the reply for ``message``; ``None`` means nothing is written.

        ``payload`` carries the trailing mount name for ``MOUNT_ISO`` frames.
        """

        command = message.command
        if command is Command.PING:
            return PING_REPLY
        if command is Command.GET_ISO_SIZE:
            return self._iso_size(message.image_index)
        if command is Command.HAS_TYPE1_FILE:
            record = self.catalog.get(message.image_index)
            return encode_u32(record.has_type1_file if record is not None else 0)
        if command is Command.READ_DATA:
            return await self._read_data(message.offset, message.length)
        if command is Command.GET_ISO_NAME:
            record = self.catalog.get(message.image_index)
            name = record.display_name if record is not None else ""
            return encode_name(name, message.length)
        if command is Command.MOUNT_ISO:
            return self._mount(payload)
        raise ValueError(f"unhandled command {command!r}")  # pragma: no cover

    def mount(self, record: ImageRecord) -> None:
        """Open ``record`` and make it the active image."""

        handle = self.opener(record)
        self._close_handle()
        self._handle = handle
        self.mounted = record

    def unmount(self) -> None:
        """Close the active image and arm the zero-size reply."""

        self._close_handle()
        self.suppress_next_size = True

    def close(self) -> None:
        self._close_handle()

    # Command handlers ----------------------------------------------------

    def _iso_size(self, image_index: int) -> bytes:
        # Why: right after an unmount the client re-queries and must read zero.
        if self.suppress_next_size:
            self.suppress_next_size = False
            return ZERO_ISO_SIZE
        if image_index == QUIRK_ZERO_SIZE_INDEX:
            return ZERO_ISO_SIZE
        record = self.catalog.get(image_index)
        return encode_iso_size(record.sector_count if record is not None else 0)

    async def _read_data(self, offset: int, length: int) -> Optional[bytes]:
        handle = self._handle
        if handle is None:
            LOGGER.warning(
                "ReadData(offset=%#x, length=%d) with no image mounted; no reply",
                offset,
                length,
            )
            return None
        return await asyncio.to_thread(_read_exact, handle, offset, length)

    def _mount(self, payload: bytes) -> bytes:
        name = normalize_mount_name(payload)
        LOGGER.info("normalised mount name: %r -> %r", payload, name)
        if name == DISABLE_ISO_NAME:
            LOGGER.info("unmounting current image")
            self.unmount()
            return encode_u32(UNMOUNT_OK)

        record = self.catalog.find_by_suffix(name)
        if record is None:
            LOGGER.warning("MountIso: no image matches %r", name)
            return encode_u32(MOUNT_NOT_FOUND)
        LOGGER.info("mounting %s", record.path)
        self.mount(record)
        return encode_u32(MOUNT_FOUND)

    def _close_handle(self) -> None:
        handle = self._handle
        self._handle = None
        self.mounted = None
        if handle is not None:
            handle.close()


def _read_exact(handle: BinaryIO, offset: int, length: int) -> bytes:
    try:
        handle.seek(offset)
    except (ValueError, OverflowError) as exc:
        raise OSError(f"cannot seek to offset {offset:#x}") from exc
    data = handle.read(length)
    if len(data) != length:
        raise OSError(
            f"short read at offset {offset:#x}: wanted {length} bytes, got {len(data)}"
        )
    return data


__all__ = [
    "MOUNT_FOUND",
    "MOUNT_NOT_FOUND",
    "MountState",
    "NetIsoSession",
    "QUIRK_ZERO_SIZE_INDEX",
    "UNMOUNT_OK",
]
