"""Disc image catalog shared read-only by NetISO sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional, Sequence, Tuple

LOGGER = logging.getLogger(__name__)

SECTOR_SIZE = 0x800
XGD_MAGIC = b"MICROSOFT*XBOX*MEDIA"
DEFAULT_EXTENSIONS: Tuple[str, ...] = (".iso",)

# (trigger offset, data start), most specific layout first.
_DATA_START_PROBES: Tuple[Tuple[int, int], ...] = (
    (0x0FDA0000, 0x0FD90000),  # XGD2 / GDF
    (0x02090000, 0x02080000),  # XGD3
    (0x00010000, 0x00000000),  # XSF
)


class ScanError(OSError):
    """Raised when a candidate image cannot be probed."""


@dataclass(frozen=True)
class ImageRecord:
    """Catalog entry describing one on-disk disc image."""

    path: Path
    display_name: str
    size_bytes: int
    data_start_offset: int
    sector_count: int
    has_type1_file: int = 0


@dataclass(frozen=True)
class ImageCatalog:
    """Ordered, immutable snapshot of :class:`ImageRecord` entries.

    The position of a record is the ``iso_index`` a client uses to address it.
    """

    records: Tuple[ImageRecord, ...] = ()

    def __post_init__(self) -> None:  # pragma: no cover - dataclass internals
        object.__setattr__(self, "records", tuple(self.records))

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[ImageRecord]:
        return iter(self.records)

    def get(self, index: int) -> Optional[ImageRecord]:
        """Return the record at ``index`` or ``None`` when out of range."""

        if 0 <= index < len(self.records):
            return self.records[index]
        return None

    def find_by_suffix(self, name: str) -> Optional[ImageRecord]:
        """Return the first record whose display name ends with ``name``."""

        for record in self.records:
            if record.display_name.endswith(name):
                return record
        return None


def sector_count_for(size_bytes: int) -> int:
    return size_bytes // SECTOR_SIZE


def detect_data_start(stream: BinaryIO, size_bytes: int) -> int:
    """Return the data-start offset advertised by the XGD magic in ``stream``.

    Zero is returned when none of the known trigger offsets carries the magic.
    """

    magic_length = len(XGD_MAGIC)
    for trigger, data_start in _DATA_START_PROBES:
        if size_bytes < trigger + magic_length:
            continue
        stream.seek(trigger)
        probe = stream.read(magic_length)
        if len(probe) != magic_length:
            raise EOFError(f"short read probing offset {trigger:#x}")
        if probe == XGD_MAGIC:
            return data_start
    return 0


def probe_image(path: Path) -> ImageRecord:
    """Build an :class:`ImageRecord` for ``path`` or raise :class:`ScanError`."""

    try:
        size_bytes = path.stat().st_size
        with path.open("rb") as stream:
            data_start = detect_data_start(stream, size_bytes)
    except (OSError, EOFError) as exc:
        raise ScanError(f"cannot probe {path}: {exc}") from exc
    return ImageRecord(
        path=path,
        display_name=path.name,
        size_bytes=size_bytes,
        data_start_offset=data_start,
        sector_count=sector_count_for(size_bytes),
    )


def iter_candidates(
    root: Path,
    recursive: bool,
    extensions: Sequence[str] = DEFAULT_EXTENSIONS,
) -> Iterator[Path]:
    """Yield image files below ``root`` in sorted path order."""

    entries: Iterable[Path] = root.rglob("*") if recursive else root.iterdir()
    matches = [
        entry for entry in entries if entry.suffix in extensions and entry.is_file()
    ]
    return iter(sorted(matches))


def scan_catalog(
    previous: ImageCatalog,
    root: Path,
    recursive: bool,
    *,
    extensions: Sequence[str] = DEFAULT_EXTENSIONS,
) -> ImageCatalog:
    """Return ``previous`` minus vanished files plus newly discovered ones.

    Surviving records keep their relative order, so their indices only move
    when an earlier record disappears; new records are appended at the end.
    """

    retained = [record for record in previous if record.path.exists()]
    dropped = len(previous) - len(retained)
    if dropped:
        LOGGER.info("dropped %d vanished image(s) from catalog", dropped)

    known = {record.path for record in retained}
    appended: list[ImageRecord] = []
    for candidate in iter_candidates(root, recursive, extensions):
        if candidate in known:
            continue
        try:
            record = probe_image(candidate)
        except ScanError as exc:
            LOGGER.warning("skipping invalid image: %s", exc)
            continue
        LOGGER.debug(
            "catalogued %s (sectors=%d, data_start=%#x)",
            record.display_name,
            record.sector_count,
            record.data_start_offset,
        )
        appended.append(record)

    return ImageCatalog(tuple(retained + appended))


__all__ = [
    "DEFAULT_EXTENSIONS",
    "ImageCatalog",
    "ImageRecord",
    "SECTOR_SIZE",
    "ScanError",
    "XGD_MAGIC",
    "detect_data_start",
    "iter_candidates",
    "probe_image",
    "scan_catalog",
    "sector_count_for",
]
