"""Pytest configuration to ensure the NetISO package is importable."""
from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Optional

import pytest

_SRC = Path(__file__).resolve().parents[1] / "src"
_src_str = str(_SRC)
if _SRC.exists() and _src_str not in sys.path:
    sys.path.insert(0, _src_str)

from netiso.image_catalog import XGD_MAGIC  # noqa: E402

ImageWriter = Callable[..., Path]


def write_image_file(
    path: Path,
    size: int,
    *,
    magic_at: Optional[int] = None,
    fill: Optional[bytes] = None,
) -> Path:
    """Create a (sparse) image of ``size`` bytes, optionally tagged with XGD magic."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as stream:
        if fill is not None:
            stream.write(fill[:size])
        if magic_at is not None:
            stream.seek(magic_at)
            stream.write(XGD_MAGIC)
        stream.truncate(size)
    return path


@pytest.fixture
def write_image(tmp_path: Path) -> ImageWriter:
    def _write(relative: str, size: int, **kwargs) -> Path:
        return write_image_file(tmp_path / relative, size, **kwargs)

    return _write
