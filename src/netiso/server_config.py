"""TOML configuration for the NetISO host."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Tuple

import tomllib

from .image_catalog import DEFAULT_EXTENSIONS
from .protocol import NETISO_PORT

VALID_PORT_RANGE = range(0, 65536)


class ServerConfigError(ValueError):
    """Raised when a server configuration file fails validation."""


@dataclass(frozen=True)
class ServerConfig:
    """Values the acceptor needs to scan and listen."""

    root: Path
    recursive: bool = False
    host: str = "0.0.0.0"
    port: int = NETISO_PORT
    extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS


def load_server_config(config_path: Path) -> ServerConfig:
    """Parse and validate server configuration at ``config_path``."""

    with config_path.open("rb") as stream:
        raw_data = tomllib.load(stream)

    server = _parse_server_section(raw_data)
    root = _normalise_root(server.get("root"), base=config_path.parent)
    host = server.get("host", "0.0.0.0")
    if not isinstance(host, str) or not host.strip():
        raise ServerConfigError("host must be a non-empty string")

    return ServerConfig(
        root=root,
        recursive=_coerce_bool(server.get("recursive", False), "recursive"),
        host=host.strip(),
        port=_coerce_port(server.get("port", NETISO_PORT)),
        extensions=_parse_extensions(server.get("extensions", list(DEFAULT_EXTENSIONS))),
    )


def _parse_server_section(data: Mapping[str, Any]) -> Mapping[str, Any]:
    server = data.get("server")
    if server is None:
        raise ServerConfigError("server configuration requires a [server] table")
    if not isinstance(server, Mapping):
        raise ServerConfigError("[server] section must be a mapping")
    return server


def _normalise_root(raw_path: Any, *, base: Path) -> Path:
    if raw_path is None:
        raise ServerConfigError("[server] requires a root directory")
    if not isinstance(raw_path, str):
        raise ServerConfigError("root must be a string path")
    path = Path(raw_path).expanduser()
    if not path.is_absolute():
        path = base / path
    path = path.resolve()
    if not path.exists():
        raise ServerConfigError(f"root does not exist: {path}")
    if not path.is_dir():
        raise ServerConfigError(f"root is not a directory: {path}")
    return path


def _coerce_bool(raw: Any, name: str) -> bool:
    if not isinstance(raw, bool):
        raise ServerConfigError(f"{name} must be true or false")
    return raw


def _coerce_port(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ServerConfigError("port must be an integer")
    if raw not in VALID_PORT_RANGE:
        raise ServerConfigError(
            f"port {raw} outside supported range {VALID_PORT_RANGE.start}-"
            f"{VALID_PORT_RANGE.stop - 1}"
        )
    return raw


def _parse_extensions(raw: Any) -> Tuple[str, ...]:
    if isinstance(raw, str) or not isinstance(raw, list):
        raise ServerConfigError("extensions must be an array of strings")
    resolved: list[str] = []
    for entry in raw:
        if not isinstance(entry, str) or not entry.strip(". "):
            raise ServerConfigError(f"invalid image extension: {entry!r}")
        text = entry.strip()
        resolved.append(text if text.startswith(".") else f".{text}")
    if not resolved:
        raise ServerConfigError("extensions must not be empty")
    return tuple(resolved)


__all__ = [
    "ServerConfig",
    "ServerConfigError",
    "load_server_config",
]
