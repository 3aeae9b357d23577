"""Public NetISO API: image catalog, wire codec and the session server."""
from __future__ import annotations

from .image_catalog import ImageCatalog, ImageRecord, ScanError, scan_catalog
from .protocol import Command, FrameError, Message
from .runtime.server import NetIsoServer
from .runtime.session import MountState, NetIsoSession
from .server_config import ServerConfig, ServerConfigError, load_server_config

__all__ = [
    "Command",
    "FrameError",
    "ImageCatalog",
    "ImageRecord",
    "Message",
    "MountState",
    "NetIsoServer",
    "NetIsoSession",
    "ScanError",
    "ServerConfig",
    "ServerConfigError",
    "load_server_config",
    "scan_catalog",
]
