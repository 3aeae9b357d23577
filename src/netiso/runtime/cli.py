"""Serve optical-disc images to NetISO clients over TCP."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Sequence

from ..image_catalog import ImageCatalog
from ..protocol import NETISO_PORT
from ..server_config import ServerConfig, ServerConfigError, load_server_config
from .server import NetIsoServer, run_listen

LOGGER = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Return parsed arguments for the server CLI."""

    parser = argparse.ArgumentParser(prog="netiso", description=__doc__)
    parser.add_argument(
        "root",
        type=Path,
        nargs="?",
        default=None,
        help="Directory containing the .iso images to serve",
    )
    parser.add_argument(
        "-r",
        "--recursive",
        action="store_true",
        default=None,
        help="Search subdirectories of the image directory",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a TOML file with a [server] table",
    )
    parser.add_argument("--host", default=None, help="Address to listen on")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"TCP port to listen on (default: {NETISO_PORT})",
    )
    parser.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        default="INFO",
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def resolve_config(args: argparse.Namespace) -> ServerConfig:
    """Merge the optional config file with command-line overrides."""

    if args.config is not None:
        config = load_server_config(args.config)
    elif args.root is not None:
        config = ServerConfig(root=args.root)
    else:
        raise ServerConfigError("an image directory or --config file is required")

    root = args.root if args.root is not None else config.root
    if not root.is_dir():
        raise ServerConfigError(f"image directory does not exist: {root}")
    return ServerConfig(
        root=root,
        recursive=config.recursive if args.recursive is None else args.recursive,
        host=config.host if args.host is None else args.host,
        port=config.port if args.port is None else args.port,
        extensions=config.extensions,
    )


def build_server(config: ServerConfig) -> NetIsoServer:
    """Create the acceptor and run the startup scan."""

    server = NetIsoServer(
        config.root, recursive=config.recursive, extensions=config.extensions
    )
    LOGGER.info("enumerating images in %s", config.root)
    _log_catalog(server.rescan())
    return server


def _log_catalog(catalog: ImageCatalog) -> None:
    for index, record in enumerate(catalog):
        LOGGER.info("%d: %s", index, record.display_name)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the ``netiso`` console script."""

    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=_LOG_FORMAT)
    try:
        config = resolve_config(args)
    except ServerConfigError as exc:
        raise SystemExit(f"netiso: {exc}") from exc

    server = build_server(config)
    if not server.catalog:
        raise SystemExit("netiso: No iso files enumerated")

    try:
        asyncio.run(run_listen(server, config.host, config.port))
    except KeyboardInterrupt:  # pragma: no cover - interactive shutdown
        LOGGER.info("shutting down")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via python -m
    raise SystemExit(main())


__all__ = ["build_server", "main", "parse_args", "resolve_config"]
