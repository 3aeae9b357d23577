"""TCP acceptor that hands each NetISO connection its own session."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Sequence

from ..image_catalog import DEFAULT_EXTENSIONS, ImageCatalog, scan_catalog
from ..protocol import (
    NETISO_PORT,
    Command,
    FrameError,
    read_message,
    read_payload,
)
from .session import NetIsoSession

LOGGER = logging.getLogger(__name__)


async def serve_connection(
    session: NetIsoSession,
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> None:
    """Run the read/dispatch/reply loop until the peer disconnects.

    Each reply is drained before the next frame is read. Frame and I/O
    errors propagate to the caller; the mounted image is always closed.
    """

    try:
        while True:
            message = await read_message(reader)
            if message is None:
                break
            payload = b""
            if message.command is Command.MOUNT_ISO:
                payload = await read_payload(reader, message.length)
            reply = await session.dispatch(message, payload)
            if reply is None:
                continue
            writer.write(reply)
            await writer.drain()
    finally:
        session.close()


class NetIsoServer:
    """Own the current catalog and spawn one session per accepted client."""

    def __init__(
        self,
        root: Path,
        *,
        recursive: bool = False,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        catalog: ImageCatalog | None = None,
    ) -> None:
        self.root = root
        self.recursive = recursive
        self.extensions = tuple(extensions)
        self._catalog = catalog if catalog is not None else ImageCatalog()
        self._refresh_lock = asyncio.Lock()

    @property
    def catalog(self) -> ImageCatalog:
        return self._catalog

    def rescan(self) -> ImageCatalog:
        """Synchronously refresh and return the current catalog."""

        self._catalog = scan_catalog(
            self._catalog, self.root, self.recursive, extensions=self.extensions
        )
        return self._catalog

    async def refresh_catalog(self) -> ImageCatalog:
        """Rescan off the event loop; concurrent callers are serialised."""

        async with self._refresh_lock:
            catalog = await asyncio.to_thread(
                scan_catalog,
                self._catalog,
                self.root,
                self.recursive,
                extensions=self.extensions,
            )
            self._catalog = catalog
            return catalog

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        LOGGER.info("connection from %s", peer)
        try:
            snapshot = await self.refresh_catalog()
            session = NetIsoSession(snapshot)
            await serve_connection(session, reader, writer)
            LOGGER.info("client %s disconnected", peer)
        except FrameError as exc:
            LOGGER.warning("closing %s after malformed frame: %s", peer, exc)
        except OSError as exc:
            LOGGER.error("closing %s after I/O error: %s", peer, exc)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def start(
        self, host: str = "0.0.0.0", port: int = NETISO_PORT
    ) -> asyncio.AbstractServer:
        """Bind the listener; sessions run as independent tasks."""

        return await asyncio.start_server(self.handle_connection, host, port)


async def run_listen(server: NetIsoServer, host: str, port: int) -> None:
    """Serve NetISO clients until cancelled."""

    listener = await server.start(host, port)
    LOGGER.info("listening for incoming connections on %s:%d", host, port)
    async with listener:
        await listener.serve_forever()


__all__ = ["NETISO_PORT", "NetIsoServer", "run_listen", "serve_connection"]
