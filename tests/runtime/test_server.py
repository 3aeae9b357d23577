"""Loopback tests for the NetISO acceptor and connection loop."""

from __future__ import annotations

import asyncio
import logging
import shutil
import struct
from pathlib import Path

from netiso.image_catalog import ImageCatalog
from netiso.protocol import Command, Message, encode_frame
from netiso.runtime.server import NetIsoServer, serve_connection
from netiso.runtime.session import NetIsoSession


def _frame(command: Command, **fields: int) -> bytes:
    return encode_frame(Message(command, **fields))


async def _open(listener: asyncio.AbstractServer):
    sockets = listener.sockets or []
    assert sockets
    host, port = sockets[0].getsockname()[:2]
    return await asyncio.open_connection(host, port)


async def _with_server(server: NetIsoServer, exercise):
    listener = await server.start("127.0.0.1", 0)
    try:
        return await exercise(listener)
    finally:
        listener.close()
        await listener.wait_closed()


def test_session_round_trip_over_tcp(write_image, tmp_path: Path) -> None:
    write_image("Disc A.iso", 4096, fill=b"0123456789" * 410)
    server = NetIsoServer(tmp_path)

    async def _exercise(listener):
        reader, writer = await _open(listener)
        try:
            writer.write(_frame(Command.PING))
            ping = await asyncio.wait_for(reader.readexactly(8), timeout=5.0)

            name = b"\\Mount\\Disc A.iso\x00"
            writer.write(_frame(Command.MOUNT_ISO, length=len(name)) + name)
            status = await asyncio.wait_for(reader.readexactly(4), timeout=5.0)

            writer.write(_frame(Command.GET_ISO_SIZE, image_index=0))
            size = await asyncio.wait_for(reader.readexactly(8), timeout=5.0)

            writer.write(_frame(Command.GET_ISO_NAME, image_index=0, length=32))
            display = await asyncio.wait_for(reader.readexactly(32), timeout=5.0)

            writer.write(_frame(Command.READ_DATA, offset=3, length=10))
            data = await asyncio.wait_for(reader.readexactly(10), timeout=5.0)
        finally:
            writer.close()
            await writer.wait_closed()
        return ping, status, size, display, data

    ping, status, size, display, data = asyncio.run(_with_server(server, _exercise))

    assert ping == b"ISVRokOK"
    assert struct.unpack(">I", status) == (1,)
    assert struct.unpack(">II", size) == (2, 2048)
    assert display == b"Disc A.iso".ljust(32, b"\x00")
    assert data == b"3456789012"


def test_malformed_frame_closes_connection_without_reply(write_image, tmp_path: Path) -> None:
    write_image("Disc A.iso", 4096)
    server = NetIsoServer(tmp_path)

    async def _exercise(listener):
        reader, writer = await _open(listener)
        try:
            writer.write(b"XXXX" + b"\x00" * 16)
            await writer.drain()
            return await asyncio.wait_for(reader.read(), timeout=5.0)
        finally:
            writer.close()
            await writer.wait_closed()

    assert asyncio.run(_with_server(server, _exercise)) == b""


def test_huge_read_offset_closes_connection_and_logs(
    write_image, tmp_path: Path, caplog
) -> None:
    write_image("Disc A.iso", 4096)
    server = NetIsoServer(tmp_path)
    unhandled: list[dict] = []

    async def _exercise(listener):
        asyncio.get_running_loop().set_exception_handler(
            lambda loop, context: unhandled.append(context)
        )
        reader, writer = await _open(listener)
        try:
            name = b"Disc A.iso"
            writer.write(_frame(Command.MOUNT_ISO, length=len(name)) + name)
            status = await asyncio.wait_for(reader.readexactly(4), timeout=5.0)
            writer.write(_frame(Command.READ_DATA, offset=2**64 - 1, length=4))
            tail = await asyncio.wait_for(reader.read(), timeout=5.0)
        finally:
            writer.close()
            await writer.wait_closed()
        return status, tail

    with caplog.at_level(logging.ERROR, logger="netiso.runtime.server"):
        status, tail = asyncio.run(_with_server(server, _exercise))

    assert status == b"\x00\x00\x00\x01"
    assert tail == b""
    assert unhandled == []
    assert "cannot seek to offset 0xffffffffffffffff" in caplog.text


def test_scan_failure_closes_only_that_connection(write_image, tmp_path: Path) -> None:
    root = tmp_path / "isos"
    write_image("isos/Disc A.iso", 4096)
    server = NetIsoServer(root)
    server.rescan()

    async def _exercise(listener):
        shutil.rmtree(root)
        reader, writer = await _open(listener)
        try:
            failed = await asyncio.wait_for(reader.read(), timeout=5.0)
        finally:
            writer.close()
            await writer.wait_closed()

        write_image("isos/Disc B.iso", 4096)
        reader, writer = await _open(listener)
        try:
            writer.write(_frame(Command.GET_ISO_NAME, image_index=0, length=16))
            name = await asyncio.wait_for(reader.readexactly(16), timeout=5.0)
        finally:
            writer.close()
            await writer.wait_closed()
        return failed, name, listener.is_serving()

    failed, name, serving = asyncio.run(_with_server(server, _exercise))

    assert failed == b""
    assert name == b"Disc B.iso".ljust(16, b"\x00")
    assert serving


def test_server_keeps_accepting_after_a_bad_client(write_image, tmp_path: Path) -> None:
    write_image("Disc A.iso", 4096)
    server = NetIsoServer(tmp_path)

    async def _exercise(listener):
        bad_reader, bad_writer = await _open(listener)
        bad_writer.write(_frame(Command.PING)[:4] + b"\xff\xff" + b"\x00" * 14)
        await asyncio.wait_for(bad_reader.read(), timeout=5.0)
        bad_writer.close()
        await bad_writer.wait_closed()

        reader, writer = await _open(listener)
        try:
            writer.write(_frame(Command.PING))
            return await asyncio.wait_for(reader.readexactly(8), timeout=5.0)
        finally:
            writer.close()
            await writer.wait_closed()

    assert asyncio.run(_with_server(server, _exercise)) == b"ISVRokOK"


def test_new_connections_see_late_files_without_disturbing_old_sessions(
    write_image, tmp_path: Path
) -> None:
    write_image("first.iso", 2048)
    server = NetIsoServer(tmp_path)

    async def _name(reader, writer, index: int) -> bytes:
        writer.write(_frame(Command.GET_ISO_NAME, image_index=index, length=16))
        return await asyncio.wait_for(reader.readexactly(16), timeout=5.0)

    async def _exercise(listener):
        old_reader, old_writer = await _open(listener)
        before = await _name(old_reader, old_writer, 1)

        write_image("second.iso", 2048)
        new_reader, new_writer = await _open(listener)
        try:
            fresh = await _name(new_reader, new_writer, 1)
            stale = await _name(old_reader, old_writer, 1)
        finally:
            for writer in (old_writer, new_writer):
                writer.close()
                await writer.wait_closed()
        return before, fresh, stale

    before, fresh, stale = asyncio.run(_with_server(server, _exercise))

    assert before == b"\x00" * 16
    assert fresh == b"second.iso".ljust(16, b"\x00")
    assert stale == b"\x00" * 16
    assert [record.display_name for record in server.catalog] == ["first.iso", "second.iso"]


def test_refresh_catalog_drops_vanished_files(write_image, tmp_path: Path) -> None:
    write_image("a.iso", 2048)
    write_image("b.iso", 2048)
    server = NetIsoServer(tmp_path)
    server.rescan()

    (tmp_path / "a.iso").unlink()
    catalog = asyncio.run(server.refresh_catalog())

    assert [record.display_name for record in catalog] == ["b.iso"]
    assert server.catalog is catalog


class _RecordingWriter:
    def __init__(self) -> None:
        self.chunks: list[bytes] = []

    def write(self, data: bytes) -> None:
        self.chunks.append(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)


def test_serve_connection_skips_reply_for_unmounted_read() -> None:
    async def _exercise():
        reader = asyncio.StreamReader()
        reader.feed_data(
            _frame(Command.READ_DATA, offset=0, length=4) + _frame(Command.PING)
        )
        reader.feed_eof()
        writer = _RecordingWriter()
        await serve_connection(NetIsoSession(ImageCatalog()), reader, writer)
        return writer.chunks

    assert asyncio.run(_exercise()) == [b"ISVRokOK"]
