"""Pytest configuration and shared fixtures for btleech tests."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import os

import pytest
import pytest_asyncio

from btleech import config as config_module
from btleech.bencode import encode
from btleech.models import NetworkConfig, PeerInfo, TorrentInfo
from btleech.peer import (
    LENGTH_PREFIX_SIZE,
    BitfieldMessage,
    Handshake,
    InterestedMessage,
    KeepAliveMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    decode_body,
    decode_message,
    indices_to_bitfield,
)
from btleech.peer_connection import AsyncPeerConnection


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("integration", "marks tests as integration tests"),
        ("unit", "marks tests as unit tests"),
        ("core", "marks tests as core functionality tests"),
        ("peer", "marks tests as peer protocol tests"),
        ("piece", "marks tests as piece download tests"),
        ("tracker", "marks tests as tracker tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
        ("observability", "marks tests as logging tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep tests away from user config files and BTLEECH_* variables."""
    for name in list(os.environ):
        if name.startswith("BTLEECH_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    config_module.reset_config()
    yield
    config_module.reset_config()


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    # setup_logging stops propagation, which would hide records from caplog
    package_logger = logging.getLogger("btleech")
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


def build_torrent(
    data: bytes,
    piece_length: int,
    name: str = "sample.bin",
    announce: str = "http://tracker.example/announce",
) -> TorrentInfo:
    """Build torrent metadata describing ``data``."""
    pieces = b"".join(
        hashlib.sha1(data[i : i + piece_length]).digest()
        for i in range(0, len(data), piece_length)
    )
    info = {
        b"length": len(data),
        b"name": name.encode(),
        b"piece length": piece_length,
        b"pieces": pieces,
    }
    return TorrentInfo(
        announce=announce,
        name=name,
        piece_length=piece_length,
        total_length=len(data),
        pieces=pieces,
        info=info,
    )


def torrent_file_bytes(torrent: TorrentInfo) -> bytes:
    """Bencode a torrent back into .torrent file contents."""
    return encode({b"announce": torrent.announce.encode(), b"info": torrent.info})


def sample_data(size: int) -> bytes:
    return bytes((i * 7 + i // 251) % 256 for i in range(size))


def split_messages(stream: bytes) -> list:
    """Split a byte stream of length-prefixed messages into decoded messages."""
    messages = []
    pos = 0
    while pos < len(stream):
        length = int.from_bytes(stream[pos : pos + LENGTH_PREFIX_SIZE], "big")
        end = pos + LENGTH_PREFIX_SIZE + length
        messages.append(decode_message(stream[pos:end]))
        pos = end
    return messages


class FakeWriter:
    """Stand-in for ``asyncio.StreamWriter`` recording written bytes."""

    def __init__(self):
        self.buffer = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        self.buffer += data

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed

    async def wait_closed(self) -> None:
        return None

    def sent_messages(self) -> list:
        return split_messages(bytes(self.buffer))


@pytest.fixture
def fake_writer():
    return FakeWriter()


@pytest.fixture
def scripted_connection():
    """Factory for a connection whose incoming stream is fixed in advance.

    Must be called from inside a running event loop.
    """

    def _make(messages, peer_choking=True, config=None, num_pieces=None, eof=True):
        reader = asyncio.StreamReader()
        for message in messages:
            reader.feed_data(message.encode())
        if eof:
            reader.feed_eof()
        writer = FakeWriter()
        connection = AsyncPeerConnection(
            peer_info=PeerInfo(ip="127.0.0.1", port=6881),
            reader=reader,
            writer=writer,
            remote_peer_id=b"R" * 20,
            config=config or NetworkConfig(),
            num_pieces=num_pieces,
            peer_choking=peer_choking,
        )
        return connection, writer

    return _make


class SeedingPeer:
    """A cooperative local peer serving pieces of ``data``.

    It answers the handshake, sends its bitfield, unchokes on Interested and
    serves every Request in order.
    """

    def __init__(
        self,
        torrent: TorrentInfo,
        data: bytes,
        have: set[int] | None = None,
        peer_id: bytes = b"-SP0001-seedingpeer!",
        corrupt: set[int] | None = None,
        info_hash: bytes | None = None,
        send_bitfield: bool = True,
    ):
        self.torrent = torrent
        self.data = data
        self.have = set(range(torrent.num_pieces)) if have is None else have
        self.peer_id = peer_id
        self.corrupt = corrupt or set()
        self.info_hash = info_hash or torrent.info_hash()
        self.send_bitfield = send_bitfield
        self.requests: list[RequestMessage] = []
        self.server: asyncio.AbstractServer | None = None
        self.port: int | None = None
        self._writers: set = set()

    @property
    def peer_info(self) -> PeerInfo:
        return PeerInfo(ip="127.0.0.1", port=self.port)

    async def start(self) -> SeedingPeer:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            for writer in list(self._writers):
                writer.close()
            await self.server.wait_closed()

    async def _send(self, writer, message) -> None:
        writer.write(message.encode())
        await writer.drain()

    async def _handle(self, reader, writer) -> None:
        self._writers.add(writer)
        try:
            await reader.readexactly(68)
            writer.write(Handshake(self.info_hash, self.peer_id).encode())
            await writer.drain()
            if self.send_bitfield:
                bitfield = indices_to_bitfield(self.have, self.torrent.num_pieces)
                await self._send(writer, BitfieldMessage(bitfield))
            else:
                await self._send(writer, UnchokeMessage())
            while True:
                length = int.from_bytes(await reader.readexactly(4), "big")
                body = await reader.readexactly(length) if length else b""
                message = decode_body(body)
                if isinstance(message, InterestedMessage):
                    await self._send(writer, UnchokeMessage())
                elif isinstance(message, RequestMessage):
                    self.requests.append(message)
                    await self._send(writer, self._block(message))
                elif isinstance(message, KeepAliveMessage):
                    continue
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    def _block(self, request: RequestMessage) -> PieceMessage:
        start = request.piece_index * self.torrent.piece_length + request.begin
        block = self.data[start : start + request.length]
        if request.piece_index in self.corrupt:
            block = bytes(b ^ 0xFF for b in block)
        return PieceMessage(request.piece_index, request.begin, block)


@pytest_asyncio.fixture
async def seeding_peers():
    """Start SeedingPeer servers and stop them after the test."""
    started: list[SeedingPeer] = []

    async def _start(*args, **kwargs) -> SeedingPeer:
        peer = await SeedingPeer(*args, **kwargs).start()
        started.append(peer)
        return peer

    yield _start

    for peer in started:
        await peer.stop()



@pytest.fixture
def make_torrent():
    """Factory building torrent metadata for given bytes."""
    return build_torrent


@pytest.fixture
def make_data():
    """Factory producing deterministic non-repeating sample bytes."""
    return sample_data


@pytest.fixture
def write_torrent_file(tmp_path):
    """Write a torrent to a .torrent file and return its path."""

    def _write(torrent: TorrentInfo, name: str = "sample.torrent"):
        path = tmp_path / name
        path.write_bytes(torrent_file_bytes(torrent))
        return path

    return _write
