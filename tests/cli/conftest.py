"""Fixtures for CLI tests.

CLI commands run their own event loop with ``asyncio.run``, so local peers
are served from a background thread with a loop of its own.
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from tests.conftest import SeedingPeer, build_torrent, sample_data


class BackgroundLoop:
    """An event loop running in a daemon thread."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)

    def start(self) -> BackgroundLoop:
        self.thread.start()
        return self

    def run(self, coro, timeout: float = 10.0):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)
        self.loop.close()


@pytest.fixture
def threaded_seeders():
    """Factory starting SeedingPeer servers on a background loop."""
    background = BackgroundLoop().start()
    started: list[SeedingPeer] = []

    def _start(*args, **kwargs) -> SeedingPeer:
        peer = background.run(SeedingPeer(*args, **kwargs).start())
        started.append(peer)
        return peer

    yield _start

    for peer in started:
        background.run(peer.stop())
    background.stop()


@pytest.fixture
def sample_torrent(write_torrent_file):
    """A three piece torrent, its data and its .torrent path."""
    data = sample_data(2 * 1024 + 500)
    torrent = build_torrent(data, 1024)
    return torrent, data, write_torrent_file(torrent)
