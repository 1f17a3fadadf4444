"""Tests for the per-connection piece download state machine."""

from __future__ import annotations

import hashlib

import pytest

pytestmark = [pytest.mark.unit, pytest.mark.piece]

from btleech.exceptions import (
    PeerConnectionError,
    PeerTimeoutError,
    ProtocolError,
    VerificationError,
)
from btleech.peer import (
    BitfieldMessage,
    ChokeMessage,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
)
from btleech.piece_download import (
    BlockRequest,
    PieceAssignment,
    PieceDownloader,
    block_requests,
    download_piece,
)


def _assignment(data: bytes, index: int = 0) -> PieceAssignment:
    return PieceAssignment(index, len(data), hashlib.sha1(data).digest())


def _blocks(data: bytes, size: int, index: int = 0) -> list[PieceMessage]:
    return [PieceMessage(index, i, data[i : i + size]) for i in range(0, len(data), size)]


class TestBlockRequests:
    def test_partition_with_short_tail(self):
        assert block_requests(3, 16384 + 100) == [
            BlockRequest(3, 0, 16384),
            BlockRequest(3, 16384, 100),
        ]

    def test_exact_multiple(self):
        requests = block_requests(0, 40, block_size=10)
        assert [r.block_offset for r in requests] == [0, 10, 20, 30]
        assert {r.block_length for r in requests} == {10}

    def test_small_piece_single_block(self):
        assert block_requests(1, 5) == [BlockRequest(1, 0, 5)]

    @pytest.mark.parametrize(
        "piece_length",
        [0, 1, 16383, 16384, 16385, 2 * 16384, 5 * 16384 + 7, 262144, 1048576 + 1],
    )
    def test_blocks_cover_piece_in_order(self, piece_length):
        requests = block_requests(4, piece_length)

        assert len(requests) == -(-piece_length // 16384)
        offset = 0
        for request in requests:
            assert request.piece_index == 4
            assert request.block_offset == offset
            assert 0 < request.block_length <= 16384
            offset += request.block_length
        assert offset == piece_length
        if requests:
            assert requests[-1].block_length == piece_length - 16384 * (len(requests) - 1)

    def test_invalid_block_size(self):
        with pytest.raises(ValueError):
            block_requests(0, 10, block_size=0)

    def test_to_message(self):
        assert BlockRequest(1, 2, 3).to_message() == RequestMessage(1, 2, 3)


class TestPieceAssignment:
    def test_from_torrent_last_piece(self, make_torrent, make_data):
        data = make_data(1000)
        torrent = make_torrent(data, 400)

        assignment = PieceAssignment.from_torrent(torrent, 2)

        assert assignment.piece_length == 200
        assert assignment.expected_hash == hashlib.sha1(data[800:]).digest()

    def test_from_torrent_uses_given_hashes(self, make_torrent, make_data):
        torrent = make_torrent(make_data(1000), 400)
        hashes = [b"a" * 20, b"b" * 20, b"c" * 20]

        assignment = PieceAssignment.from_torrent(torrent, 1, hashes)

        assert assignment.expected_hash == b"b" * 20
        assert assignment.piece_length == 400


class TestPieceDownloader:
    @pytest.mark.asyncio
    async def test_download_two_blocks(self, scripted_connection, make_data):
        data = make_data(16384 + 100)
        connection, writer = scripted_connection([UnchokeMessage(), *_blocks(data, 16384)])

        result = await download_piece(connection, _assignment(data))

        assert result == data
        assert writer.sent_messages() == [
            InterestedMessage(),
            RequestMessage(0, 0, 16384),
            RequestMessage(0, 16384, 100),
        ]

    @pytest.mark.asyncio
    async def test_pipeline_depth_bounds_requests(self, scripted_connection, make_data):
        data = make_data(65)
        connection, writer = scripted_connection([UnchokeMessage(), *_blocks(data, 10)])

        result = await download_piece(connection, _assignment(data), pipeline_depth=5, block_size=10)

        assert result == data
        sent = writer.sent_messages()
        assert sent[0] == InterestedMessage()
        assert [m.begin for m in sent[1:]] == [0, 10, 20, 30, 40, 50, 60]
        assert sent[-1] == RequestMessage(0, 60, 5)

    @pytest.mark.asyncio
    async def test_starts_requesting_when_already_unchoked(self, scripted_connection, make_data):
        data = make_data(10)
        connection, writer = scripted_connection([PieceMessage(0, 0, data)], peer_choking=False)

        assert await download_piece(connection, _assignment(data)) == data
        assert writer.sent_messages() == [InterestedMessage(), RequestMessage(0, 0, 10)]

    @pytest.mark.asyncio
    async def test_redundant_unchoke_tops_up(self, scripted_connection, make_data):
        data = make_data(20)
        connection, writer = scripted_connection(
            [UnchokeMessage(), *_blocks(data, 10)],
            peer_choking=False,
        )

        assert await download_piece(connection, _assignment(data), block_size=10) == data
        assert writer.sent_messages() == [
            InterestedMessage(),
            RequestMessage(0, 0, 10),
            RequestMessage(0, 10, 10),
        ]

    @pytest.mark.asyncio
    async def test_choke_does_not_resend_outstanding(self, scripted_connection, make_data):
        data = make_data(30)
        blocks = _blocks(data, 10)
        connection, writer = scripted_connection(
            [UnchokeMessage(), ChokeMessage(), UnchokeMessage(), *blocks],
        )

        result = await download_piece(
            connection, _assignment(data), pipeline_depth=2, block_size=10
        )

        assert result == data
        assert writer.sent_messages() == [
            InterestedMessage(),
            RequestMessage(0, 0, 10),
            RequestMessage(0, 10, 10),
            RequestMessage(0, 20, 10),
        ]

    @pytest.mark.asyncio
    async def test_unchoke_after_choke_only_tops_up(self, scripted_connection, make_data):
        data = make_data(40)
        blocks = _blocks(data, 10)
        connection, writer = scripted_connection(
            [UnchokeMessage(), blocks[0], ChokeMessage(), UnchokeMessage(), *blocks[1:]],
        )

        result = await download_piece(
            connection, _assignment(data), pipeline_depth=3, block_size=10
        )

        assert result == data
        sent = writer.sent_messages()[1:]
        assert [m.begin for m in sent] == [0, 10, 20, 30]
        assert len(set(sent)) == len(sent)

    @pytest.mark.asyncio
    async def test_keep_alive_and_have_ignored(self, scripted_connection, make_data):
        data = make_data(10)
        connection, _ = scripted_connection(
            [KeepAliveMessage(), UnchokeMessage(), HaveMessage(4), PieceMessage(0, 0, data)],
        )

        assert await download_piece(connection, _assignment(data)) == data
        assert connection.has_piece(4)

    @pytest.mark.asyncio
    async def test_piece_while_choked(self, scripted_connection, make_data):
        data = make_data(10)
        connection, _ = scripted_connection([PieceMessage(0, 0, data)])

        with pytest.raises(ProtocolError, match="while choked"):
            await download_piece(connection, _assignment(data))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [InterestedMessage(), BitfieldMessage(b"\x80")])
    async def test_unexpected_message(self, scripted_connection, make_data, message):
        data = make_data(10)
        connection, _ = scripted_connection([UnchokeMessage(), message])

        with pytest.raises(ProtocolError, match="Unexpected"):
            await download_piece(connection, _assignment(data))

    @pytest.mark.asyncio
    async def test_wrong_piece_index(self, scripted_connection, make_data):
        data = make_data(10)
        connection, _ = scripted_connection([UnchokeMessage(), PieceMessage(1, 0, data)])

        with pytest.raises(ProtocolError, match="Block for piece 1"):
            await download_piece(connection, _assignment(data))

    @pytest.mark.asyncio
    async def test_out_of_order_block(self, scripted_connection, make_data):
        data = make_data(20)
        blocks = _blocks(data, 10)
        connection, _ = scripted_connection([UnchokeMessage(), blocks[1], blocks[0]])

        with pytest.raises(ProtocolError, match="expected 0"):
            await download_piece(connection, _assignment(data), block_size=10)

    @pytest.mark.asyncio
    async def test_block_overruns_piece(self, scripted_connection, make_data):
        data = make_data(20)
        blocks = _blocks(data, 10)
        connection, _ = scripted_connection(
            [UnchokeMessage(), blocks[0], PieceMessage(0, 10, b"x" * 15)],
        )

        with pytest.raises(ProtocolError, match="overruns"):
            await download_piece(connection, _assignment(data), block_size=10)

    @pytest.mark.asyncio
    async def test_short_block(self, scripted_connection, make_data):
        data = make_data(20)
        connection, _ = scripted_connection([UnchokeMessage(), PieceMessage(0, 0, data[:5])])

        with pytest.raises(ProtocolError, match="requested 10"):
            await download_piece(connection, _assignment(data), block_size=10)

    @pytest.mark.asyncio
    async def test_hash_mismatch(self, scripted_connection, make_data):
        data = make_data(10)
        assignment = PieceAssignment(0, 10, b"\x00" * 20)
        connection, _ = scripted_connection([UnchokeMessage(), PieceMessage(0, 0, data)])

        with pytest.raises(VerificationError) as exc_info:
            await download_piece(connection, assignment)

        assert exc_info.value.details["expected"] == "00" * 20
        assert exc_info.value.details["actual"] == hashlib.sha1(data).hexdigest()

    @pytest.mark.asyncio
    async def test_connection_lost(self, scripted_connection, make_data):
        data = make_data(20)
        connection, _ = scripted_connection([UnchokeMessage(), PieceMessage(0, 0, data[:10])])

        with pytest.raises(PeerConnectionError):
            await download_piece(connection, _assignment(data), block_size=10)

    @pytest.mark.asyncio
    async def test_piece_timeout(self, scripted_connection, make_data):
        data = make_data(10)
        connection, _ = scripted_connection([UnchokeMessage()], eof=False)

        with pytest.raises(PeerTimeoutError, match="timed out"):
            await download_piece(connection, _assignment(data), piece_timeout=0.05)

    @pytest.mark.asyncio
    async def test_connection_choke_state_carries_over(self, scripted_connection, make_data):
        data = make_data(20)
        first, second = data[:10], data[10:]
        connection, writer = scripted_connection(
            [UnchokeMessage(), PieceMessage(0, 0, first), PieceMessage(1, 0, second)],
        )

        assert await download_piece(connection, _assignment(first, 0)) == first
        assert await download_piece(connection, _assignment(second, 1)) == second
        assert writer.sent_messages()[-1] == RequestMessage(1, 0, 10)

    def test_pipeline_depth_must_be_positive(self, make_data):
        with pytest.raises(ValueError):
            PieceDownloader(None, _assignment(make_data(4)), pipeline_depth=0)
