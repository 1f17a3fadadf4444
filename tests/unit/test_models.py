"""Tests for pydantic models."""

import hashlib

import pytest
from pydantic import ValidationError

pytestmark = [pytest.mark.unit, pytest.mark.core]

from btleech.bencode import encode
from btleech.exceptions import TorrentError
from btleech.models import Config, NetworkConfig, PeerInfo, TorrentInfo


class TestPeerInfo:
    def test_parse_address(self):
        peer = PeerInfo.parse("10.0.0.5:51413")
        assert peer.ip == "10.0.0.5"
        assert peer.port == 51413
        assert str(peer) == "10.0.0.5:51413"

    @pytest.mark.parametrize("address", ["10.0.0.5", "10.0.0.5:", ":80", "host:port"])
    def test_parse_invalid_address(self, address):
        with pytest.raises(ValueError):
            PeerInfo.parse(address)

    def test_port_range(self):
        with pytest.raises(ValidationError):
            PeerInfo(ip="1.2.3.4", port=0)

    def test_equality_ignores_peer_id(self):
        a = PeerInfo(ip="1.2.3.4", port=1, peer_id=b"a" * 20)
        b = PeerInfo(ip="1.2.3.4", port=1)
        assert a == b
        assert len({a, b}) == 1


class TestTorrentInfo:
    def test_piece_hashes_in_blob_order(self, make_torrent, make_data):
        data = make_data(1000)
        torrent = make_torrent(data, 400)

        hashes = torrent.piece_hashes()

        assert hashes == [
            hashlib.sha1(data[0:400]).digest(),
            hashlib.sha1(data[400:800]).digest(),
            hashlib.sha1(data[800:1000]).digest(),
        ]
        assert torrent.num_pieces == 3

    def test_piece_hashes_rejects_bad_blob(self, make_torrent, make_data):
        torrent = make_torrent(make_data(100), 100)
        broken = torrent.model_copy(update={"pieces": torrent.pieces + b"x"})
        with pytest.raises(TorrentError, match="multiple of 20"):
            broken.piece_hashes()

    def test_info_hash_is_sha1_of_encoded_info(self, make_torrent, make_data):
        torrent = make_torrent(make_data(100), 64)
        assert torrent.info_hash() == hashlib.sha1(encode(torrent.info)).digest()

    def test_info_hash_is_deterministic(self, make_torrent, make_data):
        data = make_data(100)
        first = make_torrent(data, 64)
        # same dictionary built with keys in a different insertion order
        reordered = first.model_copy(update={"info": dict(reversed(list(first.info.items())))})
        assert first.info_hash() == reordered.info_hash()
        assert len(first.info_hash()) == 20

    def test_piece_size_last_piece_short(self, make_torrent, make_data):
        torrent = make_torrent(make_data(1000), 400)
        assert torrent.piece_size(0) == 400
        assert torrent.piece_size(1) == 400
        assert torrent.piece_size(2) == 200

    def test_piece_size_exact_multiple(self, make_torrent, make_data):
        torrent = make_torrent(make_data(800), 400)
        assert torrent.piece_size(1) == 400

    def test_piece_size_out_of_range(self, make_torrent, make_data):
        torrent = make_torrent(make_data(800), 400)
        with pytest.raises(TorrentError):
            torrent.piece_size(2)
        with pytest.raises(TorrentError):
            torrent.piece_size(-1)

    def test_expected_num_pieces(self, make_torrent, make_data):
        torrent = make_torrent(make_data(801), 400)
        assert torrent.expected_num_pieces == 3 == torrent.num_pieces


class TestConfigModels:
    def test_network_defaults(self):
        network = NetworkConfig()
        assert network.max_peers_per_torrent == 5
        assert network.pipeline_depth == 5
        assert network.block_size == 16384
        assert network.piece_timeout is None

    def test_block_size_must_fit_message_limit(self):
        with pytest.raises(ValidationError):
            Config(network={"block_size_kib": 128, "max_message_length": 1024})
