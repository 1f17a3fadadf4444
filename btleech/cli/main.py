"""Command line interface for btleech.

Provides commands to inspect bencoded data and torrents, query the tracker,
handshake with a peer and download a single piece or a whole file.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from btleech.bencode import decode
from btleech.cli.progress import PieceProgressTracker, ProgressManager
from btleech.cli.verbosity import VerbosityManager, get_verbosity_from_ctx
from btleech.config import init_config
from btleech.download_manager import download_all
from btleech.exceptions import BTLeechError, NetworkError, ProtocolError
from btleech.logging_config import get_logger, log_exception, setup_logging
from btleech.models import Config, PeerInfo, TorrentInfo
from btleech.peer_connection import AsyncPeerConnection, connect_and_handshake
from btleech.piece_download import PieceAssignment, download_piece
from btleech.torrent import TorrentParser
from btleech.tracker import announce, generate_peer_id

logger = get_logger(__name__)


def _raise_cli_error(message: str) -> None:
    """Raise a ClickException with the given message."""
    raise click.ClickException(message) from None


def _to_jsonable(value: Any) -> Any:
    """Turn a decoded bencode value into something ``json`` can print."""
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value.hex()
    if isinstance(value, list):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {_to_jsonable(key): _to_jsonable(item) for key, item in value.items()}
    return value


def _parse_peer(_ctx, _param, value):
    if value is None:
        return None
    if isinstance(value, tuple):
        return [_parse_peer(_ctx, _param, item) for item in value] or None
    try:
        return PeerInfo.parse(value)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _get_config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _run(ctx: click.Context, coro) -> Any:
    """Run a coroutine, turning library errors into CLI errors."""
    verbosity = get_verbosity_from_ctx(ctx.obj)
    try:
        return asyncio.run(coro)
    except BTLeechError as e:
        if verbosity.should_show_stack_trace():
            log_exception(logger, e, "Command failed")
        _raise_cli_error(str(e))


def write_atomic(path: Path, data: bytes) -> None:
    """Write bytes to ``path`` through a temporary sibling file.

    A partially written file never appears at ``path``.
    """
    path = Path(path)
    directory = path.parent
    directory.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".part", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        Path(tmp_name).replace(path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            Path(tmp_name).unlink()
        raise


def _load_torrent(torrent_file: str) -> TorrentInfo:
    try:
        return TorrentParser().parse(torrent_file)
    except BTLeechError as e:
        raise click.ClickException(str(e)) from None


async def _resolve_peers(
    torrent: TorrentInfo,
    peer_id: bytes,
    config: Config,
    peers: list[PeerInfo] | None,
) -> list[PeerInfo]:
    if peers:
        return peers
    response = await announce(torrent, peer_id, config=config.network)
    if not response.peers:
        msg = "Tracker returned no peers"
        raise NetworkError(msg)
    return response.peers


@click.group()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--verbose",
    "-v",
    count=True,
    help="Increase verbosity (-v: info, -vv: debug, -vvv: trace)",
)
@click.pass_context
def cli(ctx, config_file, verbose):
    """btleech - download files from BitTorrent peers."""
    ctx.ensure_object(dict)
    ctx.obj["verbosity"] = verbose
    verbosity_manager = VerbosityManager.from_count(verbose)
    ctx.obj["verbosity_manager"] = verbosity_manager

    try:
        config_manager = init_config(config_file)
    except BTLeechError as e:
        _raise_cli_error(str(e))

    cfg = config_manager.config
    ctx.obj["config"] = cfg
    observability = cfg.observability
    # -v only raises the level for this run, the loaded config is untouched
    if verbosity_manager.is_verbose():
        observability = observability.model_copy(
            update={"log_level": verbosity_manager.get_log_level()},
        )
    setup_logging(observability)


@cli.command("decode")
@click.argument("value")
def decode_cmd(value):
    """Decode a bencoded VALUE and print it as JSON."""
    try:
        decoded = decode(value.encode("utf-8"))
    except BTLeechError as e:
        _raise_cli_error(str(e))
    click.echo(json.dumps(_to_jsonable(decoded)))


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
def info(torrent_file):
    """Print the metadata of TORRENT_FILE."""
    torrent = _load_torrent(torrent_file)
    click.echo(f"Tracker URL: {torrent.announce}")
    click.echo(f"Length: {torrent.total_length}")
    click.echo(f"Info Hash: {torrent.info_hash().hex()}")
    click.echo(f"Piece Length: {torrent.piece_length}")
    click.echo("Piece Hashes:")
    for piece_hash in torrent.piece_hashes():
        click.echo(piece_hash.hex())


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def peers(ctx, torrent_file):
    """Ask the tracker of TORRENT_FILE for peers."""
    cfg = _get_config(ctx)
    torrent = _load_torrent(torrent_file)
    peer_id = generate_peer_id(cfg.network.peer_id_prefix)
    response = _run(ctx, announce(torrent, peer_id, config=cfg.network))
    for peer in response.peers:
        click.echo(str(peer))


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("peer", callback=_parse_peer)
@click.pass_context
def handshake(ctx, torrent_file, peer):
    """Handshake with PEER (ip:port) and print its peer id."""
    cfg = _get_config(ctx)
    torrent = _load_torrent(torrent_file)
    peer_id = generate_peer_id(cfg.network.peer_id_prefix)

    async def _handshake() -> bytes:
        connection = await AsyncPeerConnection.connect(
            peer,
            torrent.info_hash(),
            peer_id,
            config=cfg.network,
        )
        async with connection:
            return connection.remote_peer_id

    remote_peer_id = _run(ctx, _handshake())
    click.echo(f"Peer ID: {remote_peer_id.hex()}")


@cli.command("download-piece")
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("piece_index", type=click.IntRange(min=0))
@click.option("--output", "-o", type=click.Path(dir_okay=False), required=True, help="Output file")
@click.option(
    "--peer",
    "peer_list",
    multiple=True,
    callback=_parse_peer,
    help="Peer ip:port to use instead of asking the tracker (repeatable)",
)
@click.pass_context
def download_piece_cmd(ctx, torrent_file, piece_index, output, peer_list):
    """Download and verify one piece of TORRENT_FILE."""
    cfg = _get_config(ctx)
    torrent = _load_torrent(torrent_file)
    if piece_index >= torrent.num_pieces:
        _raise_cli_error(
            f"Piece index {piece_index} out of range (torrent has {torrent.num_pieces} pieces)",
        )
    peer_id = generate_peer_id(cfg.network.peer_id_prefix)
    assignment = PieceAssignment.from_torrent(torrent, piece_index, torrent.piece_hashes())

    async def _download() -> bytes:
        candidates = await _resolve_peers(torrent, peer_id, cfg, peer_list)
        for peer in candidates:
            try:
                connection = await connect_and_handshake(peer, torrent, peer_id, cfg.network)
            except (NetworkError, ProtocolError) as e:
                logger.warning("Skipping peer %s: %s", peer, e)
                continue
            async with connection:
                return await download_piece(connection, assignment)
        msg = f"Could not connect to any of {len(candidates)} peers"
        raise NetworkError(msg)

    data = _run(ctx, _download())
    write_atomic(Path(output), data)
    click.echo(f"Piece {piece_index} downloaded to {output}.")


@cli.command()
@click.argument("torrent_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), required=True, help="Output file")
@click.option(
    "--max-peers",
    type=click.IntRange(min=1),
    default=None,
    help="Number of concurrent peer connections",
)
@click.option(
    "--peer",
    "peer_list",
    multiple=True,
    callback=_parse_peer,
    help="Peer ip:port to use instead of asking the tracker (repeatable)",
)
@click.option("--no-progress", is_flag=True, help="Do not show a progress bar")
@click.pass_context
def download(ctx, torrent_file, output, max_peers, peer_list, no_progress):
    """Download the whole file of TORRENT_FILE."""
    cfg = _get_config(ctx)
    torrent = _load_torrent(torrent_file)
    peer_id = generate_peer_id(cfg.network.peer_id_prefix)
    console = Console(stderr=True)

    async def _download(on_piece_completed) -> bytes:
        candidates = await _resolve_peers(torrent, peer_id, cfg, peer_list)
        return await download_all(
            torrent,
            candidates,
            concurrency=max_peers,
            peer_id=peer_id,
            config=cfg,
            on_piece_completed=on_piece_completed,
        )

    if no_progress:
        data = _run(ctx, _download(None))
    else:
        with ProgressManager(console).create_download_progress() as progress:
            data = _run(ctx, _download(PieceProgressTracker(progress, torrent)))

    write_atomic(Path(output), data)
    click.echo(f"Downloaded {torrent_file} to {output}.")


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
