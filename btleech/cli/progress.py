"""Progress display for the btleech CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

if TYPE_CHECKING:
    from rich.console import Console

    from btleech.models import TorrentInfo


class ProgressManager:
    """Progress bars for piece downloads."""

    def __init__(self, console: Console):
        """Initialize progress manager.

        Args:
            console: Rich console for output

        """
        self.console = console

    def create_download_progress(self) -> Progress:
        """Create a byte-oriented download progress bar."""
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TextColumn("{task.fields[pieces]}"),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.console,
            transient=False,
        )


class PieceProgressTracker:
    """Feeds ``on_piece_completed`` callbacks into a rich progress task."""

    def __init__(self, progress: Progress, torrent: TorrentInfo):
        self.progress = progress
        self.torrent = torrent
        self.task_id: TaskID = progress.add_task(
            torrent.name,
            total=torrent.total_length,
            pieces=f"0/{torrent.num_pieces}",
        )

    def __call__(self, piece_index: int, completed: int, total: int) -> None:
        self.progress.update(
            self.task_id,
            advance=self.torrent.piece_size(piece_index),
            pieces=f"{completed}/{total}",
        )
