"""Command line interface for btleech."""

from btleech.cli.main import cli, main
from btleech.cli.progress import ProgressManager

__all__ = [
    "ProgressManager",
    "cli",
    "main",
]
