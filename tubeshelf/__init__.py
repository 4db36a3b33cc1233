"""Bounded-concurrency yt-dlp download orchestrator."""

from ._version import __version__

__all__ = ["__version__"]
