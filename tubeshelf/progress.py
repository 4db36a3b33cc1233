"""
Extracts download progress from the downloader's human readable output.

yt-dlp prints lines like::

    [download]  42.3% of ~120.50MiB at    2.31MiB/s ETA 00:31

Nothing else on stdout is structured, so parsing is best effort and kept
behind the `ProgressParser` interface; a different output format only needs
a new parser, the supervisor and the state machine stay untouched.
"""
import re
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ProgressUpdate:
    percent: float
    speed: Optional[str] = None
    eta: Optional[str] = None


class ProgressParser:
    """Interface for turning one stdout line into a progress update."""

    def parse(self, line: str) -> Optional[ProgressUpdate]:
        raise NotImplementedError


class PercentProgressParser(ProgressParser):
    """Matches `<digits>.<digits>%` and picks up speed and ETA when present."""
    PERCENT_RE = re.compile(r'(\d+\.\d+)%')
    SPEED_RE = re.compile(r'\bat\s+(\S+)')
    ETA_RE = re.compile(r'\bETA\s+(\S+)')

    def parse(self, line: str) -> Optional[ProgressUpdate]:
        match = self.PERCENT_RE.search(line)
        if not match:
            return None
        try:
            percent = float(match.group(1))
        except ValueError:
            return None
        percent = min(max(percent, 0.0), 100.0)

        tail = line[match.end():]
        speed = eta = None
        if speed_match := self.SPEED_RE.search(tail):
            speed = speed_match.group(1)
        if eta_match := self.ETA_RE.search(tail):
            eta = eta_match.group(1)
        return ProgressUpdate(percent, speed, eta)
