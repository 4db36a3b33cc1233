"""Computes sanitized destination paths for downloads."""
import logging
import unicodedata
from pathlib import Path
from typing import Optional, Union

from pathvalidate import sanitize_filename as _platform_sanitize

from .constants import (
    ILLEGAL_PATH_CHARS, DEFAULT_GROUP_NAME, DEFAULT_CHANNEL_NAME, DEFAULT_TITLE, MEDIA_EXTENSION
)
from .jobs import DownloadJob

logger = logging.getLogger(__name__)

_ILLEGAL_TABLE = str.maketrans('', '', ILLEGAL_PATH_CHARS)


def sanitize_filename(name: Optional[str], fallback: str) -> str:
    """
    Makes a string safe to use as a single path segment.

    Runs pathvalidate's cross-platform sanitizer, then also strips the shell
    metacharacters `$` and backtick and control characters, and trims
    surrounding whitespace and dots. Dots inside a name are kept, so a segment
    made only of dots ('.', '..') ends up empty and falls back.

    Args:
        name: The raw name, e.g. a channel name or video title.
        fallback: Returned when nothing usable is left.

    Returns:
        The sanitized segment.
    """
    if not name:
        return fallback
    safe = _platform_sanitize(name, replacement_text='').translate(_ILLEGAL_TABLE)
    safe = ''.join(c for c in safe if unicodedata.category(c) != 'Cc')
    safe = safe.strip().strip('.').strip()
    return safe or fallback


def resolve_output_path(job: DownloadJob, destination_root: Union[str, Path], group_name: Optional[str] = None) -> Path:
    """
    Builds `root/group/channel/title.mp4` for a job and creates its directory.

    The target file itself is never touched.

    Args:
        job: The job to resolve a path for.
        destination_root: The configured download directory.
        group_name: Channel group override; defaults to the job's own group.

    Returns:
        The absolute path the downloader should write to.

    Raises:
        OSError: If the directory tree cannot be created.
    """
    group = sanitize_filename(group_name or job.group_name, DEFAULT_GROUP_NAME)
    channel = sanitize_filename(job.channel_name, DEFAULT_CHANNEL_NAME)
    title = sanitize_filename(job.title, DEFAULT_TITLE)

    target_dir = Path(destination_root).expanduser().resolve() / group / channel
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{title}{MEDIA_EXTENSION}"
    logger.debug(f"Resolved output path for {job.job_id}: {target}")
    return target
