"""
Defines application-wide constants, paths, and utility functions.

This module centralizes configuration for paths, downloader arguments, and
subprocess behavior, adapting to whether the application is running from
source or as a frozen executable.
"""

import sys
import subprocess
from pathlib import Path

# --- Application Path and Configuration Setup ---
if getattr(sys, 'frozen', False):
    # If the application is run as a bundle, the PyInstaller bootloader
    # sets the app path to the executable's directory.
    APP_PATH = Path(sys.executable).parent
else:
    # In development, the app path is the project root (parent of 'tubeshelf').
    APP_PATH = Path(__file__).resolve().parent.parent

# Use a user-specific directory for configuration to avoid permission issues.
USER_DATA_DIR: Path = Path.home() / '.tubeshelf'
CONFIG_FILE: Path = USER_DATA_DIR / 'config.json'
JOBS_FILE: Path = USER_DATA_DIR / 'jobs.json'
LOG_DIR: Path = USER_DATA_DIR / 'logs'

# Centralize subprocess creation flags to avoid console windows on Windows.
SUBPROCESS_CREATION_FLAGS = subprocess.CREATE_NO_WINDOW if sys.platform == 'win32' else 0

def resource_path(relative_path: str) -> Path:
    """
    Get absolute path to resource, works for dev and for PyInstaller.

    Args:
        relative_path: The path to the resource relative to the application root.

    Returns:
        An absolute Path object to the resource.
    """
    try:
        # PyInstaller creates a temp folder and stores path in _MEIPASS
        base_path = Path(sys._MEIPASS)  # type: ignore
    except AttributeError:
        base_path = APP_PATH
    return base_path / relative_path

# --- Executables ---
BUNDLED_BIN_DIR = 'bin'
YT_DLP_NAME = 'yt-dlp'
FFMPEG_NAME = 'ffmpeg'

# Directories appended to PATH when looking up executables, since GUI launchers
# and service managers often start us with a minimal environment.
EXTRA_POSIX_BIN_DIRS = [
    '/opt/homebrew/bin',
    '/usr/local/bin',
    '/usr/bin',
    '/bin',
    '/usr/sbin',
    '/sbin',
]

# --- Downloader Arguments ---
VIDEO_URL_TEMPLATE = 'https://www.youtube.com/watch?v={video_id}'
FORMAT_SELECTOR = 'bestvideo[ext=mp4][vcodec^=avc1]+bestaudio[ext=m4a]/best[ext=mp4]/best'
MERGE_OUTPUT_FORMAT = 'mp4'
SUBTITLE_FORMAT = 'srt'
MEDIA_EXTENSION = '.mp4'
USER_AGENT = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)
KNOWN_COOKIE_BROWSERS = {'brave', 'chrome', 'chromium', 'edge', 'firefox', 'opera', 'safari', 'vivaldi'}

# --- Path Resolution ---
ILLEGAL_PATH_CHARS = '<>:"/\\|?*`$'
DEFAULT_GROUP_NAME = 'Ungrouped'
DEFAULT_CHANNEL_NAME = 'Uncategorized'
DEFAULT_TITLE = 'video'

# --- Supervision ---
STDERR_TAIL_LINES = 20
ERROR_TAIL_CHARS = 1000
TERMINATE_GRACE_SECONDS = 10

# --- Status Cache ---
STATUS_TTL_SECONDS = 60.0
