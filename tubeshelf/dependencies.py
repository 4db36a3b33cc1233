"""Locates yt-dlp and FFmpeg and reports their versions."""
import os
import sys
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Optional, List, Dict

from .constants import (
    BUNDLED_BIN_DIR, YT_DLP_NAME, FFMPEG_NAME, EXTRA_POSIX_BIN_DIRS, SUBPROCESS_CREATION_FLAGS, resource_path
)


def executable_name(name: str) -> str:
    """Appends the platform executable suffix to a bare command name."""
    return f'{name}.exe' if sys.platform == 'win32' else name


def search_path(current: Optional[str] = None) -> str:
    """
    Returns PATH extended with common package manager directories.

    Applications started from a desktop launcher or a service manager
    frequently see a stripped-down PATH that misses Homebrew, scoop or
    ~/.local/bin, which is where yt-dlp usually lives.

    Args:
        current: The PATH to extend. Defaults to the process environment.
    """
    current = os.environ.get('PATH', '') if current is None else current
    paths = [p for p in current.split(os.pathsep) if p]
    extra: List[str] = []
    if sys.platform == 'win32':
        if user_profile := os.environ.get('USERPROFILE'):
            extra.append(str(Path(user_profile) / 'scoop' / 'shims'))
            extra.append(str(Path(user_profile) / 'AppData' / 'Local' / 'Microsoft' / 'WindowsApps'))
        if program_data := os.environ.get('ProgramData'):
            extra.append(str(Path(program_data) / 'chocolatey' / 'bin'))
    else:
        extra.extend(EXTRA_POSIX_BIN_DIRS)
        if home := os.environ.get('HOME'):
            extra.append(str(Path(home) / '.local' / 'bin'))
    for p in extra:
        if p not in paths:
            paths.append(p)
    return os.pathsep.join(paths)


def subprocess_env() -> Dict[str, str]:
    """The environment handed to downloader subprocesses."""
    env = dict(os.environ)
    env['PATH'] = search_path()
    return env


class DependencyManager:
    """Discovers the downloader and merge tool executables."""

    def __init__(self, yt_dlp_override: Optional[Path] = None, ffmpeg_override: Optional[Path] = None):
        """
        Initializes the DependencyManager.

        Args:
            yt_dlp_override: Explicit yt-dlp location from the configuration.
            ffmpeg_override: Explicit FFmpeg location from the configuration.
        """
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_override = yt_dlp_override
        self.ffmpeg_override = ffmpeg_override
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Asynchronously finds paths to dependencies to avoid blocking the event loop."""
        self.logger.info("Initializing dependency paths...")
        await asyncio.to_thread(self.find_yt_dlp)
        await asyncio.to_thread(self.find_ffmpeg)
        self.logger.info(f"yt-dlp path: {self.yt_dlp_path}")
        self.logger.info(f"FFmpeg path: {self.ffmpeg_path}")

    def find_yt_dlp(self) -> Optional[Path]:
        """Finds the yt-dlp executable."""
        self.yt_dlp_path = self._find_executable(YT_DLP_NAME, self.yt_dlp_override)
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        """
        Finds the ffmpeg executable.

        A copy sitting next to the downloader is preferred over one on PATH,
        since bundles ship the two together.
        """
        extra_dirs = [self.yt_dlp_path.parent] if self.yt_dlp_path else []
        self.ffmpeg_path = self._find_executable(FFMPEG_NAME, self.ffmpeg_override, extra_dirs)
        return self.ffmpeg_path

    def yt_dlp_command(self) -> str:
        """
        The downloader to launch.

        Falls back to the bare command name so a missing binary surfaces as a
        spawn error on the job rather than a refusal to start.
        """
        return str(self.yt_dlp_path) if self.yt_dlp_path else YT_DLP_NAME

    def _find_executable(self, name: str, override: Optional[Path], extra_dirs: Optional[List[Path]] = None) -> Optional[Path]:
        """Finds an executable: explicit override, bundled copy, extra dirs, then the search path."""
        if override:
            override = Path(override).expanduser()
            if override.exists():
                return override
            self.logger.warning(f"Configured {name} path does not exist: {override}")

        file_name = executable_name(name)
        candidates = [resource_path(BUNDLED_BIN_DIR) / file_name]
        candidates.extend(d / file_name for d in (extra_dirs or []))
        for candidate in candidates:
            if candidate.exists():
                return candidate

        path_in_system = shutil.which(name, path=search_path())
        return Path(path_in_system) if path_in_system else None

    async def get_version(self, executable_path: Optional[Path]) -> str:
        """Asynchronously returns the version of an executable by running it with '--version'."""
        if not executable_path or not executable_path.exists():
            return "Not found"
        try:
            command: List[str] = [str(executable_path)]
            if 'ffmpeg' in executable_path.name.lower():
                command.append('-version')
            else:
                command.append('--version')

            kwargs = {'stdout': asyncio.subprocess.PIPE, 'stderr': asyncio.subprocess.PIPE}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS

            process = await asyncio.create_subprocess_exec(*command, **kwargs)
            stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=15)

            if process.returncode != 0:
                return "Cannot execute"

            return stdout_bytes.decode('utf-8', 'replace').strip().split('\n')[0]
        except FileNotFoundError:
            return "Not found or no permission"
        except asyncio.TimeoutError:
            return "Version check timed out"
        except OSError:
            return "Cannot execute"
        except Exception:
            self.logger.exception(f"Error checking version for {executable_path}")
            return "Error checking version"
