"""Supervises yt-dlp subprocesses: one per admitted job."""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from collections import deque
from pathlib import Path
from typing import Dict, Any, List, Optional, Callable, Tuple, Coroutine

from .config import Settings
from .constants import (
    SUBPROCESS_CREATION_FLAGS, VIDEO_URL_TEMPLATE, FORMAT_SELECTOR, MERGE_OUTPUT_FORMAT,
    SUBTITLE_FORMAT, USER_AGENT, KNOWN_COOKIE_BROWSERS, STDERR_TAIL_LINES, ERROR_TAIL_CHARS,
    TERMINATE_GRACE_SECONDS,
)
from .dependencies import DependencyManager, subprocess_env
from .jobs import DownloadJob, ProgressEvent, CompletedEvent, ErrorEvent
from .progress import ProgressParser, PercentProgressParser

EventCallback = Callable[[Tuple[str, Any]], Coroutine[Any, Any, None]]
# A subprocess is tracked per (job id, attempt): a re-queued id can start a new
# process while the previous one is still exiting.
RunKey = Tuple[str, int]


def cookie_arguments(cookie_source: Optional[str]) -> List[str]:
    """
    Translates the configured cookie source into yt-dlp flags.

    A known browser name reads cookies from that browser's store; anything
    else is treated as the path of a Netscape cookie file.
    """
    if not cookie_source:
        return []
    if cookie_source.lower() in KNOWN_COOKIE_BROWSERS:
        return ['--cookies-from-browser', cookie_source.lower()]
    return ['--cookies', cookie_source]


class DownloadSupervisor:
    """Spawns yt-dlp for admitted jobs, parses its output and reports the outcome."""

    def __init__(self, event_callback: EventCallback, dependencies: DependencyManager, settings: Settings,
                 parser: Optional[ProgressParser] = None):
        """
        Initializes the DownloadSupervisor.

        Args:
            event_callback: The async function to call with supervisor events:
                ('progress', ProgressEvent), ('completed', CompletedEvent) or
                ('error', ErrorEvent).
            dependencies: Locates the yt-dlp and FFmpeg executables.
            settings: Cookie and proxy configuration.
            parser: Strategy for extracting progress from stdout lines.
        """
        self.event_callback = event_callback
        self.dependencies = dependencies
        self.settings = settings
        self.parser = parser or PercentProgressParser()
        self.logger = logging.getLogger(__name__)
        self.tasks: Dict[RunKey, asyncio.Task] = {}
        self.active_processes: Dict[RunKey, asyncio.subprocess.Process] = {}
        self._cancel_requested: set = set()

    def is_running(self, job_id: str) -> bool:
        return any(key[0] == job_id and not task.done() for key, task in self.tasks.items())

    def build_command(self, job: DownloadJob, output_path: Path) -> List[str]:
        """Builds the full yt-dlp command list for a job."""
        command = [self.dependencies.yt_dlp_command()]
        if self.dependencies.ffmpeg_path:
            command.extend(['--ffmpeg-location', str(self.dependencies.ffmpeg_path)])
        command.extend(cookie_arguments(self.settings.cookie_source))
        if self.settings.proxy_url:
            command.extend(['--proxy', self.settings.proxy_url])
        command.extend([
            '--user-agent', USER_AGENT,
            '-f', FORMAT_SELECTOR,
            '--merge-output-format', MERGE_OUTPUT_FORMAT,
            '--write-subs', '--write-auto-subs', '--convert-subs', SUBTITLE_FORMAT,
            '--ignore-errors',
            '--no-playlist',
            '--newline',
            '-o', str(output_path),
            VIDEO_URL_TEMPLATE.format(video_id=job.job_id),
        ])
        return command

    def start(self, job: DownloadJob, output_path: Path) -> asyncio.Task:
        """
        Launches the download for an admitted job in its own task.

        Args:
            job: The job, already marked as downloading.
            output_path: Where yt-dlp should write the file.

        Returns:
            The task running the subprocess.
        """
        command = self.build_command(job, output_path)
        key = (job.job_id, job.attempt)
        task = asyncio.create_task(
            self._run_download_process(job.job_id, job.attempt, command, output_path),
            name=f"download-{job.job_id}-{job.attempt}",
        )
        self.tasks[key] = task
        task.add_done_callback(self._task_done_callback(key))
        return task

    def cancel(self, job_id: str) -> bool:
        """
        Asks every subprocess still running for the job to terminate.

        Returns:
            True if a signal was sent or is pending, False if nothing is running.
        """
        signalled = False
        for key, task in list(self.tasks.items()):
            if key[0] != job_id or task.done():
                continue
            process = self.active_processes.get(key)
            if process is not None:
                if process.returncode is None:
                    self._terminate(job_id, process)
            else:
                # Not spawned yet; the runner terminates it as soon as it starts.
                self._cancel_requested.add(key)
            signalled = True
        return signalled

    def _terminate(self, job_id: str, process: asyncio.subprocess.Process):
        self.logger.info(f"Terminating process for {job_id} (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.terminate()
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGTERM)
        except ProcessLookupError:
            self.logger.debug(f"Process for {job_id} already exited.")

    async def _reap(self, job_id: str, process: Optional[asyncio.subprocess.Process]):
        """Stops a process whose output can no longer be supervised, killing it after the grace period."""
        if process is None or process.returncode is not None:
            return
        self._terminate(job_id, process)
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            self.logger.warning(f"Process for {job_id} ignored SIGTERM. Forcing termination...")
            try: process.kill()
            except (ProcessLookupError, OSError): pass # Already gone

    async def shutdown(self):
        """Terminates every live download and waits for the runners to finish."""
        running = [task for task in self.tasks.values() if not task.done()]
        if not running:
            return
        self.logger.info(f"Stopping {len(running)} running download(s)...")
        for job_id in {job_id for job_id, _ in self.tasks}:
            self.cancel(job_id)
        done, pending = await asyncio.wait(running, timeout=TERMINATE_GRACE_SECONDS)
        for (job_id, _), process in list(self.active_processes.items()):
            if process.returncode is None:
                self.logger.warning(f"Graceful shutdown for {job_id} timed out. Forcing termination...")
                try: process.kill()
                except (ProcessLookupError, OSError): pass # Already gone
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _task_done_callback(self, key: RunKey) -> Callable:
        """Creates a callback that forgets the task and logs unexpected exceptions."""
        def callback(task: asyncio.Task):
            if self.tasks.get(key) is task:
                del self.tasks[key]
            self._cancel_requested.discard(key)
            try:
                task.result()
            except asyncio.CancelledError:
                pass # Normal cancellation
            except Exception:
                self.logger.exception(f"Exception in background task {task.get_name()}:")
        return callback

    async def _readline(self, job_id: str, stream: asyncio.StreamReader) -> Optional[bytes]:
        """Reads one line, or returns None when the line overran the stream limit and was dropped."""
        try:
            return await stream.readline()
        except ValueError:
            self.logger.debug(f"[{job_id}] Skipped an output line longer than the stream limit.")
            return None

    async def _read_stdout(self, job_id: str, attempt: int, stream: asyncio.StreamReader):
        while True:
            line_bytes = await self._readline(job_id, stream)
            if line_bytes is None: continue
            if not line_bytes: break
            clean_line = line_bytes.decode('utf-8', 'replace').strip()
            if not clean_line: continue
            self.logger.debug(f"[{job_id}] {clean_line}")
            if update := self.parser.parse(clean_line):
                await self.event_callback(('progress', ProgressEvent(job_id, attempt, update.percent, update.speed, update.eta)))

    async def _read_stderr(self, job_id: str, stream: asyncio.StreamReader, tail: deque):
        while True:
            line_bytes = await self._readline(job_id, stream)
            if line_bytes is None: continue
            if not line_bytes: break
            clean_line = line_bytes.decode('utf-8', 'replace').rstrip()
            if not clean_line.strip(): continue
            self.logger.debug(f"[{job_id}] stderr: {clean_line}")
            tail.append(clean_line)

    async def _run_download_process(self, job_id: str, attempt: int, command: List[str], output_path: Path):
        """Executes the yt-dlp subprocess for a single job and reports how it ended."""
        key = (job_id, attempt)
        event: Optional[Tuple[str, Any]] = None
        process: Optional[asyncio.subprocess.Process] = None
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        try:
            kwargs: Dict[str, Any] = {}
            if sys.platform == 'win32':
                kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                kwargs['start_new_session'] = True

            self.logger.info(f"Starting download for {job_id} -> {output_path}")
            self.logger.debug(f"Spawning: {' '.join(command)}")
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=subprocess_env(),
                **kwargs
            )
            self.active_processes[key] = process
            if key in self._cancel_requested:
                self._terminate(job_id, process)

            assert process.stdout is not None and process.stderr is not None
            await asyncio.gather(
                self._read_stdout(job_id, attempt, process.stdout),
                self._read_stderr(job_id, process.stderr, stderr_tail),
            )
            return_code = await process.wait()

            if return_code == 0:
                event = ('completed', CompletedEvent(job_id, attempt, str(output_path)))
            else:
                details = '\n'.join(stderr_tail)[-ERROR_TAIL_CHARS:]
                event = ('error', ErrorEvent(job_id, attempt, f"Download process exited with code {return_code}.\nDetails: {details}"))
        except asyncio.CancelledError:
            if process is not None and process.returncode is None:
                self._terminate(job_id, process)
            raise
        except FileNotFoundError:
            event = ('error', ErrorEvent(job_id, attempt, f"yt-dlp executable not found: {command[0]}"))
        except OSError as e:
            await self._reap(job_id, process)
            event = ('error', ErrorEvent(job_id, attempt, f"Failed to start yt-dlp: {e}"))
        except Exception as e:
            self.logger.exception(f"Unexpected error during download for job {job_id}")
            await self._reap(job_id, process)
            event = ('error', ErrorEvent(job_id, attempt, f"An unexpected exception occurred: {e}"))
        finally:
            self.active_processes.pop(key, None)
            self._cancel_requested.discard(key)

        await self.event_callback(event)
