"""
Defines the DownloadController class, which coordinates the download orchestrator.
"""
import asyncio
import dataclasses
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .config import Settings
from .dependencies import DependencyManager
from .dispatcher import Dispatcher
from .downloads import DownloadSupervisor, EventCallback
from .exceptions import (
    DestinationNotConfiguredError, CredentialsStaleError, JobNotFoundError
)
from .jobs import (
    DownloadJob, JobStatus, VideoRequest, ProgressEvent, CompletedEvent, ErrorEvent
)
from .paths import resolve_output_path
from .registry import JobRegistry
from .status_cache import StatusCache
from .storage import JobStore

Subscriber = Callable[[Tuple[str, Any]], None]
SupervisorFactory = Callable[[EventCallback], DownloadSupervisor]
DownloadedHook = Callable[[str, str], Awaitable[None]]


class DownloadController:
    """
    The central coordinator for download jobs.

    The controller is the only writer of the job registry. Every mutation,
    whether it comes from a caller or from a supervisor event, runs on the
    event loop without awaiting in between, so admission and de-duplication
    checks cannot interleave.
    """

    def __init__(self, settings: Settings, store: Optional[JobStore] = None,
                 dependencies: Optional[DependencyManager] = None,
                 supervisor_factory: Optional[SupervisorFactory] = None,
                 on_downloaded: Optional[DownloadedHook] = None,
                 clock: Callable[[], float] = time.time,
                 cache_clock: Callable[[], float] = time.monotonic):
        """
        Initializes the DownloadController.

        Args:
            settings: The loaded application settings.
            store: Persists the job list; nothing is persisted if omitted.
            dependencies: Locates yt-dlp and FFmpeg.
            supervisor_factory: Builds the process supervisor from the event
                callback. Defaults to `DownloadSupervisor`.
            on_downloaded: Async hook called with (video id, output path) after a
                download completes, e.g. to record the file in a catalog.
            clock: Wall clock used for `enqueued_at`.
            cache_clock: Monotonic clock used for status cache expiry.
        """
        self.settings = settings
        self.store = store
        self.on_downloaded = on_downloaded
        self.logger = logging.getLogger(__name__)

        self.credentials_stale: bool = False
        self.registry = JobRegistry(clock=clock)
        self.status_cache = StatusCache(ttl=settings.status_ttl_seconds, clock=cache_clock)
        self.dependencies = dependencies or DependencyManager(settings.yt_dlp_path, settings.ffmpeg_path)
        if supervisor_factory is None:
            self.supervisor = DownloadSupervisor(self._on_supervisor_event, self.dependencies, settings)
        else:
            self.supervisor = supervisor_factory(self._on_supervisor_event)
        self.dispatcher = Dispatcher(
            self.registry,
            settings.max_concurrent_downloads,
            resolve_path=self._resolve_path,
            launch=self._launch,
            on_admitted=self._on_admitted,
            on_failed=self._apply_error,
        )
        self.registry.add_listener(self._on_registry_change)

        self._subscribers: List[Subscriber] = []
        self._background_tasks: set = set()
        self._housekeeping_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._dirty = False
        self._stopping = False

    # --- Lifecycle ---

    async def start(self):
        """Locates executables, restores the persisted job list and starts dispatching."""
        self._stopping = False
        await self.dependencies.initialize()
        # A previous stop() on this instance leaves its downloads marked as running.
        self.registry.requeue_interrupted()
        if self.store:
            records = await self.store.load()
            self.registry.restore(records)
        self._housekeeping_task = asyncio.create_task(self._housekeeping(), name="controller-housekeeping")
        self._housekeeping_task.add_done_callback(self._handle_task_exception)
        self.dispatcher.dispatch()

    async def stop(self):
        """
        Stops running downloads and saves the job list.

        Jobs that were downloading keep that status on disk, so the next
        start requeues them.
        """
        self.logger.info("Stopping download controller.")
        self._stopping = True
        await self.supervisor.shutdown()
        if self._housekeeping_task:
            self._housekeeping_task.cancel()
            await asyncio.gather(self._housekeeping_task, return_exceptions=True)
            self._housekeeping_task = None
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self.flush(force=True)

    async def wait_until_idle(self):
        """Returns once no job is queued or downloading."""
        await self._idle.wait()

    async def flush(self, force: bool = False):
        """Writes the job list if it changed since the last save."""
        if not self.store or not (self._dirty or force):
            return
        self._dirty = False
        try:
            await self.store.save(self.registry.snapshot())
        except OSError as e:
            self._dirty = True
            self.logger.error(f"Could not save the job list to {self.store.path}: {e}")

    async def _housekeeping(self):
        """Sweeps expired status entries and flushes the job list when it changes."""
        interval = self.settings.sweep_interval_seconds
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                self.status_cache.sweep()
                await self.flush()
            except Exception:
                self.logger.exception("Error during controller housekeeping")

    def _handle_task_exception(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        self._background_tasks.discard(task)
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Exception in background task {task.get_name()}:")

    # --- Subscriptions ---

    def subscribe(self, subscriber: Subscriber):
        """
        Registers a callback for job events.

        The callback receives ('progress', ProgressEvent), ('completed',
        CompletedEvent), ('error', ErrorEvent) and ('job_updated', DownloadJob)
        tuples. It runs on the event loop and must not block.
        """
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def _emit(self, event: Tuple[str, Any]):
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                self.logger.exception(f"Subscriber failed handling {event[0]} event")

    # --- Registry wiring ---

    def _on_registry_change(self, job_id: Optional[str], state_changed: bool):
        if job_id is not None and (job := self.registry.get(job_id)) is not None:
            self._emit(('job_updated', dataclasses.replace(job)))
        if not state_changed:
            return
        self._dirty = True
        self._wake.set()
        self.dispatcher.dispatch()
        if self.registry.count(JobStatus.QUEUED) or self.registry.active_downloads:
            self._idle.clear()
        else:
            self._idle.set()

    def _resolve_path(self, job: DownloadJob) -> Path:
        if self.settings.download_path is None:
            raise DestinationNotConfiguredError()
        return resolve_output_path(job, self.settings.download_path)

    def _launch(self, job: DownloadJob, output_path: Path):
        self.supervisor.start(job, output_path)

    def _on_admitted(self, job: DownloadJob):
        self.status_cache.set(job.job_id, JobStatus.DOWNLOADING, 0.0)

    # --- Supervisor events ---

    async def _on_supervisor_event(self, event: Tuple[str, Any]):
        """Applies an event reported by the supervisor for one of its subprocesses."""
        if self._stopping:
            return
        msg_type, value = event
        handler_map = {
            'progress': self._apply_progress,
            'completed': self._apply_completed,
            'error': self._apply_error,
        }
        handler = handler_map.get(msg_type)
        if handler:
            handler(value)
        else:
            self.logger.warning(f"Unhandled supervisor event type: {msg_type}")

    def _apply_progress(self, event: ProgressEvent):
        if self.registry.apply_progress(event):
            self.status_cache.set(event.job_id, JobStatus.DOWNLOADING, event.progress)
            self._emit(('progress', event))

    def _apply_completed(self, event: CompletedEvent):
        if not self.registry.apply_completed(event):
            return
        self.status_cache.set(event.job_id, JobStatus.COMPLETED, 100.0)
        self._emit(('completed', event))
        if self.on_downloaded:
            task = asyncio.create_task(self.on_downloaded(event.job_id, event.output_path), name=f"record-{event.job_id}")
            self._background_tasks.add(task)
            task.add_done_callback(self._handle_task_exception)

    def _apply_error(self, event: ErrorEvent):
        if self.registry.apply_error(event):
            self.status_cache.set(event.job_id, JobStatus.ERROR, 0.0, event.message)
            self._emit(('error', event))

    # --- Commands ---

    def set_credentials_stale(self, stale: bool):
        """Records whether the configured cookies may have expired."""
        if stale != self.credentials_stale:
            self.logger.info(f"Credentials flagged as {'stale' if stale else 'fresh'}.")
        self.credentials_stale = stale

    def _check_preconditions(self, confirm_stale: bool):
        if not self.settings.destination_configured:
            raise DestinationNotConfiguredError()
        if self.credentials_stale and not confirm_stale:
            raise CredentialsStaleError()

    def enqueue(self, request: VideoRequest, confirm_stale: bool = False) -> bool:
        """
        Queues one video for download.

        Args:
            request: The video to download.
            confirm_stale: The user chose to proceed although cookies may be stale.

        Returns:
            True if a job was created, False if the video is already queued or downloading.

        Raises:
            DestinationNotConfiguredError: No download directory is configured.
            CredentialsStaleError: Cookies are flagged stale and not confirmed.
        """
        self._check_preconditions(confirm_stale)
        return self.registry.enqueue(request)

    def enqueue_batch(self, requests: Iterable[VideoRequest], confirm_stale: bool = False) -> int:
        """
        Queues several videos. Preconditions are checked once for the batch;
        on failure nothing is queued.

        Returns:
            The number of jobs created after de-duplication.
        """
        self._check_preconditions(confirm_stale)
        return self.registry.enqueue_batch(list(requests))

    def _require(self, job_id: str) -> DownloadJob:
        job = self.registry.get(job_id)
        if job is None:
            raise JobNotFoundError(f"No download with id {job_id!r}.")
        return job

    def retry(self, job_id: str) -> bool:
        """Requeues a failed job. Returns False if the job has not failed."""
        if self._require(job_id).status != JobStatus.ERROR:
            return False
        # Requeueing may admit the job right away, which writes a fresh entry.
        self.status_cache.discard(job_id)
        return self.registry.retry(job_id)

    def retry_all_failed(self) -> int:
        failed = [job.job_id for job in self.registry.jobs() if job.status == JobStatus.ERROR]
        for job_id in failed:
            self.status_cache.discard(job_id)
        return self.registry.retry_all_failed()

    def redownload(self, job_id: str) -> bool:
        """Requeues a completed or failed job."""
        self._require(job_id)
        if not self.registry.can_transition(job_id, JobStatus.QUEUED):
            return False
        self.status_cache.discard(job_id)
        return self.registry.redownload(job_id)

    def cancel(self, job_id: str) -> bool:
        """
        Cancels a queued or downloading job.

        The registry is updated first so that anything the subprocess reports
        while it shuts down is ignored.

        Returns:
            False if the job had already finished.
        """
        self._require(job_id)
        if not self.registry.cancel(job_id):
            return False
        self.status_cache.discard(job_id)
        self.supervisor.cancel(job_id)
        return True

    def cancel_all(self) -> int:
        cancelled = self.registry.cancel_all()
        for job_id in cancelled:
            self.status_cache.discard(job_id)
            self.supervisor.cancel(job_id)
        return len(cancelled)

    def remove(self, job_id: str) -> DownloadJob:
        """Removes a job from the list, cancelling it first if it is still active."""
        job = self._require(job_id)
        if job.status.is_active:
            self.cancel(job_id)
        self.status_cache.discard(job_id)
        return self.registry.remove(job_id)

    def clear_history(self) -> int:
        """Removes completed, failed and cancelled jobs."""
        return self.registry.clear_history()

    def import_history(self, records: Iterable[Dict[str, Any]]) -> int:
        """Merges finished downloads known elsewhere into the list."""
        return self.registry.import_history(records)

    # --- Queries ---

    def get_status(self, job_id: str) -> Dict[str, Any]:
        """The poll view of a job: see `StatusCache.get`."""
        return self.status_cache.get(job_id)

    def get_job(self, job_id: str) -> Optional[DownloadJob]:
        job = self.registry.get(job_id)
        return dataclasses.replace(job) if job else None

    def list_jobs(self) -> List[DownloadJob]:
        """All jobs, most recently queued first."""
        jobs = sorted(self.registry.jobs(), key=lambda j: (j.enqueued_at, j.sequence), reverse=True)
        return [dataclasses.replace(job) for job in jobs]

    def get_stats(self) -> Dict[str, int]:
        stats = {status.value: self.registry.count(status) for status in JobStatus}
        stats['max_concurrent'] = self.dispatcher.max_concurrent
        return stats
