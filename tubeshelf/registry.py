"""
The job registry: the single source of truth for every download job.

All state transitions go through this module. Callers outside the controller
only read from it; the supervisor reports events that the controller applies
here, and the dispatcher admits queued jobs through `mark_downloading`.
"""
import time
import logging
from typing import Callable, Dict, Iterable, List, Optional, Any

from .jobs import (
    DownloadJob, JobStatus, VideoRequest, ProgressEvent, CompletedEvent, ErrorEvent
)

Listener = Callable[[Optional[str], bool], None]

# Transitions requested by the dispatcher, the supervisor or the user.
# Enqueueing a fresh job is not listed: it replaces any terminal job instead.
ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.DOWNLOADING, JobStatus.CANCELLED},
    JobStatus.DOWNLOADING: {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED},
    JobStatus.COMPLETED: {JobStatus.QUEUED},
    JobStatus.ERROR: {JobStatus.QUEUED},
    JobStatus.CANCELLED: set(),
}


class JobRegistry:
    """Holds all jobs keyed by video id and enforces the job state machine."""

    def __init__(self, clock: Callable[[], float] = time.time):
        """
        Initializes the JobRegistry.

        Args:
            clock: Returns the current time in epoch seconds; used for `enqueued_at`.
        """
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, DownloadJob] = {}
        self._listeners: List[Listener] = []
        self._sequence = 0
        # Highest attempt ever admitted per id; survives removal and re-enqueue.
        self._last_attempt: Dict[str, int] = {}

    # --- Observation ---

    def add_listener(self, listener: Listener):
        """
        Registers a change listener.

        Listeners are called synchronously after every mutation with the
        affected job id (None for bulk changes) and whether a job status
        changed, as opposed to progress telemetry only.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, job_id: Optional[str], state_changed: bool = True):
        for listener in list(self._listeners):
            listener(job_id, state_changed)

    # --- Queries ---

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def get(self, job_id: str) -> Optional[DownloadJob]:
        return self._jobs.get(job_id)

    def jobs(self) -> List[DownloadJob]:
        return list(self._jobs.values())

    def count(self, status: JobStatus) -> int:
        return sum(1 for job in self._jobs.values() if job.status == status)

    @property
    def active_downloads(self) -> int:
        return self.count(JobStatus.DOWNLOADING)

    def is_active(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        return job is not None and job.status.is_active

    def next_queued(self) -> Optional[DownloadJob]:
        """The queued job that was enqueued first, or None."""
        queued = [job for job in self._jobs.values() if job.status == JobStatus.QUEUED]
        if not queued:
            return None
        return min(queued, key=lambda job: (job.enqueued_at, job.sequence))

    def snapshot(self) -> List[Dict[str, Any]]:
        """Serializable records of every job, in insertion order."""
        return [job.to_record() for job in self._jobs.values()]

    # --- Enqueueing ---

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _add(self, request: VideoRequest) -> bool:
        if self.is_active(request.video_id):
            self.logger.debug(f"{request.video_id} is already queued or downloading; skipping.")
            return False
        # A finished job for the same id is superseded by the new one. Its
        # subprocess may still be exiting, so attempts keep counting up.
        previous = self._jobs.pop(request.video_id, None)
        job = DownloadJob.from_request(request, self.clock(), self._next_sequence())
        job.attempt = max(self._last_attempt.get(request.video_id, 0), previous.attempt if previous else 0)
        self._jobs[request.video_id] = job
        return True

    def enqueue(self, request: VideoRequest) -> bool:
        """
        Queues a download unless one is already queued or downloading.

        Returns:
            True if a job was created, False for a duplicate.
        """
        added = self._add(request)
        if added:
            self.logger.info(f"Queued {request.video_id} ({request.title}).")
            self._notify(request.video_id)
        return added

    def enqueue_batch(self, requests: Iterable[VideoRequest]) -> int:
        """
        Queues several downloads, skipping active ids and repeats within the batch.

        Returns:
            The number of jobs created.
        """
        seen = set()
        added = 0
        for request in requests:
            if request.video_id in seen:
                continue
            seen.add(request.video_id)
            if self._add(request):
                added += 1
        if added:
            self.logger.info(f"Queued {added} download(s) from a batch of {len(seen)}.")
            self._notify(None)
        return added

    # --- Transitions ---

    def _can_transition(self, job: Optional[DownloadJob], target: JobStatus) -> bool:
        if job is None:
            return False
        if target not in ALLOWED_TRANSITIONS[job.status]:
            self.logger.debug(f"Rejected transition {job.status.value} -> {target.value} for {job.job_id}.")
            return False
        return True

    def can_transition(self, job_id: str, target: JobStatus) -> bool:
        """Whether the job exists and the state machine allows moving it to `target`."""
        return self._can_transition(self._jobs.get(job_id), target)

    def mark_downloading(self, job_id: str) -> Optional[DownloadJob]:
        """
        Admits a queued job. Only the dispatcher calls this.

        Returns:
            The admitted job with its new attempt number, or None if the job
            is not queued.
        """
        job = self._jobs.get(job_id)
        if not self._can_transition(job, JobStatus.DOWNLOADING):
            return None
        job.status = JobStatus.DOWNLOADING
        job.attempt = max(job.attempt, self._last_attempt.get(job_id, 0)) + 1
        self._last_attempt[job_id] = job.attempt
        job.reset_progress()
        job.error = None
        job.output_path = None
        self._notify(job_id)
        return job

    def _event_target(self, job_id: str, attempt: int, kind: str) -> Optional[DownloadJob]:
        """Finds the job a supervisor event applies to, or None if it must be ignored."""
        job = self._jobs.get(job_id)
        if job is None:
            self.logger.debug(f"Ignoring {kind} event for unknown job {job_id}.")
            return None
        if job.status == JobStatus.CANCELLED:
            self.logger.debug(f"Ignoring {kind} event for cancelled job {job_id}.")
            return None
        if job.attempt != attempt or job.status != JobStatus.DOWNLOADING:
            self.logger.debug(f"Ignoring stale {kind} event for {job_id} (attempt {attempt}, current {job.attempt}, {job.status.value}).")
            return None
        return job

    def apply_progress(self, event: ProgressEvent) -> bool:
        job = self._event_target(event.job_id, event.attempt, 'progress')
        if job is None:
            return False
        job.progress = event.progress
        if event.speed is not None:
            job.speed = event.speed
        if event.eta is not None:
            job.eta = event.eta
        self._notify(event.job_id, state_changed=False)
        return True

    def apply_completed(self, event: CompletedEvent) -> bool:
        job = self._event_target(event.job_id, event.attempt, 'completed')
        if job is None:
            return False
        job.status = JobStatus.COMPLETED
        job.progress = 100.0
        job.speed = job.eta = None
        job.error = None
        job.output_path = event.output_path
        self.logger.info(f"Completed {job.job_id}: {event.output_path}")
        self._notify(event.job_id)
        return True

    def apply_error(self, event: ErrorEvent) -> bool:
        job = self._event_target(event.job_id, event.attempt, 'error')
        if job is None:
            return False
        job.status = JobStatus.ERROR
        job.progress = 0.0
        job.speed = job.eta = None
        job.error = event.message
        self.logger.warning(f"Download failed for {job.job_id}: {event.message.splitlines()[0] if event.message else ''}")
        self._notify(event.job_id)
        return True

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if not self._can_transition(job, JobStatus.CANCELLED):
            return False
        job.status = JobStatus.CANCELLED
        job.speed = job.eta = None
        self.logger.info(f"Cancelled {job_id}.")
        self._notify(job_id)
        return True

    def cancel_all(self) -> List[str]:
        """Cancels every queued and downloading job and returns their ids."""
        cancelled = []
        for job in self._jobs.values():
            if job.status.is_active and self._can_transition(job, JobStatus.CANCELLED):
                job.status = JobStatus.CANCELLED
                job.speed = job.eta = None
                cancelled.append(job.job_id)
        if cancelled:
            self.logger.info(f"Cancelled {len(cancelled)} job(s).")
            self._notify(None)
        return cancelled

    def _requeue(self, job: DownloadJob, refresh_time: bool):
        job.status = JobStatus.QUEUED
        job.reset_progress()
        job.error = None
        job.output_path = None
        if refresh_time:
            job.enqueued_at = self.clock()
            job.sequence = self._next_sequence()

    def retry(self, job_id: str) -> bool:
        """
        Requeues a failed job, keeping its original place in the FIFO order.
        """
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.ERROR or not self._can_transition(job, JobStatus.QUEUED):
            return False
        self._requeue(job, refresh_time=False)
        self.logger.info(f"Retrying {job_id}.")
        self._notify(job_id)
        return True

    def retry_all_failed(self) -> int:
        """
        Requeues every failed job behind the jobs already waiting.

        Returns:
            The number of jobs requeued.
        """
        failed = [job for job in self._jobs.values()
                  if job.status == JobStatus.ERROR and self._can_transition(job, JobStatus.QUEUED)]
        for job in failed:
            self._requeue(job, refresh_time=True)
        if failed:
            self.logger.info(f"Retrying {len(failed)} failed download(s).")
            self._notify(None)
        return len(failed)

    def redownload(self, job_id: str) -> bool:
        """Requeues a completed or failed job as if it had just been enqueued."""
        job = self._jobs.get(job_id)
        if not self._can_transition(job, JobStatus.QUEUED):
            return False
        self._requeue(job, refresh_time=True)
        self.logger.info(f"Re-downloading {job_id}.")
        self._notify(job_id)
        return True

    # --- Removal ---

    def remove(self, job_id: str) -> Optional[DownloadJob]:
        job = self._jobs.pop(job_id, None)
        if job is not None:
            self.logger.info(f"Removed {job_id} from the list.")
            self._notify(job_id)
        return job

    def clear_history(self) -> int:
        """Removes every finished job and leaves queued and downloading ones alone."""
        finished = [job_id for job_id, job in self._jobs.items() if job.status.is_terminal]
        for job_id in finished:
            del self._jobs[job_id]
        if finished:
            self.logger.info(f"Cleared {len(finished)} finished item(s) from the list.")
            self._notify(None)
        return len(finished)

    # --- Persistence ---

    @staticmethod
    def _downgrade(job: DownloadJob):
        # The previous subprocess cannot be reattached after a restart.
        job.status = JobStatus.QUEUED
        job.reset_progress()

    def requeue_interrupted(self) -> int:
        """
        Puts jobs left downloading by a stopped supervisor back in the queue.

        They keep their place in the FIFO order and get a new attempt when
        they are admitted again.

        Returns:
            The number of jobs requeued.
        """
        interrupted = [job for job in self._jobs.values() if job.status == JobStatus.DOWNLOADING]
        for job in interrupted:
            self._downgrade(job)
        if interrupted:
            self.logger.info(f"Requeued {len(interrupted)} interrupted download(s).")
            self._notify(None)
        return len(interrupted)

    def _load_records(self, records: Iterable[Dict[str, Any]], terminal_only: bool) -> int:
        loaded: List[DownloadJob] = []
        for record in records:
            try:
                job = DownloadJob.from_record(record)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping malformed job record {record!r}: {e}")
                continue
            if job.job_id in self._jobs or any(j.job_id == job.job_id for j in loaded):
                continue
            if terminal_only and job.status.is_active:
                continue
            if job.status == JobStatus.DOWNLOADING:
                self._downgrade(job)
            loaded.append(job)

        for job in sorted(loaded, key=lambda j: j.enqueued_at):
            job.sequence = self._next_sequence()
            self._jobs[job.job_id] = job
        if loaded:
            self._notify(None)
        return len(loaded)

    def restore(self, records: Iterable[Dict[str, Any]]) -> int:
        """
        Loads persisted jobs, downgrading interrupted downloads to queued.

        Ids already present are left untouched.

        Returns:
            The number of jobs loaded.
        """
        restored = self._load_records(records, terminal_only=False)
        requeued = self.count(JobStatus.QUEUED)
        self.logger.info(f"Restored {restored} job(s); {requeued} waiting to download.")
        return restored

    def import_history(self, records: Iterable[Dict[str, Any]]) -> int:
        """Merges finished jobs known elsewhere (e.g. the catalog) without overwriting existing ids."""
        return self._load_records(records, terminal_only=True)
