"""Admits queued jobs to the supervisor without exceeding the concurrency cap."""
import logging
from pathlib import Path
from typing import Callable, Optional

from .exceptions import TubeshelfError
from .jobs import DownloadJob, ErrorEvent
from .registry import JobRegistry

PathResolver = Callable[[DownloadJob], Path]
Launcher = Callable[[DownloadJob, Path], object]


class Dispatcher:
    """
    Moves queued jobs to downloading, oldest first, one at a time.

    `dispatch()` is called after every registry change. Admission marks the
    job downloading before the launcher runs, so a change notification fired
    in the middle of a pass cannot over-admit; it is folded into another pass.
    """

    def __init__(self, registry: JobRegistry, max_concurrent: int, resolve_path: PathResolver, launch: Launcher,
                 on_admitted: Optional[Callable[[DownloadJob], None]] = None,
                 on_failed: Optional[Callable[[ErrorEvent], None]] = None):
        """
        Initializes the Dispatcher.

        Args:
            registry: The job registry to admit from.
            max_concurrent: The maximum number of simultaneous downloads.
            resolve_path: Computes (and prepares) the output path for a job.
            launch: Starts the download for an admitted job.
            on_admitted: Called after each admission, e.g. to seed the status cache.
            on_failed: Applies the error for a job that could not be launched.
                Defaults to recording it directly in the registry.
        """
        self.registry = registry
        self.max_concurrent = max_concurrent
        self.resolve_path = resolve_path
        self.launch = launch
        self.on_admitted = on_admitted
        self.on_failed = on_failed or registry.apply_error
        self.logger = logging.getLogger(__name__)
        self._dispatching = False
        self._pending = False

    def has_capacity(self) -> bool:
        return self.registry.active_downloads < self.max_concurrent

    def dispatch(self) -> int:
        """
        Admits queued jobs until the cap is reached or the queue is empty.

        Returns:
            The number of jobs admitted by this call.
        """
        if self._dispatching:
            self._pending = True
            return 0

        self._dispatching = True
        admitted = 0
        try:
            while True:
                self._pending = False
                while self.has_capacity() and self._admit_next():
                    admitted += 1
                if not self._pending:
                    break
        finally:
            self._dispatching = False
        return admitted

    def _admit_next(self) -> bool:
        """Admits the oldest queued job. Returns False when nothing is queued."""
        candidate = self.registry.next_queued()
        if candidate is None:
            return False

        job = self.registry.mark_downloading(candidate.job_id)
        if job is None:
            return False
        self.logger.info(
            f"Admitted {job.job_id} (attempt {job.attempt}); "
            f"{self.registry.active_downloads}/{self.max_concurrent} slots in use."
        )

        try:
            output_path = self.resolve_path(job)
        except (OSError, TubeshelfError) as e:
            self.logger.error(f"Could not prepare output path for {job.job_id}: {e}")
            self.on_failed(ErrorEvent(job.job_id, job.attempt, f"Could not prepare output path: {e}"))
            return True

        if self.on_admitted:
            self.on_admitted(job)
        self.launch(job, output_path)
        return True
