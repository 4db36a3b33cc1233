"""Short-lived poll view of job status for clients that do not subscribe to events."""
import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Any, Optional

from .constants import STATUS_TTL_SECONDS
from .jobs import JobStatus

INACTIVE = 'inactive'
_EXPIRING = {JobStatus.COMPLETED, JobStatus.ERROR}


@dataclass
class _Entry:
    status: JobStatus
    progress: float
    error: Optional[str]
    expires_at: Optional[float]


class StatusCache:
    """
    Mirrors the latest status of recently active jobs.

    The cache is derived from supervisor events and can be dropped at any
    time; the registry remains the source of truth. Completed and failed
    entries expire `ttl` seconds after they were written. Expiry is checked
    on every read, and `sweep()` reclaims memory for ids nobody asks about.
    """

    def __init__(self, ttl: float = STATUS_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: str) -> bool:
        return self._live_entry(job_id) is not None

    def set(self, job_id: str, status: JobStatus, progress: float = 0.0, error: Optional[str] = None):
        expires_at = self.clock() + self.ttl if status in _EXPIRING else None
        self._entries[job_id] = _Entry(status, progress, error, expires_at)

    def discard(self, job_id: str):
        self._entries.pop(job_id, None)

    def get(self, job_id: str) -> Dict[str, Any]:
        """
        Returns the poll payload for a job.

        Returns:
            `{"status": "inactive"}` for unknown or expired ids, otherwise
            `{"status", "progress"}` plus `"error"` for failed jobs.
        """
        entry = self._live_entry(job_id)
        if entry is None:
            return {'status': INACTIVE}
        payload: Dict[str, Any] = {'status': entry.status.value, 'progress': entry.progress}
        if entry.status == JobStatus.ERROR:
            payload['error'] = entry.error
        return payload

    def sweep(self) -> int:
        """Evicts every expired entry and returns how many were dropped."""
        now = self.clock()
        expired = [job_id for job_id, entry in self._entries.items()
                   if entry.expires_at is not None and entry.expires_at <= now]
        for job_id in expired:
            del self._entries[job_id]
        if expired:
            self.logger.debug(f"Evicted {len(expired)} expired status entr{'y' if len(expired) == 1 else 'ies'}.")
        return len(expired)

    def _live_entry(self, job_id: str) -> Optional[_Entry]:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self.clock():
            del self._entries[job_id]
            return None
        return entry
