"""
Defines the data classes for download jobs and the events emitted about them.
"""

from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Dict, Any, Optional


class JobStatus(str, Enum):
    """Lifecycle states of a download job."""
    QUEUED = 'queued'
    DOWNLOADING = 'downloading'
    COMPLETED = 'completed'
    ERROR = 'error'
    CANCELLED = 'cancelled'

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.DOWNLOADING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


@dataclass
class VideoRequest:
    """
    A caller's request to download one video.

    Attributes:
        video_id: The external video identifier.
        title: The video title, used for the output file name.
        channel_name: The channel the video belongs to.
        thumbnail: Optional thumbnail reference, passed through for display.
        channel_id: Optional channel identifier, passed through for display.
        group_name: Optional name of the channel group, used for the output directory.
    """
    video_id: str
    title: str
    channel_name: str
    thumbnail: Optional[str] = None
    channel_id: Optional[str] = None
    group_name: Optional[str] = None


@dataclass
class DownloadJob:
    """
    Represents a single download task.

    Attributes:
        job_id: The video id; unique among active jobs.
        title: The video title.
        channel_name: Name of the source channel.
        thumbnail: Thumbnail reference for display.
        channel_id: Identifier of the source channel.
        group_name: Name of the channel group the video is filed under.
        status: The current lifecycle state.
        progress: Download progress from 0 to 100.
        speed: Human readable download speed while downloading.
        eta: Human readable remaining time while downloading.
        error: Diagnostic text when the job failed.
        output_path: The downloaded file once completed.
        enqueued_at: Epoch seconds when the job was (re)queued, used for FIFO admission.
        attempt: Incremented on every admission to tell subprocess runs apart.
    """
    job_id: str
    title: str
    channel_name: str = ''
    thumbnail: Optional[str] = None
    channel_id: Optional[str] = None
    group_name: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0
    speed: Optional[str] = None
    eta: Optional[str] = None
    error: Optional[str] = None
    output_path: Optional[str] = None
    enqueued_at: float = 0.0
    attempt: int = 0
    sequence: int = field(default=0, compare=False, repr=False)

    @classmethod
    def from_request(cls, request: VideoRequest, enqueued_at: float, sequence: int) -> 'DownloadJob':
        return cls(
            job_id=request.video_id,
            title=request.title,
            channel_name=request.channel_name,
            thumbnail=request.thumbnail,
            channel_id=request.channel_id,
            group_name=request.group_name,
            enqueued_at=enqueued_at,
            sequence=sequence,
        )

    def reset_progress(self):
        """Clears the transient download telemetry."""
        self.progress = 0.0
        self.speed = None
        self.eta = None

    def to_record(self) -> Dict[str, Any]:
        """Returns a JSON-serializable dict of the persisted fields."""
        record = asdict(self)
        record['status'] = self.status.value
        del record['sequence']
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'DownloadJob':
        """
        Builds a job from a persisted record.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If the status is unknown or a number is malformed.
        """
        known = {f.name for f in fields(cls)} - {'sequence'}
        data = {k: v for k, v in record.items() if k in known}
        data['job_id'] = str(record['job_id'])
        data['title'] = str(record['title'])
        data['status'] = JobStatus(record.get('status', JobStatus.QUEUED.value))
        data['progress'] = float(record.get('progress') or 0.0)
        data['enqueued_at'] = float(record.get('enqueued_at') or 0.0)
        data['attempt'] = int(record.get('attempt') or 0)
        return cls(**data)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    attempt: int
    progress: float
    speed: Optional[str] = None
    eta: Optional[str] = None


@dataclass(frozen=True)
class CompletedEvent:
    job_id: str
    attempt: int
    output_path: str


@dataclass(frozen=True)
class ErrorEvent:
    job_id: str
    attempt: int
    message: str
