"""Pydantic schemas for HTTP requests and responses."""
from typing import List, Optional

from pydantic import BaseModel, Field

from .jobs import DownloadJob, VideoRequest


class VideoPayload(BaseModel):
    """One video to download."""
    id: str = Field(min_length=1)
    title: str = ''
    channel_name: str = ''
    thumbnail: Optional[str] = None
    channel_id: Optional[str] = None
    group_name: Optional[str] = None

    def to_request(self) -> VideoRequest:
        return VideoRequest(
            video_id=self.id,
            title=self.title or self.id,
            channel_name=self.channel_name,
            thumbnail=self.thumbnail,
            channel_id=self.channel_id,
            group_name=self.group_name,
        )


class EnqueuePayload(VideoPayload):
    """Schema for queueing a single video."""
    confirm_stale: bool = False


class BatchEnqueuePayload(BaseModel):
    """Schema for queueing several videos at once."""
    videos: List[VideoPayload]
    confirm_stale: bool = False


class CredentialsPayload(BaseModel):
    stale: bool


class JobResponse(BaseModel):
    """Schema for job response."""
    id: str
    title: str
    thumbnail: Optional[str]
    channel_name: str
    channel_id: Optional[str]
    group_name: Optional[str]
    status: str
    progress: float
    speed: Optional[str]
    eta: Optional[str]
    error: Optional[str]
    output_path: Optional[str]
    enqueued_at: float

    @classmethod
    def from_job(cls, job: DownloadJob) -> 'JobResponse':
        return cls(
            id=job.job_id,
            title=job.title,
            thumbnail=job.thumbnail,
            channel_name=job.channel_name,
            channel_id=job.channel_id,
            group_name=job.group_name,
            status=job.status.value,
            progress=job.progress,
            speed=job.speed,
            eta=job.eta,
            error=job.error,
            output_path=job.output_path,
            enqueued_at=job.enqueued_at,
        )
