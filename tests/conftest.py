"""Pytest configuration and shared fixtures."""
import asyncio
import stat
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from tubeshelf.config import Settings
from tubeshelf.controller import DownloadController
from tubeshelf.dependencies import DependencyManager
from tubeshelf.jobs import CompletedEvent, DownloadJob, ErrorEvent, ProgressEvent, VideoRequest


class FakeClock:
    """A clock tests can move by hand."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeSupervisor:
    """Records launches and lets tests report subprocess outcomes."""

    def __init__(self, event_callback):
        self.event_callback = event_callback
        self.started: List[Tuple[str, int, Path]] = []
        self.cancelled: List[str] = []
        self.attempts: Dict[str, int] = {}

    def start(self, job: DownloadJob, output_path: Path):
        self.started.append((job.job_id, job.attempt, output_path))
        self.attempts[job.job_id] = job.attempt

    def cancel(self, job_id: str) -> bool:
        self.cancelled.append(job_id)
        return job_id in self.attempts

    async def shutdown(self):
        pass

    @property
    def started_ids(self) -> List[str]:
        return [job_id for job_id, _, _ in self.started]

    async def progress(self, job_id: str, percent: float, speed: Optional[str] = None, eta: Optional[str] = None):
        await self.event_callback(('progress', ProgressEvent(job_id, self.attempts[job_id], percent, speed, eta)))

    async def complete(self, job_id: str, output_path: str = '/downloads/out.mp4'):
        await self.event_callback(('completed', CompletedEvent(job_id, self.attempts[job_id], output_path)))

    async def fail(self, job_id: str, message: str = 'boom', attempt: Optional[int] = None):
        """Reports a failure for the latest attempt, or for an earlier one that is still exiting."""
        attempt = self.attempts[job_id] if attempt is None else attempt
        await self.event_callback(('error', ErrorEvent(job_id, attempt, message)))


def video(video_id: str, **kwargs) -> VideoRequest:
    kwargs.setdefault('title', f"Video {video_id}")
    kwargs.setdefault('channel_name', 'Test Channel')
    return VideoRequest(video_id=video_id, **kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(download_path=tmp_path / 'downloads', max_concurrent_downloads=3)


@pytest.fixture
def make_controller(settings, clock):
    """Builds a controller wired to a FakeSupervisor."""
    def factory(**overrides) -> DownloadController:
        config = settings.model_copy(update=overrides)
        return DownloadController(
            config,
            dependencies=DependencyManager(),
            supervisor_factory=FakeSupervisor,
            clock=clock,
            cache_clock=clock,
        )
    return factory


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
def make_downloader(tmp_path):
    """Writes an executable stand-in for yt-dlp running the given Python body."""
    if sys.platform == 'win32':
        pytest.skip("fake downloader scripts need a POSIX shebang")

    def factory(body: str, name: str = 'yt-dlp') -> Path:
        script = tmp_path / 'bin' / name
        script.parent.mkdir(parents=True, exist_ok=True)
        script.write_text(f"#!{sys.executable}\nimport sys, time\n{body}\n", encoding='utf-8')
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script
    return factory


async def wait_for(predicate, timeout: float = 10.0, interval: float = 0.02):
    """Polls until predicate() is truthy or fails the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)
