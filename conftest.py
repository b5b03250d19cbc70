import asyncio
import os

os.environ.setdefault("DURABLE_BACKEND", "memory")

from typing import Any, Dict, List, Optional

import cv2
import numpy as np
import pytest

from vodsync.schemas import (
    ClockReading,
    LookupResponse,
    PollResponse,
    RosterVerdict,
    SubmitResponse,
)
from vodsync.storage import MemoryKeyValueStore
from vodsync.video import VideoHandle


class FakeCapture:
    """In-memory stand-in for cv2.VideoCapture; frame brightness encodes the position."""

    def __init__(self, duration: float = 600.0, fps: float = 30.0, width: int = 320, height: int = 180):
        self.duration = duration
        self.fps = fps
        self.width = width
        self.height = height
        self.pos_msec = 0.0
        self.seeks: List[float] = []
        self.fail_reads = False
        self.released = False

    def isOpened(self) -> bool:
        return True

    def get(self, prop: int) -> float:
        if prop == cv2.CAP_PROP_FPS:
            return self.fps
        if prop == cv2.CAP_PROP_FRAME_COUNT:
            return self.duration * self.fps
        if prop == cv2.CAP_PROP_POS_MSEC:
            return self.pos_msec
        return 0.0

    def set(self, prop: int, value: float) -> bool:
        if prop == cv2.CAP_PROP_POS_MSEC:
            self.pos_msec = float(value)
            self.seeks.append(round(float(value) / 1000.0, 6))
        return True

    def read(self):
        if self.fail_reads:
            return False, None
        shade = int(self.pos_msec / 1000.0) % 256
        return True, np.full((self.height, self.width, 3), shade, dtype=np.uint8)

    def release(self) -> None:
        self.released = True


class FakeOracle:
    """Clock oracle and roster verifier with scripted answers."""

    def __init__(
        self,
        clock: Optional[ClockReading] = None,
        verdict: Optional[RosterVerdict] = None,
        clock_error: Optional[Exception] = None,
    ):
        self.clock = clock or ClockReading(success=True, seconds=7.0, text="0:07")
        self.verdict = verdict or RosterVerdict(success=True, is_valid=True)
        self.clock_error = clock_error
        self.clock_calls = 0
        self.verify_calls: List[int] = []

    async def read_game_clock(self, image: bytes) -> ClockReading:
        self.clock_calls += 1
        if self.clock_error is not None:
            raise self.clock_error
        return self.clock

    async def verify_roster(self, images, context) -> RosterVerdict:
        self.verify_calls.append(len(images))
        return self.verdict


class FakeService:
    """Analysis service that replays a poll script; the last entry repeats."""

    def __init__(
        self,
        polls: Optional[List[Any]] = None,
        submit: Optional[SubmitResponse] = None,
        results: Optional[Dict[str, Dict[str, Any]]] = None,
    ):
        self.script = list(polls or [PollResponse(status="processing")])
        self.submit_response = submit or SubmitResponse(success=True, job_id="job-1")
        self.results = dict(results or {})
        self.lookup_error: Optional[Exception] = None
        self.submitted: List[Dict[str, Any]] = []
        self.polled: List[str] = []
        self.lookups: List[str] = []

    def _next(self, job_id: str) -> PollResponse:
        self.polled.append(job_id)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def submit_analysis(self, match_id, frames, metadata):
        self.submitted.append({"kind": "macro", "match_id": match_id, "frames": list(frames), "metadata": metadata})
        return self.submit_response

    async def poll_job(self, job_id):
        return self._next(job_id)

    async def submit_bounded_analysis(self, match_id, frames, metadata):
        self.submitted.append({"kind": "micro", "match_id": match_id, "frames": list(frames), "metadata": metadata})
        return self.submit_response

    async def poll_bounded_job(self, job_id):
        return self._next(job_id)

    async def lookup_result_by_match(self, match_id):
        self.lookups.append(match_id)
        if self.lookup_error is not None:
            raise self.lookup_error
        if match_id in self.results:
            return LookupResponse(found=True, result=self.results[match_id])
        return LookupResponse(found=False)


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def make_video():
    def _make(duration: float = 600.0, fps: float = 30.0, **kwargs: Any):
        capture = FakeCapture(duration=duration, fps=fps, **kwargs)
        return VideoHandle(capture, source="fake.mp4", seek_timeout=5.0), capture

    return _make


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def fakes():
    """Expose the fake classes so tests can build scripted instances."""

    class _Fakes:
        Capture = FakeCapture
        Oracle = FakeOracle
        Service = FakeService
        Sleep = SleepRecorder

    return _Fakes
