"""Coaching session state and the macro/micro review pipelines."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence, Set

from .calibrate import CalibrationState, TimeOffset, calibrate
from .jobs import BOUNDED_MODE, PERSISTED_MODE, AnalysisJobController
from .logging import ContextAdapter
from .sampler import MACRO_PROFILE, MICRO_PROFILE, micro_window, payload_size, sample
from .schemas import AnalysisJob, AnalysisSegment, JobStatus, VerificationContext, VerificationOutcome
from .settings import settings
from .storage import KeyValueStore
from .verify import enforce, verify
from .video import VideoHandle

if TYPE_CHECKING:
    from .remote import AnalysisService, ClockOracle, RosterVerifier

logger = logging.getLogger(__name__)

QuotaCheck = Callable[[str, str], Awaitable[bool]]


class QuotaExceeded(Exception):
    """Raised when the quota collaborator refuses a new analysis."""


class PayloadTooLarge(ValueError):
    """Raised when the encoded frames exceed the submission limit."""


class SessionBusy(RuntimeError):
    """Raised when a review is already being prepared for this session."""


class CoachingSession:
    """Everything one user's review of one recording needs.

    Holds the video handle, the chosen match, the calibration and
    verification outcomes, and one controller per job class.
    """

    def __init__(
        self,
        video: VideoHandle,
        match_id: str,
        context: VerificationContext,
        *,
        oracle: "ClockOracle",
        verifier: "RosterVerifier",
        service: "AnalysisService",
        store: KeyValueStore,
        quota_check: Optional[QuotaCheck] = None,
        session_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.video = video
        self.match_id = match_id
        self.context = context
        self.oracle = oracle
        self.verifier = verifier
        self.quota_check = quota_check
        self.offset = TimeOffset()
        self.verification: Optional[VerificationOutcome] = None
        self.macro = AnalysisJobController(service, PERSISTED_MODE, store, sleep=sleep)
        self.micro = AnalysisJobController(service, BOUNDED_MODE, sleep=sleep)
        self._tasks: Set[asyncio.Task] = set()
        self._preparing = asyncio.Lock()
        self.log = ContextAdapter(logger, lambda: {"session_id": self.session_id, "match_id": self.match_id})

    def controller(self, kind: str) -> AnalysisJobController:
        if kind == "macro":
            return self.macro
        if kind == "micro":
            return self.micro
        raise KeyError(kind)

    # --- lifecycle ---

    async def init(self, *, resume: bool = True) -> AnalysisJob:
        """Restore the durable macro job; resume tracking when one was in flight."""

        job = await self.macro.restore()
        if job.status is JobStatus.PROCESSING and resume:
            self.track_in_background(self.macro)
        elif job.status is JobStatus.COMPLETED:
            self._adopt_result_offset(job.result or {})
        return job

    async def teardown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self.micro.reset()
        await self.video.aclose()
        self.log.info("session_closed")

    def track_in_background(self, controller: AnalysisJobController) -> asyncio.Task:
        task = asyncio.create_task(
            controller.track(), name=f"track-{controller.mode.job_class}-{self.session_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _adopt_result_offset(self, result: Dict[str, Any]) -> None:
        value = result.get("timeOffset")
        if self.offset.is_settled or not isinstance(value, (int, float)):
            return
        self.offset = TimeOffset(seconds=float(value), state=CalibrationState.CALIBRATED, attempted=True)

    # --- gates ---

    async def _check_quota(self, kind: str) -> None:
        if self.quota_check is None:
            return
        if not await self.quota_check(self.match_id, kind):
            self.log.warning("quota_refused", extra={"kind": kind})
            raise QuotaExceeded(f"no analysis quota left for {kind} review")

    async def ensure_verified(self) -> VerificationOutcome:
        if self.verification is None:
            self.verification = await verify(self.video, self.context, self.verifier)
        return enforce(self.verification)

    async def ensure_calibrated(self) -> TimeOffset:
        self.offset = await calibrate(self.video, self.oracle, self.offset)
        return self.offset

    def set_offset(self, seconds: float) -> TimeOffset:
        self.offset = self.offset.override(seconds)
        self.log.info("offset_overridden", extra={"seconds": seconds})
        return self.offset

    @staticmethod
    def _guard_payload(frames: Sequence[Any]) -> int:
        size = payload_size(frames)
        if size > settings.MAX_PAYLOAD_BYTES:
            raise PayloadTooLarge(
                f"frame payload is {size / (1024 * 1024):.1f} MB; "
                f"limit is {settings.MAX_PAYLOAD_BYTES / (1024 * 1024):.1f} MB"
            )
        return size

    # --- pipelines ---

    @property
    def is_busy(self) -> bool:
        """True while a review is between its quota check and its submission."""

        return self._preparing.locked()

    @contextlib.asynccontextmanager
    async def _preparing_review(self, kind: str) -> AsyncIterator[None]:
        if self._preparing.locked():
            raise SessionBusy(f"a review is already being prepared; {kind} review not started")
        async with self._preparing:
            yield

    async def _follow(self, controller: AnalysisJobController, accepted: bool, wait: bool) -> AnalysisJob:
        if accepted:
            if wait:
                await controller.track()
            else:
                self.track_in_background(controller)
        return controller.job

    async def run_macro_review(
        self,
        segments: Sequence[AnalysisSegment],
        metadata: Optional[Dict[str, Any]] = None,
        *,
        wait: bool = True,
    ) -> AnalysisJob:
        """Verify, calibrate, sample every segment and submit a persisted job.

        Raises :class:`SessionBusy` if another review of this session has not
        been submitted yet.
        """

        async with self._preparing_review("macro"):
            await self._check_quota("macro")
            await self.ensure_verified()
            offset = await self.ensure_calibrated()
            frames = await sample(self.video, segments, offset, MACRO_PROFILE)
            size = self._guard_payload(frames)

            payload_meta = dict(metadata or {})
            payload_meta.update(
                {
                    "timeOffset": offset.seconds,
                    "calibrated": offset.is_calibrated,
                    "segments": [segment.model_dump(mode="json") for segment in segments],
                    "payloadBytes": size,
                }
            )
            accepted = await self.macro.start(self.match_id, frames, payload_meta)
        return await self._follow(self.macro, accepted, wait)

    async def run_micro_review(
        self,
        start_sec: float,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        wait: bool = True,
    ) -> AnalysisJob:
        """Verify, sample one short window at 1 fps and submit a bounded job."""

        async with self._preparing_review("micro"):
            await self._check_quota("micro")
            await self.ensure_verified()
            segment = micro_window(start_sec, self.video.duration)
            frames = await sample(self.video, [segment], TimeOffset(), MICRO_PROFILE)
            size = self._guard_payload(frames)

            payload_meta = dict(metadata or {})
            payload_meta.update(
                {
                    "windowStartSec": segment.analysis_start_time / 1000.0,
                    "windowEndSec": segment.analysis_end_time / 1000.0,
                    "payloadBytes": size,
                }
            )
            accepted = await self.micro.start(self.match_id, frames, payload_meta)
        return await self._follow(self.micro, accepted, wait)

    async def seek_to_match_time(self, match_time_ms: float) -> float:
        """Jump the playback head to a match timestamp using the session offset."""

        return await self.video.seek(self.offset.to_video_time(match_time_ms))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "match_id": self.match_id,
            "video": {"source": self.video.source, "duration": self.video.duration, "fps": self.video.fps},
            "offset": self.offset.as_dict(),
            "verification": self.verification.model_dump(mode="json") if self.verification else None,
            "macro": self.macro.snapshot(),
            "micro": self.micro.snapshot(),
        }
