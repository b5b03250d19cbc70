"""Analysis job controller: submit frames, poll the remote job, survive restarts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Sequence

from .logging import ContextAdapter
from .results import ResultStore
from .schemas import (
    AnalysisJob,
    CapturedFrame,
    FailureKind,
    JobStatus,
    PollResponse,
    SubmitResponse,
)
from .settings import settings
from .storage import DurableJobState, KeyValueStore

if TYPE_CHECKING:
    from .remote import AnalysisService

logger = logging.getLogger(__name__)


class Persistence(str, Enum):
    NONE = "none"
    DURABLE = "durable"


@dataclass(frozen=True)
class JobMode:
    """How a controller persists and how long it is willing to poll."""

    job_class: str
    persistence: Persistence
    max_attempts: Optional[int]
    poll_interval_sec: float
    poll_immediately: bool
    progress_step: int = 3
    progress_ceiling: int = 95
    completion_delay_sec: float = 1.0

    @property
    def bounded(self) -> bool:
        return self.max_attempts is not None


PERSISTED_MODE = JobMode(
    job_class="macro",
    persistence=Persistence.DURABLE,
    max_attempts=None,
    poll_interval_sec=settings.POLL_INTERVAL_SEC,
    poll_immediately=True,
    progress_step=settings.PROGRESS_STEP,
    progress_ceiling=settings.PROGRESS_CEILING,
    completion_delay_sec=settings.COMPLETION_DELAY_SEC,
)

BOUNDED_MODE = JobMode(
    job_class="micro",
    persistence=Persistence.NONE,
    max_attempts=settings.BOUNDED_MAX_ATTEMPTS,
    poll_interval_sec=settings.POLL_INTERVAL_SEC,
    poll_immediately=False,
    progress_step=5,
    progress_ceiling=90,
    completion_delay_sec=0.0,
)

SUBMITTING_PROGRESS = 10
ACCEPTED_PROGRESS = 30
RESTORING_PROGRESS = 50

Sleep = Callable[[float], Awaitable[Any]]


def _is_corrupted(result: Dict[str, Any]) -> bool:
    error = result.get("error")
    return isinstance(error, str) and "corrupt" in error.lower()


class AnalysisJobController:
    """Sole writer of one job's status, progress, result and error.

    ``reset()`` bumps a generation counter; any await that resumes under an
    older generation drops its outcome.
    """

    def __init__(
        self,
        service: "AnalysisService",
        mode: JobMode = PERSISTED_MODE,
        store: Optional[KeyValueStore] = None,
        *,
        result_store: Optional[ResultStore] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.service = service
        self.mode = mode
        self.durable: Optional[DurableJobState] = None
        if mode.persistence is Persistence.DURABLE:
            if store is None:
                raise ValueError("durable job mode requires a key-value store")
            self.durable = DurableJobState(store, mode.job_class)
        self.results = result_store or ResultStore(service)
        self.job = AnalysisJob()
        self._generation = 0
        self._sleep = sleep
        self.log = ContextAdapter(logger, self._log_fields)

    # --- state helpers ---

    @property
    def status(self) -> JobStatus:
        return self.job.status

    @property
    def is_analyzing(self) -> bool:
        return self.job.status is JobStatus.PROCESSING

    @property
    def generation(self) -> int:
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    def _log_fields(self) -> Dict[str, Any]:
        return {"job_class": self.mode.job_class, "job_id": self.job.job_id, "match_id": self.job.match_id}

    def _fail(self, kind: FailureKind, message: str) -> None:
        job_id = self.job.job_id
        self.job.status = JobStatus.FAILED
        self.job.failure = kind
        self.job.error = message
        self.job.progress = 0
        self.job.job_id = None
        self.job.restoring = False
        self.job.status_message = "failed"
        if self.durable is not None:
            self.durable.clear_active()
        self.log.warning(
            "job_failed", extra={"job_id": job_id, "failure": kind.value, "error": message}
        )

    def snapshot(self) -> Dict[str, Any]:
        data = self.job.model_dump(mode="json")
        data["job_class"] = self.mode.job_class
        return data

    # --- remote calls, routed by mode ---

    async def _submit(
        self, match_id: str, frames: Sequence[CapturedFrame], metadata: Dict[str, Any]
    ) -> SubmitResponse:
        if self.mode.bounded:
            return await self.service.submit_bounded_analysis(match_id, frames, metadata)
        return await self.service.submit_analysis(match_id, frames, metadata)

    async def _poll_remote(self, job_id: str) -> PollResponse:
        if self.mode.bounded:
            return await self.service.poll_bounded_job(job_id)
        return await self.service.poll_job(job_id)

    # --- operations ---

    async def start(
        self,
        match_id: str,
        frames: Sequence[CapturedFrame],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Submit ``frames``; returns whether the service accepted the job."""

        self._generation += 1
        generation = self._generation
        self.job = AnalysisJob(
            match_id=match_id,
            status=JobStatus.PROCESSING,
            progress=SUBMITTING_PROGRESS,
            status_message="submitting",
        )
        self.log.info("job_submit", extra={"frames": len(frames)})

        try:
            response = await self._submit(match_id, frames, dict(metadata or {}))
        except Exception as exc:  # noqa: BLE001 - recorded as a failed job
            response = SubmitResponse(success=False, error=str(exc) or type(exc).__name__)

        if not self._is_current(generation):
            return False
        if not response.success or not response.job_id:
            self._fail(FailureKind.SUBMISSION_REJECTED, response.error or "analysis submission rejected")
            return False

        self.job.job_id = response.job_id
        self.job.progress = ACCEPTED_PROGRESS
        self.job.status_message = "processing"
        if self.durable is not None:
            self.durable.save_active(response.job_id, match_id)
        self.log.info("job_accepted")
        return True

    async def poll(self) -> JobStatus:
        """Run one poll tick against the remote job."""

        job = self.job
        if job.status is not JobStatus.PROCESSING or not job.job_id:
            return job.status
        generation = self._generation

        try:
            response = await self._poll_remote(job.job_id)
        except Exception as exc:  # noqa: BLE001 - transport errors end the job
            if self._is_current(generation):
                self._fail(FailureKind.TRANSPORT_ERROR, f"Poll error: {exc}")
            return self.job.status

        if not self._is_current(generation):
            return self.job.status

        self.log.debug("job_poll", extra={"remote_status": response.status})

        remote = response.status
        if remote == "completed" and response.result is None:
            # finished but the result is not readable yet; ask again next tick
            remote = "processing"

        if remote == "queued":
            job.status_message = "queued"
            return job.status

        if remote == "processing":
            bumped = min(job.progress + self.mode.progress_step, self.mode.progress_ceiling)
            job.progress = max(job.progress, bumped)
            job.status_message = "processing"
            return job.status

        if remote == "completed":
            result = dict(response.result)
            if _is_corrupted(result):
                self._fail(FailureKind.CORRUPTED_RESULT, str(result.get("error")))
                return self.job.status
            job.result = result
            job.progress = 100
            job.status_message = "finalizing"
            if self.mode.completion_delay_sec > 0:
                await self._sleep(self.mode.completion_delay_sec)
                if not self._is_current(generation):
                    return self.job.status
            job.status = JobStatus.COMPLETED
            job.status_message = "completed"
            job.restoring = False
            job.job_id = None
            match_id = job.match_id or result.get("matchId")
            if self.durable is not None:
                if match_id:
                    self.durable.mark_completed(str(match_id))
                else:
                    self.durable.clear_active()
            self.log.info("job_completed")
            return job.status

        if remote == "failed":
            self._fail(FailureKind.REMOTE_FAILED, response.error or "analysis failed")
        else:
            self._fail(FailureKind.NOT_FOUND, response.error or "analysis job not found")
        return self.job.status

    async def track(self) -> AnalysisJob:
        """Poll on the mode's interval until the job is terminal, reset, or out of budget."""

        generation = self._generation
        mode = self.mode
        attempts = 0
        if mode.poll_immediately and self.is_analyzing:
            await self.poll()
        while self._is_current(generation) and self.is_analyzing:
            if mode.max_attempts is not None and attempts >= mode.max_attempts:
                self._fail(
                    FailureKind.TIMEOUT,
                    f"analysis did not finish after {attempts} polls",
                )
                break
            await self._sleep(mode.poll_interval_sec)
            if not self._is_current(generation):
                break
            attempts += 1
            await self.poll()
        return self.job

    def reset(self) -> None:
        """Return to IDLE and forget the job; the remote job is left running."""

        self._generation += 1
        previous = self.job.job_id
        self.job = AnalysisJob()
        if self.durable is not None:
            self.durable.clear_all()
        self.log.info("job_reset", extra={"job_id": previous})

    def clear_error(self) -> None:
        """Dismiss the error message; the job status is left as it is."""

        self.job.error = None
        self.job.failure = None

    async def restore(self) -> AnalysisJob:
        """Rebuild state from the durable pointers after a restart.

        An active job comes back as PROCESSING with ``restoring`` set; the
        caller resumes it with :meth:`track`. Otherwise the last completed
        match is looked up once and a stale pointer is dropped.
        """

        if self.durable is None:
            return self.job
        generation = self._generation

        job_id = self.durable.active_job_id
        if job_id:
            self.job = AnalysisJob(
                job_id=job_id,
                match_id=self.durable.active_match_id,
                status=JobStatus.PROCESSING,
                progress=RESTORING_PROGRESS,
                status_message="restoring",
                restoring=True,
            )
            self.log.info("job_restored_active")
            return self.job

        match_id = self.durable.completed_match_id
        if not match_id:
            return self.job
        try:
            result = await self.results.lookup(match_id)
        except Exception as exc:  # noqa: BLE001 - stale pointer is dropped
            self.log.warning(
                "job_restore_lookup_failed", extra={"match_id": match_id, "error": str(exc)}
            )
            result = None
        if not self._is_current(generation):
            return self.job
        if result is None:
            self.durable.clear_completed()
            return self.job
        self.job = AnalysisJob(
            match_id=match_id,
            status=JobStatus.COMPLETED,
            progress=100,
            result=result,
            status_message="completed",
        )
        self.log.info("job_restored_completed")
        return self.job

    async def restore_result_for_match(self, match_id: str) -> bool:
        """Show a stored result for ``match_id`` without running a new job."""

        generation = self._generation
        try:
            result = await self.results.lookup(match_id)
        except Exception as exc:  # noqa: BLE001 - reported as a miss
            self.log.warning(
                "result_restore_failed", extra={"match_id": match_id, "error": str(exc)}
            )
            return False
        if result is None or not self._is_current(generation):
            return False
        self.job = AnalysisJob(
            match_id=match_id,
            status=JobStatus.COMPLETED,
            progress=100,
            result=result,
            status_message="completed",
        )
        if self.durable is not None:
            self.durable.mark_completed(match_id)
        return True
