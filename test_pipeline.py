"""
End-to-end coaching session: verify, calibrate, sample, submit, track.
"""
import asyncio
import time

import cv2
import numpy as np
import pytest

from vodsync.calibrate import CalibrationState
from vodsync.pipeline import CoachingSession, PayloadTooLarge, QuotaExceeded, SessionBusy
from vodsync.sampler import MACRO_PROFILE, sample
from vodsync.schemas import (
    AnalysisSegment,
    ClockReading,
    JobStatus,
    PollResponse,
    ReasonCode,
    RosterVerdict,
    VerificationContext,
)
from vodsync.settings import settings
from vodsync.verify import VerificationRejected
from vodsync.video import SeekTimeoutError, VideoHandle

CONTEXT = VerificationContext(claimed_champion="Ahri", ally_champions=["Lux"], enemy_champions=["Zed"])
RESULT = {"matchId": "m-1", "insights": ["ward river at 3:00"]}


def _shade(image):
    decoded = cv2.imdecode(np.frombuffer(image, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    return float(decoded.mean())


def _segments():
    return [
        AnalysisSegment(segment_id=1, type="OBJECTIVE", analysis_start_time=60_000, analysis_end_time=70_000),
        AnalysisSegment(segment_id=2, type="DEATH", analysis_start_time=100_000, analysis_end_time=110_000),
        AnalysisSegment(segment_id=3, type="TURNING_POINT", analysis_start_time=200_000, analysis_end_time=210_000),
    ]


def _session(video, oracle, service, store, sleeper, **kwargs):
    return CoachingSession(
        video,
        "m-1",
        CONTEXT,
        oracle=oracle,
        verifier=oracle,
        service=service,
        store=store,
        sleep=sleeper,
        **kwargs,
    )


def test_macro_review_end_to_end(make_video, fakes, store, sleeper):
    video, capture = make_video(duration=600.0)
    oracle = fakes.Oracle(clock=ClockReading(success=True, seconds=55.0))
    service = fakes.Service(polls=[PollResponse(status="completed", result=RESULT)])
    session = _session(video, oracle, service, store, sleeper)

    job = asyncio.run(session.run_macro_review(_segments()))

    assert session.offset.seconds == pytest.approx(5.0)
    assert session.offset.state is CalibrationState.CALIBRATED
    submitted = service.submitted[0]
    frames = submitted["frames"]
    assert len(frames) == 6, "Three 10s segments at 0.2fps give two frames each"
    assert frames[0].video_time == pytest.approx(65.0)
    assert [f.segment_id for f in frames] == [1, 1, 2, 2, 3, 3]
    assert submitted["metadata"]["timeOffset"] == pytest.approx(5.0)
    assert submitted["metadata"]["calibrated"] is True

    assert capture.seeks[:5] == pytest.approx([69.0, 105.0, 150.0, 195.0, 231.0]), "Verification runs first"
    assert capture.seeks[5] == pytest.approx(60.0), "Then the calibration probe"
    assert capture.seeks[6:] == pytest.approx([65.0, 70.0, 105.0, 110.0, 205.0, 210.0])

    assert job.status is JobStatus.COMPLETED
    assert job.result == RESULT
    assert store.get("macroCompletedMatchId") == "m-1"
    print("✅ macro review completed with", len(frames), "frames")


def test_verification_and_calibration_run_once(make_video, fakes, store, sleeper):
    video, _ = make_video()
    oracle = fakes.Oracle()
    service = fakes.Service(polls=[PollResponse(status="completed", result=RESULT)])
    session = _session(video, oracle, service, store, sleeper)

    async def _run():
        await session.run_macro_review(_segments()[:1])
        await session.run_macro_review(_segments()[1:2])

    asyncio.run(_run())
    assert oracle.verify_calls == [5]
    assert oracle.clock_calls == 1
    assert len(service.submitted) == 2


def test_rejected_verification_blocks_paid_work(make_video, fakes, store, sleeper):
    video, capture = make_video()
    oracle = fakes.Oracle(verdict=RosterVerdict(success=True, is_valid=False, reason="CHAMPION_MISMATCH"))
    service = fakes.Service()
    session = _session(video, oracle, service, store, sleeper)

    with pytest.raises(VerificationRejected) as excinfo:
        asyncio.run(session.run_macro_review(_segments()))

    assert excinfo.value.reason_code is ReasonCode.CHAMPION_MISMATCH
    assert oracle.clock_calls == 0, "No calibration after a rejection"
    assert service.submitted == []
    assert len(capture.seeks) == 5


def test_quota_refusal(make_video, fakes, store, sleeper):
    video, _ = make_video()
    oracle = fakes.Oracle()
    service = fakes.Service()

    async def _no_quota(match_id, kind):
        return False

    session = _session(video, oracle, service, store, sleeper, quota_check=_no_quota)
    with pytest.raises(QuotaExceeded):
        asyncio.run(session.run_macro_review(_segments()))
    assert oracle.verify_calls == []


def test_payload_guard(make_video, fakes, store, sleeper, monkeypatch):
    video, _ = make_video()
    service = fakes.Service()
    session = _session(video, fakes.Oracle(), service, store, sleeper)
    monkeypatch.setattr(settings, "MAX_PAYLOAD_BYTES", 100)

    with pytest.raises(PayloadTooLarge):
        asyncio.run(session.run_macro_review(_segments()))
    assert service.submitted == []


def test_uncalibrated_session_still_runs(make_video, fakes, store, sleeper):
    video, capture = make_video()
    oracle = fakes.Oracle(clock=ClockReading(success=False))
    service = fakes.Service(polls=[PollResponse(status="completed", result=RESULT)])
    session = _session(video, oracle, service, store, sleeper)

    job = asyncio.run(session.run_macro_review(_segments()[:1]))
    assert job.status is JobStatus.COMPLETED
    assert session.offset.attempted and not session.offset.is_calibrated
    assert service.submitted[0]["metadata"]["calibrated"] is False
    assert capture.seeks[6:] == pytest.approx([60.0, 65.0])


def test_micro_review(make_video, fakes, store, sleeper):
    video, capture = make_video(duration=600.0)
    service = fakes.Service(polls=[PollResponse(status="completed", result=RESULT)])
    session = _session(video, fakes.Oracle(), service, store, sleeper)

    job = asyncio.run(session.run_micro_review(590.0))

    frames = service.submitted[0]["frames"]
    assert service.submitted[0]["kind"] == "micro"
    assert len(frames) == 30
    assert frames[0].video_time == pytest.approx(570.0), "Window start is pulled back to fit"
    assert frames[-1].video_time == pytest.approx(599.0)
    assert job.status is JobStatus.COMPLETED
    assert store.get("microJobId") is None, "Bounded jobs are not persisted"


def test_seek_to_match_time(make_video, fakes, store, sleeper):
    video, capture = make_video()
    session = _session(video, fakes.Oracle(), fakes.Service(), store, sleeper)
    session.set_offset(5.0)

    async def _run():
        return await session.seek_to_match_time(60_000), await session.seek_to_match_time(1_000)

    first, second = asyncio.run(_run())
    assert first == pytest.approx(65.0)
    assert second == pytest.approx(6.0)
    session.set_offset(-10.0)
    assert asyncio.run(session.seek_to_match_time(1_000)) == 0.0, "Manual jumps clamp at zero"


def test_manual_seek_never_splits_a_capture(make_video, fakes, store, sleeper):
    video, capture = make_video()
    oracle = fakes.Oracle(clock=ClockReading(success=True, seconds=55.0))
    session = _session(video, oracle, fakes.Service(), store, sleeper)

    async def _run():
        await session.ensure_calibrated()
        sampling = asyncio.create_task(sample(video, _segments(), session.offset, MACRO_PROFILE))
        await asyncio.sleep(0)
        jump = asyncio.create_task(session.seek_to_match_time(0))
        frames = await sampling
        await jump
        return frames

    frames = asyncio.run(_run())
    assert len(frames) == 6
    assert [f.video_time for f in frames] == pytest.approx([65.0, 70.0, 105.0, 110.0, 205.0, 210.0])
    for frame in frames:
        assert _shade(frame.image) == pytest.approx(int(frame.video_time), abs=2), \
            f"Frame at {frame.video_time}s shows pixels from another position"
    assert 5.0 in capture.seeks, "The manual jump still ran"


def test_init_restores_and_adopts_offset(make_video, fakes, store, sleeper):
    store.set("macroCompletedMatchId", "m-1")
    service = fakes.Service(results={"m-1": {"matchId": "m-1", "timeOffset": 12.5}})
    video, _ = make_video()
    session = _session(video, fakes.Oracle(), service, store, sleeper)

    job = asyncio.run(session.init())
    assert job.status is JobStatus.COMPLETED
    assert session.offset.seconds == 12.5
    assert session.offset.is_settled


def test_teardown_closes_video(make_video, fakes, store, sleeper):
    video, capture = make_video()
    store.set("macroJobId", "job-7")
    service = fakes.Service(polls=[PollResponse(status="processing")])
    session = _session(video, fakes.Oracle(), service, store, sleeper)

    async def _run():
        await session.init()
        await asyncio.sleep(0)
        await session.teardown()

    asyncio.run(_run())
    assert capture.released
    assert store.get("macroJobId") == "job-7", "Closing a session keeps the durable job for the next start"


def test_manual_seek_after_capture_timeout(fakes, store, sleeper):
    class _SlowFirstRead(fakes.Capture):
        def __init__(self):
            super().__init__()
            self.stall = 0.3
            self.reading = False
            self.seeks_during_read = []

        def set(self, prop, value):
            if self.reading:
                self.seeks_during_read.append(value / 1000.0)
            return super().set(prop, value)

        def read(self):
            self.reading = True
            try:
                time.sleep(self.stall)
                self.stall = 0.0
                return super().read()
            finally:
                self.reading = False

    capture = _SlowFirstRead()
    video = VideoHandle(capture, seek_timeout=0.05)
    session = _session(video, fakes.Oracle(), fakes.Service(), store, sleeper)
    session.set_offset(5.0)

    async def _run():
        with pytest.raises(SeekTimeoutError):
            await sample(video, _segments()[:1], session.offset, MACRO_PROFILE)
        await asyncio.sleep(0.5)
        return await session.seek_to_match_time(0)

    assert asyncio.run(_run()) == pytest.approx(5.0)
    assert capture.seeks_during_read == []


def test_overlapping_reviews_submit_once(make_video, fakes, store, sleeper):
    video, _ = make_video()
    oracle = fakes.Oracle(clock=ClockReading(success=True, seconds=55.0))
    service = fakes.Service()
    session = _session(video, oracle, service, store, sleeper)

    async def _run():
        results = await asyncio.gather(
            session.run_macro_review(_segments(), wait=False),
            session.run_macro_review(_segments(), wait=False),
            return_exceptions=True,
        )
        busy_after = session.is_busy
        await session.teardown()
        return results, busy_after

    (first, second), busy_after = asyncio.run(_run())
    assert first.status is JobStatus.PROCESSING
    assert isinstance(second, SessionBusy)
    assert oracle.verify_calls == [5], "The roster is checked once"
    assert oracle.clock_calls == 1, "Calibration runs once"
    assert len(service.submitted) == 1, "Only one paid job is submitted"
    assert not busy_after


def test_micro_refused_while_macro_is_prepared(make_video, fakes, store, sleeper):
    video, _ = make_video()
    service = fakes.Service()
    session = _session(video, fakes.Oracle(), service, store, sleeper)

    async def _run():
        macro = asyncio.create_task(session.run_macro_review(_segments()[:1], wait=False))
        await asyncio.sleep(0)
        assert session.is_busy
        with pytest.raises(SessionBusy):
            await session.run_micro_review(30.0, wait=False)
        await macro
        await session.teardown()

    asyncio.run(_run())
    assert [s["kind"] for s in service.submitted] == ["macro"]
