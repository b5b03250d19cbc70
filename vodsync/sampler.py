"""Deterministic frame planning and sequential capture for analysis segments."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .calibrate import TimeOffset
from .schemas import AnalysisSegment, CapturedFrame, SegmentType
from .settings import settings
from .video import VideoHandle, capture_frame

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplingProfile:
    name: str
    fps: float
    quality: float
    size: Optional[Tuple[int, int]]
    max_frames: Optional[int] = None


MACRO_PROFILE = SamplingProfile(
    name="macro",
    fps=settings.MACRO_SAMPLE_FPS,
    quality=settings.CAPTURE_QUALITY,
    size=settings.capture_size,
)
MICRO_PROFILE = SamplingProfile(
    name="micro",
    fps=settings.MICRO_SAMPLE_FPS,
    quality=settings.CAPTURE_QUALITY,
    size=settings.capture_size,
    max_frames=settings.MICRO_MAX_FRAMES,
)


@dataclass(frozen=True)
class FrameRequest:
    segment_id: int
    frame_index: int
    match_time: float
    video_time: float


class WindowTooShort(ValueError):
    """Raised when a recording is shorter than the requested review window."""


def frame_count(duration_sec: float, fps: float, max_frames: Optional[int] = None) -> int:
    """Frames for one segment: ceil(duration * fps), at least one, optionally capped.

    The product is rounded to 1e-6 before the ceiling on purpose, unlike a
    plain float ceil: representation noise just above a whole number must
    not add a frame.
    """

    count = max(1, math.ceil(round(duration_sec * fps, 6)))
    if max_frames is not None:
        count = min(count, int(max_frames))
    return count


def plan_frames(
    segments: Sequence[AnalysisSegment],
    offset: TimeOffset,
    fps: float,
    max_frames: Optional[int] = None,
) -> List[FrameRequest]:
    """Expand segments into capture requests, in segment then frame order."""

    if fps <= 0:
        raise ValueError("fps must be positive")
    requests: List[FrameRequest] = []
    for segment in segments:
        duration = segment.duration_sec
        count = frame_count(duration, fps, max_frames)
        interval = duration / count
        for i in range(count):
            match_time = segment.analysis_start_time + i * interval * 1000.0
            requests.append(
                FrameRequest(
                    segment_id=segment.segment_id,
                    frame_index=i,
                    match_time=match_time,
                    video_time=offset.to_video_time(match_time),
                )
            )
    return requests


async def sample(
    video: VideoHandle,
    segments: Sequence[AnalysisSegment],
    offset: TimeOffset,
    profile: SamplingProfile = MACRO_PROFILE,
) -> List[CapturedFrame]:
    """Capture every planned frame, one at a time.

    The offset is fixed for the whole pass. Any capture error aborts the pass
    and nothing partial is returned.
    """

    plan = plan_frames(segments, offset, profile.fps, profile.max_frames)
    logger.info(
        "sampling_start",
        extra={
            "profile": profile.name,
            "segments": len(segments),
            "frames": len(plan),
            "offset_seconds": offset.seconds,
        },
    )
    frames: List[CapturedFrame] = []
    for request in plan:
        image = await capture_frame(
            video, request.video_time, size=profile.size, quality=profile.quality
        )
        frames.append(
            CapturedFrame(
                segment_id=request.segment_id,
                frame_index=request.frame_index,
                match_time=request.match_time,
                video_time=request.video_time,
                image=image,
            )
        )
    logger.info("sampling_done", extra={"profile": profile.name, "frames": len(frames)})
    return frames


def micro_window(
    start_sec: float,
    duration: float,
    window: float = settings.MICRO_WINDOW_SEC,
    segment_id: int = 0,
) -> AnalysisSegment:
    """Build the single review segment for a micro pass.

    The window start is pulled back so the whole window fits in the recording.
    Positions are video seconds, so micro passes sample with a zero offset.
    """

    if duration < window:
        raise WindowTooShort(f"video must be at least {window:.0f}s long (got {duration:.1f}s)")
    start = min(max(0.0, float(start_sec)), duration - window)
    return AnalysisSegment(
        segment_id=segment_id,
        type=SegmentType.OTHER,
        analysis_start_time=int(round(start * 1000)),
        analysis_end_time=int(round((start + window) * 1000)),
        description="micro review window",
    )


def payload_size(frames: Sequence[CapturedFrame]) -> int:
    """Approximate wire size of the frames once base64-encoded."""

    return sum(4 * math.ceil(len(frame.image) / 3) for frame in frames)
