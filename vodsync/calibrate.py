"""Match-clock to video-time calibration."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .settings import settings
from .video import VideoHandle, capture_frame

if TYPE_CHECKING:
    from .remote import ClockOracle

logger = logging.getLogger(__name__)

_CLOCK_RE = re.compile(r"^\s*(?:(\d+):)?(\d{1,3}):(\d{2})\s*$")


class CalibrationState(str, Enum):
    UNCALIBRATED = "UNCALIBRATED"
    CALIBRATED = "CALIBRATED"
    OVERRIDDEN = "OVERRIDDEN"


@dataclass(frozen=True)
class TimeOffset:
    """Constant shift between the match clock and the recording.

    ``video_time = match_time + seconds``. A failed attempt keeps ``seconds``
    at zero with ``attempted`` set so callers can flag the session as
    uncalibrated.
    """

    seconds: float = 0.0
    state: CalibrationState = CalibrationState.UNCALIBRATED
    attempted: bool = False
    probe_video_time: Optional[float] = None
    clock_reading: Optional[float] = None

    @property
    def is_calibrated(self) -> bool:
        return self.state is not CalibrationState.UNCALIBRATED

    @property
    def is_settled(self) -> bool:
        return self.attempted or self.state is CalibrationState.OVERRIDDEN

    def to_video_time(self, match_time_ms: float) -> float:
        return max(0.0, match_time_ms / 1000.0 + self.seconds)

    def override(self, seconds: float) -> "TimeOffset":
        return replace(self, seconds=float(seconds), state=CalibrationState.OVERRIDDEN, attempted=True)

    def as_dict(self) -> dict:
        return {
            "seconds": self.seconds,
            "state": self.state.value,
            "attempted": self.attempted,
            "label": format_offset(self.seconds),
            "probe_video_time": self.probe_video_time,
            "clock_reading": self.clock_reading,
        }


def parse_clock_text(text: str) -> Optional[float]:
    """Parse ``mm:ss`` or ``h:mm:ss`` into seconds."""

    match = _CLOCK_RE.match(text or "")
    if not match:
        return None
    hours = int(match.group(1) or 0)
    minutes = int(match.group(2))
    seconds = int(match.group(3))
    if seconds >= 60:
        return None
    return float(hours * 3600 + minutes * 60 + seconds)


def format_offset(seconds: float) -> str:
    sign = "-" if seconds < 0 else ""
    total = int(round(abs(seconds)))
    return f"{sign}{total // 60}:{total % 60:02d}"


def probe_time(duration: float) -> float:
    return min(settings.CALIBRATION_PROBE_MAX_SEC, duration * settings.CALIBRATION_PROBE_RATIO)


async def calibrate(
    video: VideoHandle,
    oracle: "ClockOracle",
    current: Optional[TimeOffset] = None,
) -> TimeOffset:
    """Derive the offset from one probe frame, at most once per video.

    Oracle failures degrade to an uncalibrated zero offset; capture failures
    propagate.
    """

    if current is not None and current.is_settled:
        return current

    probe = probe_time(video.duration)
    image = await capture_frame(
        video, probe, size=settings.capture_size, quality=settings.CAPTURE_QUALITY
    )

    try:
        reading = await oracle.read_game_clock(image)
    except Exception as exc:  # noqa: BLE001 - calibration degrades to zero offset
        logger.warning(
            "calibration_failed",
            extra={"probe_video_time": probe, "error": f"{type(exc).__name__}: {exc}"},
        )
        return TimeOffset(attempted=True, probe_video_time=probe)

    if not reading.success or reading.seconds is None:
        logger.warning(
            "calibration_failed",
            extra={"probe_video_time": probe, "error": reading.error or "clock not detected"},
        )
        return TimeOffset(attempted=True, probe_video_time=probe)

    offset = TimeOffset(
        seconds=probe - reading.seconds,
        state=CalibrationState.CALIBRATED,
        attempted=True,
        probe_video_time=probe,
        clock_reading=reading.seconds,
    )
    logger.info("calibration_done", extra=offset.as_dict())
    return offset
