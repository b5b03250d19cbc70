"""Integrity gate: check a recording shows the claimed match before paid work runs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from .schemas import ReasonCode, RosterVerdict, VerificationContext, VerificationOutcome
from .settings import settings
from .video import VideoHandle, capture_frame

if TYPE_CHECKING:
    from .remote import RosterVerifier

logger = logging.getLogger(__name__)

POINT_RATIOS = (0.05, 0.25, 0.5, 0.75, 0.95)

REASON_MESSAGES = {
    ReasonCode.CHAMPION_MISMATCH: "The recording does not show the champion you played in this match.",
    ReasonCode.TEAM_MISMATCH: "The champions in the recording do not match this match's teams.",
    ReasonCode.OTHER: "The recording does not appear to belong to this match.",
}


class VerificationRejected(Exception):
    """Raised when the recording does not match the claimed match."""

    def __init__(self, reason_code: ReasonCode, detected_champion: Optional[str] = None) -> None:
        self.reason_code = reason_code
        self.detected_champion = detected_champion
        super().__init__(REASON_MESSAGES.get(reason_code, REASON_MESSAGES[ReasonCode.OTHER]))


class VerificationUnavailable(RuntimeError):
    """Raised when the verifier could not produce a verdict."""


def verification_time_points(duration: float, count: Optional[int] = None) -> List[float]:
    """Evenly spread probe positions inside a window that skips the loading screen."""

    if duration <= 0:
        return []
    if duration > settings.VERIFY_LONG_VIDEO_SEC:
        safe_start = settings.VERIFY_SAFE_START_SEC
    else:
        safe_start = duration * settings.VERIFY_SHORT_START_RATIO
    window = min(duration - safe_start, settings.VERIFY_WINDOW_MAX_SEC)
    ratios = POINT_RATIOS
    n = int(count or settings.VERIFY_FRAME_COUNT)
    if n != len(POINT_RATIOS):
        ratios = tuple((i + 0.5) / n for i in range(n))
    return [safe_start + window * r for r in ratios]


def _norm(name: str) -> str:
    return "".join(ch for ch in name.lower() if ch.isalnum())


def classify_roster(
    context: VerificationContext,
    detected_champion: Optional[str],
    detected_champions: Sequence[str],
) -> ReasonCode:
    """Cross-check the verifier's list of visible champions against the expected roster.

    Without that list the verdict stands as given. Names compare after
    lower-casing and dropping punctuation only, so a display name and an
    internal name for one champion (Wukong, MonkeyKing) do not match and
    read as CHAMPION_MISMATCH.
    """

    seen = {_norm(c) for c in detected_champions if c}
    if not seen:
        return ReasonCode.NONE
    claimed = _norm(context.claimed_champion)
    if detected_champion:
        seen.add(_norm(detected_champion))
    if detected_champion and _norm(detected_champion) != claimed:
        return ReasonCode.CHAMPION_MISMATCH
    if claimed not in seen:
        return ReasonCode.CHAMPION_MISMATCH
    others = seen - {claimed}
    expected = {_norm(c) for c in context.ally_champions + context.enemy_champions}
    if others and expected and not (others & expected):
        return ReasonCode.TEAM_MISMATCH
    return ReasonCode.NONE


def _reason_from_verdict(verdict: RosterVerdict) -> ReasonCode:
    try:
        code = ReasonCode((verdict.reason or "").strip().upper())
    except ValueError:
        return ReasonCode.OTHER
    return ReasonCode.OTHER if code is ReasonCode.NONE else code


async def verify(
    video: VideoHandle,
    context: VerificationContext,
    verifier: "RosterVerifier",
) -> VerificationOutcome:
    """Capture reduced-quality frames and ask the verifier for a verdict."""

    images: List[bytes] = []
    for t in verification_time_points(video.duration):
        images.append(await capture_frame(video, t, size=None, quality=settings.VERIFY_QUALITY))

    try:
        verdict = await verifier.verify_roster(images, context)
    except Exception as exc:  # noqa: BLE001 - surfaced as a typed error
        raise VerificationUnavailable(f"verifier error: {exc}") from exc
    if not verdict.success:
        raise VerificationUnavailable(verdict.error or "verifier unavailable")

    if not verdict.is_valid:
        outcome = VerificationOutcome(
            valid=False,
            reason_code=_reason_from_verdict(verdict),
            detected_champion=verdict.detected_champion,
            confidence=verdict.confidence,
        )
    else:
        code = classify_roster(context, verdict.detected_champion, verdict.detected_champions)
        outcome = VerificationOutcome(
            valid=code is ReasonCode.NONE,
            reason_code=code,
            detected_champion=verdict.detected_champion,
            confidence=verdict.confidence,
        )

    log = logger.info if outcome.valid else logger.warning
    log(
        "verification_done",
        extra={
            "valid": outcome.valid,
            "reason_code": outcome.reason_code.value,
            "detected_champion": outcome.detected_champion,
            "frames": len(images),
        },
    )
    return outcome


def enforce(outcome: VerificationOutcome) -> VerificationOutcome:
    if not outcome.valid:
        raise VerificationRejected(outcome.reason_code, outcome.detected_champion)
    return outcome
