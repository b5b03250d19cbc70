"""
Integrity gate: probe positions, verdict mapping and roster cross-checks.
"""
import asyncio

import pytest

from vodsync.schemas import ReasonCode, RosterVerdict, VerificationContext, VerificationOutcome
from vodsync.verify import (
    VerificationRejected,
    VerificationUnavailable,
    classify_roster,
    enforce,
    verification_time_points,
    verify,
)

CONTEXT = VerificationContext(
    claimed_champion="Ahri",
    ally_champions=["Garen", "Lux", "Jinx", "Leona"],
    enemy_champions=["Zed", "Darius", "Caitlyn", "Thresh", "Lee Sin"],
)


def test_time_points_long_video():
    points = verification_time_points(1200.0)
    assert points == pytest.approx([69.0, 105.0, 150.0, 195.0, 231.0]), \
        "Long recordings sample a 180s window starting at 60s"


def test_time_points_short_video():
    points = verification_time_points(100.0)
    # safe start 20s, window 80s
    assert points == pytest.approx([24.0, 40.0, 60.0, 80.0, 96.0])
    assert all(0.0 <= p <= 100.0 for p in points)


def test_time_points_empty_video():
    assert verification_time_points(0.0) == []


def test_context_accepts_wire_names():
    context = VerificationContext.model_validate(
        {"myChampion": "Ahri", "allies": ["Lux"], "enemies": ["Zed"]}
    )
    assert context.roster() == ["Ahri", "Lux", "Zed"]


def test_classify_roster():
    assert classify_roster(CONTEXT, "Ahri", ["Ahri", "Zed", "Lux"]) is ReasonCode.NONE
    assert classify_roster(CONTEXT, "Yasuo", ["Yasuo", "Zed"]) is ReasonCode.CHAMPION_MISMATCH
    assert classify_roster(CONTEXT, None, ["Teemo", "Zed"]) is ReasonCode.CHAMPION_MISMATCH
    assert classify_roster(CONTEXT, "Ahri", ["Ahri", "Teemo", "Annie"]) is ReasonCode.TEAM_MISMATCH
    assert classify_roster(CONTEXT, "ahri", ["AHRI", "lee sin"]) is ReasonCode.NONE, \
        "Names compare case and punctuation insensitively"
    assert classify_roster(CONTEXT, None, []) is ReasonCode.NONE
    assert classify_roster(CONTEXT, "Yasuo", []) is ReasonCode.NONE, \
        "Without a visible-champion list the verdict stands"


def test_verify_valid(make_video, oracle):
    video, capture = make_video(duration=1200.0, width=640, height=360)
    outcome = asyncio.run(verify(video, CONTEXT, oracle))
    assert outcome.valid
    assert outcome.reason_code is ReasonCode.NONE
    assert oracle.verify_calls == [5]
    assert capture.seeks == pytest.approx([69.0, 105.0, 150.0, 195.0, 231.0])


def test_verify_maps_verdict_reason(make_video, fakes):
    video, _ = make_video()
    oracle = fakes.Oracle(
        verdict=RosterVerdict(success=True, is_valid=False, reason="TEAM_MISMATCH", detected_champion="Ahri")
    )
    outcome = asyncio.run(verify(video, CONTEXT, oracle))
    assert not outcome.valid
    assert outcome.reason_code is ReasonCode.TEAM_MISMATCH

    oracle.verdict = RosterVerdict(success=True, is_valid=False, reason="weird loading screen")
    outcome = asyncio.run(verify(video, CONTEXT, oracle))
    assert outcome.reason_code is ReasonCode.OTHER


def test_verify_cross_checks_detected_champion(make_video, fakes):
    video, _ = make_video()
    oracle = fakes.Oracle(
        verdict=RosterVerdict(success=True, is_valid=True, detected_champion="Yasuo", detected_champions=["Yasuo"])
    )
    outcome = asyncio.run(verify(video, CONTEXT, oracle))
    assert not outcome.valid
    assert outcome.reason_code is ReasonCode.CHAMPION_MISMATCH
    assert outcome.detected_champion == "Yasuo"


def test_verifier_unavailable_raises(make_video, fakes):
    video, _ = make_video()
    oracle = fakes.Oracle(verdict=RosterVerdict(success=False, error="overloaded"))
    with pytest.raises(VerificationUnavailable):
        asyncio.run(verify(video, CONTEXT, oracle))


def test_enforce():
    ok = VerificationOutcome(valid=True)
    assert enforce(ok) is ok
    with pytest.raises(VerificationRejected) as excinfo:
        enforce(VerificationOutcome(valid=False, reason_code=ReasonCode.CHAMPION_MISMATCH))
    assert excinfo.value.reason_code is ReasonCode.CHAMPION_MISMATCH
    assert "champion" in str(excinfo.value)
