import base64
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


class SegmentType(str, Enum):
    OBJECTIVE = "OBJECTIVE"
    DEATH = "DEATH"
    TURNING_POINT = "TURNING_POINT"
    OTHER = "OTHER"


class AnalysisSegment(BaseModel):
    """Window of the match timeline chosen for commentary, in match milliseconds."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    segment_id: int = Field(validation_alias=AliasChoices("segment_id", "segmentId"))
    type: SegmentType = SegmentType.OTHER
    analysis_start_time: int = Field(
        validation_alias=AliasChoices("analysis_start_time", "analysisStartTime")
    )
    analysis_end_time: int = Field(
        validation_alias=AliasChoices("analysis_end_time", "analysisEndTime")
    )
    target_timestamp: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("target_timestamp", "targetTimestamp")
    )
    description: str = Field(
        default="", validation_alias=AliasChoices("description", "eventDescription")
    )

    @model_validator(mode="after")
    def _require_positive_window(self):
        if self.analysis_start_time < 0:
            raise ValueError("analysis_start_time must be non-negative")
        if self.analysis_start_time >= self.analysis_end_time:
            raise ValueError("analysis_start_time must be before analysis_end_time")
        return self

    @property
    def duration_sec(self) -> float:
        return (self.analysis_end_time - self.analysis_start_time) / 1000.0


class CapturedFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment_id: int
    frame_index: int
    match_time: float
    video_time: float
    image: bytes

    def to_wire(self) -> Dict[str, Any]:
        return {
            "segmentId": self.segment_id,
            "frameIndex": self.frame_index,
            "gameTime": self.match_time,
            "base64Data": base64.b64encode(self.image).decode("ascii"),
        }


class VerificationContext(BaseModel):
    claimed_champion: str = Field(
        validation_alias=AliasChoices("claimed_champion", "myChampion", "champion")
    )
    ally_champions: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("ally_champions", "allies")
    )
    enemy_champions: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("enemy_champions", "enemies")
    )

    def roster(self) -> List[str]:
        return [self.claimed_champion, *self.ally_champions, *self.enemy_champions]


class ReasonCode(str, Enum):
    NONE = "NONE"
    CHAMPION_MISMATCH = "CHAMPION_MISMATCH"
    TEAM_MISMATCH = "TEAM_MISMATCH"
    OTHER = "OTHER"


class VerificationOutcome(BaseModel):
    valid: bool
    reason_code: ReasonCode = ReasonCode.NONE
    detected_champion: Optional[str] = None
    confidence: Optional[float] = None


class JobStatus(str, Enum):
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FailureKind(str, Enum):
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    REMOTE_FAILED = "REMOTE_FAILED"
    NOT_FOUND = "NOT_FOUND"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    TIMEOUT = "TIMEOUT"
    CORRUPTED_RESULT = "CORRUPTED_RESULT"


class AnalysisJob(BaseModel):
    """Client-side view of one remote analysis job."""

    job_id: Optional[str] = None
    match_id: Optional[str] = None
    status: JobStatus = JobStatus.IDLE
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    status_message: str = ""
    restoring: bool = False


# --- Remote capability responses ---


class ClockReading(BaseModel):
    success: bool = True
    seconds: Optional[float] = None
    text: Optional[str] = None
    error: Optional[str] = None


class RosterVerdict(BaseModel):
    success: bool = True
    is_valid: bool = Field(default=True, validation_alias=AliasChoices("is_valid", "isValid"))
    reason: Optional[str] = None
    detected_champion: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("detected_champion", "detectedChampion")
    )
    detected_champions: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("detected_champions", "detectedChampions"),
    )
    confidence: Optional[float] = None
    error: Optional[str] = None


class SubmitResponse(BaseModel):
    success: bool
    job_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("job_id", "jobId"))
    error: Optional[str] = None


PollState = Literal["queued", "processing", "completed", "failed", "not_found"]


class PollResponse(BaseModel):
    status: PollState
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class LookupResponse(BaseModel):
    found: bool
    result: Optional[Dict[str, Any]] = None


# --- HTTP API payloads ---


class SessionCreate(BaseModel):
    video_path: str = Field(validation_alias=AliasChoices("video_path", "path"))
    match_id: str = Field(validation_alias=AliasChoices("match_id", "matchId"))
    context: VerificationContext
    debug: bool = False


class MacroRequest(BaseModel):
    segments: List[AnalysisSegment]
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _require_segments(self):
        if not self.segments:
            raise ValueError("Provide at least one analysis segment.")
        return self


class MicroRequest(BaseModel):
    start_sec: float = Field(default=0.0, validation_alias=AliasChoices("start_sec", "startSec"))
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OffsetOverride(BaseModel):
    seconds: float


class SeekRequest(BaseModel):
    match_time_ms: float = Field(validation_alias=AliasChoices("match_time_ms", "gameTimeMs"))
