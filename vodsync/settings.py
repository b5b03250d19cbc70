"""Centralized service configuration loaded from environment variables."""

from __future__ import annotations

import os

from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration sourced from environment variables."""

    model_config = SettingsConfigDict(env_file=None, extra="ignore", case_sensitive=False)

    log_level: str = Field(default="INFO", description="Python logging level (e.g. INFO, DEBUG).")

    # --- Frame capture surface ---
    CAPTURE_WIDTH: int = Field(default=1280, description="Width in pixels of captured analysis frames.")
    CAPTURE_HEIGHT: int = Field(default=720, description="Height in pixels of captured analysis frames.")
    CAPTURE_QUALITY: float = Field(
        default=0.7,
        description="JPEG quality (0..1) used for analysis and calibration frames.",
    )
    CAPTURE_SEEK_TIMEOUT_SEC: float = Field(
        default=10.0,
        description="Maximum wait in seconds for a seek to settle before the capture fails.",
    )

    # --- Calibration ---
    CALIBRATION_PROBE_MAX_SEC: float = Field(
        default=120.0,
        description="Upper bound in seconds for the calibration probe position.",
    )
    CALIBRATION_PROBE_RATIO: float = Field(
        default=0.1,
        description="Fraction of the recording duration used for the calibration probe.",
    )

    # --- Verification gate ---
    VERIFY_FRAME_COUNT: int = Field(default=5, description="Number of frames captured for roster verification.")
    VERIFY_QUALITY: float = Field(
        default=0.6,
        description="JPEG quality (0..1) used for verification frames, captured at native size.",
    )
    VERIFY_SAFE_START_SEC: float = Field(
        default=60.0,
        description="Start of the verification window on recordings longer than VERIFY_LONG_VIDEO_SEC.",
    )
    VERIFY_LONG_VIDEO_SEC: float = Field(
        default=180.0,
        description="Recordings longer than this use the fixed safe start; shorter ones use a ratio.",
    )
    VERIFY_SHORT_START_RATIO: float = Field(
        default=0.2,
        description="Fraction of the duration used as the safe start on short recordings.",
    )
    VERIFY_WINDOW_MAX_SEC: float = Field(
        default=180.0,
        description="Maximum length in seconds of the verification window.",
    )

    # --- Sampling profiles ---
    MACRO_SAMPLE_FPS: float = Field(default=0.2, description="Frames per second sampled for macro review segments.")
    MICRO_SAMPLE_FPS: float = Field(default=1.0, description="Frames per second sampled for micro review windows.")
    MICRO_MAX_FRAMES: int = Field(default=30, description="Frame cap applied to micro review windows.")
    MICRO_WINDOW_SEC: float = Field(default=30.0, description="Length in seconds of a micro review window.")

    # --- Job tracking ---
    POLL_INTERVAL_SEC: float = Field(default=3.0, description="Interval in seconds between job status polls.")
    BOUNDED_MAX_ATTEMPTS: int = Field(
        default=60,
        description="Maximum poll attempts for bounded jobs before they time out.",
    )
    PROGRESS_STEP: int = Field(default=3, description="Cosmetic progress increment applied per processing poll.")
    PROGRESS_CEILING: int = Field(
        default=95,
        description="Upper bound for cosmetic progress while a job is still processing.",
    )
    COMPLETION_DELAY_SEC: float = Field(
        default=1.0,
        description="Pause in seconds between reaching 100% and reporting completion.",
    )
    MAX_PAYLOAD_BYTES: int = Field(
        default=8 * 1024 * 1024,
        description="Upper bound on the total encoded frame payload of a single submission.",
    )

    # --- Remote analysis service ---
    ANALYSIS_API_BASE: str = Field(
        default="http://localhost:8080",
        validation_alias=AliasChoices("ANALYSIS_API_BASE", "ANALYSIS_API_URL"),
        description="Base URL for the remote analysis service.",
    )
    analysis_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ANALYSIS_API_KEY", "ANALYSIS_TOKEN"),
        description="Bearer token used to authenticate with the analysis service.",
    )

    # --- Claude Vision API ---
    CLAUDE_VISION_ENABLE: bool = Field(
        default=True,
        description="Enable Claude Vision API for clock reading and roster verification.",
    )
    anthropic_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("ANTHROPIC_API_KEY", "CLAUDE_API_KEY"),
        description="API key for Anthropic Claude Vision API.",
    )
    VISION_MODEL: str = Field(
        default="claude-3-5-sonnet-20241022",
        description="Claude model used for frame reading.",
    )
    VISION_MAX_TOKENS: int = Field(default=1024, description="Max tokens requested per vision call.")

    # --- Durable job state ---
    durable_backend: Literal["local", "s3", "memory"] = Field(
        default="local",
        validation_alias=AliasChoices("DURABLE_BACKEND", "STATE_BACKEND"),
        description="Backend holding the active/completed job pointers across restarts.",
    )
    durable_path: str = Field(
        default="state/jobs.json",
        validation_alias=AliasChoices("DURABLE_PATH", "STATE_PATH"),
        description="JSON document used by the local durable backend.",
    )
    s3_bucket: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("S3_BUCKET", "S3_BUCKET_NAME"),
        description="Target S3 bucket when using the S3 durable backend.",
    )
    s3_prefix: str = Field(default="", description="Prefix applied to durable state object keys.")
    aws_access_key_id: Optional[str] = Field(
        default=None, description="AWS access key used for S3 operations."
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None, description="AWS secret key used for S3 operations."
    )
    aws_region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("AWS_REGION", "S3_REGION"),
        description="AWS region for S3 interactions.",
    )

    HTTP_CONNECT_TIMEOUT: float = 10.0
    HTTP_READ_TIMEOUT: float = 60.0
    HTTP_TOTAL_TIMEOUT: float = 120.0

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return (value or "INFO").strip()

    @field_validator("s3_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        raw = (value or "").strip()
        return raw.strip("/")

    @field_validator("ANALYSIS_API_BASE")
    @classmethod
    def _strip_base(cls, value: str) -> str:
        return (value or "").strip().rstrip("/")

    @field_validator(
        "s3_bucket",
        "aws_access_key_id",
        "aws_secret_access_key",
        "aws_region",
        "analysis_api_key",
        "anthropic_api_key",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = str(value).strip()
        return stripped or None

    @field_validator("CAPTURE_QUALITY", "VERIFY_QUALITY")
    @classmethod
    def _quality_range(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("JPEG quality must be within (0, 1]")
        return value

    @model_validator(mode="after")
    def _validate_backend(self) -> "Settings":
        if self.durable_backend == "s3":
            missing: list[str] = []
            if not self.s3_bucket:
                missing.append("S3_BUCKET")
            if not self.aws_access_key_id:
                missing.append("AWS_ACCESS_KEY_ID")
            if not self.aws_secret_access_key:
                missing.append("AWS_SECRET_ACCESS_KEY")
            if not self.aws_region:
                missing.append("AWS_REGION")
            if missing:
                joined = ", ".join(missing)
                raise ValueError(
                    "Missing required environment variables for S3 backend: " + joined
                )
        return self

    @property
    def capture_size(self) -> tuple[int, int]:
        return (int(self.CAPTURE_WIDTH), int(self.CAPTURE_HEIGHT))


@lru_cache()
def get_settings() -> Settings:
    """Return cached service settings, raising a friendly error on failure."""

    try:
        return Settings()
    except ValidationError as exc:  # pragma: no cover - startup guard
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or "settings"
            messages.append(f"{location}: {error.get('msg')}")
        joined = "; ".join(messages) or str(exc)
        raise RuntimeError(f"Configuration error: {joined}") from exc
    except ValueError as exc:  # pragma: no cover - startup guard
        raise RuntimeError(f"Configuration error: {exc}") from exc


settings = get_settings()


ANTHROPIC_API_KEY: str | None = (
    os.getenv("ANTHROPIC_API_KEY")
    or os.getenv("CLAUDE_API_KEY")
    or settings.anthropic_api_key
)
