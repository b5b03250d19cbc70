"""Remote capabilities consumed by the pipeline and the HTTP analysis-service client."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from .schemas import (
    CapturedFrame,
    ClockReading,
    LookupResponse,
    PollResponse,
    RosterVerdict,
    SubmitResponse,
    VerificationContext,
)
from .settings import settings

logger = logging.getLogger(__name__)


class AnalysisServiceError(RuntimeError):
    """Transport or protocol failure talking to the analysis service."""


class ClockOracle(Protocol):
    async def read_game_clock(self, image: bytes) -> ClockReading:
        """Read the in-game clock shown in ``image``."""


class RosterVerifier(Protocol):
    async def verify_roster(
        self, images: Sequence[bytes], context: VerificationContext
    ) -> RosterVerdict:
        """Judge whether ``images`` show the expected champion and roster."""


class AnalysisService(Protocol):
    async def submit_analysis(
        self, match_id: str, frames: Sequence[CapturedFrame], metadata: Dict[str, Any]
    ) -> SubmitResponse:
        ...

    async def poll_job(self, job_id: str) -> PollResponse:
        ...

    async def submit_bounded_analysis(
        self, match_id: str, frames: Sequence[CapturedFrame], metadata: Dict[str, Any]
    ) -> SubmitResponse:
        ...

    async def poll_bounded_job(self, job_id: str) -> PollResponse:
        ...

    async def lookup_result_by_match(self, match_id: str) -> LookupResponse:
        ...


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "")[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


class AnalysisServiceClient:
    """httpx-backed client for the remote analysis service.

    Macro jobs live under ``/analysis/macro``; micro (bounded) jobs under
    ``/analysis/micro``. Nothing here retries: the job controller decides what
    a failed call means.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[httpx.Timeout] = None,
    ) -> None:
        self.base_url = (base_url or settings.ANALYSIS_API_BASE).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.analysis_api_key
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            transport=transport,
            timeout=timeout
            or httpx.Timeout(
                settings.HTTP_TOTAL_TIMEOUT,
                connect=settings.HTTP_CONNECT_TIMEOUT,
                read=settings.HTTP_READ_TIMEOUT,
            ),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _submit(
        self, kind: str, match_id: str, frames: Sequence[CapturedFrame], metadata: Dict[str, Any]
    ) -> SubmitResponse:
        body = {
            "matchId": match_id,
            "frames": [frame.to_wire() for frame in frames],
            "metadata": metadata,
        }
        try:
            response = await self._client.post(f"/analysis/{kind}/jobs", json=body)
        except httpx.HTTPError as exc:
            logger.warning("analysis_submit_error", extra={"kind": kind, "error": str(exc)})
            return SubmitResponse(success=False, error=f"submit failed: {exc}")
        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning(
                "analysis_submit_rejected",
                extra={"kind": kind, "status_code": response.status_code, "error": message},
            )
            return SubmitResponse(success=False, error=message)
        try:
            return SubmitResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            return SubmitResponse(success=False, error=f"malformed submit response: {exc}")

    async def _poll(self, kind: str, job_id: str) -> PollResponse:
        try:
            response = await self._client.get(f"/analysis/{kind}/jobs/{job_id}")
        except httpx.HTTPError as exc:
            raise AnalysisServiceError(f"poll failed: {exc}") from exc
        if response.status_code == 404:
            return PollResponse(status="not_found")
        if response.status_code >= 400:
            raise AnalysisServiceError(
                f"poll returned HTTP {response.status_code}: {_error_message(response)}"
            )
        try:
            return PollResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AnalysisServiceError(f"malformed poll response: {exc}") from exc

    async def submit_analysis(
        self, match_id: str, frames: Sequence[CapturedFrame], metadata: Dict[str, Any]
    ) -> SubmitResponse:
        return await self._submit("macro", match_id, frames, metadata)

    async def poll_job(self, job_id: str) -> PollResponse:
        return await self._poll("macro", job_id)

    async def submit_bounded_analysis(
        self, match_id: str, frames: Sequence[CapturedFrame], metadata: Dict[str, Any]
    ) -> SubmitResponse:
        return await self._submit("micro", match_id, frames, metadata)

    async def poll_bounded_job(self, job_id: str) -> PollResponse:
        return await self._poll("micro", job_id)

    async def lookup_result_by_match(self, match_id: str) -> LookupResponse:
        try:
            response = await self._client.get(f"/analysis/macro/results/{match_id}")
        except httpx.HTTPError as exc:
            raise AnalysisServiceError(f"lookup failed: {exc}") from exc
        if response.status_code == 404:
            return LookupResponse(found=False)
        if response.status_code >= 400:
            raise AnalysisServiceError(
                f"lookup returned HTTP {response.status_code}: {_error_message(response)}"
            )
        try:
            return LookupResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AnalysisServiceError(f"malformed lookup response: {exc}") from exc
