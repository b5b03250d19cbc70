from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from fastapi import FastAPI, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

from .logging import bind_session_context, configure_logging, reset_session_context
from .pipeline import CoachingSession, PayloadTooLarge, QuotaCheck, QuotaExceeded, SessionBusy
from .remote import AnalysisService, AnalysisServiceClient, AnalysisServiceError
from .results import ResultStore
from .sampler import WindowTooShort
from .schemas import MacroRequest, MicroRequest, OffsetOverride, SeekRequest, SessionCreate
from .settings import ANTHROPIC_API_KEY, settings
from .storage import KeyValueStore, get_kv_store
from .verify import VerificationRejected, VerificationUnavailable
from .video import CaptureError, SeekTimeoutError, VideoHandle

logger = logging.getLogger(__name__)

JOB_KINDS = ("macro", "micro")


class SessionManager:
    """Owns live coaching sessions and the collaborators they share."""

    def __init__(
        self,
        *,
        service: Optional[AnalysisService] = None,
        oracle: Any = None,
        store: Optional[KeyValueStore] = None,
        video_opener: Callable[[str], VideoHandle] = VideoHandle.open,
        quota_check: Optional[QuotaCheck] = None,
    ) -> None:
        self._service = service
        self._oracle = oracle
        self._store = store
        self.video_opener = video_opener
        self.quota_check = quota_check
        self.sessions: Dict[str, CoachingSession] = {}

    @property
    def service(self) -> AnalysisService:
        if self._service is None:
            self._service = AnalysisServiceClient()
        return self._service

    @property
    def oracle(self) -> Any:
        if self._oracle is None:
            from .vision import ClaudeVisionOracle, DisabledVision

            if not settings.CLAUDE_VISION_ENABLE:
                self._oracle = DisabledVision("CLAUDE_VISION_ENABLE is off")
            elif not ANTHROPIC_API_KEY:
                self._oracle = DisabledVision("ANTHROPIC_API_KEY is not set")
            else:
                self._oracle = ClaudeVisionOracle(ANTHROPIC_API_KEY)
        return self._oracle

    @property
    def store(self) -> KeyValueStore:
        if self._store is None:
            self._store = get_kv_store()
        return self._store

    async def create(self, payload: SessionCreate) -> CoachingSession:
        video = self.video_opener(payload.video_path)
        session = CoachingSession(
            video,
            payload.match_id,
            payload.context,
            oracle=self.oracle,
            verifier=self.oracle,
            service=self.service,
            store=self.store,
            quota_check=self.quota_check,
        )
        self.sessions[session.session_id] = session
        await session.init()
        logger.info(
            "session_created",
            extra={"session_id": session.session_id, "match_id": payload.match_id},
        )
        return session

    def get(self, session_id: str) -> CoachingSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    async def close(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is not None:
            await session.teardown()

    async def close_all(self) -> None:
        for session_id in list(self.sessions):
            await self.close(session_id)
        if isinstance(self._service, AnalysisServiceClient):
            await self._service.aclose()


MANAGER = SessionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    app.state.sessions = MANAGER
    logger.info("app_startup")
    try:
        yield
    finally:
        await MANAGER.close_all()
        logger.info("app_shutdown")


app = FastAPI(lifespan=lifespan)


@contextmanager
def _session_scope(session: CoachingSession, request: Request) -> Iterator[None]:
    debug = request.headers.get("X-Debug", "").lower() in {"1", "true", "yes"}
    tokens = bind_session_context(session.session_id, session.match_id, debug)
    try:
        yield
    finally:
        reset_session_context(*tokens)


def _validate(model: type[BaseModel], payload: Any) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False)) from exc


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc


def _pipeline_error(exc: Exception) -> HTTPException:
    if isinstance(exc, SessionBusy):
        return HTTPException(status_code=409, detail={"error": "session_busy", "message": str(exc)})
    if isinstance(exc, VerificationRejected):
        return HTTPException(
            status_code=422,
            detail={
                "error": "verification_rejected",
                "reason_code": exc.reason_code.value,
                "detected_champion": exc.detected_champion,
                "message": str(exc),
            },
        )
    if isinstance(exc, VerificationUnavailable):
        return HTTPException(status_code=503, detail={"error": "verification_unavailable", "message": str(exc)})
    if isinstance(exc, QuotaExceeded):
        return HTTPException(status_code=402, detail={"error": "quota_exceeded", "message": str(exc)})
    if isinstance(exc, PayloadTooLarge):
        return HTTPException(status_code=413, detail={"error": "payload_too_large", "message": str(exc)})
    if isinstance(exc, WindowTooShort):
        return HTTPException(status_code=422, detail={"error": "video_too_short", "message": str(exc)})
    if isinstance(exc, SeekTimeoutError):
        return HTTPException(status_code=504, detail={"error": "seek_timeout", "message": str(exc)})
    if isinstance(exc, CaptureError):
        return HTTPException(status_code=422, detail={"error": "capture_failed", "message": str(exc)})
    raise exc


def _kind(kind: str) -> str:
    if kind not in JOB_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown job kind: {kind}")
    return kind


@app.get("/healthz")
def healthz():
    return {"ok": True, "sessions": len(MANAGER.sessions)}


@app.post("/sessions", status_code=status.HTTP_201_CREATED)
async def create_session(request: Request):
    payload = _validate(SessionCreate, await _json_body(request))
    try:
        session = await MANAGER.create(payload)
    except CaptureError as exc:
        raise HTTPException(status_code=422, detail={"error": "video_unreadable", "message": str(exc)}) from exc
    return session.snapshot()


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    return MANAGER.get(session_id).snapshot()


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    MANAGER.get(session_id)
    await MANAGER.close(session_id)
    return {"ok": True}


@app.post("/sessions/{session_id}/macro", status_code=status.HTTP_202_ACCEPTED)
async def run_macro(session_id: str, request: Request):
    session = MANAGER.get(session_id)
    body = _validate(MacroRequest, await _json_body(request))
    with _session_scope(session, request):
        if session.is_busy or session.macro.is_analyzing:
            raise HTTPException(status_code=409, detail="Macro analysis already running")
        try:
            await session.run_macro_review(body.segments, body.metadata, wait=False)
        except Exception as exc:  # noqa: BLE001 - mapped to typed HTTP errors
            raise _pipeline_error(exc) from exc
    return session.macro.snapshot()


@app.post("/sessions/{session_id}/micro", status_code=status.HTTP_202_ACCEPTED)
async def run_micro(session_id: str, request: Request):
    session = MANAGER.get(session_id)
    body = _validate(MicroRequest, await _json_body(request))
    with _session_scope(session, request):
        if session.is_busy or session.micro.is_analyzing:
            raise HTTPException(status_code=409, detail="Micro analysis already running")
        try:
            await session.run_micro_review(body.start_sec, body.metadata, wait=False)
        except Exception as exc:  # noqa: BLE001 - mapped to typed HTTP errors
            raise _pipeline_error(exc) from exc
    return session.micro.snapshot()


@app.get("/sessions/{session_id}/jobs/{kind}")
def get_job(session_id: str, kind: str):
    return MANAGER.get(session_id).controller(_kind(kind)).snapshot()


@app.post("/sessions/{session_id}/jobs/{kind}/reset")
def reset_job(session_id: str, kind: str):
    controller = MANAGER.get(session_id).controller(_kind(kind))
    controller.reset()
    return controller.snapshot()


@app.post("/sessions/{session_id}/jobs/{kind}/clear-error")
def clear_job_error(session_id: str, kind: str):
    controller = MANAGER.get(session_id).controller(_kind(kind))
    controller.clear_error()
    return controller.snapshot()


@app.post("/sessions/{session_id}/jobs/macro/restore")
async def restore_macro(session_id: str, request: Request):
    session = MANAGER.get(session_id)
    with _session_scope(session, request):
        if session.macro.is_analyzing:
            return session.macro.snapshot()
        match_id = None
        if await request.body():
            payload = await _json_body(request)
            if isinstance(payload, dict):
                match_id = payload.get("match_id") or payload.get("matchId")
        if match_id:
            found = await session.macro.restore_result_for_match(str(match_id))
            if not found:
                raise HTTPException(status_code=404, detail="No stored result for match")
        else:
            await session.init()
    return session.macro.snapshot()


@app.post("/sessions/{session_id}/offset")
async def override_offset(session_id: str, request: Request):
    session = MANAGER.get(session_id)
    body = _validate(OffsetOverride, await _json_body(request))
    return session.set_offset(body.seconds).as_dict()


@app.post("/sessions/{session_id}/seek")
async def seek(session_id: str, request: Request):
    session = MANAGER.get(session_id)
    body = _validate(SeekRequest, await _json_body(request))
    with _session_scope(session, request):
        try:
            video_time = await session.seek_to_match_time(body.match_time_ms)
        except CaptureError as exc:
            raise _pipeline_error(exc) from exc
    return {"video_time": video_time, "offset": session.offset.as_dict()}


@app.get("/results/{match_id}")
async def get_result(match_id: str):
    try:
        result = await ResultStore(MANAGER.service).lookup(match_id)
    except AnalysisServiceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if result is None:
        raise HTTPException(status_code=404, detail="Not found")
    return result
