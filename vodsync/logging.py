"""JSON log lines stamped with the coaching session and analysis job they belong to."""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, MutableMapping, Optional, Tuple

# session_id / match_id of the session an HTTP call or background poll works on
_SESSION: ContextVar[Dict[str, str]] = ContextVar("session", default={})
_SESSION_DEBUG: ContextVar[bool] = ContextVar("session_debug", default=False)

_CONTEXT_KEYS = ("session_id", "match_id", "job_class", "job_id")

_DEFAULT_LOG_KEYS: Iterable[str] = frozenset(
    (
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
    )
)

_BASE_LEVEL = logging.INFO


class SessionLevelFilter(logging.Filter):
    """Let debug records through only for sessions that asked for them."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if record.levelno >= _BASE_LEVEL:
            return True
        return bool(_SESSION_DEBUG.get())


class JsonFormatter(logging.Formatter):
    """One JSON object per record; session and job fields lead, extras follow."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
            "module": record.name,
        }

        bound = _SESSION.get()
        for key in _CONTEXT_KEYS:
            value = getattr(record, key, None) or bound.get(key)
            if value:
                payload[key] = value

        for key, value in record.__dict__.items():
            if key in _DEFAULT_LOG_KEYS or key in _CONTEXT_KEYS:
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


class ContextAdapter(logging.LoggerAdapter):
    """Logger that stamps every record with fields read from its owner at emit time.

    Job controllers pass a callable returning their current job class, job id
    and match id, so call sites only add what is specific to the event.
    """

    def __init__(self, logger: logging.Logger, fields: Callable[[], Dict[str, Any]]) -> None:
        super().__init__(logger, {})
        self.fields = fields

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = {key: value for key, value in self.fields().items() if value is not None}
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(level_name: str) -> None:
    """Configure root logging to emit structured JSON lines."""

    global _BASE_LEVEL

    level = getattr(logging, level_name.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO
    _BASE_LEVEL = level

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(SessionLevelFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)


def bind_session_context(
    session_id: str, match_id: Optional[str] = None, debug: bool = False
) -> Tuple[Token, Token]:
    """Bind the active coaching session; background tasks started inside inherit it."""

    fields = {"session_id": session_id}
    if match_id:
        fields["match_id"] = match_id
    return _SESSION.set(fields), _SESSION_DEBUG.set(debug)


def reset_session_context(token_session: Optional[Token], token_debug: Optional[Token]) -> None:
    if token_session is not None:
        _SESSION.reset(token_session)
    if token_debug is not None:
        _SESSION_DEBUG.reset(token_debug)
