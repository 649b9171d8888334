from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from armory_app.core.env import (
    ARMORY_LOG_CAPTURE_ROOT,
    ARMORY_LOG_JSON,
    ARMORY_LOG_LEVEL,
    get_env,
    get_env_bool,
)

APP_LOGGER_NAME = "armory_app"
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s] %(message)s"

_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar("armory_request_id", default="-")
# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_STANDARD_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "request_id"}


def bind_request_id(request_id: str) -> contextvars.Token:
    return _REQUEST_ID.set(str(request_id or "-"))


def reset_request_id(token: contextvars.Token) -> None:
    _REQUEST_ID.reset(token)


def current_request_id() -> str:
    return _REQUEST_ID.get()


class RequestIdFilter(logging.Filter):
    """Stamp each record with the id of the request being served, or ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = current_request_id()
        return True


class PolicyJsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra`` fields such as ``event`` become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_")
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=True)


def build_log_handler(*, use_json: bool, level: int) -> logging.Handler:
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(PolicyJsonFormatter() if use_json else logging.Formatter(TEXT_FORMAT))
    return handler


def setup_app_logging() -> None:
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if getattr(app_logger, "_armory_configured", False):
        return

    level_name = get_env(ARMORY_LOG_LEVEL, "INFO").upper() or "INFO"
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level_name, level = "INFO", logging.INFO
    use_json = get_env_bool(ARMORY_LOG_JSON, default=False)
    capture_root = get_env_bool(ARMORY_LOG_CAPTURE_ROOT, default=False)

    handler = build_log_handler(use_json=use_json, level=level)
    app_logger.handlers.clear()
    app_logger.addHandler(handler)
    app_logger.setLevel(level)
    app_logger.propagate = False
    if capture_root:
        root = logging.getLogger()
        root.handlers.clear()
        root.addHandler(handler)
        root.setLevel(level)

    app_logger._armory_configured = True  # type: ignore[attr-defined]
    app_logger.info(
        "Application logging configured. level=%s json=%s capture_root=%s",
        level_name,
        str(use_json).lower(),
        str(capture_root).lower(),
        extra={"event": "logging_configured"},
    )
