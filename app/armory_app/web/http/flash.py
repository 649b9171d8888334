from __future__ import annotations

from typing import Any

from fastapi import Request

FLASH_SESSION_KEY = "_flashes"
FLASH_LEVELS = ("success", "info", "error")
# The session cookie is size limited; older messages are dropped first.
MAX_QUEUED_FLASHES = 5


def add_flash(request: Request, message: str, level: str = "info") -> None:
    level = level if level in FLASH_LEVELS else "info"
    queued = [*request.session.get(FLASH_SESSION_KEY, []), {"message": str(message), "level": level}]
    request.session[FLASH_SESSION_KEY] = queued[-MAX_QUEUED_FLASHES:]


def pop_flashes(request: Request) -> list[dict[str, Any]]:
    return request.session.pop(FLASH_SESSION_KEY, [])
