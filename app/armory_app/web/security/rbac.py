"""
Route guards backed by the policy enforcement engine.
"""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
import logging

from fastapi import HTTPException, Request
from fastapi.responses import RedirectResponse

from armory_app.core.defaults import DEFAULT_LOGIN_REDIRECT_PATH
from armory_app.core.security import WILDCARD
from armory_app.web.core.identity import resolve_request_subject
from armory_app.web.core.runtime import get_policy_engine
from armory_app.web.http.errors import is_api_request
from armory_app.web.http.flash import add_flash

LOGGER = logging.getLogger(__name__)

LOGIN_REQUIRED_MESSAGE = "You must log in to access that resource"
ACCESS_DENIED_MESSAGE = "You do not have authorization for that resource"


def _find_request(args: tuple, kwargs: dict) -> Request | None:
    for arg in args:
        if isinstance(arg, Request):
            return arg
    candidate = kwargs.get("request")
    return candidate if isinstance(candidate, Request) else None


def require_permission(obj: str, action: str = WILDCARD) -> Callable:
    """
    Decorator that checks ``(subject, obj, action)`` against the policy engine.

    Usage:
        @router.post("/admin/permissions/assign")
        @require_permission("permissions", "manage")
        async def assign_role(request: Request):
            ...

    Page requests without a subject, or denied by policy, are redirected to
    ``/`` with a flash message. ``/api/`` requests get 401/403 instead.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = _find_request(args, kwargs)
            if request is None:
                raise HTTPException(
                    status_code=500,
                    detail="Request object not found - cannot verify permissions"
                )

            subject = resolve_request_subject(request)
            if not subject:
                if is_api_request(request):
                    raise HTTPException(status_code=401, detail="User not authenticated")
                add_flash(request, LOGIN_REQUIRED_MESSAGE, "error")
                return RedirectResponse(url=DEFAULT_LOGIN_REDIRECT_PATH, status_code=303)

            engine = get_policy_engine(request)
            if not engine.enforce(subject, obj, action):
                LOGGER.warning(
                    "Authorization denied. subject=%s obj=%s action=%s path=%s",
                    subject,
                    obj,
                    action,
                    request.url.path,
                    extra={
                        "event": "authz_denied",
                        "subject": subject,
                        "object": obj,
                        "action": action,
                        "path": str(request.url.path),
                    },
                )
                if is_api_request(request):
                    raise HTTPException(
                        status_code=403,
                        detail=f"Insufficient permissions: {obj}:{action} required"
                    )
                add_flash(request, ACCESS_DENIED_MESSAGE, "error")
                return RedirectResponse(url=DEFAULT_LOGIN_REDIRECT_PATH, status_code=303)

            request.state.subject = subject
            return await func(*args, **kwargs)

        return wrapper
    return decorator
