from __future__ import annotations

from fastapi import Request

from armory_app.web.core.runtime import get_config, trust_forwarded_identity_headers

SESSION_USER_KEY = "user_email"
FORWARDED_IDENTITY_HEADERS = (
    "x-forwarded-email",
    "x-forwarded-user",
    "x-forwarded-preferred-username",
)


def sanitize_header_identity_value(value: str) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    if any(ch in text for ch in ("\r", "\n", "\t", "\x00")):
        return ""
    if len(text) > 320:
        return ""
    return text


def _first_header(request: Request, names: tuple[str, ...]) -> str:
    for name in names:
        raw = sanitize_header_identity_value(str(request.headers.get(name, "")))
        if raw:
            return raw
    return ""


def resolve_request_subject(request: Request) -> str:
    """Return the authenticated subject for ``request``, lowercased, or an empty string."""
    session_user = sanitize_header_identity_value(str(request.session.get(SESSION_USER_KEY, "") or ""))
    if session_user:
        return session_user.lower()

    config = get_config()
    if trust_forwarded_identity_headers(config):
        forwarded = _first_header(request, FORWARDED_IDENTITY_HEADERS)
        if forwarded:
            return forwarded.lower()

    if config.is_dev_env and config.test_user:
        return config.test_user
    return ""
