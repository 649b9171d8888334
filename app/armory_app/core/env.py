from __future__ import annotations

import os

# Runtime environment
ARMORY_ENV = "ARMORY_ENV"
ARMORY_LOCAL_DB_PATH = "ARMORY_LOCAL_DB_PATH"
ARMORY_LOCAL_DB_AUTO_INIT = "ARMORY_LOCAL_DB_AUTO_INIT"
ARMORY_LOCAL_DB_RESET_ON_START = "ARMORY_LOCAL_DB_RESET_ON_START"
ARMORY_DB_BUSY_TIMEOUT_SEC = "ARMORY_DB_BUSY_TIMEOUT_SEC"

# Policy engine
ARMORY_POLICY_LOAD_TIMEOUT_SEC = "ARMORY_POLICY_LOAD_TIMEOUT_SEC"
ARMORY_ROLE_MAX_DEPTH = "ARMORY_ROLE_MAX_DEPTH"
ARMORY_SEED_DEFAULT_POLICIES = "ARMORY_SEED_DEFAULT_POLICIES"
ARMORY_BOOTSTRAP_ADMIN = "ARMORY_BOOTSTRAP_ADMIN"

# Web/session
ARMORY_SESSION_SECRET = "ARMORY_SESSION_SECRET"
ARMORY_ALLOW_DEFAULT_SESSION_SECRET = "ARMORY_ALLOW_DEFAULT_SESSION_SECRET"
ARMORY_SESSION_HTTPS_ONLY = "ARMORY_SESSION_HTTPS_ONLY"
ARMORY_TRUST_FORWARDED_IDENTITY_HEADERS = "ARMORY_TRUST_FORWARDED_IDENTITY_HEADERS"
ARMORY_TEST_USER = "ARMORY_TEST_USER"
ARMORY_ERROR_INCLUDE_DETAILS = "ARMORY_ERROR_INCLUDE_DETAILS"
ARMORY_REQUEST_ID_HEADER_ENABLED = "ARMORY_REQUEST_ID_HEADER_ENABLED"
ARMORY_REQUEST_LOG_ENABLED = "ARMORY_REQUEST_LOG_ENABLED"

# Logging
ARMORY_LOG_LEVEL = "ARMORY_LOG_LEVEL"
ARMORY_LOG_JSON = "ARMORY_LOG_JSON"
ARMORY_LOG_CAPTURE_ROOT = "ARMORY_LOG_CAPTURE_ROOT"
ARMORY_SLOW_QUERY_MS = "ARMORY_SLOW_QUERY_MS"

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


def get_env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return str(value).strip()


def get_env_bool(name: str, *, default: bool = False) -> bool:
    raw = get_env(name).lower()
    if not raw:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return default


def get_env_int(
    name: str,
    *,
    default: int,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int:
    raw = get_env(name)
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    if min_value is not None:
        value = max(int(min_value), value)
    if max_value is not None:
        value = min(int(max_value), value)
    return value


def get_env_float(
    name: str,
    *,
    default: float,
    min_value: float | None = None,
    max_value: float | None = None,
) -> float:
    raw = get_env(name)
    try:
        value = float(raw) if raw else float(default)
    except ValueError:
        value = float(default)
    if min_value is not None:
        value = max(float(min_value), value)
    if max_value is not None:
        value = min(float(max_value), value)
    return value
