from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from armory_app.core.env import ARMORY_ERROR_INCLUDE_DETAILS, get_env_bool
from armory_app.core.errors import (
    DuplicateRuleError,
    PolicyLoadError,
    PolicySeedError,
    RuleNotFoundError,
    SchemaBootstrapRequiredError,
)
from armory_app.infrastructure.db import DataConnectionError, DataExecutionError, DataQueryError

ERROR_CODE_SCHEMA_BOOTSTRAP_REQUIRED = "SCHEMA_BOOTSTRAP_REQUIRED"
ERROR_CODE_VALIDATION = "VALIDATION_ERROR"
ERROR_CODE_BAD_REQUEST = "BAD_REQUEST"
ERROR_CODE_NOT_FOUND = "NOT_FOUND"
ERROR_CODE_UNAUTHORIZED = "UNAUTHORIZED"
ERROR_CODE_FORBIDDEN = "FORBIDDEN"
ERROR_CODE_DUPLICATE_RULE = "DUPLICATE_RULE"
ERROR_CODE_RULE_NOT_FOUND = "RULE_NOT_FOUND"
ERROR_CODE_POLICY_UNAVAILABLE = "POLICY_UNAVAILABLE"
ERROR_CODE_DB_CONNECTION = "DB_CONNECTION_ERROR"
ERROR_CODE_DB_QUERY = "DB_QUERY_ERROR"
ERROR_CODE_DB_EXECUTION = "DB_EXECUTION_ERROR"
ERROR_CODE_INTERNAL = "INTERNAL_SERVER_ERROR"

_HTTP_STATUS_ERROR_CODES = {
    400: ERROR_CODE_BAD_REQUEST,
    401: ERROR_CODE_UNAUTHORIZED,
    403: ERROR_CODE_FORBIDDEN,
    404: ERROR_CODE_NOT_FOUND,
    409: ERROR_CODE_DUPLICATE_RULE,
    422: ERROR_CODE_VALIDATION,
    503: ERROR_CODE_POLICY_UNAVAILABLE,
}


@dataclass(frozen=True)
class ApiErrorSpec:
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


# First match wins, so subclasses sit above their bases.
_EXCEPTION_TABLE: tuple[tuple[tuple[type[BaseException], ...], int, str, str | None], ...] = (
    ((DuplicateRuleError,), 409, ERROR_CODE_DUPLICATE_RULE, "That rule already exists."),
    ((RuleNotFoundError,), 404, ERROR_CODE_RULE_NOT_FOUND, None),
    (
        (PolicyLoadError, PolicySeedError),
        503,
        ERROR_CODE_POLICY_UNAVAILABLE,
        "Authorization policy is unavailable. Please try again shortly.",
    ),
    (
        (SchemaBootstrapRequiredError,),
        503,
        ERROR_CODE_SCHEMA_BOOTSTRAP_REQUIRED,
        "Policy rule table is not ready. Run the local DB bootstrap and retry.",
    ),
    (
        (DataConnectionError,),
        503,
        ERROR_CODE_DB_CONNECTION,
        "Policy store is unreachable. Please try again shortly.",
    ),
    ((DataQueryError,), 500, ERROR_CODE_DB_QUERY, "Policy rules could not be read."),
    ((DataExecutionError,), 500, ERROR_CODE_DB_EXECUTION, "Policy rules could not be written."),
    ((PermissionError,), 403, ERROR_CODE_FORBIDDEN, "You do not have permission to change this policy."),
    ((ValueError,), 400, ERROR_CODE_BAD_REQUEST, None),
)


def is_api_request(request: Request) -> bool:
    path = str(getattr(request.url, "path", "") or "")
    return path.startswith("/api/")


def request_id_from_request(request: Request) -> str:
    request_id = str(getattr(request.state, "request_id", "") or "").strip()
    if request_id:
        return request_id
    from_header = str(request.headers.get("x-request-id", "")).strip()
    return from_header or "-"


def normalize_exception(exc: Exception) -> ApiErrorSpec:
    """Map an exception raised while serving a policy request to a status, code and message.

    Messages are fixed per error kind except where the exception text is the
    useful part (missing rules, bad input, HTTP errors). The raw text is kept in
    ``details`` and only leaves the process when ``ARMORY_ERROR_INCLUDE_DETAILS``
    is enabled.
    """
    if isinstance(exc, RequestValidationError):
        return ApiErrorSpec(
            status_code=422,
            code=ERROR_CODE_VALIDATION,
            message="Request validation failed. Check field values and try again.",
            details={"errors": exc.errors()},
        )
    if isinstance(exc, StarletteHTTPException):
        return ApiErrorSpec(
            status_code=int(exc.status_code),
            code=_HTTP_STATUS_ERROR_CODES.get(int(exc.status_code), ERROR_CODE_INTERNAL),
            message=str(exc.detail or "HTTP request failed."),
            details={"reason": str(exc.detail or "")},
        )

    reason = str(exc)
    for types, status_code, code, message in _EXCEPTION_TABLE:
        if isinstance(exc, types):
            return ApiErrorSpec(
                status_code=status_code,
                code=code,
                message=message or reason or "Request could not be completed.",
                details={"reason": reason},
            )

    return ApiErrorSpec(
        status_code=500,
        code=ERROR_CODE_INTERNAL,
        message="An unexpected error occurred. Please contact support if this continues.",
        details={"reason": reason, "type": exc.__class__.__name__},
    )


def api_error_response(request: Request, spec: ApiErrorSpec) -> JSONResponse:
    request_id = request_id_from_request(request)
    error: dict[str, Any] = {"code": spec.code, "message": spec.message}
    if spec.details and get_env_bool(ARMORY_ERROR_INCLUDE_DETAILS, default=False):
        error["details"] = spec.details
    payload = {
        "ok": False,
        "error": error,
        "request_id": request_id,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    return JSONResponse(payload, status_code=spec.status_code, headers={"X-Request-ID": request_id})
