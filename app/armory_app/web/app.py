from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler, request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from armory_app.core.env import (
    ARMORY_ALLOW_DEFAULT_SESSION_SECRET,
    ARMORY_REQUEST_ID_HEADER_ENABLED,
    ARMORY_REQUEST_LOG_ENABLED,
    ARMORY_SESSION_HTTPS_ONLY,
    get_env_bool,
)
from armory_app.core.errors import PolicySeedError
from armory_app.infrastructure.local_db_bootstrap import ensure_local_db_ready
from armory_app.infrastructure.logging import bind_request_id, reset_request_id, setup_app_logging
from armory_app.policy.engine import EnforcementEngine
from armory_app.policy.importer import ensure_bootstrap_admin, import_default_policies
from armory_app.web.core.runtime import get_config
from armory_app.web.http.errors import api_error_response, is_api_request, normalize_exception
from armory_app.web.routers import router as web_router

LOGGER = logging.getLogger(__name__)
REQUEST_LOGGER = logging.getLogger("armory_app.requests")


def _route_path_label(request: Request) -> str:
    route = request.scope.get("route")
    route_path = str(getattr(route, "path", "") or "").strip()
    if route_path:
        return route_path
    return str(request.url.path or "/")


def _api_failure(request: Request, exc: Exception):
    spec = normalize_exception(exc)
    if spec.status_code >= 500:
        LOGGER.error(
            "API request failed. code=%s status=%s path=%s method=%s",
            spec.code,
            spec.status_code,
            request.url.path,
            request.method,
            exc_info=exc,
            extra={
                "event": "api_error",
                "error_code": spec.code,
                "status_code": spec.status_code,
                "method": request.method,
                "path": str(request.url.path),
            },
        )
    return api_error_response(request, spec)


def create_app(engine: EnforcementEngine | None = None) -> FastAPI:
    setup_app_logging()
    config = get_config()
    allow_default_session_secret = get_env_bool(ARMORY_ALLOW_DEFAULT_SESSION_SECRET, default=False)
    if (
        not config.is_dev_env
        and config.uses_default_session_secret
        and not allow_default_session_secret
    ):
        raise RuntimeError(
            "ARMORY_SESSION_SECRET must be set to a strong, non-default value outside dev/local environments."
        )
    session_https_only = get_env_bool(ARMORY_SESSION_HTTPS_ONLY, default=not config.is_dev_env)
    request_log_enabled = get_env_bool(ARMORY_REQUEST_LOG_ENABLED, default=False)
    request_id_header_enabled = get_env_bool(ARMORY_REQUEST_ID_HEADER_ENABLED, default=True)
    policy_engine = engine or EnforcementEngine.from_config(config)

    @asynccontextmanager
    async def _app_lifespan(_app: FastAPI):
        runtime_config = get_config()
        ensure_local_db_ready(runtime_config)
        policy_engine.adapter.store.ensure_schema()
        if runtime_config.seed_default_policies:
            try:
                inserted = import_default_policies(policy_engine.adapter)
            except PolicySeedError:
                LOGGER.exception(
                    "Default policy seeding failed during startup.",
                    extra={"event": "policy_seed_startup_failed"},
                )
                raise
            LOGGER.info(
                "Default policies checked during startup. inserted=%s",
                inserted,
                extra={"event": "policy_seed_startup", "inserted": int(inserted)},
            )
        policy_engine.load_policy()
        if runtime_config.bootstrap_admin:
            ensure_bootstrap_admin(policy_engine, runtime_config.bootstrap_admin)
        yield

    app = FastAPI(title="Virtual Armory Permissions", lifespan=_app_lifespan)
    app.state.policy_engine = policy_engine

    @app.middleware("http")
    async def _request_context_middleware(request: Request, call_next):
        request_id = uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        token = bind_request_id(request_id)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception as exc:
                if is_api_request(request):
                    response = _api_failure(request, exc)
                else:
                    LOGGER.exception(
                        "Unhandled web request error. path=%s method=%s",
                        request.url.path,
                        request.method,
                        extra={"event": "unhandled_web_error", "method": request.method, "path": str(request.url.path)},
                    )
                    response = PlainTextResponse("An unexpected error occurred.", status_code=500)

            if request_log_enabled:
                snapshot = policy_engine.snapshot
                REQUEST_LOGGER.info(
                    "Request served. method=%s path=%s status=%s ms=%.2f policy_generation=%s",
                    request.method,
                    _route_path_label(request),
                    response.status_code,
                    (time.perf_counter() - started) * 1000.0,
                    snapshot.generation if snapshot else 0,
                    extra={
                        "event": "request_served",
                        "method": request.method,
                        "path": _route_path_label(request),
                        "status_code": response.status_code,
                        "policy_generation": snapshot.generation if snapshot else 0,
                        "subject": str(getattr(request.state, "subject", "") or ""),
                    },
                )
            if request_id_header_enabled:
                response.headers["X-Request-ID"] = request_id
            return response
        finally:
            reset_request_id(token)

    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret,
        same_site="lax",
        https_only=session_https_only,
    )

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error_handler(request: Request, exc: RequestValidationError):
        if not is_api_request(request):
            return await request_validation_exception_handler(request, exc)
        return _api_failure(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(request: Request, exc: StarletteHTTPException):
        if not is_api_request(request):
            return await http_exception_handler(request, exc)
        return _api_failure(request, exc)

    app.include_router(web_router)
    return app
