from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from armory_app.web.core.identity import resolve_request_subject
from armory_app.web.core.runtime import get_policy_engine
from armory_app.web.http.flash import pop_flashes

router = APIRouter()


@router.get("/")
async def home(request: Request):
    return JSONResponse(
        {
            "ok": True,
            "user": resolve_request_subject(request) or None,
            "flashes": pop_flashes(request),
        }
    )


@router.get("/health")
async def health(request: Request):
    engine_status = get_policy_engine(request).describe()
    ready = engine_status["state"] == "loaded"
    return JSONResponse(
        {"ok": ready, "policy_engine": engine_status},
        status_code=200 if ready else 503,
    )
