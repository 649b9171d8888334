from __future__ import annotations

from fastapi import APIRouter, Request

from armory_app.core.security import ACTION_MANAGE, ACTION_READ, RESOURCE_PERMISSIONS
from armory_app.web.core.runtime import get_policy_engine
from armory_app.web.security.rbac import require_permission

router = APIRouter(prefix="/api")


@router.get("/permissions/check")
@require_permission(RESOURCE_PERMISSIONS, ACTION_READ)
async def api_check_permission(request: Request, subject: str, obj: str, action: str):
    engine = get_policy_engine(request)
    return {
        "ok": True,
        "subject": subject,
        "object": obj,
        "action": action,
        "allowed": engine.enforce(subject, obj, action),
    }


@router.get("/roles")
@require_permission(RESOURCE_PERMISSIONS, ACTION_READ)
async def api_roles(request: Request):
    engine = get_policy_engine(request)
    return {"ok": True, "roles": sorted(engine.get_all_roles())}


@router.get("/users/{subject}/roles")
@require_permission(RESOURCE_PERMISSIONS, ACTION_READ)
async def api_user_roles(request: Request, subject: str):
    engine = get_policy_engine(request)
    subject = subject.strip().lower()
    return {
        "ok": True,
        "subject": subject,
        "roles": engine.get_roles_for_user(subject),
        "implicit_roles": engine.get_implicit_roles_for_user(subject),
    }


@router.post("/policy/reload")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def api_reload_policy(request: Request):
    engine = get_policy_engine(request)
    snapshot = engine.load_policy()
    return {"ok": True, "generation": snapshot.generation, "rule_count": snapshot.rule_count}
