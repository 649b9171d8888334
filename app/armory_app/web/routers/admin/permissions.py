from __future__ import annotations

from datetime import datetime, timezone
import logging
import re

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from armory_app.core.defaults import DEFAULT_PERMISSIONS_PATH
from armory_app.core.errors import DuplicateRuleError, PolicyLoadError, RuleNotFoundError
from armory_app.core.rules import parse_permission
from armory_app.core.security import (
    ACTION_MANAGE,
    ACTION_READ,
    BUILTIN_ROLES,
    PERMISSION_ACTIONS,
    PERMISSION_RESOURCES,
    RESOURCE_PERMISSIONS,
    ROLE_ADMIN,
)
from armory_app.policy.csv_io import export_policy_csv, import_policy_csv
from armory_app.policy.importer import reset_to_default_policies
from armory_app.web.core.identity import sanitize_header_identity_value
from armory_app.web.core.runtime import get_policy_engine
from armory_app.web.http.flash import add_flash, pop_flashes
from armory_app.web.security.rbac import require_permission

LOGGER = logging.getLogger(__name__)
ROLE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{0,63}$")
RELOAD_FAILED_MESSAGE = (
    "Change saved, but the policy reload failed. The previous rules stay active until the next successful reload."
)

router = APIRouter(prefix=DEFAULT_PERMISSIONS_PATH)


def _redirect() -> RedirectResponse:
    return RedirectResponse(url=DEFAULT_PERMISSIONS_PATH, status_code=303)


def _reload_failed(request: Request) -> RedirectResponse:
    generation = get_policy_engine(request).describe()["generation"]
    LOGGER.warning(
        "Permissions change saved without reload. path=%s active_generation=%s",
        request.url.path,
        generation,
        extra={
            "event": "permissions_change_reload_failed",
            "path": str(request.url.path),
            "active_generation": generation,
        },
    )
    add_flash(request, RELOAD_FAILED_MESSAGE, "error")
    return _redirect()


def _normalize_role(raw_value: object) -> str:
    return str(raw_value or "").strip().lower()


def _normalize_user(raw_value: object) -> str:
    return sanitize_header_identity_value(str(raw_value or "")).lower()


def _form_permissions(values: list) -> list[tuple[str, str]]:
    permissions: list[tuple[str, str]] = []
    for raw in values:
        resource, action = parse_permission(str(raw or ""))
        if resource not in PERMISSION_RESOURCES:
            raise ValueError(f"Unknown resource `{resource}`.")
        if action not in PERMISSION_ACTIONS:
            raise ValueError(f"Unknown action `{action}`.")
        permissions.append((resource, action))
    if not permissions:
        raise ValueError("Select at least one permission.")
    return list(dict.fromkeys(permissions))


def _audit(request: Request, event: str, **fields: object) -> None:
    actor = str(getattr(request.state, "subject", "") or "")
    LOGGER.info(
        "Permissions change. event=%s actor=%s",
        event,
        actor,
        extra={"event": event, "actor": actor, **fields},
    )


@router.get("")
@require_permission(RESOURCE_PERMISSIONS, ACTION_READ)
async def permissions_index(request: Request):
    engine = get_policy_engine(request)
    roles = sorted(engine.get_all_roles())
    return JSONResponse(
        {
            "ok": True,
            "roles": roles,
            "builtin_roles": list(BUILTIN_ROLES),
            "role_permissions": {
                role: [f"{rule.obj}:{rule.action}" for rule in engine.get_permissions_for_role(role)]
                for role in roles
            },
            "role_users": {role: engine.get_users_for_role(role) for role in roles},
            "user_roles": engine.get_role_assignments(),
            "resources": list(PERMISSION_RESOURCES),
            "actions": list(PERMISSION_ACTIONS),
            "engine": engine.describe(),
            "flashes": pop_flashes(request),
        }
    )


@router.post("/roles")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def create_role(request: Request):
    engine = get_policy_engine(request)
    form = await request.form()
    role = _normalize_role(form.get("role"))
    if not role:
        add_flash(request, "Role name is required.", "error")
        return _redirect()
    if not ROLE_NAME_PATTERN.match(role):
        add_flash(request, "Role name must start with a letter and use only a-z, 0-9, _ or -.", "error")
        return _redirect()

    try:
        permissions = _form_permissions(form.getlist("permissions"))
        engine.create_role(role, permissions)
    except DuplicateRuleError:
        add_flash(request, "Role already exists.", "error")
        return _redirect()
    except ValueError as exc:
        add_flash(request, str(exc), "error")
        return _redirect()
    except PolicyLoadError:
        return _reload_failed(request)
    except Exception as exc:
        LOGGER.warning("Role create failed. role=%s", role, exc_info=True)
        add_flash(request, f"Could not create role: {exc}", "error")
        return _redirect()

    _audit(request, "role_create", role=role, permission_count=len(permissions))
    add_flash(request, f"Role `{role}` created.", "success")
    return _redirect()


@router.post("/roles/{role}/update")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def update_role(request: Request, role: str):
    engine = get_policy_engine(request)
    role = _normalize_role(role)
    if not engine.role_exists(role):
        add_flash(request, "Role does not exist.", "error")
        return _redirect()

    form = await request.form()
    try:
        permissions = _form_permissions(form.getlist("permissions"))
        engine.set_permissions_for_role(role, permissions)
    except ValueError as exc:
        add_flash(request, str(exc), "error")
        return _redirect()
    except PolicyLoadError:
        return _reload_failed(request)
    except Exception as exc:
        LOGGER.warning("Role update failed. role=%s", role, exc_info=True)
        add_flash(request, f"Could not update role: {exc}", "error")
        return _redirect()

    _audit(request, "role_update", role=role, permission_count=len(permissions))
    add_flash(request, f"Role `{role}` updated.", "success")
    return _redirect()


@router.post("/roles/{role}/delete")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def delete_role(request: Request, role: str):
    engine = get_policy_engine(request)
    role = _normalize_role(role)
    if role in BUILTIN_ROLES:
        add_flash(request, "Cannot delete built-in roles.", "error")
        return _redirect()

    try:
        removed = engine.delete_role(role)
    except RuleNotFoundError:
        add_flash(request, "Role does not exist.", "error")
        return _redirect()
    except PolicyLoadError:
        return _reload_failed(request)
    except Exception as exc:
        LOGGER.warning("Role delete failed. role=%s", role, exc_info=True)
        add_flash(request, f"Could not delete role: {exc}", "error")
        return _redirect()

    _audit(request, "role_delete", role=role, rules_removed=removed)
    add_flash(request, f"Role `{role}` deleted.", "success")
    return _redirect()


@router.post("/assign")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def assign_role(request: Request):
    engine = get_policy_engine(request)
    form = await request.form()
    target_user = _normalize_user(form.get("user"))
    role = _normalize_role(form.get("role"))
    if not target_user or not role:
        add_flash(request, "User and role are required.", "error")
        return _redirect()
    if not engine.role_exists(role):
        add_flash(request, f"Role `{role}` does not exist.", "error")
        return _redirect()

    try:
        engine.add_role_for_user(target_user, role)
    except DuplicateRuleError:
        add_flash(request, "User already has this role", "error")
        return _redirect()
    except PolicyLoadError:
        return _reload_failed(request)
    except Exception as exc:
        LOGGER.warning("Role assignment failed. user=%s role=%s", target_user, role, exc_info=True)
        add_flash(request, f"Could not assign role: {exc}", "error")
        return _redirect()

    _audit(request, "role_assign", target_user=target_user, role=role)
    add_flash(request, "Role assigned successfully", "success")
    return _redirect()


@router.post("/remove")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def remove_role(request: Request):
    engine = get_policy_engine(request)
    form = await request.form()
    target_user = _normalize_user(form.get("user"))
    role = _normalize_role(form.get("role"))
    if not target_user or not role:
        add_flash(request, "User and role are required.", "error")
        return _redirect()
    if role == ROLE_ADMIN and engine.get_users_for_role(ROLE_ADMIN) == [target_user]:
        add_flash(request, "Cannot remove the last admin.", "error")
        return _redirect()

    try:
        removed = engine.remove_role_for_user(target_user, role)
    except PolicyLoadError:
        return _reload_failed(request)
    except Exception as exc:
        LOGGER.warning("Role removal failed. user=%s role=%s", target_user, role, exc_info=True)
        add_flash(request, f"Could not remove role: {exc}", "error")
        return _redirect()

    if not removed:
        add_flash(request, "User did not have that role.", "info")
        return _redirect()
    _audit(request, "role_remove", target_user=target_user, role=role)
    add_flash(request, "Role removed successfully", "success")
    return _redirect()


@router.post("/import-defaults")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def import_defaults(request: Request):
    engine = get_policy_engine(request)
    try:
        saved = reset_to_default_policies(engine)
    except PolicyLoadError:
        return _reload_failed(request)
    except Exception as exc:
        LOGGER.warning("Default policy reset failed.", exc_info=True)
        add_flash(request, f"Could not import default policies: {exc}", "error")
        return _redirect()

    _audit(request, "default_policies_reset", rule_count=saved)
    add_flash(request, "Default policies imported successfully", "success")
    return _redirect()


@router.post("/reload")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def reload_policy(request: Request):
    engine = get_policy_engine(request)
    try:
        snapshot = engine.load_policy()
    except PolicyLoadError as exc:
        add_flash(request, f"Policy reload failed; previous rules remain active. {exc}", "error")
        return _redirect()

    add_flash(request, f"Policy reloaded. {snapshot.rule_count} rule(s) active.", "success")
    return _redirect()


@router.get("/export")
@require_permission(RESOURCE_PERMISSIONS, ACTION_READ)
async def export_policy(request: Request):
    engine = get_policy_engine(request)
    body = export_policy_csv(engine.adapter)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return PlainTextResponse(
        body,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="armory_policy_{stamp}.csv"'},
    )


@router.post("/import")
@require_permission(RESOURCE_PERMISSIONS, ACTION_MANAGE)
async def import_policy(request: Request):
    engine = get_policy_engine(request)
    form = await request.form()
    csv_text = str(form.get("csv_text", "") or "")
    if not csv_text.strip():
        add_flash(request, "Paste at least one policy line to import.", "error")
        return _redirect()

    try:
        inserted = engine.write_then_reload(lambda: import_policy_csv(engine.adapter, csv_text))
    except ValueError as exc:
        add_flash(request, str(exc), "error")
        return _redirect()
    except PolicyLoadError:
        return _reload_failed(request)
    except Exception as exc:
        LOGGER.warning("Policy CSV import failed.", exc_info=True)
        add_flash(request, f"Could not import policy: {exc}", "error")
        return _redirect()

    _audit(request, "policy_csv_import", inserted=inserted)
    add_flash(request, f"Imported {inserted} rule(s).", "success")
    return _redirect()
