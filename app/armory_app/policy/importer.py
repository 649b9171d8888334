from __future__ import annotations

import logging

from armory_app.core.errors import DuplicateRuleError, PolicySeedError
from armory_app.core.rules import PermissionRule
from armory_app.core.security import ROLE_ADMIN, ROLE_EDITOR, ROLE_VIEWER, WILDCARD
from armory_app.infrastructure.db import DataConnectionError, DataExecutionError, DataQueryError
from armory_app.policy.adapter import PolicyAdapter
from armory_app.policy.engine import EnforcementEngine

LOGGER = logging.getLogger(__name__)

DEFAULT_POLICIES: tuple[PermissionRule, ...] = (
    PermissionRule(ROLE_ADMIN, WILDCARD, WILDCARD),
    PermissionRule(ROLE_EDITOR, "manufacturers", "read"),
    PermissionRule(ROLE_EDITOR, "manufacturers", "create"),
    PermissionRule(ROLE_EDITOR, "manufacturers", "update"),
    PermissionRule(ROLE_EDITOR, "calibers", "read"),
    PermissionRule(ROLE_EDITOR, "calibers", "create"),
    PermissionRule(ROLE_EDITOR, "calibers", "update"),
    PermissionRule(ROLE_EDITOR, "weapon_types", "read"),
    PermissionRule(ROLE_EDITOR, "weapon_types", "create"),
    PermissionRule(ROLE_EDITOR, "weapon_types", "update"),
    PermissionRule(ROLE_EDITOR, "promotions", "read"),
    PermissionRule(ROLE_EDITOR, "feature_flags", "read"),
    PermissionRule(ROLE_EDITOR, "feature_flags", "update"),
    PermissionRule(ROLE_VIEWER, "manufacturers", "read"),
    PermissionRule(ROLE_VIEWER, "calibers", "read"),
    PermissionRule(ROLE_VIEWER, "weapon_types", "read"),
    PermissionRule(ROLE_VIEWER, "feature_flags", "read"),
)


def import_default_policies(adapter: PolicyAdapter) -> int:
    """Insert any baseline rule that is not stored yet. Returns the number inserted.

    Safe to run on every startup: existing rows, including operator edits,
    are never touched.
    """
    inserted = 0
    try:
        for rule in DEFAULT_POLICIES:
            if adapter.has_rule(rule):
                continue
            try:
                adapter.add_rule(rule)
            except DuplicateRuleError:
                # another process seeded it between the check and the insert
                continue
            inserted += 1
    except (DataConnectionError, DataQueryError, DataExecutionError) as exc:
        raise PolicySeedError(f"Default policy import failed after {inserted} insert(s): {exc}") from exc

    LOGGER.info(
        "Default policies imported. inserted=%s baseline=%s",
        inserted,
        len(DEFAULT_POLICIES),
        extra={
            "event": "default_policies_imported",
            "inserted": inserted,
            "baseline_count": len(DEFAULT_POLICIES),
        },
    )
    return inserted


def reset_to_default_policies(engine: EnforcementEngine) -> int:
    """Replace every permission rule with the baseline, keeping role assignments."""
    saved = engine.replace_permission_rules(DEFAULT_POLICIES)
    LOGGER.warning(
        "Policies reset to defaults. rules=%s",
        saved,
        extra={"event": "default_policies_reset", "rule_count": saved},
    )
    return saved


def ensure_bootstrap_admin(engine: EnforcementEngine, subject: str) -> bool:
    subject = str(subject or "").strip().lower()
    if not subject or ROLE_ADMIN in engine.get_roles_for_user(subject):
        return False
    try:
        engine.add_role_for_user(subject, ROLE_ADMIN)
    except DuplicateRuleError:
        return False
    LOGGER.info(
        "Bootstrap admin assigned. subject=%s",
        subject,
        extra={"event": "bootstrap_admin_assigned", "subject": subject},
    )
    return True
