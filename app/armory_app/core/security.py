from __future__ import annotations

WILDCARD = "*"

ROLE_ADMIN = "admin"
ROLE_EDITOR = "editor"
ROLE_VIEWER = "viewer"
BUILTIN_ROLES = (ROLE_ADMIN, ROLE_EDITOR, ROLE_VIEWER)
# Holding this role allows every object/action pair.
SUPERUSER_ROLE = ROLE_ADMIN

ACTION_READ = "read"
ACTION_CREATE = "create"
ACTION_WRITE = "write"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_MANAGE = "manage"
PERMISSION_ACTIONS = (
    ACTION_READ,
    ACTION_CREATE,
    ACTION_WRITE,
    ACTION_UPDATE,
    ACTION_DELETE,
    ACTION_MANAGE,
    WILDCARD,
)

RESOURCE_PERMISSIONS = "permissions"
PERMISSION_RESOURCES = (
    "manufacturers",
    "calibers",
    "weapon_types",
    "promotions",
    "feature_flags",
    "owners",
    "stripe_security",
    "dashboard",
    "users",
    "payments",
    "guns",
    RESOURCE_PERMISSIONS,
    WILDCARD,
)
