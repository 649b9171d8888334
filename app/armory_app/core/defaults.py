from __future__ import annotations

# Environment and config defaults
DEFAULT_ENV_NAME = "dev"
DEFAULT_DEV_ENV_NAMES = ("dev", "development", "local")
DEFAULT_LOCAL_DB_PATH = "setup/local_db/armory_local.db"
DEFAULT_SESSION_SECRET = "virtual-armory-dev-secret"
DEFAULT_DB_BUSY_TIMEOUT_SEC = 5.0

# Policy engine defaults
DEFAULT_POLICY_LOAD_TIMEOUT_SEC = 10.0
# Matches casbin's default role manager max_hierarchy_level.
DEFAULT_ROLE_MAX_DEPTH = 10
DEFAULT_POLICY_RULE_TABLE = "casbin_rule"

# Web/router defaults
DEFAULT_PERMISSIONS_PATH = "/admin/permissions"
DEFAULT_LOGIN_REDIRECT_PATH = "/"
