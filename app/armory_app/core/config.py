from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from armory_app.core.defaults import (
    DEFAULT_DB_BUSY_TIMEOUT_SEC,
    DEFAULT_DEV_ENV_NAMES,
    DEFAULT_ENV_NAME,
    DEFAULT_LOCAL_DB_PATH,
    DEFAULT_POLICY_LOAD_TIMEOUT_SEC,
    DEFAULT_ROLE_MAX_DEPTH,
    DEFAULT_SESSION_SECRET,
)
from armory_app.core.env import (
    ARMORY_BOOTSTRAP_ADMIN,
    ARMORY_DB_BUSY_TIMEOUT_SEC,
    ARMORY_ENV,
    ARMORY_LOCAL_DB_PATH,
    ARMORY_POLICY_LOAD_TIMEOUT_SEC,
    ARMORY_ROLE_MAX_DEPTH,
    ARMORY_SEED_DEFAULT_POLICIES,
    ARMORY_SESSION_SECRET,
    ARMORY_TEST_USER,
    get_env,
    get_env_bool,
    get_env_float,
    get_env_int,
)


DEV_ENV_NAMES = set(DEFAULT_DEV_ENV_NAMES)


def _repo_root() -> Path:
    # app/armory_app/core/config.py -> repo root
    # parents[0]=core, [1]=armory_app, [2]=app, [3]=repo root
    return Path(__file__).resolve().parents[3]


def _resolve_repo_relative_path(raw_path: str) -> str:
    value = str(raw_path or "").strip()
    if not value:
        return value
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str((_repo_root() / path).resolve())


@dataclass(frozen=True)
class AppConfig:
    env: str = DEFAULT_ENV_NAME
    local_db_path: str = DEFAULT_LOCAL_DB_PATH
    db_busy_timeout_sec: float = DEFAULT_DB_BUSY_TIMEOUT_SEC
    policy_load_timeout_sec: float = DEFAULT_POLICY_LOAD_TIMEOUT_SEC
    role_max_depth: int = DEFAULT_ROLE_MAX_DEPTH
    seed_default_policies: bool = True
    bootstrap_admin: str = ""
    session_secret: str = DEFAULT_SESSION_SECRET
    test_user: str = ""

    @property
    def is_dev_env(self) -> bool:
        return self.env in DEV_ENV_NAMES

    @property
    def uses_default_session_secret(self) -> bool:
        return self.session_secret == DEFAULT_SESSION_SECRET

    @staticmethod
    def from_env() -> "AppConfig":
        env_name = get_env(ARMORY_ENV, DEFAULT_ENV_NAME).lower() or DEFAULT_ENV_NAME
        test_user = get_env(ARMORY_TEST_USER).lower()
        if test_user and env_name not in DEV_ENV_NAMES:
            raise RuntimeError(
                "ARMORY_TEST_USER is allowed only for dev/local environments. "
                "Set ARMORY_ENV=dev (or local), or unset ARMORY_TEST_USER."
            )
        return AppConfig(
            env=env_name,
            local_db_path=_resolve_repo_relative_path(
                get_env(ARMORY_LOCAL_DB_PATH, DEFAULT_LOCAL_DB_PATH)
            ),
            db_busy_timeout_sec=get_env_float(
                ARMORY_DB_BUSY_TIMEOUT_SEC,
                default=DEFAULT_DB_BUSY_TIMEOUT_SEC,
                min_value=0.1,
            ),
            policy_load_timeout_sec=get_env_float(
                ARMORY_POLICY_LOAD_TIMEOUT_SEC,
                default=DEFAULT_POLICY_LOAD_TIMEOUT_SEC,
                min_value=0.1,
            ),
            role_max_depth=get_env_int(
                ARMORY_ROLE_MAX_DEPTH,
                default=DEFAULT_ROLE_MAX_DEPTH,
                min_value=1,
                max_value=100,
            ),
            seed_default_policies=get_env_bool(ARMORY_SEED_DEFAULT_POLICIES, default=True),
            bootstrap_admin=get_env(ARMORY_BOOTSTRAP_ADMIN).lower(),
            session_secret=get_env(ARMORY_SESSION_SECRET, DEFAULT_SESSION_SECRET) or DEFAULT_SESSION_SECRET,
            test_user=test_user,
        )
