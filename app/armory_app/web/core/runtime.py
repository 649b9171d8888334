from __future__ import annotations

from functools import lru_cache

from fastapi import Request

from armory_app.core.config import AppConfig
from armory_app.core.env import ARMORY_TRUST_FORWARDED_IDENTITY_HEADERS, get_env_bool
from armory_app.policy.engine import EnforcementEngine


@lru_cache(maxsize=1)
def _base_config() -> AppConfig:
    return AppConfig.from_env()


def get_config() -> AppConfig:
    return _base_config()


def _clear_base_config_cache() -> None:
    _base_config.cache_clear()


get_config.cache_clear = _clear_base_config_cache  # type: ignore[attr-defined]


def get_policy_engine(request: Request) -> EnforcementEngine:
    engine = getattr(request.app.state, "policy_engine", None)
    if engine is None:
        raise RuntimeError("Policy engine is not attached to this application.")
    return engine


def trust_forwarded_identity_headers(config: AppConfig) -> bool:
    is_dev_env = bool(getattr(config, "is_dev_env", False))
    return get_env_bool(
        ARMORY_TRUST_FORWARDED_IDENTITY_HEADERS,
        default=is_dev_env,
    )
