from __future__ import annotations

import sys
from pathlib import Path

import pytest

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from armory_app.core.config import AppConfig  # noqa: E402
from armory_app.web.app import create_app  # noqa: E402
from armory_app.web.core.runtime import get_config  # noqa: E402


def _clear_mode_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "ARMORY_ENV",
        "ARMORY_TEST_USER",
        "ARMORY_LOCAL_DB_PATH",
        "ARMORY_ROLE_MAX_DEPTH",
        "ARMORY_POLICY_LOAD_TIMEOUT_SEC",
        "ARMORY_SEED_DEFAULT_POLICIES",
        "ARMORY_BOOTSTRAP_ADMIN",
        "ARMORY_SESSION_SECRET",
        "ARMORY_ALLOW_DEFAULT_SESSION_SECRET",
    ):
        monkeypatch.delenv(key, raising=False)


def test_defaults_to_dev_with_seeding_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_mode_env(monkeypatch)

    config = AppConfig.from_env()

    assert config.env == "dev"
    assert config.is_dev_env is True
    assert config.seed_default_policies is True
    assert config.role_max_depth == 10
    assert config.local_db_path.endswith(str(Path("setup") / "local_db" / "armory_local.db"))
    assert Path(config.local_db_path).is_absolute()


def test_prod_rejects_test_user(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_mode_env(monkeypatch)
    monkeypatch.setenv("ARMORY_ENV", "prod")
    monkeypatch.setenv("ARMORY_TEST_USER", "admin@example.com")

    with pytest.raises(RuntimeError):
        AppConfig.from_env()


def test_policy_settings_are_read_and_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_mode_env(monkeypatch)
    monkeypatch.setenv("ARMORY_ROLE_MAX_DEPTH", "0")
    monkeypatch.setenv("ARMORY_POLICY_LOAD_TIMEOUT_SEC", "2.5")
    monkeypatch.setenv("ARMORY_SEED_DEFAULT_POLICIES", "false")
    monkeypatch.setenv("ARMORY_BOOTSTRAP_ADMIN", "Root@Example.com")

    config = AppConfig.from_env()

    assert config.role_max_depth == 1
    assert config.policy_load_timeout_sec == 2.5
    assert config.seed_default_policies is False
    assert config.bootstrap_admin == "root@example.com"


def test_prod_requires_non_default_session_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    _clear_mode_env(monkeypatch)
    monkeypatch.setenv("ARMORY_ENV", "prod")
    get_config.cache_clear()

    try:
        with pytest.raises(RuntimeError):
            create_app()
    finally:
        get_config.cache_clear()
