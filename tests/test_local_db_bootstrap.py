from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from armory_app.core.config import AppConfig  # noqa: E402
from armory_app.infrastructure.local_db_bootstrap import (  # noqa: E402
    LocalDbBootstrapError,
    ensure_local_db_ready,
    initialize_local_db,
    verify_policy_schema,
)


def test_initialize_creates_rule_table_with_natural_key_index(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "armory.db"

    result = initialize_local_db(db_path)

    assert result.db_path == db_path.resolve()
    assert result.scripts_applied >= 1
    assert result.rule_count == 0
    with sqlite3.connect(db_path) as conn:
        assert verify_policy_schema(conn) == []
        conn.execute("INSERT INTO casbin_rule (ptype, v0, v1) VALUES ('g', 'alice', 'admin')")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("INSERT INTO casbin_rule (ptype, v0, v1) VALUES ('g', 'alice', 'admin')")


def test_initialize_keeps_rules_unless_reset(tmp_path: Path) -> None:
    db_path = tmp_path / "armory.db"
    initialize_local_db(db_path)
    with sqlite3.connect(db_path) as conn:
        conn.execute("INSERT INTO casbin_rule (ptype, v0, v1) VALUES ('g', 'alice', 'admin')")

    assert initialize_local_db(db_path).rule_count == 1
    assert initialize_local_db(db_path, reset=True).rule_count == 0


def test_outdated_table_fails_verification(tmp_path: Path) -> None:
    db_path = tmp_path / "armory.db"
    with sqlite3.connect(db_path) as conn:
        conn.execute("CREATE TABLE casbin_rule (id INTEGER PRIMARY KEY, ptype TEXT, v0 TEXT, v1 TEXT)")

    with pytest.raises(LocalDbBootstrapError, match="v2"):
        initialize_local_db(db_path)


def test_empty_schema_folder_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(LocalDbBootstrapError, match="No schema SQL files"):
        initialize_local_db(tmp_path / "armory.db", schema_dir=tmp_path)


def test_ensure_ready_only_creates_missing_database(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    db_path = tmp_path / "armory.db"
    config = AppConfig(local_db_path=str(db_path))
    monkeypatch.delenv("ARMORY_LOCAL_DB_RESET_ON_START", raising=False)

    monkeypatch.setenv("ARMORY_LOCAL_DB_AUTO_INIT", "false")
    assert ensure_local_db_ready(config) is None
    assert not db_path.exists()

    monkeypatch.setenv("ARMORY_LOCAL_DB_AUTO_INIT", "true")
    created = ensure_local_db_ready(config)
    assert created is not None
    assert db_path.exists()
    assert ensure_local_db_ready(config) is None
