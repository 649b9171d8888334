from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest


def _init_local_db(db_path: Path) -> None:
    repo_root = Path(__file__).resolve().parents[1]
    init_script = repo_root / "setup" / "local_db" / "init_local_db.py"
    result = subprocess.run(
        [
            sys.executable,
            str(init_script),
            "--db-path",
            str(db_path),
            "--reset",
        ],
        capture_output=True,
        text=True,
        cwd=str(repo_root),
        check=False,
    )
    if result.returncode != 0:
        raise RuntimeError(
            "Failed to initialize isolated local DB for tests.\n"
            f"stdout:\n{result.stdout}\n"
            f"stderr:\n{result.stderr}"
        )


@pytest.fixture()
def isolated_local_db(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    db_path = tmp_path / "armory_local.db"
    _init_local_db(db_path)

    monkeypatch.setenv("ARMORY_ENV", "dev")
    monkeypatch.setenv("ARMORY_LOCAL_DB_PATH", str(db_path))
    monkeypatch.setenv("ARMORY_LOCAL_DB_AUTO_INIT", "false")
    monkeypatch.setenv("ARMORY_TEST_USER", "admin@example.com")
    monkeypatch.setenv("ARMORY_BOOTSTRAP_ADMIN", "admin@example.com")
    monkeypatch.setenv("ARMORY_SESSION_SECRET", "test-session-secret")
    monkeypatch.delenv("ARMORY_SEED_DEFAULT_POLICIES", raising=False)
    monkeypatch.delenv("ARMORY_TRUST_FORWARDED_IDENTITY_HEADERS", raising=False)
    return db_path
