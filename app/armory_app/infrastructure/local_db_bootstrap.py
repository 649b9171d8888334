from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import sqlite3

from armory_app.core.config import AppConfig
from armory_app.core.env import (
    ARMORY_LOCAL_DB_AUTO_INIT,
    ARMORY_LOCAL_DB_RESET_ON_START,
    get_env_bool,
)

LOGGER = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parents[1] / "sql" / "schema"
POLICY_TABLE = "casbin_rule"
POLICY_COLUMNS = ("id", "ptype", "v0", "v1", "v2", "v3", "v4", "v5")
POLICY_INDEXES = ("idx_casbin_rule_natural_key",)


class LocalDbBootstrapError(RuntimeError):
    """Raised when the local policy database cannot be created or fails verification."""


@dataclass(frozen=True)
class BootstrapResult:
    db_path: Path
    scripts_applied: int
    rule_count: int


def schema_files(schema_dir: Path = SCHEMA_DIR) -> list[Path]:
    files = sorted(path for path in schema_dir.glob("*.sql") if path.is_file())
    if not files:
        raise LocalDbBootstrapError(f"No schema SQL files found in {schema_dir}")
    return files


def verify_policy_schema(conn: sqlite3.Connection) -> list[str]:
    """Return what is missing from the policy table; an empty list means the schema is usable."""
    columns = {str(row[1]).lower() for row in conn.execute(f"PRAGMA table_info({POLICY_TABLE})")}
    if not columns:
        return [f"missing table: {POLICY_TABLE}"]
    problems = [f"{POLICY_TABLE} missing column: {name}" for name in POLICY_COLUMNS if name not in columns]
    indexes = {
        str(row[0]).lower()
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ?", (POLICY_TABLE,))
    }
    problems.extend(f"missing index: {name}" for name in POLICY_INDEXES if name not in indexes)
    return problems


def initialize_local_db(db_path: Path, *, reset: bool = False, schema_dir: Path = SCHEMA_DIR) -> BootstrapResult:
    db_path = Path(db_path).resolve()
    if reset and db_path.exists():
        db_path.unlink()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    scripts = schema_files(schema_dir)
    conn = sqlite3.connect(str(db_path))
    try:
        for script in scripts:
            try:
                conn.executescript(script.read_text(encoding="utf-8"))
            except sqlite3.Error as exc:
                raise LocalDbBootstrapError(
                    f"Schema script {script.name} failed: {exc}. Rebuild the DB with --reset."
                ) from exc
        conn.commit()
        problems = verify_policy_schema(conn)
        if problems:
            raise LocalDbBootstrapError(
                "Local policy schema is out of date. Rebuild it with --reset. Details: " + "; ".join(problems)
            )
        rule_count = int(conn.execute(f"SELECT COUNT(*) FROM {POLICY_TABLE}").fetchone()[0])
    finally:
        conn.close()

    LOGGER.info(
        "Local policy DB ready. path=%s scripts=%s rules=%s",
        db_path,
        len(scripts),
        rule_count,
        extra={"event": "local_db_ready", "db_path": str(db_path), "rule_count": rule_count},
    )
    return BootstrapResult(db_path=db_path, scripts_applied=len(scripts), rule_count=rule_count)


def ensure_local_db_ready(config: AppConfig) -> BootstrapResult | None:
    if not get_env_bool(ARMORY_LOCAL_DB_AUTO_INIT, default=True):
        return None
    db_path = Path(config.local_db_path).resolve()
    reset_on_start = get_env_bool(ARMORY_LOCAL_DB_RESET_ON_START, default=False)
    if db_path.exists() and not reset_on_start:
        return None
    return initialize_local_db(db_path, reset=reset_on_start)
