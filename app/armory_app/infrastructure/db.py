from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
import logging
from pathlib import Path
import re
import sqlite3
import time
from typing import Any, Iterable, Iterator, Sequence

import pandas as pd

from armory_app.core.config import AppConfig
from armory_app.core.env import ARMORY_SLOW_QUERY_MS, get_env_float

SQL_LOGGER = logging.getLogger("armory_app.sql")
_WHITESPACE = re.compile(r"\s+")


class DataConnectionError(RuntimeError):
    """Raised when a database connection cannot be established."""


class DataQueryError(RuntimeError):
    """Raised when a query operation fails."""


class DataExecutionError(RuntimeError):
    """Raised when a non-query execution fails."""


class DataIntegrityError(DataExecutionError):
    """Raised when a write violates a uniqueness or other integrity constraint."""


def _statement_label(statement: str, max_len: int = 120) -> str:
    compact = _WHITESPACE.sub(" ", statement).strip()
    return compact if len(compact) <= max_len else f"{compact[: max_len - 3]}..."


class SQLiteClient:
    """Thin sqlite3 wrapper for the policy rule table.

    Reads come back as DataFrames, writes run as one transaction per batch, and
    sqlite errors surface as the ``Data*Error`` family above.
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.slow_query_ms = get_env_float(ARMORY_SLOW_QUERY_MS, default=750.0, min_value=1.0)

    @property
    def db_path(self) -> Path:
        return Path(self.config.local_db_path).resolve()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        db_path = self.db_path
        if not db_path.exists():
            raise DataConnectionError(
                f"Local DB not found: {db_path}. Run `python setup/local_db/init_local_db.py --reset` first."
            )
        try:
            conn = sqlite3.connect(str(db_path), timeout=float(self.config.db_busy_timeout_sec))
        except sqlite3.Error as exc:
            raise DataConnectionError(f"Failed to connect to local SQLite DB at {db_path}.") from exc
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _prepare(statement: str, params: Iterable[Any] | None) -> tuple[str, tuple[Any, ...]]:
        text = str(statement or "").lstrip("\ufeff").replace("%s", "?")
        values = tuple(
            value.isoformat() if isinstance(value, (datetime, date)) else value
            for value in (params or ())
        )
        return text, values

    def _log_if_slow(self, operation: str, statement: str, started: float, rows: int) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        if elapsed_ms < self.slow_query_ms:
            return
        SQL_LOGGER.warning(
            "Slow policy SQL. op=%s ms=%.2f rows=%s sql=%s",
            operation,
            elapsed_ms,
            rows,
            _statement_label(statement),
            extra={
                "event": "slow_policy_sql",
                "operation": operation,
                "elapsed_ms": round(elapsed_ms, 2),
                "rows": rows,
            },
        )

    def query(self, statement: str, params: Iterable[Any] | None = None) -> pd.DataFrame:
        text, values = self._prepare(statement, params)
        started = time.perf_counter()
        with self._connection() as conn:
            try:
                cursor = conn.execute(text, values)
                columns = [desc[0] for desc in cursor.description or ()]
                frame = pd.DataFrame(cursor.fetchall(), columns=columns)
            except Exception as exc:
                raise DataQueryError("Query execution failed.") from exc
        self._log_if_slow("query", text, started, len(frame.index))
        return frame

    def execute(self, statement: str, params: Iterable[Any] | None = None) -> int:
        return self.execute_batch([(statement, params)])

    def execute_batch(self, statements: Sequence[tuple[str, Iterable[Any] | None]]) -> int:
        """Run every statement in one transaction and return the total affected row count."""
        prepared = [self._prepare(statement, params) for statement, params in statements]
        if not prepared:
            return 0
        started = time.perf_counter()
        affected = 0
        with self._connection() as conn:
            try:
                for text, values in prepared:
                    affected += max(0, conn.execute(text, values).rowcount or 0)
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise DataIntegrityError("Statement violated an integrity constraint.") from exc
            except Exception as exc:
                conn.rollback()
                raise DataExecutionError("Statement execution failed.") from exc
        self._log_if_slow("execute" if len(prepared) == 1 else "execute_batch", prepared[0][0], started, affected)
        return affected
