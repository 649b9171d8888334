from __future__ import annotations

from functools import lru_cache
import logging
from pathlib import Path
from typing import Any, Iterable

import pandas as pd

from armory_app.core.config import AppConfig
from armory_app.core.defaults import DEFAULT_POLICY_RULE_TABLE
from armory_app.core.errors import DuplicateRuleError, SchemaBootstrapRequiredError
from armory_app.core.rules import RULE_COLUMNS, PolicyRule, rule_params
from armory_app.infrastructure.db import (
    DataConnectionError,
    DataIntegrityError,
    DataQueryError,
    SQLiteClient,
)

LOGGER = logging.getLogger(__name__)


class RuleStore:
    """Durable storage for policy rule rows.

    Every row is ``(ptype, v0..v5)`` with empty strings for unused positions.
    A unique index over all seven columns keeps the rule set free of duplicates.
    """

    def __init__(self, config: AppConfig, client: SQLiteClient | None = None) -> None:
        self.config = config
        self.client = client or SQLiteClient(config)
        self.rule_table = DEFAULT_POLICY_RULE_TABLE

    @staticmethod
    @lru_cache(maxsize=32)
    def _read_sql_file(path_str: str) -> str:
        path = Path(path_str)
        if not path.exists():
            raise FileNotFoundError(f"SQL file not found: {path}")
        return path.read_text(encoding="utf-8")

    def _sql(self, relative_path: str, **format_args: Any) -> str:
        sql_root = Path(__file__).resolve().parents[1] / "sql"
        sql_path = (sql_root / relative_path).resolve()
        template = self._read_sql_file(str(sql_path))
        return template.format(rule_table=self.rule_table, **format_args)

    def _query_file(
        self,
        relative_path: str,
        *,
        params: tuple | None = None,
        **format_args: Any,
    ) -> pd.DataFrame:
        statement = self._sql(relative_path, **format_args)
        return self.client.query(statement, params)

    def _execute_file(
        self,
        relative_path: str,
        *,
        params: tuple | None = None,
        **format_args: Any,
    ) -> int:
        statement = self._sql(relative_path, **format_args)
        return self.client.execute(statement, params)

    @staticmethod
    def _where_clause(filters: dict[str, Any]) -> tuple[str, tuple[str, ...]]:
        unknown = sorted(set(filters) - set(RULE_COLUMNS))
        if unknown:
            raise ValueError(f"Unknown policy rule column(s): {', '.join(unknown)}")
        columns = [column for column in RULE_COLUMNS if column in filters]
        if not columns:
            return "", ()
        clause = "WHERE " + " AND ".join(f"{column} = %s" for column in columns)
        params = tuple(str(filters[column] or "").strip() for column in columns)
        return clause, params

    def ensure_schema(self) -> None:
        try:
            self._query_file("queries/probe_policy_table.sql")
        except (DataQueryError, DataConnectionError) as exc:
            raise SchemaBootstrapRequiredError(
                f"Policy rule table `{self.rule_table}` is missing or unreadable. "
                "Run `python setup/local_db/init_local_db.py` first."
            ) from exc

    def insert(self, rule: PolicyRule) -> None:
        try:
            self._execute_file("inserts/insert_policy_rule.sql", params=rule_params(rule))
        except DataIntegrityError as exc:
            raise DuplicateRuleError(rule) from exc

    def insert_many(self, rules: Iterable[PolicyRule]) -> int:
        statement = self._sql("inserts/insert_policy_rule.sql")
        batch = [(statement, rule_params(rule)) for rule in rules]
        try:
            return self.client.execute_batch(batch)
        except DataIntegrityError as exc:
            raise DuplicateRuleError("one or more rules in batch") from exc

    def delete(self, **filters: str) -> int:
        if not filters:
            raise ValueError("delete() needs at least one column filter; use delete_all() to clear the table.")
        where_clause, params = self._where_clause(filters)
        return self._execute_file("deletes/delete_policy_rules.sql", params=params, where_clause=where_clause)

    def delete_all(self) -> int:
        return self._execute_file("deletes/delete_policy_rules.sql", where_clause="")

    def find_all(self) -> pd.DataFrame:
        return self._query_file("queries/select_policy_rules.sql", where_clause="")

    def find(self, **filters: str) -> pd.DataFrame:
        where_clause, params = self._where_clause(filters)
        return self._query_file("queries/select_policy_rules.sql", params=params, where_clause=where_clause)

    def count(self, **filters: str) -> int:
        where_clause, params = self._where_clause(filters)
        frame = self._query_file("queries/count_policy_rules.sql", params=params, where_clause=where_clause)
        if frame.empty:
            return 0
        return int(frame.iloc[0]["rule_count"])

    def contains(self, rule: PolicyRule) -> bool:
        return self.count(**dict(zip(RULE_COLUMNS, rule_params(rule)))) > 0

    def replace_all(self, rules: Iterable[PolicyRule]) -> int:
        """Swap the whole table for ``rules`` in one transaction. Returns rows inserted."""
        unique_rules = list(dict.fromkeys(rules))
        delete_statement = self._sql("deletes/delete_policy_rules.sql", where_clause="")
        insert_statement = self._sql("inserts/insert_policy_rule.sql")
        batch: list[tuple[str, tuple | None]] = [(delete_statement, None)]
        batch.extend((insert_statement, rule_params(rule)) for rule in unique_rules)
        self.client.execute_batch(batch)
        LOGGER.info(
            "Policy rule table replaced. rules=%s",
            len(unique_rules),
            extra={"event": "policy_rules_replaced", "rule_count": len(unique_rules)},
        )
        return len(unique_rules)

    def replace_where(self, filters: dict[str, str], rules: Iterable[PolicyRule]) -> int:
        """Delete rows matching ``filters`` and insert ``rules`` in one transaction."""
        if not filters:
            raise ValueError("replace_where() needs at least one column filter.")
        where_clause, params = self._where_clause(filters)
        delete_statement = self._sql("deletes/delete_policy_rules.sql", where_clause=where_clause)
        insert_statement = self._sql("inserts/insert_policy_rule.sql")
        unique_rules = list(dict.fromkeys(rules))
        batch: list[tuple[str, tuple | None]] = [(delete_statement, params)]
        batch.extend((insert_statement, rule_params(rule)) for rule in unique_rules)
        try:
            self.client.execute_batch(batch)
        except DataIntegrityError as exc:
            raise DuplicateRuleError("one or more rules in batch") from exc
        return len(unique_rules)

    def delete_any(self, filter_sets: Iterable[dict[str, str]]) -> int:
        """Delete rows matching any of ``filter_sets`` in one transaction."""
        batch: list[tuple[str, tuple | None]] = []
        for filters in filter_sets:
            if not filters:
                raise ValueError("delete_any() filters must not be empty.")
            where_clause, params = self._where_clause(filters)
            batch.append((self._sql("deletes/delete_policy_rules.sql", where_clause=where_clause), params))
        return self.client.execute_batch(batch)
