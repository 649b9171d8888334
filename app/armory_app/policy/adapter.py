from __future__ import annotations

import logging
from typing import Iterable

from armory_app.core.errors import RuleNotFoundError
from armory_app.core.rules import (
    PTYPE_GROUPING,
    PTYPE_PERMISSION,
    PTYPES,
    RULE_COLUMNS,
    VALUE_COLUMNS,
    PolicyRule,
    rule_from_row,
    rule_params,
    rule_sort_key,
)
from armory_app.policy.rule_store import RuleStore

LOGGER = logging.getLogger(__name__)


class PolicyAdapter:
    """Translates between stored rule rows and in-memory rules."""

    def __init__(self, store: RuleStore) -> None:
        self.store = store

    def load_all_rules(self) -> list[PolicyRule]:
        frame = self.store.find_all()
        if frame.empty:
            return []
        rules = [rule_from_row(row) for row in frame.to_dict(orient="records")]
        rules.sort(key=rule_sort_key)
        return rules

    def save_policy(self, rules: Iterable[PolicyRule]) -> int:
        ordered = sorted(set(rules), key=rule_sort_key)
        return self.store.replace_all(ordered)

    def add_rule(self, rule: PolicyRule) -> None:
        self.store.insert(rule)
        LOGGER.info(
            "Policy rule added. ptype=%s values=%s",
            rule.ptype,
            ",".join(rule.values()),
            extra={"event": "policy_rule_added", "ptype": rule.ptype, "rule_values": list(rule.values())},
        )

    def add_rules(self, rules: Iterable[PolicyRule]) -> int:
        return self.store.insert_many(rules)

    def has_rule(self, rule: PolicyRule) -> bool:
        return self.store.contains(rule)

    def remove_rule(self, rule: PolicyRule, *, missing_ok: bool = True) -> int:
        deleted = self.store.delete(**dict(zip(RULE_COLUMNS, rule_params(rule))))
        if deleted == 0 and not missing_ok:
            raise RuleNotFoundError(f"Rule not found: {rule}")
        if deleted:
            LOGGER.info(
                "Policy rule removed. ptype=%s values=%s",
                rule.ptype,
                ",".join(rule.values()),
                extra={"event": "policy_rule_removed", "ptype": rule.ptype, "rule_values": list(rule.values())},
            )
        return deleted

    @staticmethod
    def _field_filters(ptype: str, field_index: int, field_values: tuple[str, ...]) -> dict[str, str]:
        if ptype not in PTYPES:
            raise ValueError(f"Unknown rule type: {ptype!r}")
        if field_index < 0 or field_index + len(field_values) > len(VALUE_COLUMNS):
            raise ValueError("Field filter does not fit the v0..v5 columns.")
        filters = {"ptype": ptype}
        for offset, value in enumerate(field_values):
            text = str(value or "").strip()
            # empty positions are wildcards
            if text:
                filters[VALUE_COLUMNS[field_index + offset]] = text
        return filters

    def remove_filtered(self, ptype: str, field_index: int, *field_values: str) -> int:
        """Delete rules of ``ptype`` whose fields starting at ``field_index`` match ``field_values``."""
        filters = self._field_filters(ptype, field_index, field_values)
        deleted = self.store.delete(**filters)
        LOGGER.info(
            "Filtered policy rules removed. ptype=%s field_index=%s deleted=%s",
            ptype,
            field_index,
            deleted,
            extra={
                "event": "policy_rules_filtered_removed",
                "ptype": ptype,
                "field_index": field_index,
                "deleted": deleted,
            },
        )
        return deleted

    def count(self, ptype: str, field_index: int = 0, *field_values: str) -> int:
        return self.store.count(**self._field_filters(ptype, field_index, field_values))

    def replace_role_permissions(self, role: str, rules: Iterable[PolicyRule]) -> int:
        return self.store.replace_where({"ptype": PTYPE_PERMISSION, "v0": role}, rules)

    def remove_role(self, role: str) -> int:
        """Delete the role's permission rules and every assignment of it."""
        return self.store.delete_any(
            [
                {"ptype": PTYPE_PERMISSION, "v0": role},
                {"ptype": PTYPE_GROUPING, "v1": role},
            ]
        )
