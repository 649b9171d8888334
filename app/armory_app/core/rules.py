"""Policy rule model.

Rules live in memory as a tagged variant (``GroupingRule`` or ``PermissionRule``)
and on disk as positional ``(ptype, v0..v5)`` rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Union

import pandas as pd

from armory_app.core.errors import MalformedRuleError

PTYPE_GROUPING = "g"
PTYPE_PERMISSION = "p"
PTYPES = (PTYPE_GROUPING, PTYPE_PERMISSION)
VALUE_COLUMNS = ("v0", "v1", "v2", "v3", "v4", "v5")
RULE_COLUMNS = ("ptype",) + VALUE_COLUMNS


def _clean(value: Any) -> str:
    # Only a real missing cell is empty; the strings "none" and "nan" are valid names.
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value).strip()


@dataclass(frozen=True, order=True)
class GroupingRule:
    subject: str
    role: str

    ptype = PTYPE_GROUPING

    def values(self) -> tuple[str, ...]:
        return (self.subject, self.role)


@dataclass(frozen=True, order=True)
class PermissionRule:
    subject: str
    obj: str
    action: str

    ptype = PTYPE_PERMISSION

    def values(self) -> tuple[str, ...]:
        return (self.subject, self.obj, self.action)


PolicyRule = Union[GroupingRule, PermissionRule]


def make_rule(ptype: str, *values: str) -> PolicyRule:
    kind = _clean(ptype).lower()
    fields = [_clean(value) for value in values]
    while fields and not fields[-1]:
        fields.pop()
    if kind == PTYPE_GROUPING:
        if len(fields) < 2 or not fields[0] or not fields[1]:
            raise MalformedRuleError(f"Grouping rule needs subject and role: {values!r}")
        return GroupingRule(subject=fields[0], role=fields[1])
    if kind == PTYPE_PERMISSION:
        if len(fields) < 3 or not all(fields[:3]):
            raise MalformedRuleError(f"Permission rule needs subject, object and action: {values!r}")
        return PermissionRule(subject=fields[0], obj=fields[1], action=fields[2])
    raise MalformedRuleError(f"Unknown rule type: {ptype!r}")


def rule_from_row(row: Mapping[str, Any]) -> PolicyRule:
    return make_rule(
        _clean(row.get("ptype")),
        *(_clean(row.get(column)) for column in VALUE_COLUMNS),
    )


def rule_to_row(rule: PolicyRule) -> dict[str, str]:
    values = list(rule.values())
    values.extend([""] * (len(VALUE_COLUMNS) - len(values)))
    row = {"ptype": rule.ptype}
    row.update(dict(zip(VALUE_COLUMNS, values)))
    return row


def rule_params(rule: PolicyRule) -> tuple[str, ...]:
    row = rule_to_row(rule)
    return tuple(row[column] for column in RULE_COLUMNS)


def rule_sort_key(rule: PolicyRule) -> tuple[str, ...]:
    return rule_params(rule)


def parse_permission(token: str) -> tuple[str, str]:
    """Split a ``resource:action`` form value into its two parts."""
    text = _clean(token)
    resource, sep, action = text.partition(":")
    resource = resource.strip().lower()
    action = action.strip().lower()
    if not sep or not resource or not action:
        raise ValueError(f"Permission must be in 'resource:action' format: {token!r}")
    return resource, action
