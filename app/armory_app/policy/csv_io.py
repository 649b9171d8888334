from __future__ import annotations

import csv
import io
import logging

from armory_app.core.errors import DuplicateRuleError, MalformedRuleError
from armory_app.core.rules import PolicyRule, make_rule
from armory_app.policy.adapter import PolicyAdapter

LOGGER = logging.getLogger(__name__)


def format_policy_line(rule: PolicyRule) -> str:
    return ", ".join((rule.ptype, *rule.values()))


def parse_policy_lines(text: str) -> list[PolicyRule]:
    """Parse ``ptype, v0, v1, ...`` lines. Blank lines and ``#`` comments are skipped."""
    rules: list[PolicyRule] = []
    stream = io.StringIO(str(text or ""))
    reader = csv.reader(stream, skipinitialspace=True)
    for line_number, raw_row in enumerate(reader, start=1):
        fields = [str(value or "").strip() for value in raw_row]
        if not fields or not any(fields):
            continue
        if fields[0].startswith("#"):
            continue
        if len(fields) < 2:
            continue
        try:
            rules.append(make_rule(fields[0], *fields[1:]))
        except MalformedRuleError as exc:
            raise ValueError(f"Line {line_number}: {exc}") from exc
    return rules


def export_policy_csv(adapter: PolicyAdapter) -> str:
    lines = [format_policy_line(rule) for rule in adapter.load_all_rules()]
    return "\n".join(lines) + ("\n" if lines else "")


def import_policy_csv(adapter: PolicyAdapter, text: str) -> int:
    """Add every parsed rule that is not stored yet. Returns the number inserted."""
    inserted = 0
    skipped = 0
    for rule in parse_policy_lines(text):
        if adapter.has_rule(rule):
            skipped += 1
            continue
        try:
            adapter.add_rule(rule)
        except DuplicateRuleError:
            skipped += 1
            continue
        inserted += 1
    LOGGER.info(
        "Policy CSV imported. inserted=%s skipped=%s",
        inserted,
        skipped,
        extra={"event": "policy_csv_imported", "inserted": inserted, "skipped": skipped},
    )
    return inserted
