from __future__ import annotations


class SchemaBootstrapRequiredError(RuntimeError):
    """Raised when the policy rule table is missing or inaccessible."""


class DuplicateRuleError(ValueError):
    """Raised when a rule with the same natural key is already stored."""

    def __init__(self, rule: object) -> None:
        super().__init__(f"Rule already exists: {rule}")
        self.rule = rule


class RuleNotFoundError(LookupError):
    """Raised when a delete was required to match at least one rule and matched none."""


class MalformedRuleError(ValueError):
    """Raised when a stored row cannot be mapped to a grouping or permission rule."""


class PolicyLoadError(RuntimeError):
    """Raised when the rule set cannot be read into a fresh enforcement snapshot."""


class PolicySeedError(RuntimeError):
    """Raised when default policies cannot be written at startup."""
