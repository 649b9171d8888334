"""Authorization policy storage, loading and enforcement."""

from armory_app.policy.adapter import PolicyAdapter
from armory_app.policy.engine import EnforcementEngine, EnforcementSnapshot, EngineState
from armory_app.policy.importer import DEFAULT_POLICIES, import_default_policies
from armory_app.policy.rule_store import RuleStore

__all__ = [
    "DEFAULT_POLICIES",
    "EnforcementEngine",
    "EnforcementSnapshot",
    "EngineState",
    "PolicyAdapter",
    "RuleStore",
    "import_default_policies",
]
