"""In-memory policy enforcement.

The engine answers authorization queries from an immutable
``EnforcementSnapshot``. ``load_policy()`` builds a new snapshot off to the
side and publishes it by swapping a single reference, so readers see either
the old rule set or the new one and never a partial one.

Every write wrapper writes through the adapter and reloads before it
returns; a caller that gets a result back will see its own change on the
next query.
"""

from __future__ import annotations

from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import itertools
import logging
import threading
import time
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, TypeVar

from armory_app.core.config import AppConfig
from armory_app.core.defaults import DEFAULT_POLICY_LOAD_TIMEOUT_SEC, DEFAULT_ROLE_MAX_DEPTH
from armory_app.core.errors import (
    DuplicateRuleError,
    MalformedRuleError,
    PolicyLoadError,
    RuleNotFoundError,
)
from armory_app.core.rules import (
    PTYPE_PERMISSION,
    GroupingRule,
    PermissionRule,
    PolicyRule,
)
from armory_app.core.security import SUPERUSER_ROLE, WILDCARD
from armory_app.infrastructure.db import DataConnectionError, DataQueryError
from armory_app.policy.adapter import PolicyAdapter
from armory_app.policy.rule_store import RuleStore

LOGGER = logging.getLogger(__name__)
T = TypeVar("T")


class EngineState(str, Enum):
    UNLOADED = "unloaded"
    LOADED = "loaded"


def _clean(value: Any) -> str:
    return str(value or "").strip()


def _matches(pattern: str, value: str) -> bool:
    return pattern == WILDCARD or pattern == value


@dataclass(frozen=True)
class EnforcementSnapshot:
    generation: int
    loaded_at: datetime
    rule_count: int
    permissions: Mapping[str, tuple[PermissionRule, ...]] = field(default_factory=dict)
    roles: Mapping[str, frozenset[str]] = field(default_factory=dict)
    members: Mapping[str, frozenset[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, rules: Iterable[PolicyRule], *, generation: int) -> "EnforcementSnapshot":
        permissions: dict[str, list[PermissionRule]] = defaultdict(list)
        roles: dict[str, set[str]] = defaultdict(set)
        members: dict[str, set[str]] = defaultdict(set)
        count = 0
        for rule in rules:
            count += 1
            if isinstance(rule, GroupingRule):
                roles[rule.subject].add(rule.role)
                members[rule.role].add(rule.subject)
            elif isinstance(rule, PermissionRule):
                permissions[rule.subject].append(rule)
            else:
                raise MalformedRuleError(f"Unsupported rule: {rule!r}")
        return cls(
            generation=generation,
            loaded_at=datetime.now(timezone.utc),
            rule_count=count,
            permissions=MappingProxyType({key: tuple(sorted(value)) for key, value in permissions.items()}),
            roles=MappingProxyType({key: frozenset(value) for key, value in roles.items()}),
            members=MappingProxyType({key: frozenset(value) for key, value in members.items()}),
        )

    def implicit_roles(self, subject: str, max_depth: int) -> tuple[str, ...]:
        """Roles reachable from ``subject`` within ``max_depth`` grouping hops, nearest first.

        A visited set stops cycles, so every role on a cycle the subject
        reaches is reported once.
        """
        seen: dict[str, None] = {}
        frontier = [subject]
        depth = 0
        while frontier and depth < max_depth:
            next_frontier: list[str] = []
            for name in frontier:
                for role in sorted(self.roles.get(name, ())):
                    if role in seen:
                        continue
                    seen[role] = None
                    next_frontier.append(role)
            frontier = next_frontier
            depth += 1
        return tuple(seen)

    def all_roles(self) -> set[str]:
        return set(self.members) | set(self.permissions)


class EnforcementEngine:
    def __init__(
        self,
        adapter: PolicyAdapter,
        *,
        load_timeout_sec: float = DEFAULT_POLICY_LOAD_TIMEOUT_SEC,
        max_role_depth: int = DEFAULT_ROLE_MAX_DEPTH,
        superuser_role: str = SUPERUSER_ROLE,
    ) -> None:
        self.adapter = adapter
        self.load_timeout_sec = float(load_timeout_sec)
        self.max_role_depth = max(1, int(max_role_depth))
        self.superuser_role = _clean(superuser_role)
        self._snapshot: EnforcementSnapshot | None = None
        self._publish_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._tickets = itertools.count(1)

    @classmethod
    def from_config(cls, config: AppConfig, store: RuleStore | None = None) -> "EnforcementEngine":
        return cls(
            PolicyAdapter(store or RuleStore(config)),
            load_timeout_sec=config.policy_load_timeout_sec,
            max_role_depth=config.role_max_depth,
        )

    @property
    def state(self) -> EngineState:
        return EngineState.LOADED if self._snapshot is not None else EngineState.UNLOADED

    @property
    def snapshot(self) -> EnforcementSnapshot | None:
        return self._snapshot

    def describe(self) -> dict[str, Any]:
        snapshot = self._snapshot
        return {
            "state": self.state.value,
            "generation": snapshot.generation if snapshot else 0,
            "rule_count": snapshot.rule_count if snapshot else 0,
            "loaded_at": snapshot.loaded_at.isoformat() if snapshot else None,
        }

    def _read_rules(self) -> list[PolicyRule]:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="policy-load")
        future = executor.submit(self.adapter.load_all_rules)
        try:
            return future.result(timeout=self.load_timeout_sec)
        except FutureTimeoutError as exc:
            future.cancel()
            raise PolicyLoadError(
                f"Policy load did not finish within {self.load_timeout_sec:.1f}s."
            ) from exc
        except MalformedRuleError as exc:
            raise PolicyLoadError(f"Stored policy contains a malformed rule: {exc}") from exc
        except (DataConnectionError, DataQueryError) as exc:
            raise PolicyLoadError(f"Policy rules could not be read from storage: {exc}") from exc
        finally:
            executor.shutdown(wait=False)

    def load_policy(self) -> EnforcementSnapshot:
        with self._publish_lock:
            ticket = next(self._tickets)
        started = time.perf_counter()
        try:
            rules = self._read_rules()
            candidate = EnforcementSnapshot.build(rules, generation=ticket)
        except PolicyLoadError:
            LOGGER.exception(
                "Policy reload failed; keeping previous snapshot. state=%s",
                self.state.value,
                extra={"event": "policy_load_failed", "ticket": ticket, "state": self.state.value},
            )
            raise
        except MalformedRuleError as exc:
            LOGGER.exception(
                "Policy reload failed; keeping previous snapshot. state=%s",
                self.state.value,
                extra={"event": "policy_load_failed", "ticket": ticket, "state": self.state.value},
            )
            raise PolicyLoadError(str(exc)) from exc

        with self._publish_lock:
            current = self._snapshot
            # A reload that started later may already have published.
            if current is None or candidate.generation > current.generation:
                self._snapshot = candidate
            published = self._snapshot

        LOGGER.info(
            "Policy loaded. generation=%s rules=%s ms=%.2f",
            published.generation,
            published.rule_count,
            (time.perf_counter() - started) * 1000.0,
            extra={
                "event": "policy_loaded",
                "generation": published.generation,
                "rule_count": published.rule_count,
                "stale_discarded": published is not candidate,
            },
        )
        return published

    def _current(self, operation: str) -> EnforcementSnapshot | None:
        snapshot = self._snapshot
        if snapshot is None:
            LOGGER.warning(
                "Policy query before first load. op=%s",
                operation,
                extra={"event": "policy_query_unloaded", "operation": operation},
            )
        return snapshot

    # Queries

    def has_role(self, subject: str, role: str) -> bool:
        snapshot = self._current("has_role")
        if snapshot is None:
            return False
        return _clean(role) in snapshot.implicit_roles(_clean(subject), self.max_role_depth)

    def enforce(self, subject: str, obj: str, action: str) -> bool:
        snapshot = self._current("enforce")
        if snapshot is None:
            return False
        subject, obj, action = _clean(subject), _clean(obj), _clean(action)
        if not subject:
            return False
        roles = snapshot.implicit_roles(subject, self.max_role_depth)
        allowed = bool(self.superuser_role) and self.superuser_role in roles
        if not allowed:
            for candidate in (subject, *roles):
                if any(
                    _matches(rule.obj, obj) and _matches(rule.action, action)
                    for rule in snapshot.permissions.get(candidate, ())
                ):
                    allowed = True
                    break
        LOGGER.debug(
            "Authorization decision. subject=%s obj=%s action=%s allowed=%s",
            subject,
            obj,
            action,
            str(allowed).lower(),
            extra={
                "event": "authz_decision",
                "subject": subject,
                "object": obj,
                "action": action,
                "allowed": allowed,
                "generation": snapshot.generation,
            },
        )
        return allowed

    def get_roles_for_user(self, subject: str) -> list[str]:
        snapshot = self._current("get_roles_for_user")
        if snapshot is None:
            return []
        return sorted(snapshot.roles.get(_clean(subject), ()))

    def get_implicit_roles_for_user(self, subject: str) -> list[str]:
        snapshot = self._current("get_implicit_roles_for_user")
        if snapshot is None:
            return []
        return list(snapshot.implicit_roles(_clean(subject), self.max_role_depth))

    def get_users_for_role(self, role: str) -> list[str]:
        snapshot = self._current("get_users_for_role")
        if snapshot is None:
            return []
        return sorted(snapshot.members.get(_clean(role), ()))

    def get_permissions_for_role(self, role: str) -> list[PermissionRule]:
        snapshot = self._current("get_permissions_for_role")
        if snapshot is None:
            return []
        return list(snapshot.permissions.get(_clean(role), ()))

    def get_all_roles(self) -> set[str]:
        snapshot = self._current("get_all_roles")
        if snapshot is None:
            return set()
        return snapshot.all_roles()

    def get_role_assignments(self) -> dict[str, list[str]]:
        snapshot = self._current("get_role_assignments")
        if snapshot is None:
            return {}
        return {subject: sorted(roles) for subject, roles in sorted(snapshot.roles.items())}

    def role_exists(self, role: str) -> bool:
        snapshot = self._current("role_exists")
        if snapshot is None:
            return False
        return _clean(role) in snapshot.permissions

    # Writes

    def write_then_reload(self, write: Callable[[], T]) -> T:
        """Run ``write`` and reload, serialized against other writers.

        If the write succeeds but the reload fails, ``PolicyLoadError``
        propagates and the previous snapshot stays published.
        """
        with self._write_lock:
            result = write()
            try:
                self.load_policy()
            except PolicyLoadError:
                snapshot = self._snapshot
                LOGGER.error(
                    "Policy write committed but reload failed. active_generation=%s",
                    snapshot.generation if snapshot else 0,
                    extra={
                        "event": "policy_reload_after_write_failed",
                        "active_generation": snapshot.generation if snapshot else 0,
                    },
                )
                raise
        return result

    def add_role_for_user(self, subject: str, role: str) -> None:
        rule = GroupingRule(subject=_clean(subject), role=_clean(role))
        if not rule.subject or not rule.role:
            raise ValueError("Subject and role are required.")

        def _write() -> None:
            if self.adapter.has_rule(rule):
                raise DuplicateRuleError(rule)
            self.adapter.add_rule(rule)

        self.write_then_reload(_write)

    def remove_role_for_user(self, subject: str, role: str) -> int:
        rule = GroupingRule(subject=_clean(subject), role=_clean(role))
        return self.write_then_reload(lambda: self.adapter.remove_rule(rule))

    def add_permission_for_role(self, role: str, obj: str, action: str) -> None:
        rule = PermissionRule(subject=_clean(role), obj=_clean(obj), action=_clean(action))
        if not all(rule.values()):
            raise ValueError("Role, object and action are required.")

        def _write() -> None:
            if self.adapter.has_rule(rule):
                raise DuplicateRuleError(rule)
            self.adapter.add_rule(rule)

        self.write_then_reload(_write)

    def remove_permission_for_role(self, role: str, obj: str, action: str) -> int:
        rule = PermissionRule(subject=_clean(role), obj=_clean(obj), action=_clean(action))
        return self.write_then_reload(lambda: self.adapter.remove_rule(rule))

    @staticmethod
    def _permission_rules(role: str, permissions: Iterable[tuple[str, str]]) -> list[PermissionRule]:
        rules = [
            PermissionRule(subject=role, obj=_clean(obj), action=_clean(action))
            for obj, action in permissions
        ]
        if not rules:
            raise ValueError("At least one permission is required.")
        if not all(all(rule.values()) for rule in rules):
            raise ValueError("Every permission needs an object and an action.")
        return list(dict.fromkeys(rules))

    def create_role(self, role: str, permissions: Iterable[tuple[str, str]]) -> None:
        role = _clean(role)
        if not role:
            raise ValueError("Role name is required.")
        rules = self._permission_rules(role, permissions)

        def _write() -> None:
            if self.adapter.count(PTYPE_PERMISSION, 0, role) > 0:
                raise DuplicateRuleError(f"role {role}")
            self.adapter.add_rules(rules)

        self.write_then_reload(_write)
        LOGGER.info(
            "Role created. role=%s permissions=%s",
            role,
            len(rules),
            extra={"event": "role_created", "role": role, "permission_count": len(rules)},
        )

    def set_permissions_for_role(self, role: str, permissions: Iterable[tuple[str, str]]) -> None:
        role = _clean(role)
        rules = self._permission_rules(role, permissions)

        def _write() -> None:
            self.adapter.replace_role_permissions(role, rules)

        self.write_then_reload(_write)
        LOGGER.info(
            "Role permissions replaced. role=%s permissions=%s",
            role,
            len(rules),
            extra={"event": "role_permissions_replaced", "role": role, "permission_count": len(rules)},
        )

    def delete_role(self, role: str) -> int:
        role = _clean(role)

        def _write() -> int:
            deleted = self.adapter.remove_role(role)
            if deleted == 0:
                raise RuleNotFoundError(f"Role does not exist: {role}")
            return deleted

        deleted = self.write_then_reload(_write)
        LOGGER.info(
            "Role deleted. role=%s rules_removed=%s",
            role,
            deleted,
            extra={"event": "role_deleted", "role": role, "rules_removed": deleted},
        )
        return deleted

    def save_policy(self, rules: Iterable[PolicyRule]) -> int:
        return self.write_then_reload(lambda: self.adapter.save_policy(rules))

    def replace_permission_rules(self, rules: Iterable[PermissionRule]) -> int:
        """Store exactly ``rules`` as the permission set; role assignments are kept."""
        permission_rules = list(rules)

        def _write() -> int:
            grouping = [rule for rule in self.adapter.load_all_rules() if isinstance(rule, GroupingRule)]
            return self.adapter.save_policy([*permission_rules, *grouping])

        return self.write_then_reload(_write)
