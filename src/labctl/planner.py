"""Compute the operations that reconcile state with the declared graph.

The planner compares every declared resource with its state record (and,
when refreshing, with what the provider currently observes) and decides one
of: nothing, create, update in place, or replace. A replacement becomes a
``delete`` + ``create`` pair. Replacements propagate to dependents that
reference the replaced resource: they are updated, or replaced themselves
when the referencing attribute cannot change in place.

Ordering is deterministic. Deletes run first, in the exact reverse of the
stable creation order of the stored records; creates and updates follow in
ascending stable topological order of the graph (ties broken by declaration
index). Each operation also lists the operations it waits for, which is what
the applier schedules on.
"""
from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .graph import PlanConflictError, ResourceGraph, canonical_json, stable_topological_order
from .providers.base import Observation
from .resources import RESOURCE_TYPES, Resource
from .sensitive import MASK
from .state.store import StateRecord, StateStore

Observer = Callable[[StateRecord], Observation]


class Action(str, Enum):
    """Kinds of plan operation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


_SYMBOLS = {Action.CREATE: "+", Action.UPDATE: "~", Action.DELETE: "-"}


@dataclass(frozen=True)
class AttributeChange:
    """One attribute's before/after values."""

    key: str
    before: Any = None
    after: Any = None
    sensitive: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form (sensitive values masked)."""
        return {
            "key": self.key,
            "before": MASK if self.sensitive and self.before is not None else self.before,
            "after": MASK if self.sensitive and self.after is not None else self.after,
            "sensitive": self.sensitive,
        }


@dataclass(frozen=True)
class PlanOperation:
    """A single step of the plan."""

    action: Action
    name: str
    resource_type: str
    reason: str
    replace: bool = False
    changes: tuple[AttributeChange, ...] = ()
    waits_for: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        """Return the operation key, e.g. ``delete:lab_subnet``."""
        return f"{self.action.value}:{self.name}"

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form."""
        return {
            "key": self.key,
            "action": self.action.value,
            "name": self.name,
            "type": self.resource_type,
            "reason": self.reason,
            "replace": self.replace,
            "changes": [change.to_dict() for change in self.changes],
            "waits_for": list(self.waits_for),
        }


@dataclass(frozen=True)
class DriftDetected:
    """A difference between state and what the provider observed."""

    name: str
    resource_type: str
    kind: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        """Return the JSON form."""
        return {
            "name": self.name,
            "type": self.resource_type,
            "kind": self.kind,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class Plan:
    """Ordered operations plus detected drift."""

    operations: tuple[PlanOperation, ...]
    drift: tuple[DriftDetected, ...] = ()
    graph_version: str | None = None
    destroy: bool = False
    _index: Mapping[str, PlanOperation] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        """Index operations by key."""
        object.__setattr__(self, "_index", {op.key: op for op in self.operations})

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when nothing needs to change."""
        return not self.operations

    def get(self, key: str) -> PlanOperation | None:
        """Return the operation with *key*."""
        return self._index.get(key)

    def counts(self) -> dict[str, int]:
        """Return add/change/destroy/replace counts."""
        return {
            "add": sum(1 for op in self.operations if op.action is Action.CREATE),
            "change": sum(1 for op in self.operations if op.action is Action.UPDATE),
            "destroy": sum(1 for op in self.operations if op.action is Action.DELETE),
            "replace": sum(
                1 for op in self.operations if op.action is Action.CREATE and op.replace
            ),
        }

    def summary_line(self) -> str:
        """Return the one-line summary printed after the diff."""
        counts = self.counts()
        return (
            f"Plan: {counts['add']} to add, {counts['change']} to change, "
            f"{counts['destroy']} to destroy."
        )

    def render(self) -> str:
        """Return the human-readable diff; identical plans render identically."""
        header = "labctl destroy plan" if self.destroy else "labctl plan"
        if self.graph_version:
            header += f" (graph {self.graph_version})"
        lines = [header, ""]
        if self.drift:
            lines.append("Drift detected:")
            for item in self.drift:
                lines.append(f"  ! {item.name} ({item.resource_type}) {item.kind}: {item.detail}")
            lines.append("")
        if self.is_empty:
            lines.append("No changes. Infrastructure matches the configuration.")
            return "\n".join(lines) + "\n"
        for op in self.operations:
            marker = " [replace]" if op.replace else ""
            lines.append(f"  {_SYMBOLS[op.action]} {op.name} ({op.resource_type}){marker}")
            lines.append(f"      reason: {op.reason}")
            for change in op.changes:
                lines.append(f"      {change.key}: {_render_change(op.action, change)}")
        lines.append("")
        lines.append(self.summary_line())
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form used by ``labctl plan --json``."""
        return {
            "graph_version": self.graph_version,
            "destroy": self.destroy,
            "summary": self.counts(),
            "drift": [item.to_dict() for item in self.drift],
            "operations": [op.to_dict() for op in self.operations],
        }


def _render_value(value: Any, sensitive: bool) -> str:
    if sensitive:
        return MASK
    return json.dumps(value, sort_keys=True, default=str)


def _render_change(action: Action, change: AttributeChange) -> str:
    after = _render_value(change.after, change.sensitive)
    if action is Action.CREATE and change.before is None:
        return after
    before = _render_value(change.before, change.sensitive and change.before is not None)
    return f"{before} -> {after}"


# Decision ranks only ever increase while propagating.
_NOOP, _UPDATE, _REPLACE = 0, 1, 2


@dataclass
class _Decision:
    rank: int = _NOOP
    reason: str = ""
    create_only: bool = False
    changes: list[AttributeChange] = field(default_factory=list)

    def escalate(self, rank: int, reason: str) -> bool:
        if rank <= self.rank:
            return False
        self.rank = rank
        self.reason = reason
        return True


class Planner:
    """Diff a :class:`ResourceGraph` against the :class:`StateStore`."""

    def __init__(
        self,
        graph: ResourceGraph | None,
        store: StateStore,
        observer: Observer | None = None,
    ) -> None:
        """Bind the planner to its inputs."""
        self.graph = graph
        self.store = store
        self.observer = observer

    def plan(self, *, refresh: bool = True) -> Plan:
        """Return the plan that moves state to the declared graph."""
        graph = self.graph
        if graph is None:
            raise ValueError("plan() needs a resource graph; use plan_destroy() to tear down.")
        _check_identity_conflicts(graph)

        records = {record.name: record for record in self.store.list()}
        drift, missing, modified = self._refresh(graph, records) if refresh else ([], set(), set())

        decisions: dict[str, _Decision] = {}
        for name in graph.topological_order():
            decisions[name] = self._initial_decision(
                graph.get(name), records.get(name), missing, modified
            )
        self._propagate(graph, decisions)

        delete_names: set[str] = {name for name in records if name not in graph}
        for name, decision in decisions.items():
            record = records.get(name)
            if decision.rank == _REPLACE and record is not None and not decision.create_only:
                delete_names.add(name)

        operations: list[PlanOperation] = []
        delete_ops = self._delete_operations(records, delete_names, graph, decisions)
        operations.extend(delete_ops)
        delete_keys = {op.name: op.key for op in delete_ops}

        for name in graph.topological_order():
            decision = decisions[name]
            if decision.rank == _NOOP:
                continue
            resource = graph.get(name)
            record = records.get(name)
            creating = record is None or decision.rank == _REPLACE
            action = Action.CREATE if creating else Action.UPDATE
            waits: list[str] = []
            for dep in sorted(resource.depends_on):
                dep_decision = decisions[dep]
                if dep_decision.rank == _NOOP:
                    continue
                dep_creating = records.get(dep) is None or dep_decision.rank == _REPLACE
                waits.append(f"{'create' if dep_creating else 'update'}:{dep}")
            if name in delete_keys:
                waits.append(delete_keys[name])
            for other, key in sorted(delete_keys.items()):
                other_record = records[other]
                if other != name and other_record.type == resource.type:
                    waits.append(key)
            changes = decision.changes
            if creating:
                changes = _creation_changes(resource, record)
            operations.append(
                PlanOperation(
                    action=action,
                    name=name,
                    resource_type=resource.type,
                    reason=decision.reason,
                    replace=decision.rank == _REPLACE and name in delete_keys,
                    changes=tuple(changes),
                    waits_for=tuple(sorted(set(waits))),
                )
            )

        return Plan(operations=tuple(operations), drift=tuple(drift), graph_version=graph.version)

    def plan_destroy(self) -> Plan:
        """Return a plan deleting every stored record in reverse creation order."""
        records = {record.name: record for record in self.store.list()}
        operations = self._delete_operations(records, set(records), None, {})
        version = self.graph.version if self.graph is not None else None
        return Plan(operations=tuple(operations), graph_version=version, destroy=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _refresh(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
    ) -> tuple[list[DriftDetected], set[str], set[str]]:
        drift: list[DriftDetected] = []
        missing: set[str] = set()
        modified: set[str] = set()
        if self.observer is None:
            return drift, missing, modified
        for name in graph.names:
            record = records.get(name)
            if record is None or record.status == "failed" or record.type != graph.get(name).type:
                continue
            observation = self.observer(record)
            if not observation.exists:
                missing.add(name)
                detail = observation.detail or "object no longer exists"
                drift.append(DriftDetected(name, record.type, "deleted", detail))
            elif (
                observation.checksum is not None
                and record.checksum is not None
                and observation.checksum != record.checksum
            ):
                modified.add(name)
                drift.append(
                    DriftDetected(
                        name,
                        record.type,
                        "modified",
                        f"checksum {observation.checksum} differs from recorded {record.checksum}",
                    )
                )
        return drift, missing, modified

    def _initial_decision(
        self,
        resource: Resource,
        record: StateRecord | None,
        missing: set[str],
        modified: set[str],
    ) -> _Decision:
        decision = _Decision()
        if record is None:
            decision.escalate(_REPLACE, "not yet created")
            return decision
        if record.status == "failed":
            decision.escalate(_REPLACE, "previous apply left the resource failed")
            return decision
        if record.type != resource.type:
            decision.escalate(_REPLACE, f"type changed from {record.type} to {resource.type}")
            return decision
        if resource.name in missing:
            decision.escalate(_REPLACE, "deleted outside labctl; recreating")
            decision.create_only = True
            return decision

        changes = _attribute_changes(resource, record)
        immutable = sorted(
            change.key for change in changes if change.key in resource.spec.immutable
        )
        if immutable:
            decision.escalate(_REPLACE, f"immutable attribute(s) changed: {', '.join(immutable)}")
        elif changes:
            keys = ", ".join(change.key for change in changes)
            decision.escalate(_UPDATE, f"attribute(s) changed: {keys}")
        elif resource.name in modified:
            decision.escalate(_UPDATE, "modified outside labctl; reconciling")
        decision.changes = changes
        return decision

    def _propagate(self, graph: ResourceGraph, decisions: dict[str, _Decision]) -> None:
        changed = True
        while changed:
            changed = False
            for name in graph.topological_order():
                resource = graph.get(name)
                decision = decisions[name]
                for ref in resource.references:
                    target = decisions[ref.target]
                    if target.rank == _REPLACE and decision.rank < _REPLACE:
                        if ref.attribute in resource.spec.immutable:
                            changed |= decision.escalate(
                                _REPLACE,
                                f"{ref.target} is being replaced and '{ref.attribute}' "
                                "cannot change in place",
                            )
                        else:
                            changed |= decision.escalate(
                                _UPDATE, f"{ref.target} is being replaced"
                            )
                    if ref.sensitive and decision.rank > _NOOP and target.rank < _REPLACE:
                        # Secrets only exist in memory during the apply that
                        # generated them, so writing the consumer means
                        # regenerating the producer.
                        changed |= target.escalate(
                            _REPLACE,
                            f"{name} needs {ref.target}.{ref.output}, which is only "
                            "available when regenerated",
                        )

    def _delete_operations(
        self,
        records: Mapping[str, StateRecord],
        delete_names: set[str],
        graph: ResourceGraph | None,
        decisions: Mapping[str, _Decision],
    ) -> list[PlanOperation]:
        ordered = stable_topological_order(
            list(records), {name: record.depends_on for name, record in records.items()}
        )
        operations: list[PlanOperation] = []
        for name in reversed(ordered):
            if name not in delete_names:
                continue
            record = records[name]
            dependents = [
                other
                for other, other_record in records.items()
                if name in other_record.depends_on and other in delete_names
            ]
            replacing = graph is not None and name in graph and name in decisions
            reason = decisions[name].reason if replacing else (
                "destroy requested" if graph is None else "no longer declared"
            )
            operations.append(
                PlanOperation(
                    action=Action.DELETE,
                    name=name,
                    resource_type=record.type,
                    reason=reason,
                    replace=replacing,
                    waits_for=tuple(sorted(f"delete:{other}" for other in dependents)),
                )
            )
        return operations


def _attribute_changes(resource: Resource, record: StateRecord) -> list[AttributeChange]:
    changes: list[AttributeChange] = []
    keys = sorted(set(resource.attributes) | set(record.attributes))
    for key in keys:
        before = record.attributes.get(key)
        after = resource.attributes.get(key)
        if canonical_json(before) != canonical_json(after):
            changes.append(
                AttributeChange(
                    key=key,
                    before=before,
                    after=_plain(after),
                    sensitive=resource.is_sensitive_attribute(key),
                )
            )
    if sorted(record.depends_on) != sorted(resource.depends_on):
        changes.append(
            AttributeChange(
                key="depends_on",
                before=sorted(record.depends_on),
                after=sorted(resource.depends_on),
            )
        )
    return changes


def _creation_changes(resource: Resource, record: StateRecord | None) -> list[AttributeChange]:
    previous: Mapping[str, Any] = record.attributes if record is not None else {}
    changes: list[AttributeChange] = []
    for key in sorted(resource.attributes):
        after = _plain(resource.attributes[key])
        before = previous.get(key)
        changes.append(
            AttributeChange(
                key=key,
                before=None if canonical_json(before) == canonical_json(after) else before,
                after=after,
                sensitive=resource.is_sensitive_attribute(key),
            )
        )
    return changes


def _check_identity_conflicts(graph: ResourceGraph) -> None:
    claimed: dict[tuple[str, str], str] = {}
    for resource in graph:
        identity = RESOURCE_TYPES[resource.type].identity
        if not identity:
            continue
        values = [resource.attributes.get(attr) for attr in identity]
        if any(value is None for value in values):
            continue
        key = (resource.type, canonical_json(values))
        if key in claimed:
            shown = ", ".join(f"{attr}={value}" for attr, value in zip(identity, values))
            raise PlanConflictError(
                f"Resources '{claimed[key]}' and '{resource.name}' both claim "
                f"{resource.type} identity {shown}."
            )
        claimed[key] = resource.name


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def operation_keys(operations: Iterable[PlanOperation]) -> list[str]:
    """Return the keys of *operations* in order."""
    return [op.key for op in operations]


__all__ = [
    "Action",
    "AttributeChange",
    "DriftDetected",
    "Observer",
    "Plan",
    "PlanOperation",
    "Planner",
    "operation_keys",
]
