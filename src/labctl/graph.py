"""Resource graph builder.

Turns the configuration's resource declarations into an immutable graph
snapshot. Attribute values may reference other resources' outputs with
``${name.output}``; every reference becomes an explicit dependency edge at
build time, so nothing is resolved lazily later. Unknown targets, unknown
outputs, duplicate names and cycles are all rejected before a plan exists.
"""
from __future__ import annotations

import copy
import hashlib
import heapq
import ipaddress
import json
import re
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .resources import RESOURCE_TYPES, Reference, Resource

REFERENCE_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)\}")
NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")


class GraphError(RuntimeError):
    """Raised when resource declarations are invalid."""


class ResourceReferenceError(GraphError):
    """Raised when a reference points at an unknown resource or output."""


class CycleError(GraphError):
    """Raised when the dependency relation is not acyclic."""

    def __init__(self, cycle: Sequence[str]) -> None:
        """Store the offending cycle path."""
        self.cycle = tuple(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class PlanConflictError(GraphError):
    """Raised when two resources claim the same identity."""


def canonical_json(value: object) -> str:
    """Return a stable JSON encoding used for diffs and fingerprints."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def iter_references(value: object) -> Iterator[tuple[str, str]]:
    """Yield ``(target, output)`` pairs referenced anywhere inside *value*."""
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            yield match.group(1), match.group(2)
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def resolve_value(value: Any, lookup: Callable[[str, str], Any]) -> Any:
    """Substitute references in *value* using ``lookup(target, output)``.

    A string consisting of exactly one reference resolves to the raw output
    value (which may be a list or a number); references embedded in longer
    strings are interpolated as text.
    """
    if isinstance(value, str):
        whole = REFERENCE_PATTERN.fullmatch(value)
        if whole:
            return lookup(whole.group(1), whole.group(2))
        return REFERENCE_PATTERN.sub(
            lambda match: str(lookup(match.group(1), match.group(2))),
            value,
        )
    if isinstance(value, Mapping):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]
    return value


def find_cycle(names: Sequence[str], dependencies: Mapping[str, Iterable[str]]) -> list[str] | None:
    """Return a dependency cycle as a path, or ``None`` when acyclic.

    Depth-first traversal; a node on the current recursion stack that is
    reached again closes a cycle.
    """
    visited: set[str] = set()
    on_stack: list[str] = []
    stack_set: set[str] = set()

    def visit(node: str) -> list[str] | None:
        visited.add(node)
        on_stack.append(node)
        stack_set.add(node)
        for dep in sorted(dependencies.get(node, ())):
            if dep in stack_set:
                start = on_stack.index(dep)
                return [*on_stack[start:], dep]
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found
        on_stack.pop()
        stack_set.discard(node)
        return None

    for name in names:
        if name not in visited:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def stable_topological_order(
    names: Sequence[str],
    dependencies: Mapping[str, Iterable[str]],
) -> list[str]:
    """Order *names* so dependencies come first, ties broken by input order."""
    position = {name: index for index, name in enumerate(names)}
    remaining: dict[str, set[str]] = {
        name: {dep for dep in dependencies.get(name, ()) if dep in position} for name in names
    }
    dependents: dict[str, list[str]] = {name: [] for name in names}
    for name, deps in remaining.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = [(position[name], name) for name, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    ordered: list[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        ordered.append(name)
        for child in dependents[name]:
            pending = remaining[child]
            pending.discard(name)
            if not pending:
                heapq.heappush(ready, (position[child], child))

    if len(ordered) != len(names):
        cycle = find_cycle([name for name in names if name not in ordered], dependencies)
        raise CycleError(cycle or [name for name in names if name not in ordered])
    return ordered


@dataclass(frozen=True)
class ResourceGraph:
    """Immutable snapshot of the declared resources and their edges."""

    resources: tuple[Resource, ...]
    version: str
    _by_name: Mapping[str, Resource] = field(init=False, repr=False)
    _order: tuple[str, ...] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Index resources and pre-compute the topological order."""
        by_name = MappingProxyType({resource.name: resource for resource in self.resources})
        object.__setattr__(self, "_by_name", by_name)
        order = stable_topological_order(
            [resource.name for resource in self.resources],
            {resource.name: resource.depends_on for resource in self.resources},
        )
        object.__setattr__(self, "_order", tuple(order))

    def __contains__(self, name: object) -> bool:
        """Return ``True`` when *name* is declared."""
        return name in self._by_name

    def __iter__(self) -> Iterator[Resource]:
        """Iterate resources in declaration order."""
        return iter(self.resources)

    def __len__(self) -> int:
        """Return the number of declared resources."""
        return len(self.resources)

    @property
    def names(self) -> tuple[str, ...]:
        """Return logical names in declaration order."""
        return tuple(resource.name for resource in self.resources)

    def get(self, name: str) -> Resource:
        """Return the resource called *name* (``KeyError`` when unknown)."""
        return self._by_name[name]

    def topological_order(self) -> tuple[str, ...]:
        """Return names with dependencies first, ties by declaration order."""
        return self._order

    def dependencies(self, name: str) -> frozenset[str]:
        """Return the direct dependencies of *name*."""
        return self._by_name[name].depends_on

    def dependents(self, name: str) -> tuple[str, ...]:
        """Return the resources that directly depend on *name*."""
        return tuple(
            resource.name for resource in self.resources if name in resource.depends_on
        )

    def to_dot(self) -> str:
        """Render the graph in Graphviz DOT format."""
        lines = ["digraph labctl {", "  rankdir=LR;"]
        for name in self._order:
            resource = self._by_name[name]
            lines.append(f'  "{name}" [label="{name}\\n({resource.type})"];')
        for name in self._order:
            for dep in sorted(self._by_name[name].depends_on):
                lines.append(f'  "{name}" -> "{dep}";')
        lines.append("}")
        return "\n".join(lines) + "\n"


def build_graph(declarations: Sequence[Mapping[str, object]]) -> ResourceGraph:
    """Validate *declarations* and return the resulting graph snapshot."""
    parsed: list[tuple[str, str, dict[str, Any], list[str]]] = []
    seen: dict[str, int] = {}
    for index, entry in enumerate(declarations):
        name, rtype, attributes, explicit = _parse_declaration(entry, index)
        if name in seen:
            raise PlanConflictError(
                f"Duplicate logical name '{name}' (declarations #{seen[name]} and #{index})."
            )
        seen[name] = index
        parsed.append((name, rtype, attributes, explicit))

    types_by_name = {name: rtype for name, rtype, _, _ in parsed}
    resources: list[Resource] = []
    for index, (name, rtype, attributes, explicit) in enumerate(parsed):
        references = _collect_references(name, attributes, types_by_name)
        for dep in explicit:
            if dep not in types_by_name:
                raise ResourceReferenceError(
                    f"Resource '{name}' depends_on unknown resource '{dep}'."
                )
        depends_on = frozenset(explicit) | frozenset(ref.target for ref in references)
        resources.append(
            Resource(
                name=name,
                type=rtype,
                attributes=MappingProxyType(attributes),
                depends_on=depends_on,
                explicit_depends_on=frozenset(explicit),
                references=tuple(references),
                index=index,
            )
        )

    cycle = find_cycle(
        [resource.name for resource in resources],
        {resource.name: resource.depends_on for resource in resources},
    )
    if cycle:
        raise CycleError(cycle)

    fingerprint = hashlib.sha256(
        canonical_json(
            [
                {
                    "name": resource.name,
                    "type": resource.type,
                    "attributes": dict(resource.attributes),
                    "depends_on": sorted(resource.explicit_depends_on),
                }
                for resource in resources
            ]
        ).encode("utf-8")
    ).hexdigest()
    return ResourceGraph(resources=tuple(resources), version=fingerprint[:16])


def _parse_declaration(
    entry: Mapping[str, object],
    index: int,
) -> tuple[str, str, dict[str, Any], list[str]]:
    if not isinstance(entry, Mapping):
        raise GraphError(f"Declaration #{index} must be a mapping.")
    unknown = set(entry.keys()) - {"name", "type", "attributes", "depends_on"}
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise GraphError(f"Declaration #{index} has unknown keys: {joined}.")

    name = entry.get("name")
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise GraphError(
            f"Declaration #{index} needs a logical name matching {NAME_PATTERN.pattern}."
        )
    rtype = entry.get("type")
    if rtype not in RESOURCE_TYPES:
        allowed = ", ".join(sorted(RESOURCE_TYPES))
        raise GraphError(f"Resource '{name}' has unknown type {rtype!r}. Allowed: {allowed}.")
    spec = RESOURCE_TYPES[str(rtype)]

    raw_attributes = entry.get("attributes") or {}
    if not isinstance(raw_attributes, Mapping):
        raise GraphError(f"Resource '{name}' attributes must be a mapping.")
    attributes = {str(key): copy.deepcopy(value) for key, value in raw_attributes.items()}

    missing = [attr for attr in spec.required if attributes.get(attr) in (None, "")]
    if missing:
        raise GraphError(
            f"Resource '{name}' ({rtype}) is missing required attributes: {', '.join(missing)}."
        )
    for attr in spec.cidr_attributes:
        value = attributes.get(attr)
        if isinstance(value, str) and not REFERENCE_PATTERN.search(value):
            try:
                ipaddress.ip_network(value, strict=True)
            except ValueError as exc:
                raise GraphError(
                    f"Resource '{name}' attribute '{attr}' is not a valid address block: "
                    f"{value!r} ({exc})."
                ) from exc

    raw_depends = entry.get("depends_on") or []
    if isinstance(raw_depends, str) or not isinstance(raw_depends, Sequence):
        raise GraphError(f"Resource '{name}' depends_on must be a list of names.")
    explicit = [str(dep) for dep in raw_depends]
    return name, str(rtype), attributes, explicit


def _collect_references(
    name: str,
    attributes: Mapping[str, Any],
    types_by_name: Mapping[str, str],
) -> list[Reference]:
    references: list[Reference] = []
    for attribute in sorted(attributes):
        for target, output in iter_references(attributes[attribute]):
            if target not in types_by_name:
                raise ResourceReferenceError(
                    f"Resource '{name}' attribute '{attribute}' references unknown "
                    f"resource '{target}'."
                )
            target_spec = RESOURCE_TYPES[types_by_name[target]]
            if output not in target_spec.outputs:
                available = ", ".join(sorted(target_spec.outputs))
                raise ResourceReferenceError(
                    f"Resource '{name}' attribute '{attribute}' references unknown output "
                    f"'{target}.{output}' ({target_spec.tag} exposes: {available})."
                )
            references.append(
                Reference(
                    attribute=attribute,
                    target=target,
                    output=output,
                    sensitive=output in target_spec.sensitive_outputs,
                )
            )
    return references


__all__ = [
    "CycleError",
    "GraphError",
    "PlanConflictError",
    "ResourceGraph",
    "ResourceReferenceError",
    "build_graph",
    "canonical_json",
    "find_cycle",
    "iter_references",
    "resolve_value",
    "stable_topological_order",
]
