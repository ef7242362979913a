"""Tests for the resource graph builder."""
from __future__ import annotations

from collections.abc import Callable

import pytest

from labctl.graph import (
    CycleError,
    GraphError,
    PlanConflictError,
    ResourceReferenceError,
    build_graph,
    resolve_value,
    stable_topological_order,
)

Scenario = Callable[..., list[dict[str, object]]]


def test_references_become_dependency_edges(make_scenario: Scenario) -> None:
    """``${name.output}`` references turn into edges at build time."""
    graph = build_graph(make_scenario())

    assert graph.dependencies("net") == frozenset()
    assert graph.dependencies("subnet") == {"net"}
    assert graph.dependencies("sg") == {"net"}
    assert graph.dependencies("vm") == {"subnet", "sg"}
    assert graph.dependents("net") == ("subnet", "sg")
    vm = graph.get("vm")
    assert vm.referenced_attributes("sg") == {"security_group_ids"}
    assert vm.referenced_attributes("net") == frozenset()


def test_topological_order_is_valid_and_stable(make_scenario: Scenario) -> None:
    """Dependencies precede dependents; ties keep declaration order."""
    graph = build_graph(make_scenario())

    order = graph.topological_order()
    assert order == ("net", "subnet", "sg", "vm")
    for name in order:
        for dep in graph.dependencies(name):
            assert order.index(dep) < order.index(name)


def test_declaration_order_does_not_break_dependencies(make_scenario: Scenario) -> None:
    """Dependents declared first still come after their dependencies."""
    declarations = list(reversed(make_scenario()))
    graph = build_graph(declarations)

    order = graph.topological_order()
    assert order.index("net") < order.index("subnet") < order.index("vm")
    assert order.index("sg") < order.index("vm")


def test_identical_declarations_produce_identical_versions(make_scenario: Scenario) -> None:
    """The graph version fingerprints the declarations."""
    first = build_graph(make_scenario())
    second = build_graph(make_scenario())
    changed = make_scenario()
    changed[0]["attributes"] = {"cidr_block": "10.9.0.0/16"}

    assert first.version == second.version
    assert len(first.version) == 16
    assert build_graph(changed).version != first.version


def test_explicit_depends_on_adds_edge(make_scenario: Scenario) -> None:
    """``depends_on`` adds an ordering-only edge."""
    declarations = make_scenario()
    declarations[2]["depends_on"] = ["subnet"]
    graph = build_graph(declarations)

    assert graph.dependencies("sg") == {"net", "subnet"}
    assert graph.get("sg").explicit_depends_on == {"subnet"}


def test_unknown_reference_target_raises(make_scenario: Scenario) -> None:
    """References to undeclared resources are rejected."""
    declarations = make_scenario()
    declarations[1]["attributes"] = {"network_id": "${missing.id}", "cidr_block": "10.0.1.0/24"}

    with pytest.raises(ResourceReferenceError, match="unknown resource 'missing'"):
        build_graph(declarations)


def test_unknown_reference_output_raises(make_scenario: Scenario) -> None:
    """References to outputs a type does not expose are rejected."""
    declarations = make_scenario()
    declarations[1]["attributes"] = {"network_id": "${net.vpc}", "cidr_block": "10.0.1.0/24"}

    with pytest.raises(ResourceReferenceError, match="unknown output 'net.vpc'"):
        build_graph(declarations)


def test_unknown_depends_on_raises(make_scenario: Scenario) -> None:
    """``depends_on`` must name declared resources."""
    declarations = make_scenario()
    declarations[0]["depends_on"] = ["ghost"]

    with pytest.raises(ResourceReferenceError, match="ghost"):
        build_graph(declarations)


def test_cycle_is_reported_with_its_path() -> None:
    """A reference cycle raises CycleError naming the loop."""
    declarations = [
        {"name": "a", "type": "gateway", "attributes": {"network_id": "${b.id}"}},
        {"name": "b", "type": "gateway", "attributes": {"network_id": "${a.id}"}},
    ]

    with pytest.raises(CycleError) as excinfo:
        build_graph(declarations)

    assert excinfo.value.cycle == ("a", "b", "a")
    assert "a -> b -> a" in str(excinfo.value)


def test_self_dependency_is_a_cycle() -> None:
    """A resource depending on itself is a cycle."""
    declarations = [{"name": "net", "type": "network", "attributes": {"cidr_block": "10.0.0.0/16"},
                     "depends_on": ["net"]}]

    with pytest.raises(CycleError):
        build_graph(declarations)


def test_duplicate_names_raise_conflict(make_scenario: Scenario) -> None:
    """Two declarations may not share a logical name."""
    declarations = make_scenario()
    declarations.append(dict(declarations[0]))

    with pytest.raises(PlanConflictError, match="Duplicate logical name 'net'"):
        build_graph(declarations)


@pytest.mark.parametrize("cidr", ["10.0.0.0/33", "10.0.0.1/16", "banana"])
def test_malformed_cidr_raises(make_scenario: Scenario, cidr: str) -> None:
    """Literal address blocks are validated before anything else happens."""
    declarations = make_scenario()
    declarations[0]["attributes"] = {"cidr_block": cidr}

    with pytest.raises(GraphError, match="not a valid address block"):
        build_graph(declarations)


def test_unknown_type_and_missing_attributes_raise() -> None:
    """Unknown type tags and missing required attributes are rejected."""
    with pytest.raises(GraphError, match="unknown type"):
        build_graph([{"name": "x", "type": "load-balancer"}])
    with pytest.raises(GraphError, match="missing required attributes: cidr_block"):
        build_graph([{"name": "net", "type": "network", "attributes": {}}])
    with pytest.raises(GraphError, match="unknown keys: count"):
        build_graph([{"name": "net", "type": "network", "count": 2}])


def test_sensitive_references_are_flagged() -> None:
    """References to sensitive outputs are marked on the consumer."""
    graph = build_graph(
        [
            {"name": "key", "type": "keypair", "attributes": {"key_name": "lab"}},
            {
                "name": "key_file",
                "type": "generated-file",
                "attributes": {"path": "/tmp/lab.pem", "content": "${key.private_key_pem}"},
            },
        ]
    )

    key_file = graph.get("key_file")
    assert key_file.is_sensitive_attribute("content") is True
    assert key_file.is_sensitive_attribute("path") is False


def test_declarations_are_copied(make_scenario: Scenario) -> None:
    """Mutating the input after building does not change the snapshot."""
    declarations = make_scenario()
    graph = build_graph(declarations)
    declarations[2]["attributes"]["ingress"].append({"port": 22})  # type: ignore[index]

    assert len(graph.get("sg").attributes["ingress"]) == 1


def test_resolve_value_whole_and_embedded_references() -> None:
    """A whole-string reference keeps the raw value; embedded ones are stringified."""
    outputs = {("net", "id"): "vpc-1", ("vm", "public_ip"): "203.0.113.5"}

    def lookup(target: str, output: str) -> object:
        return outputs[(target, output)]

    assert resolve_value("${net.id}", lookup) == "vpc-1"
    assert resolve_value("http://${vm.public_ip}:8080", lookup) == "http://203.0.113.5:8080"
    assert resolve_value({"ids": ["${net.id}"]}, lookup) == {"ids": ["vpc-1"]}


def test_stable_topological_order_ignores_unknown_dependencies() -> None:
    """Dependencies outside *names* are ignored."""
    order = stable_topological_order(["b", "a"], {"b": {"a", "zzz"}, "a": set()})

    assert order == ["a", "b"]


def test_to_dot_lists_nodes_and_edges(make_scenario: Scenario) -> None:
    """The DOT rendering names every resource and edge."""
    dot = build_graph(make_scenario()).to_dot()

    assert dot.startswith("digraph labctl {\n  rankdir=LR;\n")
    assert '"vm" -> "sg";' in dot
    assert '"vm" -> "subnet";' in dot
    assert '"subnet" -> "net";' in dot
    assert dot.rstrip().endswith("}")
