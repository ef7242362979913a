"""Tests for plan computation."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from labctl.applier import Applier, RetryPolicy
from labctl.backends import SandboxBackend
from labctl.graph import PlanConflictError, build_graph
from labctl.planner import Action, Planner, operation_keys
from labctl.providers import ProviderRegistry
from labctl.state import StateStore

Scenario = Callable[..., list[dict[str, object]]]


class Lab:
    """Store, sandbox and providers wired together for one test."""

    def __init__(self, root: Path) -> None:
        self.store = StateStore(root / "state.yml")
        self.backend = SandboxBackend(settle_polls=0)
        self.providers = ProviderRegistry.for_backend(self.backend)

    def planner(self, declarations: list[dict[str, object]] | None) -> Planner:
        graph = build_graph(declarations) if declarations is not None else None
        return Planner(graph, self.store, self.providers.observe)

    def apply(self, declarations: list[dict[str, object]]) -> None:
        graph = build_graph(declarations)
        plan = Planner(graph, self.store, self.providers.observe).plan()
        applier = Applier(
            self.store,
            self.providers,
            policy=RetryPolicy(base_delay=0.0),
            max_concurrency=1,
            sleep=lambda _: None,
        )
        report = applier.apply(plan, graph)
        assert report.outcome == "success", report.to_dict()


def test_fresh_plan_creates_everything_in_order(tmp_path: Path, make_scenario: Scenario) -> None:
    """With empty state every resource is created, dependencies first."""
    plan = Lab(tmp_path).planner(make_scenario()).plan()

    assert operation_keys(plan.operations) == [
        "create:net",
        "create:subnet",
        "create:sg",
        "create:vm",
    ]
    assert plan.get("create:subnet").waits_for == ("create:net",)
    assert plan.get("create:vm").waits_for == ("create:sg", "create:subnet")
    assert plan.summary_line() == "Plan: 4 to add, 0 to change, 0 to destroy."
    assert plan.get("create:net").reason == "not yet created"


def test_identical_inputs_render_identical_plans(tmp_path: Path, make_scenario: Scenario) -> None:
    """Plans are deterministic down to the byte."""
    lab = Lab(tmp_path)

    first = lab.planner(make_scenario()).plan()
    second = lab.planner(make_scenario()).plan()

    assert first.render() == second.render()
    assert first.to_dict() == second.to_dict()


def test_plan_is_empty_after_apply(tmp_path: Path, make_scenario: Scenario) -> None:
    """Applying then planning again yields no operations."""
    lab = Lab(tmp_path)
    lab.apply(make_scenario())

    plan = lab.planner(make_scenario()).plan()

    assert plan.is_empty
    assert "No changes." in plan.render()
    assert plan.drift == ()


def test_mutable_change_is_an_update(tmp_path: Path, make_scenario: Scenario) -> None:
    """Changing a mutable attribute updates in place."""
    lab = Lab(tmp_path)
    lab.apply(make_scenario())
    declarations = make_scenario()
    declarations[2]["attributes"]["ingress"] = [  # type: ignore[index]
        {"port": 9000, "protocol": "tcp", "cidr_blocks": ["0.0.0.0/0"]}
    ]

    plan = lab.planner(declarations).plan()

    assert operation_keys(plan.operations) == ["update:sg"]
    op = plan.operations[0]
    assert op.reason == "attribute(s) changed: ingress"
    assert [change.key for change in op.changes] == ["ingress"]
    assert "~ sg (security-group)" in plan.render()


def test_immutable_change_cascades_replacements(tmp_path: Path, make_scenario: Scenario) -> None:
    """Replacing a network replaces everything that is pinned to it."""
    lab = Lab(tmp_path)
    lab.apply(make_scenario())
    declarations = make_scenario()
    declarations[0]["attributes"] = {"cidr_block": "10.0.0.0/15"}

    plan = lab.planner(declarations).plan()

    assert operation_keys(plan.operations) == [
        "delete:vm",
        "delete:sg",
        "delete:subnet",
        "delete:net",
        "create:net",
        "create:subnet",
        "create:sg",
        "create:vm",
    ]
    assert plan.get("delete:net").waits_for == ("delete:sg", "delete:subnet")
    assert plan.get("create:net").waits_for == ("delete:net",)
    assert plan.get("create:net").replace is True
    assert plan.get("create:net").reason == "immutable attribute(s) changed: cidr_block"
    assert "net is being replaced" in plan.get("create:subnet").reason
    assert plan.counts() == {"add": 4, "change": 0, "destroy": 4, "replace": 4}


def test_undeclared_record_is_deleted(tmp_path: Path, make_scenario: Scenario) -> None:
    """Records that are no longer declared are removed."""
    lab = Lab(tmp_path)
    lab.apply(make_scenario())

    plan = lab.planner(make_scenario()[:3]).plan()

    assert operation_keys(plan.operations) == ["delete:vm"]
    assert plan.operations[0].reason == "no longer declared"
    assert plan.operations[0].replace is False


def test_refresh_reports_drift(tmp_path: Path, make_scenario: Scenario) -> None:
    """Out-of-band edits and deletions are reported and reconciled."""
    lab = Lab(tmp_path)
    lab.apply(make_scenario())
    sg_id = lab.store.get("sg").resource_id  # type: ignore[union-attr]
    vm_id = lab.store.get("vm").resource_id  # type: ignore[union-attr]
    lab.backend.tamper(sg_id, description="opened by hand")
    lab.backend.forget(vm_id)

    plan = lab.planner(make_scenario()).plan()

    assert [(item.name, item.kind) for item in plan.drift] == [
        ("sg", "modified"),
        ("vm", "deleted"),
    ]
    assert operation_keys(plan.operations) == ["update:sg", "create:vm"]
    assert plan.get("update:sg").reason == "modified outside labctl; reconciling"
    assert plan.get("create:vm").replace is False
    assert "Drift detected:" in plan.render()


def test_plan_without_refresh_ignores_drift(tmp_path: Path, make_scenario: Scenario) -> None:
    """``refresh=False`` trusts the state file."""
    lab = Lab(tmp_path)
    lab.apply(make_scenario())
    lab.backend.forget(lab.store.get("vm").resource_id)  # type: ignore[union-attr, arg-type]

    plan = lab.planner(make_scenario()).plan(refresh=False)

    assert plan.is_empty
    assert plan.drift == ()


def test_destroy_plan_runs_in_reverse_creation_order(
    tmp_path: Path, make_scenario: Scenario
) -> None:
    """Destroy deletes every record, dependents first."""
    lab = Lab(tmp_path)
    lab.apply(make_scenario())

    plan = lab.planner(None).plan_destroy()

    assert plan.destroy is True
    assert operation_keys(plan.operations) == [
        "delete:vm",
        "delete:sg",
        "delete:subnet",
        "delete:net",
    ]
    assert all(op.action is Action.DELETE for op in plan.operations)
    assert {op.reason for op in plan.operations} == {"destroy requested"}
    assert plan.render().startswith("labctl destroy plan\n")


def test_plan_requires_graph(tmp_path: Path) -> None:
    """``plan()`` without a graph is a programming error."""
    with pytest.raises(ValueError, match="plan_destroy"):
        Lab(tmp_path).planner(None).plan()


def test_identity_conflict_is_rejected(tmp_path: Path, make_scenario: Scenario) -> None:
    """Two resources may not claim the same backend identity."""
    duplicate = {
        "name": "sg2",
        "type": "security-group",
        "attributes": {"network_id": "${net.id}", "name": "lab-sg"},
    }

    with pytest.raises(PlanConflictError, match="'sg' and 'sg2'"):
        Lab(tmp_path).planner(make_scenario(extra=[duplicate])).plan()


def _key_declarations(path: Path, mode: str = "0600") -> list[dict[str, object]]:
    return [
        {
            "name": "key",
            "type": "keypair",
            "attributes": {"key_name": "lab-key", "algorithm": "ed25519"},
        },
        {
            "name": "key_file",
            "type": "generated-file",
            "attributes": {"path": str(path), "content": "${key.private_key_pem}", "mode": mode},
        },
    ]


def test_sensitive_consumer_change_regenerates_producer(tmp_path: Path) -> None:
    """Rewriting a file that embeds a secret forces the secret to be regenerated."""
    lab = Lab(tmp_path)
    pem = tmp_path / "lab.pem"
    lab.apply(_key_declarations(pem))

    plan = lab.planner(_key_declarations(pem, mode="0400")).plan()

    assert operation_keys(plan.operations) == ["delete:key", "create:key", "update:key_file"]
    assert "only available when regenerated" in plan.get("create:key").reason
    rendered = plan.render()
    assert "PRIVATE KEY" not in rendered
