"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from labctl.config import AppConfig, load_config


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def scenario_declarations(
    *, extra: list[dict[str, object]] | None = None
) -> list[dict[str, object]]:
    """Return the network, subnet, security group and instance scenario."""
    declarations: list[dict[str, object]] = [
        {
            "name": "net",
            "type": "network",
            "attributes": {"cidr_block": "10.0.0.0/16"},
        },
        {
            "name": "subnet",
            "type": "subnet",
            "attributes": {"network_id": "${net.id}", "cidr_block": "10.0.1.0/24"},
        },
        {
            "name": "sg",
            "type": "security-group",
            "attributes": {
                "network_id": "${net.id}",
                "name": "lab-sg",
                "ingress": [{"port": 8080, "protocol": "tcp", "cidr_blocks": ["0.0.0.0/0"]}],
            },
        },
        {
            "name": "vm",
            "type": "compute-instance",
            "attributes": {
                "image": "ami-0c02fb55956c7d316",
                "instance_type": "t3.medium",
                "subnet_id": "${subnet.id}",
                "security_group_ids": ["${sg.id}"],
            },
        },
    ]
    declarations.extend(extra or [])
    return declarations


@pytest.fixture
def lab_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    """Return a configuration rooted in *tmp_path* with fast backend retries."""
    monkeypatch.chdir(tmp_path)
    env = {
        "LABCTL_STATE_DIR": str(tmp_path / "state"),
        "LABCTL_LAB__KEY__ALGORITHM": "ed25519",
        "LABCTL_BACKEND__BASE_DELAY": "0.001",
        "LABCTL_BACKEND__MAX_DELAY": "0.002",
        "LABCTL_BACKEND__SETTLE_POLLS": "1",
        "LABCTL_BOOTSTRAP__MARKER_DIR": str(tmp_path / "markers"),
        "LABCTL_BOOTSTRAP__LOG_FILE": str(tmp_path / "bootstrap.log"),
    }
    return load_config(env=env)


@pytest.fixture
def make_scenario() -> Callable[..., list[dict[str, object]]]:
    """Return a factory producing fresh copies of the scenario declarations."""
    return scenario_declarations
