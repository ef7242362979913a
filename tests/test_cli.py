"""Tests for the labctl command line interface."""
from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from labctl import __version__
from labctl.backends import BackendError, BackendResource, SandboxBackend
from labctl.bootstrap import HostShell
from labctl.cli import app
from labctl.state import StateStore

runner = CliRunner()

LAB_RESOURCES = 8


def _prepare_environment(
    tmp_path: Path, config: dict[str, object] | None = None
) -> tuple[dict[str, str], Path]:
    """Return CLI environment variables rooted below *tmp_path*."""
    state_dir = tmp_path / "state"
    config_path = tmp_path / "labctl.yml"
    config_path.write_text(yaml.safe_dump(config or {}), encoding="utf-8")
    env = {
        "LABCTL_CONFIG_FILE": str(config_path),
        "LABCTL_STATE_DIR": str(state_dir),
        "LABCTL_LAB__KEY__ALGORITHM": "ed25519",
        "LABCTL_BACKEND__SETTLE_POLLS": "0",
        "LABCTL_BACKEND__BASE_DELAY": "0.001",
        "LABCTL_BACKEND__MAX_DELAY": "0.002",
        "LABCTL_BOOTSTRAP__LOG_FILE": str(tmp_path / "bootstrap.log"),
        "LABCTL_BOOTSTRAP__MARKER_DIR": str(tmp_path / "markers"),
    }
    return env, state_dir


def _apply(env: dict[str, str]) -> None:
    result = runner.invoke(app, ["apply", "--yes"], env=env)
    assert result.exit_code == 0, result.stdout


class ReadyHost:
    """A host on which every bootstrap step is already satisfied."""

    def __init__(self, *, inactive: tuple[str, ...] = (), failing: bool = False) -> None:
        self.inactive = set(inactive)
        self.failing = failing
        self.commands: list[list[str]] = []

    def __call__(self, argv: list[str]) -> subprocess.CompletedProcess[str]:
        self.commands.append(argv)
        args = argv[1:] if argv[0] == "sudo" else argv
        if self.failing:
            return subprocess.CompletedProcess(argv, 1, stdout="", stderr="no such command")
        stdout = stderr = ""
        code = 0
        if args[:2] == ["id", "-nG"]:
            stdout = f"{args[-1]} docker"
        elif args[:2] == ["docker", "ps"]:
            if "{{.Status}}" in " ".join(args):
                stdout = "sonarqube\tsonarqube:lts-community\tUp 2 minutes"
            else:
                stdout = "sonarqube"
        elif args == ["java", "-version"]:
            stderr = 'openjdk version "17.0.10"'
        elif args[1:] == ["--version"]:
            stdout = f"{args[0]} 1.0"
        elif args[:2] == ["sysctl", "-n"]:
            stdout = "1048576"
        elif args[:2] == ["systemctl", "is-active"] and args[-1] in self.inactive:
            code = 3
        return subprocess.CompletedProcess(argv, code, stdout=stdout, stderr=stderr)


@pytest.fixture
def host(monkeypatch: pytest.MonkeyPatch) -> ReadyHost:
    """Route bootstrap and probe commands to a scripted host."""
    fake = ReadyHost()
    monkeypatch.setattr(
        "labctl.cli._build_host_shell", lambda: HostShell(runner=fake, use_sudo=False)
    )
    monkeypatch.setattr("labctl.cli._build_connector", lambda: lambda host, port, timeout: None)
    return fake


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"labctl {__version__}" in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Provision and bootstrap" in result.stdout


def test_plan_lists_the_lab_topology(tmp_path: Path) -> None:
    """A fresh plan creates every resource of the built-in topology."""
    env, state_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["plan"], env=env)

    assert result.exit_code == 0, result.stdout
    assert f"Plan: {LAB_RESOURCES} to add, 0 to change, 0 to destroy." in result.stdout
    assert "lab_instance (compute-instance)" in result.stdout
    assert not (state_dir / "state.yml").exists()


def test_plan_json_is_machine_readable(tmp_path: Path) -> None:
    """``plan --json`` emits the operations as JSON."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["plan", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert isinstance(payload, dict)
    assert "PRIVATE KEY" not in result.stdout


def test_apply_then_plan_reports_no_changes(tmp_path: Path) -> None:
    """A successful apply leaves nothing to do."""
    env, state_dir = _prepare_environment(tmp_path)

    applied = runner.invoke(app, ["apply", "--yes"], env=env)

    assert applied.exit_code == 0, applied.stdout
    assert f"Apply success: {LAB_RESOURCES} created" in applied.stdout
    key_file = state_dir / "ci-lab-key.pem"
    assert "PRIVATE KEY" in key_file.read_text(encoding="utf-8")
    assert "PRIVATE KEY" not in (state_dir / "state.yml").read_text(encoding="utf-8")

    replanned = runner.invoke(app, ["plan"], env=env)
    assert replanned.exit_code == 0
    assert "No changes." in replanned.stdout

    operations = (state_dir / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert '"command": "apply"' in operations


def test_declined_apply_changes_nothing(tmp_path: Path) -> None:
    """Answering no at the prompt exits 1 without touching state."""
    env, state_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["apply"], env=env, input="n\n")

    assert result.exit_code == 1
    assert "Apply cancelled; no changes were made." in result.stdout
    listed = runner.invoke(app, ["state", "list", "--json"], env=env)
    assert json.loads(listed.stdout)["resources"] == []


def test_output_reports_addresses_and_urls(tmp_path: Path) -> None:
    """``output`` reports the instance address, URLs, SSH command and next steps."""
    env, state_dir = _prepare_environment(tmp_path)
    _apply(env)

    result = runner.invoke(app, ["output", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    host = payload["public_dns"] or payload["public_ip"]
    assert payload["urls"] == {
        "jenkins": f"http://{host}:8080",
        "sonarqube": f"http://{host}:9000",
    }
    assert payload["ssh"] == (
        f"ssh -i {state_dir / 'ci-lab-key.pem'} ec2-user@{payload['public_ip']}"
    )
    assert payload["next_steps"][0] == f"1. Open Jenkins at http://{host}:8080."
    assert any("initialAdminPassword" in line for line in payload["next_steps"])
    assert any("docker group" in line for line in payload["next_steps"])

    text = runner.invoke(app, ["output"], env=env)
    assert text.exit_code == 0, text.stdout
    assert "Next steps:" in text.stdout
    assert "sign in as admin/admin" in text.stdout


def test_output_without_instance_fails(tmp_path: Path) -> None:
    """Asking for outputs before apply is an environment error."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["output"], env=env)

    assert result.exit_code == 3
    assert "Run 'labctl apply' first." in result.stdout


def test_unreadable_backend_file_is_an_environment_error(tmp_path: Path) -> None:
    """A corrupt sandbox file stops resource commands with exit 3."""
    env, state_dir = _prepare_environment(tmp_path)
    state_dir.mkdir(parents=True)
    (state_dir / "sandbox.yml").write_text("objects: [unterminated\n", encoding="utf-8")

    result = runner.invoke(app, ["plan"], env=env)

    assert result.exit_code == 3
    assert "Backend unavailable: Failed to read sandbox file" in result.stdout


class ThrottledBackend(SandboxBackend):
    """Rejects every read, as a rate-limited cloud API would."""

    def read(self, resource_type: str, resource_id: str) -> BackendResource:
        raise BackendError("RequestLimitExceeded: slow down", retryable=True)


def test_refresh_backend_error_is_a_provider_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A backend error while observing drift exits 4 for plan and apply."""
    env, _ = _prepare_environment(tmp_path)
    _apply(env)
    monkeypatch.setattr(
        "labctl.cli._build_backend",
        lambda config: ThrottledBackend(config.backend.sandbox_file, settle_polls=0),
    )

    planned = runner.invoke(app, ["plan"], env=env)
    applied = runner.invoke(app, ["apply", "--yes"], env=env)

    assert planned.exit_code == 4
    assert "Refresh failed: RequestLimitExceeded: slow down" in planned.stdout
    assert applied.exit_code == 4
    assert "No changes." not in applied.stdout
    assert runner.invoke(app, ["plan", "--no-refresh"], env=env).exit_code == 0


def test_state_list_and_show_mask_secrets(tmp_path: Path) -> None:
    """State commands list records and never print private material."""
    env, _ = _prepare_environment(tmp_path)
    _apply(env)

    listed = runner.invoke(app, ["state", "list", "--json"], env=env)
    assert listed.exit_code == 0
    payload = json.loads(listed.stdout)
    assert payload["serial"] >= 1
    assert [item["name"] for item in payload["resources"]][:3] == [
        "lab_key",
        "lab_key_file",
        "lab_network",
    ]

    shown = runner.invoke(app, ["state", "show", "lab_key", "--json"], env=env)
    assert shown.exit_code == 0
    record = json.loads(shown.stdout)
    assert record["outputs"]["private_key_pem"] == "(sensitive)"
    assert "PRIVATE KEY" not in shown.stdout

    missing = runner.invoke(app, ["state", "show", "nope"], env=env)
    assert missing.exit_code == 2
    assert "Resource 'nope' is not recorded in state." in missing.stdout


def test_graph_prints_dot(tmp_path: Path) -> None:
    """``graph`` renders the dependency graph for Graphviz."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["graph"], env=env)

    assert result.exit_code == 0
    assert result.stdout.startswith("digraph labctl {")
    assert "lab_instance" in result.stdout


def test_destroy_removes_everything(tmp_path: Path) -> None:
    """``destroy --yes`` deletes every record and leaves the sandbox empty."""
    env, state_dir = _prepare_environment(tmp_path)
    _apply(env)

    result = runner.invoke(app, ["destroy", "--yes"], env=env)

    assert result.exit_code == 0, result.stdout
    assert f"{LAB_RESOURCES} destroyed" in result.stdout
    assert StateStore(state_dir / "state.yml").list() == []
    assert SandboxBackend(state_dir / "sandbox.yml").object_ids() == []

    again = runner.invoke(app, ["destroy", "--yes"], env=env)
    assert again.exit_code == 0


def test_malformed_address_block_is_a_validation_error(tmp_path: Path) -> None:
    """Bad CIDRs in declared resources fail before any backend call."""
    env, state_dir = _prepare_environment(
        tmp_path,
        config={
            "resources": [
                {
                    "name": "net",
                    "type": "network",
                    "attributes": {"cidr_block": "10.0.0.300/16"},
                }
            ]
        },
    )

    result = runner.invoke(app, ["apply", "--yes"], env=env)

    assert result.exit_code == 2
    assert "not a valid address block" in result.stdout
    assert not (state_dir / "sandbox.yml").exists()


def test_invalid_configuration_exits_with_validation_code(tmp_path: Path) -> None:
    """Configuration errors are reported before any command runs."""
    env, _ = _prepare_environment(tmp_path)
    env["LABCTL_LAB__SUBNET_CIDR"] = "192.168.0.0/24"

    result = runner.invoke(app, ["plan"], env=env)

    assert result.exit_code == 2
    assert "Configuration error:" in result.stdout


def test_drift_blocks_apply_until_accepted(tmp_path: Path) -> None:
    """Out-of-band changes stop ``apply`` unless ``--accept-drift`` is given."""
    env, state_dir = _prepare_environment(tmp_path)
    _apply(env)
    record = StateStore(state_dir / "state.yml").get("lab_security")
    assert record is not None and record.resource_id is not None
    SandboxBackend(state_dir / "sandbox.yml").tamper(record.resource_id, description="by hand")

    plan = runner.invoke(app, ["plan"], env=env)
    assert "Drift detected:" in plan.stdout

    blocked = runner.invoke(app, ["apply", "--yes"], env=env)
    assert blocked.exit_code == 6
    assert "--accept-drift" in blocked.stdout

    accepted = runner.invoke(app, ["apply", "--yes", "--accept-drift"], env=env)
    assert accepted.exit_code == 0, accepted.stdout
    assert "No changes." in runner.invoke(app, ["plan"], env=env).stdout


def test_bootstrap_run_on_ready_host_skips_and_verifies(tmp_path: Path, host: ReadyHost) -> None:
    """Every step is skipped on a configured host and verification passes."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["bootstrap", "run"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Bootstrap: 0 succeeded, 13 skipped, 0 failed." in result.stdout
    assert "Verification pass" in result.stdout
    assert "java is available (openjdk version \"17.0.10\")." in result.stdout
    assert "Next steps:" in result.stdout
    assert "sudo cat /var/lib/jenkins/secrets/initialAdminPassword" in result.stdout
    assert "http://<instance-ip>:9000 and sign in as admin/admin" in result.stdout
    log = (tmp_path / "bootstrap.log").read_text(encoding="utf-8")
    assert "Skipped, already satisfied:" in log
    assert "sonarqube  sonarqube:lts-community  Up 2 minutes" in log
    assert "Allow SonarQube 2-3 minutes" in log
    assert "Log out and back in so ec2-user, jenkins pick up the docker group" in log


def test_bootstrap_run_halts_on_fatal_failure(
    tmp_path: Path, host: ReadyHost
) -> None:
    """A failing first step stops the run with the provider exit code."""
    env, _ = _prepare_environment(tmp_path)
    host.failing = True

    result = runner.invoke(app, ["bootstrap", "run", "--skip-verify"], env=env)

    assert result.exit_code == 4
    assert "Bootstrap halted at 'system-packages'" in result.stdout


def test_bootstrap_check_reports_without_changes(tmp_path: Path, host: ReadyHost) -> None:
    """``bootstrap check --json`` evaluates predicates only."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["bootstrap", "check", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert {step["status"] for step in payload["steps"]} == {"skipped"}
    assert not (tmp_path / "bootstrap.log").exists()


def test_verify_reports_failed_docker(tmp_path: Path, host: ReadyHost) -> None:
    """``verify`` exits with the worst probe impact."""
    env, _ = _prepare_environment(tmp_path)

    healthy = runner.invoke(app, ["verify", "--json"], env=env)
    assert healthy.exit_code == 0, healthy.stdout
    assert json.loads(healthy.stdout)["status"] == "green"

    host.inactive.add("docker")
    broken = runner.invoke(app, ["verify"], env=env)
    assert broken.exit_code == 4
    assert "service-docker" in broken.stdout
