"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from labctl.config import AppConfig, ConfigError, load_config


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the default ``./labctl.yml`` lookup inside the test directory."""
    monkeypatch.chdir(tmp_path)


def test_load_config_defaults_when_file_missing() -> None:
    """Defaults apply when no config file is present."""
    config = load_config(env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path(".labctl")
    assert config.state_file == Path(".labctl") / "state.yml"
    assert config.logs_dir == Path(".labctl") / "logs"
    assert config.lab.network_cidr == "10.0.0.0/16"
    assert config.lab.subnet_cidr == "10.0.1.0/24"
    assert config.lab.ports == {"ssh": 22, "jenkins": 8080, "sonarqube": 9000}
    assert config.lab.instance.instance_type == "t3.medium"
    assert config.lab.key.name == "ci-lab-key"
    assert config.lab.key.private_key_path == Path(".labctl") / "ci-lab-key.pem"
    assert config.lab.availability_zone == "us-east-1a"
    assert config.backend.kind == "sandbox"
    assert config.backend.sandbox_file == Path(".labctl") / "sandbox.yml"
    assert config.bootstrap.log_file == Path("/var/log/bootstrap.log")
    assert config.bootstrap.docker_users == ("ec2-user", "jenkins")
    assert config.bootstrap.sysctl == {"vm.max_map_count": 524288, "fs.file-max": 131072}
    assert config.resources is None


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "lab.yml"
    cfg.write_text(
        "state_dir: {state}\n"
        "lab:\n"
        "  name: qa-lab\n"
        "  allowed_cidr: 198.51.100.7/32\n"
        "  ports:\n"
        "    jenkins: 8081\n"
        "  instance:\n"
        "    profile: economy\n"
        "  key:\n"
        "    algorithm: ed25519\n"
        "bootstrap:\n"
        "  policies:\n"
        "    trivy: WARN\n".format(state=tmp_path / "state")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.state_dir == tmp_path / "state"
    assert config.lab.name == "qa-lab"
    assert config.lab.allowed_cidr == "198.51.100.7/32"
    assert config.lab.ports["jenkins"] == 8081
    assert config.lab.ports["sonarqube"] == 9000
    assert config.lab.instance.instance_type == "t3.small"
    assert config.lab.key.algorithm == "ed25519"
    assert config.lab.key.name == "qa-lab-key"
    assert config.bootstrap.policies == {"trivy": "warn"}


def test_explicit_instance_type_overrides_profile(tmp_path: Path) -> None:
    """``lab.instance.type`` wins over the profile mapping."""
    cfg = tmp_path / "lab.yml"
    cfg.write_text("lab:\n  instance:\n    profile: economy\n    type: m5.large\n")

    config = load_config(config_file=cfg, env={})

    assert config.lab.instance.instance_type == "m5.large"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "lab.yml"
    cfg.write_text("lab:\n  allowed_cidr: 192.0.2.0/24\n")
    env = {
        "LABCTL_CONFIG_FILE": str(cfg),
        "LABCTL_LAB__ALLOWED_CIDR": "203.0.113.0/24",
        "LABCTL_LAB__INSTANCE__PROFILE": "economy",
        "LABCTL_LOCK_TIMEOUT": "45",
        "LABCTL_BACKEND__MAX_ATTEMPTS": "7",
        "LABCTL_STATE_DIR": str(tmp_path / "state"),
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.lab.allowed_cidr == "203.0.113.0/24"
    assert config.lab.instance.instance_type == "t3.small"
    assert config.lock_timeout == 45.0
    assert config.backend.max_attempts == 7
    assert config.state_dir == tmp_path / "state"
    assert config.runtime_dir == tmp_path / "state" / "run"


def test_programmatic_overrides_win_over_env(tmp_path: Path) -> None:
    """CLI overrides are applied last."""
    config = load_config(env={"LABCTL_LOCK_TIMEOUT": "45"}, overrides={"lock_timeout": 2.5})

    assert config.lock_timeout == 2.5


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A YAML document that is not a mapping raises ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_nested_keys_raise(tmp_path: Path) -> None:
    """Extra nested keys produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("lab:\n  instance:\n    cores: 4\n")

    with pytest.raises(ConfigError, match="Unknown lab.instance configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("allowed_cidr", "10.0.0.300/24"),
        ("network_cidr", "not-a-cidr"),
        ("subnet_cidr", "10.0.1.5/24"),
    ],
)
def test_malformed_cidr_raises(tmp_path: Path, key: str, value: str) -> None:
    """Malformed address blocks fail at load time."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(f"lab:\n  {key}: {value}\n")

    with pytest.raises(ConfigError, match=f"lab.{key}"):
        load_config(config_file=cfg, env={})


def test_allowed_cidr_host_bits_are_normalised(tmp_path: Path) -> None:
    """An operator address with host bits set is accepted and normalised."""
    config = load_config(env={"LABCTL_LAB__ALLOWED_CIDR": "198.51.100.77/24"})

    assert config.lab.allowed_cidr == "198.51.100.0/24"


def test_subnet_outside_network_raises(tmp_path: Path) -> None:
    """The subnet must lie inside the network."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("lab:\n  subnet_cidr: 172.16.0.0/24\n")

    with pytest.raises(ConfigError, match="not contained"):
        load_config(config_file=cfg, env={})


def test_duplicate_port_raises(tmp_path: Path) -> None:
    """Two services cannot share a port."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("lab:\n  ports:\n    jenkins: 9000\n")

    with pytest.raises(ConfigError, match="reuses port 9000"):
        load_config(config_file=cfg, env={})


def test_out_of_range_port_raises(tmp_path: Path) -> None:
    """Ports must be between 1 and 65535."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("lab:\n  ports:\n    jenkins: 70000\n")

    with pytest.raises(ConfigError, match="between 1 and 65535"):
        load_config(config_file=cfg, env={})


def test_invalid_profile_raises(tmp_path: Path) -> None:
    """Unsupported instance profiles raise ConfigError."""
    with pytest.raises(ConfigError, match="Unsupported lab.instance.profile"):
        load_config(env={"LABCTL_LAB__INSTANCE__PROFILE": "huge"})


def test_invalid_failure_policy_raises(tmp_path: Path) -> None:
    """Bootstrap policies must be fatal or warn."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("bootstrap:\n  policies:\n    trivy: ignore\n")

    with pytest.raises(ConfigError, match="Unsupported failure policy"):
        load_config(config_file=cfg, env={})


def test_unsupported_backend_raises() -> None:
    """Only the sandbox backend is available."""
    with pytest.raises(ConfigError, match="Unsupported backend"):
        load_config(env={"LABCTL_BACKEND__KIND": "aws"})


def test_explicit_resources_are_kept(tmp_path: Path) -> None:
    """An explicit ``resources`` list replaces the built-in topology."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "resources:\n"
        "  - name: net\n"
        "    type: network\n"
        "    attributes:\n"
        "      cidr_block: 10.1.0.0/16\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.resources is not None
    assert config.resources[0]["name"] == "net"
