"""Configuration loader for labctl.

The configuration document declares the lab (region, address ranges, instance
sizing, service ports), tunables for the resource backend and the bootstrap
runner, and optionally an explicit list of resource declarations. Values are
layered, lowest precedence first:

1. Built-in defaults.
2. ``./labctl.yml`` (or the path given by ``--config-file`` /
   ``LABCTL_CONFIG_FILE``).
3. Environment variables prefixed with ``LABCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export LABCTL_LAB__ALLOWED_CIDR=203.0.113.0/24
    export LABCTL_LAB__INSTANCE__PROFILE=economy

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Everything is validated before any other component runs, so
a malformed address block stops the CLI before a plan is computed.
"""
from __future__ import annotations

import ipaddress
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load labctl configuration. Install with "
        "`pip install labctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "LABCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# ``standard`` fits Jenkins and SonarQube side by side; ``economy``
# halves the memory, which leaves SonarQube's embedded Elasticsearch prone to
# being OOM-killed.
INSTANCE_PROFILES: Mapping[str, str] = {
    "standard": "t3.medium",
    "economy": "t3.small",
}
ALLOWED_KEY_ALGORITHMS = {"rsa", "ed25519"}
ALLOWED_BACKENDS = {"sandbox"}
ALLOWED_POLICIES = {"fatal", "warn"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class InstanceSettings:
    """Compute sizing for the lab host."""

    profile: str = "standard"
    type: str | None = None
    image: str = "ami-0c02fb55956c7d316"
    volume_size: int = 30
    user: str = "ec2-user"

    @property
    def instance_type(self) -> str:
        """Return the explicit type or the one implied by the profile."""
        if self.type:
            return self.type
        return INSTANCE_PROFILES[self.profile]


@dataclass(frozen=True)
class KeySettings:
    """SSH key material generated for the lab host."""

    name: str
    algorithm: str
    private_key_path: Path


@dataclass(frozen=True)
class LabSettings:
    """Global settings of the single-host lab."""

    name: str
    region: str
    availability_zone: str
    network_cidr: str
    subnet_cidr: str
    allowed_cidr: str
    ports: Mapping[str, int]
    instance: InstanceSettings
    key: KeySettings
    tags: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BackendConfig:
    """Resource backend selection plus retry and polling tunables."""

    kind: str
    sandbox_file: Path
    settle_polls: int = 1
    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    call_timeout: float = 60.0
    max_polls: int = 30
    max_concurrency: int = 4


@dataclass(frozen=True)
class BootstrapConfig:
    """Host bootstrap settings consumed by ``labctl bootstrap``."""

    log_file: Path = Path("/var/log/bootstrap.log")
    marker_dir: Path = Path("/var/lib/labctl/bootstrap")
    docker_users: tuple[str, ...] = ("ec2-user", "jenkins")
    sonarqube_image: str = "sonarqube:lts-community"
    sonarqube_container: str = "sonarqube"
    jenkins_repo_url: str = "https://pkg.jenkins.io/redhat-stable/jenkins.repo"
    jenkins_key_url: str = "https://pkg.jenkins.io/redhat-stable/jenkins.io.key"
    trivy_install_url: str = (
        "https://raw.githubusercontent.com/aquasecurity/trivy/main/contrib/install.sh"
    )
    trivy_bin_dir: Path = Path("/usr/local/bin")
    sysctl: Mapping[str, int] = field(
        default_factory=lambda: {"vm.max_map_count": 524288, "fs.file-max": 131072}
    )
    policies: Mapping[str, str] = field(default_factory=dict)
    probe_timeout: float = 3.0


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for labctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    lab: LabSettings
    backend: BackendConfig
    bootstrap: BootstrapConfig
    resources: tuple[Mapping[str, object], ...] | None = None

    @property
    def state_file(self) -> Path:
        """Return the path of the persisted state file."""
        return self.state_dir / "state.yml"


DEFAULTS: dict[str, object] = {
    "config_file": "labctl.yml",
    "state_dir": ".labctl",
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "lab": {
        "name": "ci-lab",
        "region": "us-east-1",
        "availability_zone": None,
        "network_cidr": "10.0.0.0/16",
        "subnet_cidr": "10.0.1.0/24",
        "allowed_cidr": "0.0.0.0/0",
        "ports": {"ssh": 22, "jenkins": 8080, "sonarqube": 9000},
        "instance": {
            "profile": "standard",
            "type": None,
            "image": "ami-0c02fb55956c7d316",
            "volume_size": 30,
            "user": "ec2-user",
        },
        "key": {
            "name": None,
            "algorithm": "rsa",
            "private_key_path": None,
        },
        "tags": {},
    },
    "backend": {
        "kind": "sandbox",
        "sandbox_file": None,
        "settle_polls": 1,
        "max_attempts": 5,
        "base_delay": 1.0,
        "multiplier": 2.0,
        "max_delay": 30.0,
        "call_timeout": 60.0,
        "max_polls": 30,
        "max_concurrency": 4,
    },
    "bootstrap": {
        "log_file": "/var/log/bootstrap.log",
        "marker_dir": "/var/lib/labctl/bootstrap",
        "docker_users": ["ec2-user", "jenkins"],
        "sonarqube_image": "sonarqube:lts-community",
        "sonarqube_container": "sonarqube",
        "jenkins_repo_url": "https://pkg.jenkins.io/redhat-stable/jenkins.repo",
        "jenkins_key_url": "https://pkg.jenkins.io/redhat-stable/jenkins.io.key",
        "trivy_install_url": (
            "https://raw.githubusercontent.com/aquasecurity/trivy/main/contrib/install.sh"
        ),
        "trivy_bin_dir": "/usr/local/bin",
        "sysctl": {"vm.max_map_count": 524288, "fs.file-max": 131072},
        "policies": {},
        "probe_timeout": 3.0,
    },
    "resources": None,
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_LAB_KEYS = set(cast(Mapping[str, object], DEFAULTS["lab"]).keys())
_INSTANCE_KEYS = {"profile", "type", "image", "volume_size", "user"}
_KEY_KEYS = {"name", "algorithm", "private_key_path"}
_BACKEND_KEYS = set(cast(Mapping[str, object], DEFAULTS["backend"]).keys())
_BOOTSTRAP_KEYS = set(cast(Mapping[str, object], DEFAULTS["bootstrap"]).keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    lab = _as_dict(raw.get("lab"), "lab")
    _reject_unknown(lab, _LAB_KEYS, "lab")
    _reject_unknown(_as_dict(lab.get("instance"), "lab.instance"), _INSTANCE_KEYS, "lab.instance")
    _reject_unknown(_as_dict(lab.get("key"), "lab.key"), _KEY_KEYS, "lab.key")

    network = _parse_network(lab.get("network_cidr"), "lab.network_cidr", strict=True)
    subnet = _parse_network(lab.get("subnet_cidr"), "lab.subnet_cidr", strict=True)
    _parse_network(lab.get("allowed_cidr"), "lab.allowed_cidr", strict=False)
    if subnet.version != network.version or not subnet.subnet_of(network):  # type: ignore[arg-type]
        raise ConfigError(
            f"lab.subnet_cidr {subnet} is not contained in lab.network_cidr {network}."
        )

    backend = _as_dict(raw.get("backend"), "backend")
    _reject_unknown(backend, _BACKEND_KEYS, "backend")
    kind = str(backend.get("kind", "sandbox"))
    if kind not in ALLOWED_BACKENDS:
        allowed = ", ".join(sorted(ALLOWED_BACKENDS))
        raise ConfigError(f"Unsupported backend '{kind}'. Allowed: {allowed}.")

    bootstrap = _as_dict(raw.get("bootstrap"), "bootstrap")
    _reject_unknown(bootstrap, _BOOTSTRAP_KEYS, "bootstrap")

    resources = raw.get("resources")
    if resources is not None:
        entries = _as_sequence(resources, "resources")
        for index, entry in enumerate(entries):
            _as_dict(entry, f"resources[{index}]")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else state_dir / "logs"
    runtime_value = raw.get("runtime_dir")
    runtime_dir = _to_path(runtime_value) if runtime_value else state_dir / "run"
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    lab = _build_lab_settings(_as_dict(raw.get("lab"), "lab"), state_dir)
    backend = _build_backend_config(_as_dict(raw.get("backend"), "backend"), state_dir)
    bootstrap = _build_bootstrap_config(_as_dict(raw.get("bootstrap"), "bootstrap"))

    resources_raw = raw.get("resources")
    resources: tuple[Mapping[str, object], ...] | None = None
    if resources_raw is not None:
        resources = tuple(
            _as_dict(entry, f"resources[{index}]")
            for index, entry in enumerate(_as_sequence(resources_raw, "resources"))
        )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        lab=lab,
        backend=backend,
        bootstrap=bootstrap,
        resources=resources,
    )


def _build_lab_settings(mapping: Mapping[str, object], state_dir: Path) -> LabSettings:
    name = _expect_name(mapping.get("name", "ci-lab"), "lab.name")
    region = _expect_name(mapping.get("region", "us-east-1"), "lab.region")
    zone_value = mapping.get("availability_zone")
    availability_zone = str(zone_value).strip() if zone_value else f"{region}a"

    instance_map = _as_dict(mapping.get("instance"), "lab.instance")
    profile = str(instance_map.get("profile", "standard"))
    if profile not in INSTANCE_PROFILES:
        allowed = ", ".join(sorted(INSTANCE_PROFILES))
        raise ConfigError(f"Unsupported lab.instance.profile '{profile}'. Allowed: {allowed}.")
    type_value = instance_map.get("type")
    volume_size = _expect_int(
        instance_map.get("volume_size"), "lab.instance.volume_size", default=30
    )
    if volume_size < 8:
        raise ConfigError("lab.instance.volume_size must be at least 8 GiB.")
    instance = InstanceSettings(
        profile=profile,
        type=str(type_value) if type_value else None,
        image=_expect_name(instance_map.get("image", InstanceSettings.image), "lab.instance.image"),
        volume_size=volume_size,
        user=_expect_name(instance_map.get("user", "ec2-user"), "lab.instance.user"),
    )

    key_map = _as_dict(mapping.get("key"), "lab.key")
    key_name_value = key_map.get("name")
    key_name = str(key_name_value).strip() if key_name_value else f"{name}-key"
    algorithm = str(key_map.get("algorithm", "rsa")).lower()
    if algorithm not in ALLOWED_KEY_ALGORITHMS:
        allowed = ", ".join(sorted(ALLOWED_KEY_ALGORITHMS))
        raise ConfigError(f"Unsupported lab.key.algorithm '{algorithm}'. Allowed: {allowed}.")
    key_path_value = key_map.get("private_key_path")
    private_key_path = (
        _to_path(key_path_value) if key_path_value else state_dir / f"{key_name}.pem"
    )
    network = _parse_network(mapping.get("network_cidr"), "lab.network_cidr", strict=True)
    subnet = _parse_network(mapping.get("subnet_cidr"), "lab.subnet_cidr", strict=True)
    allowed_block = _parse_network(mapping.get("allowed_cidr"), "lab.allowed_cidr", strict=False)

    return LabSettings(
        name=name,
        region=region,
        availability_zone=availability_zone,
        network_cidr=str(network),
        subnet_cidr=str(subnet),
        allowed_cidr=str(allowed_block),
        ports=_build_ports(mapping.get("ports")),
        instance=instance,
        key=KeySettings(name=key_name, algorithm=algorithm, private_key_path=private_key_path),
        tags={str(k): str(v) for k, v in _as_dict(mapping.get("tags"), "lab.tags").items()},
    )


def _build_ports(value: object) -> dict[str, int]:
    ports_map = _as_dict(value, "lab.ports")
    if not ports_map:
        raise ConfigError("lab.ports must declare at least one service port.")
    ports: dict[str, int] = {}
    seen: dict[int, str] = {}
    for service, raw_port in ports_map.items():
        port = _expect_int(raw_port, f"lab.ports.{service}", default=0)
        if not 1 <= port <= 65535:
            raise ConfigError(f"lab.ports.{service} must be between 1 and 65535. Got {port}.")
        if port in seen:
            raise ConfigError(
                f"lab.ports.{service} reuses port {port} already assigned to '{seen[port]}'."
            )
        seen[port] = service
        ports[service] = port
    return ports


def _build_backend_config(mapping: Mapping[str, object], state_dir: Path) -> BackendConfig:
    sandbox_value = mapping.get("sandbox_file")
    settle_polls = _expect_int(mapping.get("settle_polls"), "backend.settle_polls", default=1)
    if settle_polls < 0:
        raise ConfigError("backend.settle_polls must be non-negative.")
    multiplier = _expect_positive_float(
        mapping.get("multiplier"), "backend.multiplier", default=2.0
    )
    if multiplier < 1.0:
        raise ConfigError("backend.multiplier must be at least 1.0.")
    return BackendConfig(
        kind=str(mapping.get("kind", "sandbox")),
        sandbox_file=_to_path(sandbox_value) if sandbox_value else state_dir / "sandbox.yml",
        settle_polls=settle_polls,
        max_attempts=_expect_positive_int(mapping.get("max_attempts"), "backend.max_attempts", 5),
        base_delay=_expect_positive_float(
            mapping.get("base_delay"), "backend.base_delay", default=1.0
        ),
        multiplier=multiplier,
        max_delay=_expect_positive_float(
            mapping.get("max_delay"), "backend.max_delay", default=30.0
        ),
        call_timeout=_expect_positive_float(
            mapping.get("call_timeout"), "backend.call_timeout", default=60.0
        ),
        max_polls=_expect_positive_int(mapping.get("max_polls"), "backend.max_polls", 30),
        max_concurrency=_expect_positive_int(
            mapping.get("max_concurrency"), "backend.max_concurrency", 4
        ),
    )


def _build_bootstrap_config(mapping: Mapping[str, object]) -> BootstrapConfig:
    defaults = BootstrapConfig()
    users = mapping.get("docker_users", list(defaults.docker_users))
    docker_users = tuple(str(user) for user in _as_sequence(users, "bootstrap.docker_users"))

    sysctl: dict[str, int] = {}
    for key, value in _as_dict(mapping.get("sysctl"), "bootstrap.sysctl").items():
        sysctl[key] = _expect_int(value, f"bootstrap.sysctl.{key}", default=0)

    policies: dict[str, str] = {}
    for step, value in _as_dict(mapping.get("policies"), "bootstrap.policies").items():
        policy = str(value).lower()
        if policy not in ALLOWED_POLICIES:
            allowed = ", ".join(sorted(ALLOWED_POLICIES))
            raise ConfigError(
                f"Unsupported failure policy '{value}' for bootstrap step '{step}'. "
                f"Allowed: {allowed}."
            )
        policies[step] = policy

    return BootstrapConfig(
        log_file=_to_path(mapping.get("log_file", defaults.log_file)),
        marker_dir=_to_path(mapping.get("marker_dir", defaults.marker_dir)),
        docker_users=docker_users,
        sonarqube_image=str(mapping.get("sonarqube_image", defaults.sonarqube_image)),
        sonarqube_container=str(mapping.get("sonarqube_container", defaults.sonarqube_container)),
        jenkins_repo_url=str(mapping.get("jenkins_repo_url", defaults.jenkins_repo_url)),
        jenkins_key_url=str(mapping.get("jenkins_key_url", defaults.jenkins_key_url)),
        trivy_install_url=str(mapping.get("trivy_install_url", defaults.trivy_install_url)),
        trivy_bin_dir=_to_path(mapping.get("trivy_bin_dir", defaults.trivy_bin_dir)),
        sysctl=sysctl,
        policies=policies,
        probe_timeout=_expect_positive_float(
            mapping.get("probe_timeout"), "bootstrap.probe_timeout", default=3.0
        ),
    )


def _parse_network(
    value: object,
    label: str,
    *,
    strict: bool,
) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be an address block such as 10.0.0.0/16.")
    try:
        return ipaddress.ip_network(value.strip(), strict=strict)
    except ValueError as exc:
        raise ConfigError(f"{label} is not a valid address block: {value!r} ({exc}).") from exc


def _reject_unknown(mapping: Mapping[str, object], allowed: set[str], label: str) -> None:
    unknown = set(mapping.keys()) - allowed
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown {label} configuration keys: {joined}.")


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_name(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value.strip()


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_int(value: object | None, label: str, default: int) -> int:
    number = _expect_int(value, label, default=default)
    if number < 1:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "INSTANCE_PROFILES",
    "AppConfig",
    "BackendConfig",
    "BootstrapConfig",
    "ConfigError",
    "InstanceSettings",
    "KeySettings",
    "LabSettings",
    "load_config",
]
