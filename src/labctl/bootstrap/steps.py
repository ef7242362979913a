"""Building blocks for bootstrap steps.

A step bundles ordered host commands with an idempotence predicate (a
:class:`Check`). The runner skips the step when the predicate already holds,
so running the whole sequence twice leaves every step skipped the second
time. Each step declares its failure policy explicitly.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .host import HostShell


class FailurePolicy(str, Enum):
    """What a failed step means for the rest of the sequence."""

    FATAL = "fatal"
    WARN = "warn"


class StepStatus(str, Enum):
    """Lifecycle of a bootstrap step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class Check:
    """A named predicate over the host."""

    description: str
    fn: Callable[[HostShell], bool]

    def __call__(self, shell: HostShell) -> bool:
        """Evaluate the predicate."""
        return bool(self.fn(shell))


@dataclass(frozen=True, slots=True)
class HostCommand:
    """One command of a step's action."""

    argv: tuple[str, ...] | str
    privileged: bool = True
    allow_failure: bool = False
    shell: bool = False
    when: Check | None = None


@dataclass(frozen=True, slots=True)
class BootstrapStep:
    """A named, idempotent unit of host configuration."""

    name: str
    description: str
    commands: tuple[HostCommand, ...]
    check: Check
    policy: FailurePolicy = FailurePolicy.FATAL
    marker: Path | None = None


def cmd(
    *argv: str,
    privileged: bool = True,
    allow_failure: bool = False,
    when: Check | None = None,
) -> HostCommand:
    """Shorthand for a :class:`HostCommand` given as separate arguments."""
    return HostCommand(
        argv=tuple(argv), privileged=privileged, allow_failure=allow_failure, when=when
    )


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def command_available(name: str) -> Check:
    """``name`` resolves on PATH."""
    return Check(f"{name} is on PATH", lambda shell: shell.command_exists(name))


def package_installed(package: str) -> Check:
    """The RPM *package* is installed."""
    return Check(
        f"package {package} is installed",
        lambda shell: shell.succeeds(["rpm", "-q", package]),
    )


def service_active(unit: str) -> Check:
    """The systemd *unit* is active."""
    return Check(
        f"{unit} is active",
        lambda shell: shell.succeeds(["systemctl", "is-active", "--quiet", unit], privileged=True),
    )


def service_enabled(unit: str) -> Check:
    """The systemd *unit* is enabled."""
    return Check(
        f"{unit} is enabled",
        lambda shell: shell.succeeds(
            ["systemctl", "is-enabled", "--quiet", unit], privileged=True
        ),
    )


def path_exists(path: Path | str) -> Check:
    """*path* exists on the host."""
    return Check(f"{path} exists", lambda shell: shell.succeeds(["test", "-e", str(path)]))


def user_exists(user: str) -> Check:
    """The account *user* exists."""
    return Check(f"user {user} exists", lambda shell: shell.succeeds(["id", user]))


def user_in_group(user: str, group: str) -> Check:
    """*user* belongs to *group*; holds trivially when the user does not exist."""

    def _check(shell: HostShell) -> bool:
        groups = shell.output(["id", "-nG", user])
        if groups is None:
            return True
        return group in groups.split()

    return Check(f"{user} is in group {group} (if present)", _check)


def docker_volume_exists(volume: str) -> Check:
    """The docker *volume* exists."""
    return Check(
        f"docker volume {volume} exists",
        lambda shell: shell.succeeds(["docker", "volume", "inspect", volume], privileged=True),
    )


def container_exists(name: str) -> Check:
    """A container called *name* exists (running or not)."""

    def _check(shell: HostShell) -> bool:
        names = shell.output(
            ["docker", "ps", "-a", "--format", "{{.Names}}"], privileged=True
        )
        return names is not None and name in names.splitlines()

    return Check(f"container {name} exists", _check)


def container_running(name: str) -> Check:
    """A container called *name* is running."""

    def _check(shell: HostShell) -> bool:
        names = shell.output(["docker", "ps", "--format", "{{.Names}}"], privileged=True)
        return names is not None and name in names.splitlines()

    return Check(f"container {name} is running", _check)


def sysctl_at_least(key: str, minimum: int) -> Check:
    """The kernel parameter *key* is at least *minimum*."""

    def _check(shell: HostShell) -> bool:
        value = shell.output(["sysctl", "-n", key])
        try:
            return value is not None and int(value.split()[0]) >= minimum
        except (ValueError, IndexError):
            return False

    return Check(f"{key} >= {minimum}", _check)


def file_contains(path: Path | str, text: str) -> Check:
    """*path* contains the literal *text*."""
    return Check(
        f"{path} mentions {text}",
        lambda shell: shell.succeeds(["grep", "-qF", text, str(path)]),
    )


def marker_present(marker_dir: Path, name: str) -> Check:
    """The completion marker *name* exists below *marker_dir*."""
    return path_exists(marker_dir / name)


def extras_offers(topic: str) -> Check:
    """``amazon-linux-extras`` lists *topic*."""
    return Check(
        f"amazon-linux-extras offers {topic}",
        lambda shell: shell.succeeds(
            f"amazon-linux-extras list | grep -q {topic}", privileged=True, shell=True
        ),
    )


def all_of(*checks: Check) -> Check:
    """Every check in *checks* holds."""
    description = " and ".join(check.description for check in checks)
    return Check(description, lambda shell: all(check(shell) for check in checks))


def negate(check: Check) -> Check:
    """The opposite of *check*."""
    return Check(f"not ({check.description})", lambda shell: not check(shell))


def step_names(steps: Sequence[BootstrapStep]) -> list[str]:
    """Return the names of *steps* in order."""
    return [step.name for step in steps]


__all__ = [
    "BootstrapStep",
    "Check",
    "FailurePolicy",
    "HostCommand",
    "StepStatus",
    "all_of",
    "cmd",
    "command_available",
    "container_exists",
    "container_running",
    "docker_volume_exists",
    "extras_offers",
    "file_contains",
    "marker_present",
    "negate",
    "package_installed",
    "path_exists",
    "service_active",
    "service_enabled",
    "step_names",
    "sysctl_at_least",
    "user_exists",
    "user_in_group",
]
