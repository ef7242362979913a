"""Command execution on the lab host.

Privileged commands are prefixed with ``sudo`` unless labctl already runs as
root. The runner is injectable so tests can script command outcomes without
touching the machine.
"""
from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass

Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


class HostCommandError(RuntimeError):
    """Raised when a host command exits non-zero and the caller asked to check."""

    def __init__(self, message: str, result: subprocess.CompletedProcess[str]) -> None:
        """Keep the completed process for callers that want the raw output."""
        super().__init__(message)
        self.result = result


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, check=False, capture_output=True, text=True)  # noqa: S603


def describe(argv: Sequence[str] | str) -> str:
    """Return a shell-like rendering of *argv* for logs and messages."""
    if isinstance(argv, str):
        return argv
    return shlex.join(argv)


@dataclass(slots=True)
class HostShell:
    """Run commands on the local host, elevating privileged ones."""

    runner: Runner = _default_runner
    use_sudo: bool | None = None

    def __post_init__(self) -> None:
        """Default to ``sudo`` whenever the effective user is not root."""
        if self.use_sudo is None:
            self.use_sudo = os.geteuid() != 0

    def build(
        self, argv: Sequence[str] | str, *, privileged: bool = False, shell: bool = False
    ) -> list[str]:
        """Return the argument vector that would be executed."""
        if shell or isinstance(argv, str):
            script = argv if isinstance(argv, str) else shlex.join(argv)
            args = ["bash", "-o", "pipefail", "-c", script]
        else:
            args = list(argv)
        if privileged and self.use_sudo:
            args = ["sudo", *args]
        return args

    def run(
        self,
        argv: Sequence[str] | str,
        *,
        privileged: bool = False,
        check: bool = True,
        shell: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Run *argv* and return the completed process."""
        args = self.build(argv, privileged=privileged, shell=shell)
        try:
            result = self.runner(args)
        except FileNotFoundError as exc:
            result = subprocess.CompletedProcess(args, returncode=127, stdout="", stderr=str(exc))
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise HostCommandError(
                f"{describe(argv)} failed (exit {result.returncode}): {message}", result
            )
        return result

    def succeeds(
        self, argv: Sequence[str] | str, *, privileged: bool = False, shell: bool = False
    ) -> bool:
        """Return ``True`` when *argv* exits zero."""
        return self.run(argv, privileged=privileged, check=False, shell=shell).returncode == 0

    def output(
        self, argv: Sequence[str] | str, *, privileged: bool = False, shell: bool = False
    ) -> str | None:
        """Return stripped stdout, or ``None`` when the command failed."""
        result = self.run(argv, privileged=privileged, check=False, shell=shell)
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip()

    def command_exists(self, name: str) -> bool:
        """Return ``True`` when *name* resolves on ``PATH``."""
        return self.succeeds(f"command -v {shlex.quote(name)}")


__all__ = ["HostCommandError", "HostShell", "Runner", "describe"]
