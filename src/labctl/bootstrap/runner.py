"""Sequential, idempotent execution of bootstrap steps.

Steps run strictly in order. A step whose predicate already holds is skipped
without running any command. After its commands run the predicate is checked
again; a step only succeeds when the host actually reached the desired state.
A fatal failure halts the sequence and leaves later steps pending, a warn
failure is logged and the sequence continues. The verification pass runs at
the end regardless of skips or warnings.
"""
from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import TextIO

from ..health.models import HealthReport
from .host import HostCommandError, HostShell, describe
from .steps import BootstrapStep, FailurePolicy, HostCommand, StepStatus

Verifier = Callable[[], HealthReport]
StepCallback = Callable[[BootstrapStep, StepStatus, str], None]


class BootstrapLogError(RuntimeError):
    """Raised when the bootstrap log cannot be opened or written."""


def _utc_stamp() -> str:
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class BootstrapLog:
    """Append-only text log, one timestamped line per event."""

    def __init__(self, path: Path | str) -> None:
        """Remember *path*; the file is opened lazily on first write."""
        self.path = Path(path)
        self._handle: TextIO | None = None

    def __enter__(self) -> BootstrapLog:
        """Open the log for appending."""
        self._open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close the underlying file."""
        self.close()

    def _open(self) -> TextIO:
        if self._handle is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self.path.open("a", encoding="utf-8")
            except OSError as exc:
                raise BootstrapLogError(
                    f"Unable to open bootstrap log {self.path}: {exc}"
                ) from exc
        return self._handle

    def write(self, level: str, step: str, message: str) -> None:
        """Append one line per line of *message*."""
        handle = self._open()
        stamp = _utc_stamp()
        lines = message.splitlines() or [""]
        try:
            for line in lines:
                handle.write(f"{stamp} [{level}] {step}: {line}\n")
            handle.flush()
        except OSError as exc:
            raise BootstrapLogError(f"Unable to write bootstrap log {self.path}: {exc}") from exc

    def info(self, step: str, message: str) -> None:
        """Log an informational line."""
        self.write("INFO", step, message)

    def warning(self, step: str, message: str) -> None:
        """Log a warning line."""
        self.write("WARN", step, message)

    def error(self, step: str, message: str) -> None:
        """Log an error line."""
        self.write("ERROR", step, message)

    def output(self, step: str, stream: str, text: str | None) -> None:
        """Log captured command output, if there is any."""
        if text and text.strip():
            self.write(stream.upper(), step, text.rstrip())

    def close(self) -> None:
        """Close the file if it was opened."""
        if self._handle is not None:
            self._handle.close()
            self._handle = None


@dataclass(slots=True)
class StepResult:
    """Outcome of a single bootstrap step."""

    name: str
    description: str
    policy: FailurePolicy
    status: StepStatus = StepStatus.PENDING
    message: str = ""
    duration_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the result."""
        return {
            "name": self.name,
            "description": self.description,
            "policy": self.policy.value,
            "status": self.status.value,
            "message": self.message,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class BootstrapReport:
    """Outcome of a bootstrap run or check."""

    steps: list[StepResult]
    verification: HealthReport | None = None
    halted_at: str | None = None
    warnings: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    def count(self, status: StepStatus) -> int:
        """Return how many steps ended in *status*."""
        return sum(1 for step in self.steps if step.status is status)

    @property
    def failed(self) -> bool:
        """Return ``True`` when a fatal step failed."""
        return self.halted_at is not None

    @property
    def all_skipped(self) -> bool:
        """Return ``True`` when every step was already satisfied."""
        return all(step.status is StepStatus.SKIPPED for step in self.steps)

    def summary_line(self) -> str:
        """Return the one-line bootstrap summary."""
        parts = [
            f"{self.count(StepStatus.SUCCEEDED)} succeeded",
            f"{self.count(StepStatus.SKIPPED)} skipped",
            f"{self.count(StepStatus.FAILED)} failed",
        ]
        pending = self.count(StepStatus.PENDING)
        if pending:
            parts.append(f"{pending} pending")
        line = "Bootstrap: " + ", ".join(parts) + "."
        if self.halted_at:
            line += f" Halted at {self.halted_at}."
        return line

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the report."""
        payload: dict[str, object] = {
            "steps": [step.to_dict() for step in self.steps],
            "halted_at": self.halted_at,
            "warnings": list(self.warnings),
        }
        if self.next_steps:
            payload["next_steps"] = list(self.next_steps)
        if self.verification is not None:
            payload["verification"] = self.verification.to_dict()
        return payload


class BootstrapRunner:
    """Run a bootstrap sequence against a host."""

    def __init__(
        self,
        steps: Sequence[BootstrapStep],
        shell: HostShell,
        log: BootstrapLog,
        *,
        verifier: Verifier | None = None,
        on_step: StepCallback | None = None,
        next_steps: Sequence[str] = (),
    ) -> None:
        """Store the sequence and its collaborators."""
        names = [step.name for step in steps]
        if len(set(names)) != len(names):
            raise ValueError("Bootstrap step names must be unique.")
        self._steps = list(steps)
        self._shell = shell
        self._log = log
        self._verifier = verifier
        self._on_step = on_step
        self._next_steps = list(next_steps)

    def run(self, *, verify: bool = True) -> BootstrapReport:
        """Execute the sequence, then the verification pass."""
        results = [
            StepResult(name=step.name, description=step.description, policy=step.policy)
            for step in self._steps
        ]
        report = BootstrapReport(steps=results)
        self._log.info("bootstrap", f"Starting bootstrap ({len(self._steps)} steps).")
        for step, result in zip(self._steps, results, strict=True):
            start = time.perf_counter()
            self._execute(step, result)
            result.duration_ms = int((time.perf_counter() - start) * 1000)
            if result.status is StepStatus.FAILED:
                if step.policy is FailurePolicy.FATAL:
                    report.halted_at = step.name
                    self._log.error(step.name, "Fatal failure; remaining steps not run.")
                    break
                report.warnings.append(f"{step.name}: {result.message}")
        self._log.info("bootstrap", report.summary_line())
        if verify and self._verifier is not None:
            report.verification = self._verify(self._verifier)
        if not report.failed and self._next_steps:
            report.next_steps = list(self._next_steps)
            self._log.info("bootstrap", "Next steps:")
            for line in self._next_steps:
                self._log.info("bootstrap", f"  {line}")
        return report

    def check(self) -> BootstrapReport:
        """Evaluate each step's predicate without changing the host."""
        results: list[StepResult] = []
        for step in self._steps:
            satisfied = step.check(self._shell)
            results.append(
                StepResult(
                    name=step.name,
                    description=step.description,
                    policy=step.policy,
                    status=StepStatus.SKIPPED if satisfied else StepStatus.PENDING,
                    message=(
                        f"satisfied: {step.check.description}"
                        if satisfied
                        else f"needed: {step.check.description}"
                    ),
                )
            )
        return BootstrapReport(steps=results)

    def _execute(self, step: BootstrapStep, result: StepResult) -> None:
        if step.check(self._shell):
            result.status = StepStatus.SKIPPED
            result.message = "already satisfied"
            self._log.info(step.name, f"Skipped, already satisfied: {step.check.description}.")
            self._notify(step, result)
            return

        result.status = StepStatus.RUNNING
        self._log.info(step.name, f"Running: {step.description}.")
        self._notify(step, result)
        try:
            for command in step.commands:
                self._run_command(step, command)
            if step.marker is not None:
                self._write_marker(step.name, step.marker)
        except HostCommandError as exc:
            self._fail(step, result, str(exc))
            return

        if not step.check(self._shell):
            self._fail(
                step,
                result,
                f"commands completed but the check still fails: {step.check.description}",
            )
            return
        result.status = StepStatus.SUCCEEDED
        result.message = "completed"
        self._log.info(step.name, "Completed.")
        self._notify(step, result)

    def _run_command(self, step: BootstrapStep, command: HostCommand) -> None:
        if command.when is not None and not command.when(self._shell):
            self._log.info(step.name, f"Not needed: {describe(command.argv)}")
            return
        self._log.info(step.name, f"$ {describe(command.argv)}")
        completed = self._shell.run(
            command.argv,
            privileged=command.privileged,
            check=False,
            shell=command.shell,
        )
        self._log.output(step.name, "stdout", completed.stdout)
        self._log.output(step.name, "stderr", completed.stderr)
        if completed.returncode == 0:
            return
        if command.allow_failure:
            self._log.warning(
                step.name,
                f"Ignoring exit {completed.returncode} from {describe(command.argv)}",
            )
            return
        stderr = (completed.stderr or "").strip()
        stdout = (completed.stdout or "").strip()
        detail = stderr or stdout or "no output"
        raise HostCommandError(
            f"{describe(command.argv)} failed (exit {completed.returncode}): {detail}",
            completed,
        )

    def _write_marker(self, name: str, marker: Path) -> None:
        self._shell.run(["mkdir", "-p", str(marker.parent)], privileged=True)
        self._shell.run(["touch", str(marker)], privileged=True)
        self._log.info(name, f"Marker written: {marker}")

    def _fail(self, step: BootstrapStep, result: StepResult, message: str) -> None:
        result.status = StepStatus.FAILED
        result.message = message
        if step.policy is FailurePolicy.FATAL:
            self._log.error(step.name, message)
        else:
            self._log.warning(step.name, f"{message} (continuing)")
        self._notify(step, result)

    def _verify(self, verifier: Verifier) -> HealthReport:
        self._log.info("verify", "Running verification probes.")
        report = verifier()
        for probe in report.results:
            level = {"green": "INFO", "yellow": "WARN", "red": "ERROR"}[probe.status.value]
            self._log.write(level, "verify", f"{probe.id}: {probe.message}")
            for container in (probe.data or {}).get("containers", ()):
                self._log.info(
                    "verify",
                    f"  {container['name']}  {container['image']}  {container['status']}",
                )
        self._log.info("verify", report.summary.line())
        return report

    def _notify(self, step: BootstrapStep, result: StepResult) -> None:
        if self._on_step is not None:
            self._on_step(step, result.status, result.message)


__all__ = [
    "BootstrapLog",
    "BootstrapLogError",
    "BootstrapReport",
    "BootstrapRunner",
    "StepResult",
]
