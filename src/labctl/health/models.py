"""Data models and helpers for lab health probes."""

from __future__ import annotations

import socket
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from ..bootstrap.host import HostShell


class ProbeStatus(str, Enum):
    """High-level outcome for a health probe."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is ProbeStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the status represents a warning."""
        return self is ProbeStatus.YELLOW

    @property
    def label(self) -> str:
        """Return the pass/warn/fail wording used in reports."""
        return {"green": "pass", "yellow": "warn", "red": "fail"}[self.value]


class HealthImpact(Enum):
    """Impact tier used to derive the verification exit code."""

    OK = 0
    ENVIRONMENT = 3
    PROVIDER = 4


Connector = Callable[[str, int, float], None]


def tcp_connect(host: str, port: int, timeout: float) -> None:
    """Open and close a TCP connection to *host*:*port*; raise ``OSError`` on failure."""
    with socket.create_connection((host, port), timeout=timeout):
        pass


ProbeCategory = Literal["service", "container", "binary", "port"]

PROBE_CATEGORY_VALUES: tuple[ProbeCategory, ...] = ("service", "container", "binary", "port")


@dataclass(slots=True, frozen=True)
class ProbeOptions:
    """Runtime tunables for executing health probes."""

    connect_timeout: float = 3.0
    host: str = "127.0.0.1"
    connect: Connector = tcp_connect


@dataclass(slots=True, frozen=True)
class ProbeContext:
    """Execution context provided to health probes."""

    shell: HostShell
    ports: Mapping[str, int]
    sonarqube_container: str = "sonarqube"
    options: ProbeOptions = field(default_factory=ProbeOptions)


@dataclass(slots=True, frozen=True)
class ProbeResult:
    """Outcome of running a probe."""

    id: str
    category: ProbeCategory
    status: ProbeStatus
    impact: HealthImpact
    message: str
    remediation: str | None = None
    duration_ms: int | None = None
    data: Mapping[str, Any] | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the probe result represents a failure."""
        return self.status.is_failure

    @property
    def is_warning(self) -> bool:
        """Return ``True`` when the probe result represents a warning."""
        return self.status.is_warning

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the result."""
        payload: dict[str, object] = {
            "id": self.id,
            "category": self.category,
            "status": self.status.value,
            "impact": self.impact.name.lower(),
            "message": self.message,
        }
        if self.remediation:
            payload["remediation"] = self.remediation
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        if self.data:
            payload["data"] = dict(self.data)
        return payload


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Metadata + callable for a probe."""

    id: str
    category: ProbeCategory
    run: Callable[[ProbeContext], ProbeResult]


@dataclass(slots=True, frozen=True)
class HealthSummary:
    """Aggregated summary derived from probe results."""

    status: ProbeStatus
    impact: HealthImpact
    exit_code: int
    totals: Mapping[ProbeStatus, int]

    def line(self) -> str:
        """Return the one-line pass/warn/fail summary."""
        return (
            f"Verification {self.status.label}: "
            f"{self.totals[ProbeStatus.GREEN]} passed, "
            f"{self.totals[ProbeStatus.YELLOW]} warned, "
            f"{self.totals[ProbeStatus.RED]} failed."
        )


@dataclass(slots=True, frozen=True)
class HealthReport:
    """Complete report for a verification run."""

    results: Sequence[ProbeResult]
    summary: HealthSummary
    metadata: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view of the report."""
        return {
            "status": self.summary.status.value,
            "exit_code": self.summary.exit_code,
            "totals": {status.value: count for status, count in self.summary.totals.items()},
            "results": [result.to_dict() for result in self.results],
            "metadata": dict(self.metadata or {}),
        }


STATUS_ORDER: Mapping[ProbeStatus, int] = {
    ProbeStatus.GREEN: 0,
    ProbeStatus.YELLOW: 1,
    ProbeStatus.RED: 2,
}


def aggregate_results(results: Iterable[ProbeResult]) -> HealthSummary:
    """Compute the overall status and exit code: the worst result wins."""
    totals: dict[ProbeStatus, int] = {
        ProbeStatus.GREEN: 0,
        ProbeStatus.YELLOW: 0,
        ProbeStatus.RED: 0,
    }
    worst_impact = HealthImpact.OK
    worst_status = ProbeStatus.GREEN
    for result in results:
        totals[result.status] += 1
        if result.impact.value > worst_impact.value:
            worst_impact = result.impact
        if STATUS_ORDER[result.status] > STATUS_ORDER[worst_status]:
            worst_status = result.status

    return HealthSummary(
        status=worst_status,
        impact=worst_impact,
        exit_code=worst_impact.value,
        totals=totals,
    )


def build_report(
    results: Sequence[ProbeResult],
    metadata: Mapping[str, Any] | None = None,
) -> HealthReport:
    """Create a full HealthReport from probe results."""
    summary = aggregate_results(results)
    return HealthReport(results=tuple(results), summary=summary, metadata=metadata)


__all__ = [
    "Connector",
    "HealthImpact",
    "HealthReport",
    "HealthSummary",
    "PROBE_CATEGORY_VALUES",
    "ProbeCategory",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeOptions",
    "ProbeResult",
    "ProbeStatus",
    "aggregate_results",
    "build_report",
    "tcp_connect",
]
