"""Lab health verification."""

from __future__ import annotations

from .engine import HealthEngine
from .models import (
    Connector,
    HealthImpact,
    HealthReport,
    HealthSummary,
    ProbeContext,
    ProbeDefinition,
    ProbeOptions,
    ProbeResult,
    ProbeStatus,
    aggregate_results,
    build_report,
    tcp_connect,
)
from .probes import collect_probes

__all__ = [
    "Connector",
    "HealthEngine",
    "HealthImpact",
    "HealthReport",
    "HealthSummary",
    "ProbeContext",
    "ProbeDefinition",
    "ProbeOptions",
    "ProbeResult",
    "ProbeStatus",
    "aggregate_results",
    "build_report",
    "collect_probes",
    "tcp_connect",
]
