"""The verification pass: probes run one at a time, in declared order."""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import replace

from .models import (
    HealthImpact,
    HealthReport,
    ProbeContext,
    ProbeDefinition,
    ProbeResult,
    ProbeStatus,
    build_report,
)


class HealthEngine:
    """Run a verification pass against one host and summarise it."""

    def __init__(self, context: ProbeContext) -> None:
        """Bind the engine to the host the probes inspect."""
        self._context = context

    def run(
        self,
        probes: Sequence[ProbeDefinition],
        *,
        metadata: Mapping[str, object] | None = None,
    ) -> HealthReport:
        """Check every probe in turn; a broken probe never stops the pass."""
        started = time.perf_counter()
        results = [self.check(probe) for probe in probes]
        details: dict[str, object] = {
            "duration_ms": _elapsed_ms(started),
            "probe_count": len(results),
        }
        details.update(metadata or {})
        return build_report(results, metadata=details)

    def check(self, probe: ProbeDefinition) -> ProbeResult:
        """Run *probe* and stamp its id, category and timing on the result."""
        started = time.perf_counter()
        try:
            result = probe.run(self._context)
        except Exception as exc:  # noqa: BLE001 - reported as a red result
            result = ProbeResult(
                id=probe.id,
                category=probe.category,
                status=ProbeStatus.RED,
                impact=HealthImpact.PROVIDER,
                message=f"Probe '{probe.id}' raised an unexpected error: {exc}",
                data={"exception": repr(exc)},
            )
        return replace(
            result,
            id=probe.id,
            category=probe.category,
            duration_ms=(
                result.duration_ms if result.duration_ms is not None else _elapsed_ms(started)
            ),
        )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


__all__ = ["HealthEngine"]
