"""Provider contract used by the applier and the planner's drift check."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from ..backends.base import BackendResource
from ..state.store import StateRecord


@dataclass(frozen=True)
class Observation:
    """What a provider currently sees for a stored record."""

    exists: bool
    checksum: str | None = None
    detail: str | None = None


class Provider(Protocol):
    """Lifecycle operations for one resource type."""

    def create(
        self, name: str, attributes: Mapping[str, Any], *, timeout: float | None = None
    ) -> BackendResource:
        """Create the object for logical resource *name*."""
        ...

    def read(self, resource_id: str) -> BackendResource:
        """Return the current snapshot of *resource_id*."""
        ...

    def update(
        self,
        name: str,
        resource_id: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Apply mutable attribute changes in place."""
        ...

    def delete(self, name: str, resource_id: str, *, timeout: float | None = None) -> None:
        """Remove the object."""
        ...

    def status(self, resource_id: str) -> str:
        """Return the provisioning status string."""
        ...

    def observe(self, record: StateRecord) -> Observation:
        """Report whether the object of *record* still exists and its checksum."""
        ...


__all__ = ["Observation", "Provider"]
