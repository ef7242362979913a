"""Pass-through provider for backend-managed resource types."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..backends.base import BackendNotFoundError, BackendResource, ResourceBackend
from ..state.store import StateRecord
from .base import Observation


class CloudProvider:
    """Forward lifecycle calls for *resource_type* to the backend."""

    def __init__(self, backend: ResourceBackend, resource_type: str) -> None:
        """Bind the provider to *backend* and one type tag."""
        self.backend = backend
        self.resource_type = resource_type

    def create(
        self, name: str, attributes: Mapping[str, Any], *, timeout: float | None = None
    ) -> BackendResource:
        """Create the backend object."""
        return self.backend.create(self.resource_type, name, attributes, timeout=timeout)

    def read(self, resource_id: str) -> BackendResource:
        """Read the backend object."""
        return self.backend.read(self.resource_type, resource_id)

    def update(
        self,
        name: str,
        resource_id: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Update the backend object in place."""
        return self.backend.update(self.resource_type, resource_id, attributes, timeout=timeout)

    def delete(self, name: str, resource_id: str, *, timeout: float | None = None) -> None:
        """Delete the backend object."""
        self.backend.delete(self.resource_type, resource_id, timeout=timeout)

    def status(self, resource_id: str) -> str:
        """Return the backend status."""
        return self.backend.status(self.resource_type, resource_id)

    def observe(self, record: StateRecord) -> Observation:
        """Compare the backend object with *record*."""
        if not record.resource_id:
            return Observation(exists=False, detail="no backend identifier recorded")
        try:
            snapshot = self.backend.read(self.resource_type, record.resource_id)
        except BackendNotFoundError as exc:
            return Observation(exists=False, detail=exc.message)
        return Observation(exists=True, checksum=snapshot.checksum)


__all__ = ["CloudProvider"]
