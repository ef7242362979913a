"""Resource providers keyed by type tag."""
from __future__ import annotations

from collections.abc import Mapping

from ..backends.base import ResourceBackend
from ..resources import RESOURCE_TYPES
from ..state.store import StateRecord
from .base import Observation, Provider
from .cloud import CloudProvider
from .files import FileProvider
from .keypair import KeypairProvider


class ProviderRegistry:
    """Map each resource type tag to the provider that manages it."""

    def __init__(self, providers: Mapping[str, Provider]) -> None:
        """Store the type-to-provider mapping."""
        self._providers = dict(providers)

    @classmethod
    def for_backend(cls, backend: ResourceBackend) -> ProviderRegistry:
        """Build the standard registry on top of *backend*."""
        providers: dict[str, Provider] = {}
        for tag, spec in RESOURCE_TYPES.items():
            if tag == "keypair":
                providers[tag] = KeypairProvider(backend)
            elif spec.local:
                providers[tag] = FileProvider()
            else:
                providers[tag] = CloudProvider(backend, tag)
        return cls(providers)

    def for_type(self, resource_type: str) -> Provider:
        """Return the provider for *resource_type* (``KeyError`` when unknown)."""
        return self._providers[resource_type]

    def observe(self, record: StateRecord) -> Observation:
        """Observe *record* through its type's provider."""
        return self.for_type(record.type).observe(record)


__all__ = [
    "CloudProvider",
    "FileProvider",
    "KeypairProvider",
    "Observation",
    "Provider",
    "ProviderRegistry",
]
