"""Contract between labctl and the infrastructure backend.

A backend manages concrete objects for the cloud resource types (network,
subnet, gateway, route table, security group, key pair, instance). Calls
return :class:`BackendResource` snapshots. Failures raise
:class:`BackendError`; ``retryable`` tells the applier whether backing off
and calling again can help.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

STABLE_STATUSES = frozenset({"available", "running"})
PENDING_STATUSES = frozenset({"pending"})
DELETED_STATUS = "deleted"
FAILED_STATUS = "failed"


class BackendError(RuntimeError):
    """Raised when the backend rejects or fails a call."""

    def __init__(self, message: str, *, retryable: bool = False, code: str | None = None) -> None:
        """Store the backend *message* verbatim plus retry hints."""
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.code = code


class BackendNotFoundError(BackendError):
    """Raised when an object does not exist (anymore)."""

    def __init__(self, message: str) -> None:
        """Not-found errors are never retryable."""
        super().__init__(message, retryable=False, code="NotFound")


class BackendTimeoutError(BackendError):
    """Raised when a call exceeds its timeout."""

    def __init__(self, message: str) -> None:
        """Timeouts are retryable."""
        super().__init__(message, retryable=True, code="Timeout")


@dataclass(frozen=True)
class BackendResource:
    """Snapshot of a backend object."""

    id: str
    status: str
    outputs: Mapping[str, Any] = field(default_factory=dict)
    checksum: str | None = None

    @property
    def is_stable(self) -> bool:
        """Return ``True`` when the object finished provisioning."""
        return self.status in STABLE_STATUSES

    @property
    def is_failed(self) -> bool:
        """Return ``True`` when the backend gave up on the object."""
        return self.status == FAILED_STATUS


class ResourceBackend(Protocol):
    """Operations every backend implements."""

    def create(
        self,
        resource_type: str,
        name: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Create an object and return its initial snapshot."""
        ...

    def read(self, resource_type: str, resource_id: str) -> BackendResource:
        """Return the current snapshot (``BackendNotFoundError`` when gone)."""
        ...

    def update(
        self,
        resource_type: str,
        resource_id: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Apply mutable attribute changes in place."""
        ...

    def delete(self, resource_type: str, resource_id: str, *, timeout: float | None = None) -> None:
        """Delete an object."""
        ...

    def status(self, resource_type: str, resource_id: str) -> str:
        """Return the provisioning status string."""
        ...


__all__ = [
    "DELETED_STATUS",
    "FAILED_STATUS",
    "PENDING_STATUSES",
    "STABLE_STATUSES",
    "BackendError",
    "BackendNotFoundError",
    "BackendResource",
    "BackendTimeoutError",
    "ResourceBackend",
]
