"""Infrastructure backends."""
from __future__ import annotations

from .base import (
    BackendError,
    BackendNotFoundError,
    BackendResource,
    BackendTimeoutError,
    ResourceBackend,
)
from .sandbox import SandboxBackend

__all__ = [
    "BackendError",
    "BackendNotFoundError",
    "BackendResource",
    "BackendTimeoutError",
    "ResourceBackend",
    "SandboxBackend",
]
