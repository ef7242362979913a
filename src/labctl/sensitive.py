"""Wrapper for secret values that must never be rendered or persisted."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any

MASK = "(sensitive)"


class SensitiveValue:
    """Hold a secret string; ``str``/``repr`` only ever show the mask."""

    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        """Wrap *value*."""
        self._value = value

    def reveal(self) -> str:
        """Return the wrapped secret."""
        return self._value

    def __repr__(self) -> str:
        return MASK

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SensitiveValue):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("sensitive", self._value))


def is_sensitive_marker(value: object) -> bool:
    """Return ``True`` for the ``{"sensitive": true}`` placeholder kept in state."""
    return isinstance(value, Mapping) and value.get("sensitive") is True and len(value) == 1


def mask(value: Any) -> Any:
    """Replace sensitive values (and stored placeholders) with the mask text."""
    if isinstance(value, SensitiveValue) or is_sensitive_marker(value):
        return MASK
    if isinstance(value, Mapping):
        return {key: mask(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [mask(item) for item in value]
    return value


def reveal(value: Any) -> Any:
    """Unwrap sensitive values so they can be handed to a provider."""
    if isinstance(value, SensitiveValue):
        return value.reveal()
    if isinstance(value, Mapping):
        return {key: reveal(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [reveal(item) for item in value]
    return value


def contains_sensitive(value: Any) -> bool:
    """Return ``True`` when *value* holds a :class:`SensitiveValue` anywhere."""
    if isinstance(value, SensitiveValue):
        return True
    if isinstance(value, Mapping):
        return any(contains_sensitive(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_sensitive(item) for item in value)
    return False


__all__ = ["MASK", "SensitiveValue", "contains_sensitive", "is_sensitive_marker", "mask", "reveal"]
