"""State persistence for applied resources."""
from __future__ import annotations

from .store import SCHEMA_VERSION, StateRecord, StateStore, StateStoreError, utc_now

__all__ = ["SCHEMA_VERSION", "StateRecord", "StateStore", "StateStoreError", "utc_now"]
