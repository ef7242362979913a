"""Persistent record of applied resources.

The store keeps one YAML document (``state.yml`` below the state directory)
holding a record per logical resource: the declared attributes last applied,
the backend identifier, non-sensitive outputs, the backend checksum, the
dependency names and the declaration index. Every mutation rewrites the file
atomically (temporary file, ``fsync``, ``os.replace``) and bumps ``serial``.

Layout (schema version 2)::

    schema_version: 2
    labctl_version: 0.3.0
    lineage: 7c0d...
    serial: 4
    resources:
      - name: lab_network
        type: network
        ...

Version 1 files were a bare list of records using ``id`` and ``timestamp``
keys; they are migrated in memory on load and the original is copied to
``state.yml.v1.bak`` before the first write.
"""
from __future__ import annotations

import shutil
import threading
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from packaging.version import InvalidVersion, Version

from .. import __version__
from ..fileutil import atomic_write_text
from ..sensitive import SensitiveValue, is_sensitive_marker

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage labctl state. Install with `pip install labctl`."
    ) from exc

SCHEMA_VERSION = 2


class StateStoreError(RuntimeError):
    """Raised when the state file cannot be read or written."""


def utc_now() -> str:
    """Return the current UTC time as ``YYYY-MM-DDTHH:MM:SSZ``."""
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class StateRecord:
    """Last-applied view of one logical resource."""

    name: str
    type: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    resource_id: str | None = None
    outputs: Mapping[str, Any] = field(default_factory=dict)
    checksum: str | None = None
    depends_on: tuple[str, ...] = ()
    index: int = 0
    status: str = "active"
    applied_at: str | None = None

    def with_changes(self, **changes: Any) -> StateRecord:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Return the persisted form; sensitive outputs become placeholders."""
        return {
            "name": self.name,
            "type": self.type,
            "status": self.status,
            "resource_id": self.resource_id,
            "checksum": self.checksum,
            "index": self.index,
            "depends_on": sorted(self.depends_on),
            "applied_at": self.applied_at,
            "attributes": _plain(self.attributes),
            "outputs": {
                key: {"sensitive": True} if isinstance(value, SensitiveValue) else _plain(value)
                for key, value in self.outputs.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, position: int = 0) -> StateRecord:
        """Build a record from its persisted form."""
        name = data.get("name")
        rtype = data.get("type")
        if not isinstance(name, str) or not isinstance(rtype, str):
            raise StateStoreError(f"State record #{position} is missing its name or type.")
        attributes = data.get("attributes") or {}
        outputs = data.get("outputs") or {}
        if not isinstance(attributes, Mapping) or not isinstance(outputs, Mapping):
            raise StateStoreError(f"State record '{name}' has malformed attributes or outputs.")
        index = data.get("index", position)
        return cls(
            name=name,
            type=rtype,
            attributes=dict(attributes),
            resource_id=data.get("resource_id"),
            outputs=dict(outputs),
            checksum=data.get("checksum"),
            depends_on=tuple(str(dep) for dep in data.get("depends_on") or ()),
            index=int(index) if isinstance(index, int) else position,
            status=str(data.get("status") or "active"),
            applied_at=data.get("applied_at"),
        )

    def sensitive_outputs(self) -> frozenset[str]:
        """Return output names stored only as placeholders."""
        return frozenset(key for key, value in self.outputs.items() if is_sensitive_marker(value))


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


class StateStore:
    """Read and mutate the YAML state file."""

    def __init__(self, path: Path) -> None:
        """Load *path* (missing files start an empty lineage)."""
        self.path = Path(path).expanduser()
        self._lock = threading.RLock()
        self._name_locks: dict[str, threading.Lock] = {}
        self._records: dict[str, StateRecord] = {}
        self._serial = 0
        self._lineage = uuid.uuid4().hex
        self._warnings: list[str] = []
        self._pending_backup: str | None = None
        self.reload()

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------
    @property
    def serial(self) -> int:
        """Return the write counter."""
        return self._serial

    @property
    def lineage(self) -> str:
        """Return the identifier shared by every serial of this state."""
        return self._lineage

    @property
    def warnings(self) -> tuple[str, ...]:
        """Return non-fatal observations made while loading."""
        return tuple(self._warnings)

    def get(self, name: str) -> StateRecord | None:
        """Return the record for *name*, or ``None``."""
        with self._lock:
            return self._records.get(name)

    def list(self) -> list[StateRecord]:
        """Return all records in declaration order."""
        with self._lock:
            return sorted(self._records.values(), key=lambda record: (record.index, record.name))

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def put(self, name: str, record: StateRecord) -> None:
        """Insert or replace the record for *name* and persist."""
        if record.name != name:
            raise StateStoreError(f"Record name '{record.name}' does not match key '{name}'.")
        with self._exclusive(name):
            records = dict(self._records)
            records[name] = record
            self._persist(records)
            self._records = records

    def delete(self, name: str) -> None:
        """Remove the record for *name* (no-op when absent) and persist."""
        with self._exclusive(name):
            if name not in self._records:
                return
            records = {key: value for key, value in self._records.items() if key != name}
            self._persist(records)
            self._records = records

    def reload(self) -> None:
        """Re-read the state file from disk."""
        with self._lock:
            self._warnings = []
            self._pending_backup = None
            if not self.path.exists():
                self._records = {}
                self._serial = 0
                return
            try:
                raw_text = self.path.read_text(encoding="utf-8")
                data = yaml.safe_load(raw_text)
            except OSError as exc:
                raise StateStoreError(f"Failed to read state file {self.path}: {exc}") from exc
            except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
                raise StateStoreError(f"Failed to parse state file {self.path}: {exc}") from exc
            if data is None:
                self._records = {}
                return
            if isinstance(data, list):
                self._load_v1(data)
                self._pending_backup = raw_text
                self._warnings.append(
                    f"State file {self.path} uses schema version 1; it will be upgraded "
                    f"to version {SCHEMA_VERSION} on the next write."
                )
                return
            if not isinstance(data, Mapping):
                raise StateStoreError(f"State file {self.path} must contain a mapping.")
            self._load_v2(data)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _load_v1(self, entries: list[object]) -> None:
        records: dict[str, StateRecord] = {}
        for position, entry in enumerate(entries):
            if not isinstance(entry, Mapping):
                raise StateStoreError(f"State record #{position} in {self.path} is not a mapping.")
            migrated = dict(entry)
            if "id" in migrated:
                migrated["resource_id"] = migrated.pop("id")
            if "timestamp" in migrated:
                migrated["applied_at"] = migrated.pop("timestamp")
            migrated.setdefault("index", position)
            record = StateRecord.from_dict(migrated, position=position)
            records[record.name] = record
        self._records = records
        self._serial = 0

    def _load_v2(self, data: Mapping[str, Any]) -> None:
        schema = data.get("schema_version", SCHEMA_VERSION)
        if not isinstance(schema, int):
            raise StateStoreError(f"State file {self.path} has an invalid schema_version.")
        if schema > SCHEMA_VERSION:
            raise StateStoreError(
                f"State file {self.path} uses schema version {schema}; this labctl "
                f"release understands up to {SCHEMA_VERSION}. Upgrade labctl."
            )
        writer = data.get("labctl_version")
        if writer:
            try:
                if Version(str(writer)) > Version(__version__):
                    self._warnings.append(
                        f"State was last written by labctl {writer}; this is {__version__}."
                    )
            except InvalidVersion:
                self._warnings.append(f"State records an unparseable labctl version {writer!r}.")

        entries = data.get("resources") or []
        if not isinstance(entries, list):
            raise StateStoreError(f"State file {self.path} 'resources' must be a list.")
        records: dict[str, StateRecord] = {}
        for position, entry in enumerate(entries):
            if not isinstance(entry, Mapping):
                raise StateStoreError(f"State record #{position} in {self.path} is not a mapping.")
            record = StateRecord.from_dict(entry, position=position)
            records[record.name] = record
        self._records = records
        self._serial = int(data.get("serial") or 0)
        lineage = data.get("lineage")
        if lineage:
            self._lineage = str(lineage)

    @contextmanager
    def _exclusive(self, name: str) -> Iterator[None]:
        with self._lock:
            name_lock = self._name_locks.setdefault(name, threading.Lock())
        with name_lock, self._lock:
            yield

    def _persist(self, records: Mapping[str, StateRecord]) -> None:
        """Write *records*; the in-memory view is only swapped by the caller on success."""
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            if self._pending_backup is not None:
                backup = self.path.with_name(f"{self.path.name}.v1.bak")
                if not backup.exists():
                    shutil.copy2(self.path, backup)
                self._pending_backup = None
        except OSError as exc:
            raise StateStoreError(f"Failed to prepare state directory {directory}: {exc}") from exc

        payload = {
            "schema_version": SCHEMA_VERSION,
            "labctl_version": __version__,
            "lineage": self._lineage,
            "serial": self._serial + 1,
            "resources": [
                record.to_dict()
                for record in sorted(records.values(), key=lambda item: (item.index, item.name))
            ],
        }
        try:
            atomic_write_text(self.path, yaml.safe_dump(payload, sort_keys=False), mode=0o640)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state file {self.path}: {exc}") from exc
        self._serial += 1


__all__ = ["SCHEMA_VERSION", "StateRecord", "StateStore", "StateStoreError", "utc_now"]
