"""Local generated-file provider.

The file's identifier is its path; the checksum combines the content digest
and the permission bits, so editing or ``chmod``-ing the file by hand shows
up as drift on the next plan.
"""
from __future__ import annotations

import hashlib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..backends.base import BackendError, BackendNotFoundError, BackendResource
from ..fileutil import atomic_write_text
from ..state.store import StateRecord
from .base import Observation

DEFAULT_MODE = "0600"


def parse_mode(value: object) -> int:
    """Return the integer permission bits for ``"0600"``-style values."""
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 8)
    except ValueError as exc:
        raise BackendError(f"Invalid file mode {value!r}; expected an octal string.") from exc


def file_checksum(path: Path) -> str:
    """Return ``sha256:<digest>:<mode>`` for the file at *path*."""
    digest = hashlib.sha256(path.read_bytes()).hexdigest()
    return f"sha256:{digest}:{path.stat().st_mode & 0o777:04o}"


class FileProvider:
    """Write, inspect and remove generated files on the local machine."""

    resource_type = "generated-file"

    def create(
        self, name: str, attributes: Mapping[str, Any], *, timeout: float | None = None
    ) -> BackendResource:
        """Write the file atomically with the declared mode."""
        path = Path(str(attributes["path"])).expanduser()
        mode = parse_mode(attributes.get("mode", DEFAULT_MODE))
        content = str(attributes.get("content", ""))
        try:
            atomic_write_text(path, content, mode=mode)
        except OSError as exc:
            raise BackendError(f"Failed to write {path}: {exc}") from exc
        return self.read(str(path))

    def read(self, resource_id: str) -> BackendResource:
        """Return the file's snapshot."""
        path = Path(resource_id)
        if not path.is_file():
            raise BackendNotFoundError(f"NotFound: file {path} does not exist.")
        try:
            checksum = file_checksum(path)
        except OSError as exc:
            raise BackendError(f"Failed to read {path}: {exc}") from exc
        return BackendResource(
            id=str(path),
            status="available",
            outputs={"id": str(path), "path": str(path), "sha256": checksum.split(":")[1]},
            checksum=checksum,
        )

    def update(
        self,
        name: str,
        resource_id: str,
        attributes: Mapping[str, Any],
        *,
        timeout: float | None = None,
    ) -> BackendResource:
        """Rewrite the file in place."""
        return self.create(name, attributes, timeout=timeout)

    def delete(self, name: str, resource_id: str, *, timeout: float | None = None) -> None:
        """Remove the file."""
        path = Path(resource_id)
        if not path.exists():
            raise BackendNotFoundError(f"NotFound: file {path} does not exist.")
        try:
            path.unlink()
        except OSError as exc:
            raise BackendError(f"Failed to remove {path}: {exc}") from exc

    def status(self, resource_id: str) -> str:
        """Files are available as soon as they exist."""
        return "available" if Path(resource_id).is_file() else "deleted"

    def observe(self, record: StateRecord) -> Observation:
        """Stat the file recorded in *record*."""
        path = Path(record.resource_id or str(record.attributes.get("path", "")))
        if not path.is_file():
            return Observation(exists=False, detail=f"{path} is missing")
        try:
            return Observation(exists=True, checksum=file_checksum(path))
        except OSError as exc:
            return Observation(exists=False, detail=f"{path} is unreadable: {exc}")


__all__ = ["DEFAULT_MODE", "FileProvider", "file_checksum", "parse_mode"]
