"""Atomic file replacement shared by the state store, sandbox and file provider."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write_text(path: Path, text: str, *, mode: int = 0o640) -> None:
    """Write *text* to *path* via a temporary sibling, ``fsync`` and ``os.replace``.

    The temporary file is created with owner-only permissions and *mode* is
    applied before the rename, so the final path never exists with a wider
    mode than requested.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = ["atomic_write_text"]
