"""
JSON Persistence Helpers
========================

The label catalog and the result collection are both plain JSON documents
that are read and rewritten as a whole. This module owns the two operations
they share:

- reading a JSON file that may not exist yet (or may be empty), and
- replacing a JSON file atomically, so a concurrent reader sees either the
  previous content or the new content, never a half-written file.

Any failure is raised as `PersistenceError`; callers decide whether to retry
or abort.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class PersistenceError(RuntimeError):
    """A durable read or write of a JSON file failed."""

    def __init__(self, path: str | os.PathLike, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"{self.path}: {reason}")


def read_json(path: str | os.PathLike, default: Any) -> Any:
    """
    Read a JSON file, returning ``default`` if it is missing or blank.

    Raises:
        PersistenceError: if the file exists but cannot be read or parsed.
    """
    file_path = Path(path)
    try:
        raw = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as e:
        raise PersistenceError(file_path, f"cannot read file: {e}") from e

    if not raw.strip():
        return default

    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise PersistenceError(file_path, f"invalid JSON: {e}") from e


def write_json_atomic(path: str | os.PathLike, data: Any) -> None:
    """
    Serialize ``data`` and atomically replace ``path`` with it.

    The payload is fully serialized before anything touches the disk, then
    written to a temporary file in the target directory, flushed, fsynced
    and moved over the target with ``os.replace``.
    """
    file_path = Path(path)
    try:
        payload = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    except (TypeError, ValueError) as e:
        raise PersistenceError(file_path, f"cannot serialize data: {e}") from e

    directory = file_path.parent
    tmp_name = None
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{file_path.name}.", suffix=".tmp", dir=directory
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, file_path)
        tmp_name = None
    except OSError as e:
        raise PersistenceError(file_path, f"cannot write file: {e}") from e
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                log.warning("Failed to remove temporary file", path=tmp_name)

    log.debug("Wrote JSON file", path=str(file_path), bytes=len(payload))
