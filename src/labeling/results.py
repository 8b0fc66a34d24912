"""
Result Store
============

Extraction results accumulate in one JSON array across runs. Each append
re-reads the array, adds the record at the end and atomically replaces the
file, all under a lock so concurrent appends from this process cannot lose
each other's records.

A file that exists but does not hold a JSON array is never overwritten:
the append fails with `PersistenceError` instead of discarding what is there.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Mapping

import structlog

from common.storage import PersistenceError, read_json, write_json_atomic

log = structlog.get_logger(__name__)


class ResultStore:
    """Append-only JSON collection of extraction records."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> list[Any]:
        """Return the persisted records (empty if the file is missing or blank)."""
        data = read_json(self.path, default=[])
        if not isinstance(data, list):
            raise PersistenceError(self.path, "result collection must be a JSON array")
        return data

    def append(self, record: Mapping[str, Any]) -> int:
        """
        Append one record and return the new size of the collection.

        Raises:
            PersistenceError: if the collection cannot be read or rewritten;
                the file on disk is left as it was.
        """
        with self._lock:
            records = self.load()
            records.append(dict(record))
            write_json_atomic(self.path, records)

        log.info("Saved result", path=str(self.path), record_count=len(records))
        return len(records)
