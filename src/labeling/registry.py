"""
Label Registry
==============

The registry owns the catalog of known labels. The catalog is a JSON array
of label definitions that is always loaded and saved as a whole.

Classification never reads the live catalog. It works on a
`RegistrySnapshot`, an immutable copy tagged with a version number that
increases on every successful insert. Inserts are serialized by a lock and
are written to disk before they become visible in memory, so a label that a
later document can match is always a label that survives a crash.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

import structlog

from common.storage import PersistenceError, read_json, write_json_atomic
from .errors import DuplicateLabel, InvalidLabelDefinition
from .models import LabelDefinition

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RegistrySnapshot:
    definitions: tuple[LabelDefinition, ...]
    version: int = 0

    def __iter__(self) -> Iterator[LabelDefinition]:
        return iter(self.definitions)

    def __len__(self) -> int:
        return len(self.definitions)

    def get(self, label: str) -> LabelDefinition | None:
        for definition in self.definitions:
            if definition.label == label:
                return definition
        return None


class LabelRegistry:
    """File-backed catalog of label definitions."""

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._definitions: list[LabelDefinition] = []
        self._version = 0

    def load(self) -> list[LabelDefinition]:
        """
        Load the persisted catalog into memory and return it.

        A missing or blank file is an empty catalog.

        Raises:
            PersistenceError: if the file is unreadable or malformed.
        """
        data = read_json(self.path, default=[])
        if not isinstance(data, list):
            raise PersistenceError(self.path, "label catalog must be a JSON array")

        definitions = []
        seen: set[str] = set()
        for index, entry in enumerate(data):
            try:
                definition = LabelDefinition.from_dict(entry)
            except InvalidLabelDefinition as e:
                raise PersistenceError(
                    self.path, f"invalid label definition at index {index}: {e}"
                ) from e
            if definition.label in seen:
                raise PersistenceError(
                    self.path, f"label '{definition.label}' appears more than once"
                )
            seen.add(definition.label)
            definitions.append(definition)

        with self._lock:
            self._definitions = definitions
            self._version += 1

        log.info("Loaded label catalog", path=str(self.path), label_count=len(definitions))
        return list(definitions)

    def save(self, definitions: Iterable[LabelDefinition]) -> None:
        """Persist the full catalog, replacing the previous file atomically."""
        write_json_atomic(self.path, [d.to_dict() for d in definitions])

    def insert(self, definition: LabelDefinition) -> RegistrySnapshot:
        """
        Register a new label and persist the catalog.

        Returns the snapshot that includes the new label.

        Raises:
            DuplicateLabel: if the label is already registered.
            PersistenceError: if the catalog could not be written; the
                in-memory catalog is left unchanged.
        """
        with self._lock:
            if any(d.label == definition.label for d in self._definitions):
                raise DuplicateLabel(definition.label)

            updated = self._definitions + [definition]
            self.save(updated)
            self._definitions = updated
            self._version += 1
            snapshot = RegistrySnapshot(tuple(updated), self._version)

        log.info(
            "Registered new label",
            label=definition.label,
            keywords=list(definition.keywords),
            field_count=len(definition.extract_rules),
            label_count=len(snapshot),
        )
        return snapshot

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            return RegistrySnapshot(tuple(self._definitions), self._version)

    def get(self, label: str) -> LabelDefinition | None:
        return self.snapshot().get(label)

    def labels(self) -> list[str]:
        return [d.label for d in self.snapshot()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._definitions)
