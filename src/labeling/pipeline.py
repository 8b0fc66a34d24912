"""
Labeling Pipeline
=================

This module defines the `LabelingPipeline`, which takes one document at a
time through the full workflow:

1. classify the text against the current registry snapshot;
2. if nothing matches, synthesize a new label and register it;
3. run the resolved label's extraction rules;
4. append the record to the result store.

Documents are processed strictly one after another, so a label learned from
one document is already in the snapshot the next document is classified
against. Problems that concern a single document (bad model output, a
duplicate label, failing rules) are logged and the run continues; only
persistence errors are raised to the caller.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable

import structlog

from common.config import Settings
from common.storage import PersistenceError
from .classifier import UNKNOWN_LABEL, classify, matches, normalize_text
from .errors import DuplicateLabel
from .models import Document, ExtractionResult, LabelDefinition
from .registry import LabelRegistry
from .results import ResultStore
from .rules import RuleEngine
from .synthesizer import SchemaSynthesizer, SynthesisFailure

log = structlog.get_logger(__name__)


@dataclass
class RunSummary:
    matched: int = 0
    synthesized: int = 0
    unresolved: int = 0
    failed: int = 0
    results: list[ExtractionResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.matched + self.synthesized + self.unresolved + self.failed

    def add(self, result: ExtractionResult) -> None:
        self.results.append(result)
        if result.status == "matched":
            self.matched += 1
        elif result.status == "synthesized":
            self.synthesized += 1
        else:
            self.unresolved += 1


class LabelingPipeline:
    """
    Classifies, labels and extracts documents against a growing catalog.
    """

    def __init__(
        self,
        registry: LabelRegistry,
        synthesizer: SchemaSynthesizer,
        engine: RuleEngine,
        store: ResultStore,
        settings: Settings,
    ):
        self.registry = registry
        self.synthesizer = synthesizer
        self.engine = engine
        self.store = store
        self.settings = settings

    def process(self, document: Document) -> ExtractionResult:
        """
        Run one document through classification, synthesis and extraction.

        Raises:
            PersistenceError: if the new label or the result cannot be saved.
        """
        with structlog.contextvars.bound_contextvars(document_id=document.id):
            snapshot = self.registry.snapshot()
            label = classify(document.content, snapshot)
            log.info("Classified document", label=label, catalog_version=snapshot.version)

            if label != UNKNOWN_LABEL:
                definition = snapshot.get(label)
                status = "matched"
            else:
                outcome = self.synthesizer.synthesize(
                    document.content, document_id=document.id
                )
                if isinstance(outcome, SynthesisFailure):
                    log.warning("Document left unlabeled", reason=outcome.reason)
                    result = ExtractionResult(document.id, UNKNOWN_LABEL, {}, "unresolved")
                    if self.settings.RECORD_UNRESOLVED:
                        self.store.append(
                            result.to_record(include_label=True, include_document_id=True)
                        )
                    return result
                definition = self._register(outcome, document)
                status = "synthesized"

            fields = self.engine.extract(document.content, definition.extract_rules)
            result = ExtractionResult(document.id, definition.label, fields, status)
            self.store.append(
                result.to_record(
                    include_label=self.settings.RESULTS_INCLUDE_LABEL,
                    include_document_id=self.settings.RESULTS_INCLUDE_LABEL,
                )
            )
            log.info(
                "Extracted fields",
                label=definition.label,
                status=status,
                field_count=len(fields),
                empty_fields=sorted(k for k, v in fields.items() if v is None),
            )
            return result

    def _register(
        self, definition: LabelDefinition, document: Document
    ) -> LabelDefinition:
        """Register a synthesized label, reusing an existing one on conflict."""
        if not matches(definition, normalize_text(document.content)):
            log.warning(
                "Synthesized keywords do not match their own document",
                label=definition.label,
                keywords=list(definition.keywords),
            )
        try:
            self.registry.insert(definition)
        except DuplicateLabel:
            existing = self.registry.get(definition.label)
            log.warning(
                "Synthesized label already exists; reusing registered definition",
                label=definition.label,
            )
            return existing
        return definition

    def run(self, documents: Iterable[Document]) -> RunSummary:
        """
        Process documents sequentially and return a summary.

        Raises:
            PersistenceError: on the first document whose label or result
                cannot be persisted.
        """
        summary = RunSummary()
        start_time = dt.datetime.now()
        for document in documents:
            try:
                summary.add(self.process(document))
            except PersistenceError:
                log.error("Persistence failed; stopping run", document_id=document.id)
                raise
            except Exception:
                # One broken document must not stop the run.
                summary.failed += 1
                log.exception("Failed to process document", document_id=document.id)

        elapsed_time = (dt.datetime.now() - start_time).total_seconds()
        log.info(
            "Finished run",
            documents=summary.total,
            matched=summary.matched,
            synthesized=summary.synthesized,
            unresolved=summary.unresolved,
            failed=summary.failed,
            elapsed_time=f"{elapsed_time:.2f}s",
        )
        return summary
