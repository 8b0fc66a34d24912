"""
Labeling domain package.

This package contains:

- the label registry and the keyword classifier
- the schema synthesizer (prompt + parsing + LLM calls)
- the sandboxed rule engine that extracts fields from text
- the result store and the per-document pipeline
- the command-line entrypoint
"""

from .classifier import UNKNOWN_LABEL, classify, normalize_text
from .errors import (
    DuplicateLabel,
    FieldExtractionFailure,
    LabelingError,
    SynthesisError,
)
from .models import Document, ExtractionResult, LabelDefinition
from .pipeline import LabelingPipeline, RunSummary
from .registry import LabelRegistry, RegistrySnapshot
from .results import ResultStore
from .rules import RuleEngine
from .synthesizer import SchemaSynthesizer, SynthesisFailure, parse_label_definition

__all__ = [
    "Document",
    "DuplicateLabel",
    "ExtractionResult",
    "FieldExtractionFailure",
    "LabelDefinition",
    "LabelRegistry",
    "LabelingError",
    "LabelingPipeline",
    "RegistrySnapshot",
    "ResultStore",
    "RuleEngine",
    "RunSummary",
    "SchemaSynthesizer",
    "SynthesisError",
    "SynthesisFailure",
    "UNKNOWN_LABEL",
    "classify",
    "normalize_text",
    "parse_label_definition",
]
