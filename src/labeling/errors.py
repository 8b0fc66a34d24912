"""
Labeling error taxonomy.

Only persistence failures (`common.storage.PersistenceError`) are hard errors.
Everything defined here is local to one document or one field and is
recovered from by the pipeline.
"""

from __future__ import annotations


class LabelingError(Exception):
    """Base class for labeling errors."""


class DuplicateLabel(LabelingError):
    """A label with the same name is already registered."""

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"Label '{label}' is already registered")


class InvalidLabelDefinition(LabelingError, ValueError):
    """A label definition does not have the expected shape."""


class SynthesisError(LabelingError, ValueError):
    """The inference service response could not be turned into a label."""


class FieldExtractionFailure(LabelingError):
    """Evaluating one extraction rule failed."""

    def __init__(self, reason: str, *, field: str | None = None, expression: str = ""):
        self.reason = reason
        self.field = field
        self.expression = expression
        prefix = f"Field '{field}': " if field else ""
        super().__init__(f"{prefix}{reason}")


class RuleSyntaxError(FieldExtractionFailure):
    """The extraction rule is not a valid expression."""


class UnsafeRuleError(FieldExtractionFailure):
    """The extraction rule uses an operation outside the sandbox."""
