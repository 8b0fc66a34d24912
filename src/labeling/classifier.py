"""
Keyword Classifier
==================

A document gets the first label, in catalog order, whose keywords all occur
in its text. Both sides are compared in a normalized form: Unicode canonical
decomposition, combining marks removed, lowercased. "Fatura" therefore
matches "FATURA" and "Operação" matches "operacao".

Catalog order is the tie-break. When two labels both match, the one
registered first wins.
"""

from __future__ import annotations

import unicodedata
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .models import LabelDefinition

UNKNOWN_LABEL = "Unknown"


def normalize_text(value: str) -> str:
    """Return ``value`` without diacritics and in lowercase."""
    decomposed = unicodedata.normalize("NFD", value)
    # Nonspacing marks, including those with combining class 0 such as U+034F.
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    return stripped.lower()


def matches(definition: "LabelDefinition", normalized_text: str) -> bool:
    """Return True if every keyword of ``definition`` occurs in the text."""
    if not definition.keywords:
        return False
    return all(
        normalize_text(keyword) in normalized_text for keyword in definition.keywords
    )


def classify(text: str, snapshot: Iterable["LabelDefinition"]) -> str:
    """Return the first matching label, or ``UNKNOWN_LABEL``."""
    normalized = normalize_text(text)
    for definition in snapshot:
        if matches(definition, normalized):
            return definition.label
    return UNKNOWN_LABEL
