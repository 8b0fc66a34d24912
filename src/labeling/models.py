"""
Labeling data model.

`LabelDefinition` is the unit of the persisted catalog, `Document` is one
input text and `ExtractionResult` is what the pipeline produces for it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from .classifier import UNKNOWN_LABEL
from .errors import InvalidLabelDefinition

MAX_KEYWORDS = 3

ResultStatus = Literal["matched", "synthesized", "unresolved"]


def _string_mapping(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidLabelDefinition(f"'{key}' must be an object")
    mapping = {}
    for name, item in value.items():
        if not isinstance(name, str) or not name.strip():
            raise InvalidLabelDefinition(f"'{key}' has an empty field name")
        if not isinstance(item, str):
            raise InvalidLabelDefinition(f"'{key}.{name}' must be a string")
        mapping[name.strip()] = item
    return mapping


@dataclass(frozen=True)
class LabelDefinition:
    label: str
    keywords: tuple[str, ...]
    extraction_schema: dict[str, str] = field(default_factory=dict)
    extract_rules: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "LabelDefinition":
        """
        Build a definition from its persisted JSON shape.

        Raises:
            InvalidLabelDefinition: if a key is missing or has the wrong type.
        """
        if not isinstance(data, Mapping):
            raise InvalidLabelDefinition("Label definition must be an object")

        label = data.get("label")
        if not isinstance(label, str) or not label.strip():
            raise InvalidLabelDefinition("'label' must be a non-empty string")
        if label.strip() == UNKNOWN_LABEL:
            raise InvalidLabelDefinition(
                f"'label' must not be the reserved name {UNKNOWN_LABEL!r}"
            )

        keywords_value = data.get("keywords", [])
        if not isinstance(keywords_value, list) or not all(
            isinstance(keyword, str) for keyword in keywords_value
        ):
            raise InvalidLabelDefinition("'keywords' must be a list of strings")
        keywords = tuple(k.strip() for k in keywords_value if k.strip())
        if len(keywords) > MAX_KEYWORDS:
            raise InvalidLabelDefinition(
                f"'keywords' holds {len(keywords)} entries; at most {MAX_KEYWORDS} allowed"
            )

        return cls(
            label=label.strip(),
            keywords=keywords,
            extraction_schema=_string_mapping(data, "extraction_schema"),
            extract_rules=_string_mapping(data, "extract_rules"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "keywords": list(self.keywords),
            "extraction_schema": dict(self.extraction_schema),
            "extract_rules": dict(self.extract_rules),
        }


@dataclass(frozen=True)
class Document:
    id: str
    content: str


@dataclass(frozen=True)
class ExtractionResult:
    document_id: str
    label: str
    fields: dict[str, Any]
    status: ResultStatus

    @property
    def resolved(self) -> bool:
        return self.status != "unresolved"

    def to_record(
        self, *, include_label: bool = False, include_document_id: bool = False
    ) -> dict[str, Any]:
        """
        Return the mapping that is appended to the result collection.

        By default the record is just the extracted fields.
        """
        if not include_label and not include_document_id:
            return dict(self.fields)
        record: dict[str, Any] = {}
        if include_document_id:
            record["document_id"] = self.document_id
        if include_label:
            record["label"] = self.label
            record["status"] = self.status
        record["fields"] = dict(self.fields)
        return record
