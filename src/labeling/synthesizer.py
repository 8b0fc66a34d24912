"""
Schema Synthesizer
==================

When no catalog label matches a document, the synthesizer asks the
generative inference service to invent one. The reply must be a single JSON
object with four keys (``label``, ``keywords``, ``extraction_schema`` and
``extract_rules``). Models often wrap JSON in markdown fences or add a
sentence around it, so parsing is tolerant: direct parse, then fence-stripped
parse, then the outermost ``{...}`` span.

Anything that cannot be turned into a valid `LabelDefinition` becomes a
`SynthesisFailure` value. The synthesizer never raises for bad model output
and never touches the registry.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

import openai
import structlog

from common.config import Settings
from common.llm import OpenAIChatMixin, completion_text
from .classifier import normalize_text
from .errors import InvalidLabelDefinition, SynthesisError
from .models import MAX_KEYWORDS, LabelDefinition

log = structlog.get_logger(__name__)

SYNTHESIS_PROMPT = """
You are the schema designer of a document-processing system.

You receive the plain text of one document whose type is not yet known.
Invent a new document label for it, keywords that identify documents of the
same type, a descriptive schema of the useful fields, and one extraction rule
per field.

Always reply only with a single, valid JSON object that matches the schema
below. Do not wrap it in markdown or add explanations.

----------  JSON schema  ----------
{
  "label":             string,              # snake_case name of the document type
  "keywords":          string[],            # 1 to 3 words that every document of this type contains
  "extraction_schema": {field: string},     # field name -> description of the field
  "extract_rules":     {field: string}      # field name -> extraction rule (see below)
}
-----------------------------------

Keywords
--------
- Pick words that appear literally in the document and are typical of the
  document type, not of this particular document (no names, numbers, dates).
- Matching ignores case and accents; all keywords must be present.

Extraction rules
----------------
Each rule is ONE Python expression evaluated with the variable `text`
holding the document text. Only these operations are available:
- `re.search`, `re.match`, `re.fullmatch`, `re.findall`, `re.finditer`,
  `re.sub`, `re.split` with flags `re.I`, `re.M`, `re.S`
- string methods such as `.strip()`, `.split()`, `.lower()`, `.replace()`,
  `.find()`, slicing `text[a:b]`
- match methods `.group()`, `.groups()`, `.start()`, `.end()`
- `len`, `int`, `float`, `str`, `min`, `max`, `round`, `sorted`, `any`, `all`,
  `sum` (numbers only) and `to_number(s)`, which parses amounts like
  "1.234,56" or "450.00"
- conditional expressions, `and`/`or`, comprehensions and `:=`
No imports, no statements, no lambdas, no other functions.

Guard every match so a missing value yields None instead of an error, e.g.
  (m := re.search(r"Total:\\s*([\\d.,]+)", text, re.I)) and to_number(m.group(1))

Every field in "extraction_schema" must have a rule in "extract_rules".
""".strip()

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?|\n?\s*```\s*$")
_LABEL_CHARS_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class SynthesisFailure:
    reason: str
    raw_response: str = ""


def strip_code_fences(text: str) -> str:
    """Remove a leading and a trailing markdown fence marker, if present."""
    return _FENCE_RE.sub("", text.strip()).strip()


def normalize_label_name(value: str) -> str:
    """Return ``value`` as a lowercase snake_case token without diacritics."""
    return _LABEL_CHARS_RE.sub("_", normalize_text(value)).strip("_")


def _load_json_object(raw: str) -> Any:
    candidates = [raw, strip_code_fences(raw)]
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])

    error: json.JSONDecodeError | None = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            error = error or e
    raise SynthesisError(f"Response is not valid JSON: {error}")


def _clean_keywords(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise SynthesisError("'keywords' must be a list of strings")

    keywords: list[str] = []
    seen: set[str] = set()
    for item in value:
        if not isinstance(item, str):
            raise SynthesisError("'keywords' must be a list of strings")
        keyword = item.strip()
        key = normalize_text(keyword)
        if not keyword or key in seen:
            continue
        seen.add(key)
        keywords.append(keyword)

    if not keywords:
        raise SynthesisError("'keywords' is empty")
    if len(keywords) > MAX_KEYWORDS:
        log.warning(
            "Synthesized label has too many keywords; keeping the first ones",
            keywords=keywords,
            kept=MAX_KEYWORDS,
        )
        keywords = keywords[:MAX_KEYWORDS]
    return tuple(keywords)


def parse_label_definition(raw: str) -> LabelDefinition:
    """
    Parse and validate an inference service response.

    Raises:
        SynthesisError: if the response is not a label definition.
    """
    text = (raw or "").strip()
    if not text:
        raise SynthesisError("Response is empty")

    data = _load_json_object(text)
    if not isinstance(data, dict):
        raise SynthesisError("Response is not a JSON object")

    missing = [
        key
        for key in ("label", "keywords", "extraction_schema", "extract_rules")
        if key not in data
    ]
    if missing:
        raise SynthesisError(f"Response is missing keys: {', '.join(missing)}")

    label_value = data["label"]
    if not isinstance(label_value, str):
        raise SynthesisError("'label' must be a string")
    label = normalize_label_name(label_value)
    if not label:
        raise SynthesisError("'label' is empty")

    try:
        definition = LabelDefinition.from_dict(
            {
                "label": label,
                "keywords": list(_clean_keywords(data["keywords"])),
                "extraction_schema": data["extraction_schema"],
                "extract_rules": data["extract_rules"],
            }
        )
    except InvalidLabelDefinition as e:
        raise SynthesisError(str(e)) from e

    if not definition.extract_rules:
        raise SynthesisError("'extract_rules' is empty")

    undocumented = set(definition.extract_rules) - set(definition.extraction_schema)
    if undocumented:
        log.info(
            "Extraction rules without schema description",
            label=label,
            fields=sorted(undocumented),
        )
    return definition


class SchemaSynthesizer(OpenAIChatMixin):
    """
    Synthesizes label definitions with an OpenAI-compatible chat model.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _models_to_try(self) -> list[str]:
        seen = set()
        models = []
        for model in self.settings.AI_MODELS:
            if model not in seen:
                seen.add(model)
                models.append(model)
        return models

    def synthesize(
        self, text: str, document_id: str | None = None
    ) -> LabelDefinition | SynthesisFailure:
        """
        Ask the model chain for a new label definition for ``text``.
        """
        log_context = {"document_id": document_id} if document_id else {}
        if not text.strip():
            log.warning("Document content is empty; skipping synthesis", **log_context)
            return SynthesisFailure("document content is empty")

        content = text
        if len(content) > self.settings.SYNTHESIS_MAX_CHARS:
            log.info(
                "Truncating document text for synthesis",
                chars=len(content),
                max_chars=self.settings.SYNTHESIS_MAX_CHARS,
                **log_context,
            )
            content = content[: self.settings.SYNTHESIS_MAX_CHARS]

        messages = [
            {"role": "system", "content": SYNTHESIS_PROMPT},
            {"role": "user", "content": f"Document text:\n{content}"},
        ]

        last_failure = SynthesisFailure("no model configured")
        for model in self._models_to_try():
            params: dict[str, Any] = {
                "model": model,
                "messages": messages,
                "timeout": self.settings.REQUEST_TIMEOUT,
            }
            if self.settings.SYNTHESIS_MAX_TOKENS:
                params["max_tokens"] = self.settings.SYNTHESIS_MAX_TOKENS

            raw = ""
            try:
                response = self._create_completion(**params)
                raw = completion_text(response)
                definition = parse_label_definition(raw)
            except SynthesisError as e:
                log.warning(
                    "Synthesis response invalid", model=model, error=str(e), **log_context
                )
                last_failure = SynthesisFailure(str(e), raw)
                continue
            except openai.APIError as e:
                log.warning(
                    "Synthesis model failed", model=model, error=str(e), **log_context
                )
                last_failure = SynthesisFailure(f"{model}: {e}")
                continue

            log.info(
                "Synthesized label",
                model=model,
                label=definition.label,
                keywords=list(definition.keywords),
                **log_context,
            )
            return definition

        log.error("All synthesis models failed", reason=last_failure.reason, **log_context)
        return last_failure
