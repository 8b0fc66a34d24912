import json

import pytest

from common.storage import PersistenceError
from labeling.classifier import UNKNOWN_LABEL
from labeling.models import Document, LabelDefinition
from labeling.pipeline import LabelingPipeline
from labeling.registry import LabelRegistry
from labeling.results import ResultStore
from labeling.rules import RuleEngine
from labeling.synthesizer import SchemaSynthesizer, SynthesisFailure

FATURA_TEXT = "Fatura nº 123 — Valor total: 450.00"


def create_mock_response(mocker, content):
    mock_choice = mocker.MagicMock()
    mock_choice.message.content = content
    mock_response = mocker.MagicMock()
    mock_response.choices = [mock_choice]
    return mock_response


@pytest.fixture
def registry(settings):
    registry = LabelRegistry(settings.LABELS_PATH)
    registry.load()
    return registry


@pytest.fixture
def store(settings):
    return ResultStore(settings.RESULTS_PATH)


@pytest.fixture
def synthesizer(settings, mocker):
    synthesizer = SchemaSynthesizer(settings)
    mocker.patch.object(synthesizer, "synthesize")
    return synthesizer


@pytest.fixture
def pipeline(settings, registry, synthesizer, store):
    return LabelingPipeline(
        registry=registry,
        synthesizer=synthesizer,
        engine=RuleEngine(),
        store=store,
        settings=settings,
    )


def _records(settings):
    with open(settings.RESULTS_PATH, encoding="utf-8") as f:
        return json.load(f)


def test_known_document_is_matched_and_extracted(
    pipeline, registry, synthesizer, settings, fatura_definition
):
    registry.insert(fatura_definition)

    result = pipeline.process(Document("fatura.txt", FATURA_TEXT))

    assert result.label == "fatura"
    assert result.status == "matched"
    assert result.fields == {"total": 450.0}
    assert _records(settings) == [{"total": 450.0}]
    synthesizer.synthesize.assert_not_called()


def test_synthesized_label_serves_the_next_document(settings, registry, store, mocker, fatura_definition):
    synthesizer = SchemaSynthesizer(settings)
    mock_create = mocker.patch(
        "labeling.synthesizer.SchemaSynthesizer._create_completion",
        return_value=create_mock_response(
            mocker, "```json\n" + json.dumps(fatura_definition.to_dict()) + "\n```"
        ),
    )
    pipeline = LabelingPipeline(registry, synthesizer, RuleEngine(), store, settings)

    summary = pipeline.run(
        [
            Document("a.txt", FATURA_TEXT),
            Document("b.txt", "FATURA 7 - valor a pagar: 1.234,56"),
        ]
    )

    assert mock_create.call_count == 1
    assert [r.status for r in summary.results] == ["synthesized", "matched"]
    assert (summary.matched, summary.synthesized, summary.unresolved) == (1, 1, 0)
    assert _records(settings) == [{"total": 450.0}, {"total": 1234.56}]
    assert LabelRegistry(settings.LABELS_PATH).load() == [fatura_definition]


def test_synthesis_failure_leaves_document_unresolved(pipeline, synthesizer, registry, settings):
    synthesizer.synthesize.return_value = SynthesisFailure("Response is not valid JSON")

    result = pipeline.process(Document("x.txt", "texto qualquer"))

    assert result.label == UNKNOWN_LABEL
    assert result.status == "unresolved"
    assert result.fields == {}
    assert len(registry) == 0
    assert not ResultStore(settings.RESULTS_PATH).path.exists()


def test_unresolved_documents_can_be_recorded(pipeline, synthesizer, settings):
    settings.RECORD_UNRESOLVED = True
    synthesizer.synthesize.return_value = SynthesisFailure("no model configured")

    pipeline.process(Document("x.txt", "texto qualquer"))

    assert _records(settings) == [
        {
            "document_id": "x.txt",
            "label": UNKNOWN_LABEL,
            "status": "unresolved",
            "fields": {},
        }
    ]


def test_duplicate_synthesized_label_reuses_registered_definition(
    pipeline, synthesizer, registry, settings, fatura_definition
):
    registry.insert(fatura_definition)
    synthesizer.synthesize.return_value = LabelDefinition(
        label="fatura",
        keywords=("fatura",),
        extract_rules={"tamanho": "len(text)"},
    )

    result = pipeline.process(Document("c.txt", "Fatura sem total"))

    assert result.status == "synthesized"
    assert result.fields == {"total": None}
    assert registry.get("fatura") == fatura_definition
    assert len(registry) == 1


def test_failing_rules_are_isolated(pipeline, registry, settings):
    registry.insert(
        LabelDefinition(
            label="recibo",
            keywords=("recibo",),
            extract_rules={
                "numero": r'int(re.search(r"nº\s*(\d+)", text).group(1))',
                "cpf": r're.search(r"CPF:\s*(\S+)", text).group(1)',
                "evil": "__import__('os').getcwd()",
            },
        )
    )

    result = pipeline.process(Document("r.txt", "Recibo nº 42"))

    assert result.fields == {"numero": 42, "cpf": None, "evil": None}
    assert _records(settings) == [{"numero": 42, "cpf": None, "evil": None}]


def test_records_can_include_label(pipeline, registry, settings, fatura_definition):
    settings.RESULTS_INCLUDE_LABEL = True
    registry.insert(fatura_definition)

    pipeline.process(Document("fatura.txt", FATURA_TEXT))

    assert _records(settings) == [
        {
            "document_id": "fatura.txt",
            "label": "fatura",
            "status": "matched",
            "fields": {"total": 450.0},
        }
    ]


def test_run_continues_after_document_error(pipeline, registry, mocker, fatura_definition):
    registry.insert(fatura_definition)
    mocker.patch.object(
        pipeline.engine,
        "extract",
        side_effect=[RuntimeError("boom"), {"total": 1.0}],
    )

    summary = pipeline.run(
        [Document("a.txt", FATURA_TEXT), Document("b.txt", FATURA_TEXT)]
    )

    assert summary.failed == 1
    assert summary.matched == 1
    assert summary.total == 2
    assert [r.document_id for r in summary.results] == ["b.txt"]


def test_run_stops_on_persistence_error(pipeline, registry, store, mocker, fatura_definition):
    registry.insert(fatura_definition)
    mocker.patch.object(
        store, "append", side_effect=PersistenceError("results.json", "disk full")
    )
    process = mocker.spy(pipeline, "process")

    with pytest.raises(PersistenceError):
        pipeline.run([Document("a.txt", FATURA_TEXT), Document("b.txt", FATURA_TEXT)])

    assert process.call_count == 1


def test_empty_run(pipeline):
    summary = pipeline.run([])

    assert summary.total == 0
    assert summary.results == []
