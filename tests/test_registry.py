import json
import threading

import pytest

from common.storage import PersistenceError
from labeling.errors import DuplicateLabel, InvalidLabelDefinition
from labeling.models import LabelDefinition
from labeling.registry import LabelRegistry


def _write_catalog(path, entries):
    path.write_text(json.dumps(entries), encoding="utf-8")


def test_load_missing_file_is_empty(tmp_path):
    registry = LabelRegistry(tmp_path / "schemata.json")

    assert registry.load() == []
    assert len(registry) == 0
    assert registry.snapshot().definitions == ()


def test_load_preserves_catalog_order(tmp_path):
    path = tmp_path / "schemata.json"
    _write_catalog(
        path,
        [
            {"label": "b", "keywords": ["beta"], "extraction_schema": {}, "extract_rules": {}},
            {"label": "a", "keywords": ["alpha"], "extraction_schema": {}, "extract_rules": {}},
        ],
    )
    registry = LabelRegistry(path)

    loaded = registry.load()

    assert [d.label for d in loaded] == ["b", "a"]
    assert registry.labels() == ["b", "a"]


def test_load_accepts_definitions_without_rules(tmp_path):
    path = tmp_path / "schemata.json"
    _write_catalog(path, [{"label": "memo", "keywords": ["memo"]}])

    (definition,) = LabelRegistry(path).load()

    assert definition.extract_rules == {}
    assert definition.extraction_schema == {}


@pytest.mark.parametrize(
    "content, message",
    [
        ('{"label": "x"}', "JSON array"),
        ('[{"keywords": ["x"]}]', "index 0"),
        ('[{"label": "x", "keywords": "x"}]', "index 0"),
        (
            '[{"label": "x", "keywords": ["x"]}, {"label": "x", "keywords": ["y"]}]',
            "more than once",
        ),
        ("[", "invalid JSON"),
    ],
)
def test_load_rejects_malformed_catalog(tmp_path, content, message):
    path = tmp_path / "schemata.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(PersistenceError, match=message):
        LabelRegistry(path).load()


def test_insert_persists_before_returning(tmp_path, fatura_definition):
    path = tmp_path / "schemata.json"
    registry = LabelRegistry(path)
    registry.load()

    snapshot = registry.insert(fatura_definition)

    assert snapshot.get("fatura") == fatura_definition
    assert json.loads(path.read_text(encoding="utf-8")) == [fatura_definition.to_dict()]
    assert LabelRegistry(path).load() == [fatura_definition]


def test_insert_duplicate_label_fails_and_keeps_catalog(tmp_path, fatura_definition):
    path = tmp_path / "schemata.json"
    registry = LabelRegistry(path)
    registry.insert(fatura_definition)
    other = LabelDefinition(label="fatura", keywords=("outra",))

    with pytest.raises(DuplicateLabel) as excinfo:
        registry.insert(other)

    assert excinfo.value.label == "fatura"
    assert len(registry) == 1
    assert registry.get("fatura") == fatura_definition
    assert len(json.loads(path.read_text(encoding="utf-8"))) == 1


def test_insert_keeps_memory_unchanged_when_save_fails(tmp_path, mocker, fatura_definition):
    registry = LabelRegistry(tmp_path / "schemata.json")
    before = registry.snapshot()
    mocker.patch(
        "labeling.registry.write_json_atomic",
        side_effect=PersistenceError("schemata.json", "disk full"),
    )

    with pytest.raises(PersistenceError):
        registry.insert(fatura_definition)

    assert len(registry) == 0
    assert registry.snapshot() == before


def test_snapshot_is_immutable_and_versioned(tmp_path, fatura_definition):
    registry = LabelRegistry(tmp_path / "schemata.json")
    first = registry.snapshot()

    registry.insert(fatura_definition)
    second = registry.snapshot()

    assert len(first) == 0
    assert len(second) == 1
    assert second.version > first.version


def test_concurrent_inserts_of_same_label_register_once(tmp_path):
    registry = LabelRegistry(tmp_path / "schemata.json")
    outcomes = []

    def insert():
        try:
            registry.insert(LabelDefinition(label="recibo", keywords=("recibo",)))
            outcomes.append("inserted")
        except DuplicateLabel:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=insert) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("inserted") == 1
    assert outcomes.count("duplicate") == 7
    assert registry.labels() == ["recibo"]


def test_label_definition_rejects_too_many_keywords():
    with pytest.raises(InvalidLabelDefinition, match="at most 3"):
        LabelDefinition.from_dict({"label": "x", "keywords": ["a", "b", "c", "d"]})


def test_label_definition_round_trips_through_dict(fatura_definition):
    assert LabelDefinition.from_dict(fatura_definition.to_dict()) == fatura_definition


def test_unknown_is_a_reserved_label_name(tmp_path):
    path = tmp_path / "schemata.json"
    _write_catalog(path, [{"label": "Unknown", "keywords": ["fatura"]}])

    with pytest.raises(InvalidLabelDefinition, match="reserved"):
        LabelDefinition.from_dict({"label": " Unknown ", "keywords": ["fatura"]})
    with pytest.raises(PersistenceError, match="index 0"):
        LabelRegistry(path).load()
