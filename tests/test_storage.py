import json

import pytest

from common.storage import PersistenceError, read_json, write_json_atomic


def test_read_json_missing_file_returns_default(tmp_path):
    assert read_json(tmp_path / "missing.json", default=[]) == []


@pytest.mark.parametrize("content", ["", "   \n\t"])
def test_read_json_blank_file_returns_default(tmp_path, content):
    path = tmp_path / "blank.json"
    path.write_text(content, encoding="utf-8")

    assert read_json(path, default=[]) == []


def test_read_json_invalid_json_raises(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("[{", encoding="utf-8")

    with pytest.raises(PersistenceError, match="invalid JSON"):
        read_json(path, default=[])


def test_write_json_atomic_writes_utf8_and_leaves_no_temp_files(tmp_path):
    path = tmp_path / "nested" / "data.json"

    write_json_atomic(path, [{"descrição": "Operação"}])

    assert json.loads(path.read_text(encoding="utf-8")) == [{"descrição": "Operação"}]
    assert "Operação" in path.read_text(encoding="utf-8")
    assert [p.name for p in path.parent.iterdir()] == ["data.json"]


def test_write_json_atomic_keeps_previous_content_when_serialization_fails(tmp_path):
    path = tmp_path / "data.json"
    write_json_atomic(path, [1, 2])

    with pytest.raises(PersistenceError, match="cannot serialize"):
        write_json_atomic(path, [object()])

    assert json.loads(path.read_text(encoding="utf-8")) == [1, 2]


def test_write_json_atomic_keeps_previous_content_when_replace_fails(tmp_path, mocker):
    path = tmp_path / "data.json"
    write_json_atomic(path, ["old"])
    mocker.patch("common.storage.os.replace", side_effect=OSError("disk full"))

    with pytest.raises(PersistenceError, match="disk full"):
        write_json_atomic(path, ["new"])

    assert json.loads(path.read_text(encoding="utf-8")) == ["old"]
    assert [p.name for p in tmp_path.iterdir()] == ["data.json"]
