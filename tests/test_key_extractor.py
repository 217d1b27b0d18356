import pytest

from src.core.exceptions import ConfigurationError
from src.core.rows import Row
from src.engine.services.keys import KeyExtractor


def test_extract_key_keeps_declared_order_types_and_values():
    row = Row.from_mapping({"a": 1, "b": "x", "c": 2.5, "d": None})
    key = KeyExtractor(["c", "a"]).extract(row)

    assert key.schema.names == ("c", "a")
    assert key.values == (2.5, 1)
    assert [f.type for f in key.schema.fields] == [
        row.schema.fields[2].type,
        row.schema.fields[0].type,
    ]


def test_keys_from_different_rows_with_same_values_are_equal():
    extractor = KeyExtractor(["id"])
    arriving = Row.from_mapping({"id": 1, "val": "b"})
    existing = Row.from_mapping({"updated_at": None, "val": "a", "id": 1})

    assert extractor(arriving) == extractor(existing)


@pytest.mark.parametrize("names", [[], [""], ["  "], ["id", "id"]])
def test_invalid_key_field_lists_fail_at_construction(names):
    with pytest.raises(ConfigurationError):
        KeyExtractor(names)


def test_absent_key_field_is_configuration_error():
    with pytest.raises(ConfigurationError) as e:
        KeyExtractor(["id", "missing"]).extract(Row.from_mapping({"id": 1}))
    assert "missing" in str(e.value)


def test_projection_is_computed_once_per_schema(monkeypatch):
    extractor = KeyExtractor(["id"])
    rows = [Row.from_mapping({"id": i, "v": "x"}) for i in range(5)]

    calls = []
    original = type(rows[0].schema).project

    def spy(self, names):
        calls.append(names)
        return original(self, names)

    monkeypatch.setattr(type(rows[0].schema), "project", spy)
    keys = [extractor(r) for r in rows]

    assert [k["id"] for k in keys] == [0, 1, 2, 3, 4]
    assert len(calls) == 1
