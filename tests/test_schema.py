from __future__ import annotations

from sheet_analyst.ingest.schema import derive_schema, infer_type
from sheet_analyst.ingest.tabular import Dataset


def _dataset() -> Dataset:
    return Dataset(
        columns=["a", "b", "c", "d"],
        rows=[
            {"a": None, "b": 1.5, "c": "x", "d": None},
            {"a": 3, "b": 2, "c": 1, "d": None},
        ],
    )


def test_type_comes_from_first_non_null_value():
    schema = derive_schema(_dataset())
    assert [(c.name, c.type) for c in schema.columns] == [
        ("a", "INTEGER"),
        ("b", "REAL"),
        ("c", "TEXT"),
        ("d", "TEXT"),
    ]


def test_whole_floats_and_booleans():
    assert infer_type([None, 2.0]) == "INTEGER"
    assert infer_type([True, 1]) == "TEXT"
    assert infer_type([]) == "TEXT"


def test_derivation_is_deterministic():
    dataset = _dataset()
    assert derive_schema(dataset) == derive_schema(dataset)


def test_ddl_quotes_identifiers():
    schema = derive_schema(Dataset(columns=["1st", "name"], rows=[{"1st": 1, "name": "x"}]))
    assert schema.table_name == "data"
    assert schema.to_ddl() == 'CREATE TABLE data ("1st" INTEGER, "name" TEXT);'
    assert schema.type_of("name") == "TEXT"
    assert schema.type_of("missing") is None
