# sheet_analyst/ingest/schema.py

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from sheet_analyst.ingest.tabular import Dataset

_log = logging.getLogger(__name__)

TABLE_NAME = "data"


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    type: str  # INTEGER | REAL | TEXT


@dataclass(frozen=True)
class SchemaDescriptor:
    """
    Declarative description of the single `data` table.

    Used both to build the engine DDL and as the data description handed to
    the language model.
    """

    columns: Tuple[ColumnSpec, ...]
    table_name: str = TABLE_NAME

    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def type_of(self, name: str) -> Optional[str]:
        for col in self.columns:
            if col.name == name:
                return col.type
        return None

    def to_ddl(self) -> str:
        cols = ", ".join(f'"{c.name}" {c.type}' for c in self.columns)
        return f"CREATE TABLE {self.table_name} ({cols});"


def infer_type(values: List[Any]) -> str:
    """
    Type of the first non-null value: INTEGER for whole numbers, REAL for
    fractional ones, TEXT otherwise (and for all-null columns).
    """
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return "TEXT"
        if isinstance(value, int) or float(value).is_integer():
            return "INTEGER"
        return "REAL"
    return "TEXT"


def derive_schema(dataset: Dataset) -> SchemaDescriptor:
    """Build the schema descriptor for a dataset. Pure and deterministic."""
    specs = tuple(
        ColumnSpec(name=col, type=infer_type([row.get(col) for row in dataset.rows]))
        for col in dataset.columns
    )
    _log.info("Derived schema with %d columns.", len(specs))
    _log.debug("Schema: %s", [(c.name, c.type) for c in specs])
    return SchemaDescriptor(columns=specs)
