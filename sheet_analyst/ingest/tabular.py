# sheet_analyst/ingest/tabular.py

import io
import logging
import math
import re
import datetime as dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from sheet_analyst.errors import EmptyDataset, ParseError, UnsupportedFormat

_log = logging.getLogger(__name__)

ACCEPTED_EXTENSIONS = ("csv", "xls", "xlsx")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_]")

Scalar = Union[str, int, float, None]


@dataclass
class Dataset:
    """
    Normalized, row-major tabular data built from one uploaded file.

    Every row carries exactly the keys in `columns`, in that order.
    `kinds` records the primitive kind seen per column: text, integer, real, date.
    """

    columns: List[str]
    rows: List[Dict[str, Scalar]]
    kinds: Dict[str, str] = field(default_factory=dict)
    source_name: Optional[str] = None

    def __post_init__(self) -> None:
        expected = list(self.columns)
        for idx, row in enumerate(self.rows):
            if list(row.keys()) != expected:
                raise ValueError(f"Row {idx} does not match the dataset columns.")

    def __len__(self) -> int:
        return len(self.rows)

    def sample(self, n: int = 5) -> List[Dict[str, Scalar]]:
        return [dict(r) for r in self.rows[:n]]


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────

def sanitize_column_name(name: Any) -> str:
    """Replace every character outside [A-Za-z0-9_] with an underscore."""
    return _UNSAFE_CHARS.sub("_", str(name))


def _unique_columns(raw: List[Any]) -> List[str]:
    seen: Dict[str, int] = {}
    out: List[str] = []
    for name in raw:
        base = sanitize_column_name(name) or "_"
        candidate = base
        while candidate in seen:
            seen[base] += 1
            candidate = f"{base}_{seen[base]}"
        seen.setdefault(candidate, 0)
        out.append(candidate)
    return out


def _normalize_extension(name_or_ext: str) -> str:
    text = str(name_or_ext).strip().lower()
    if "." in text:
        text = text.rsplit(".", 1)[-1]
    return text


def _to_scalar(value: Any) -> Scalar:
    """Convert pandas/numpy cell values into plain Python scalars."""
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, (pd.Timestamp, dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, np.generic):
        value = value.item()
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    if isinstance(value, str) and not value.strip():
        return None
    return value


def _kind_of(value: Any) -> str:
    if isinstance(value, (pd.Timestamp, dt.datetime, dt.date)):
        return "date"
    if isinstance(value, (bool, np.bool_)):
        return "text"
    if isinstance(value, (int, np.integer)):
        return "integer"
    if isinstance(value, (float, np.floating)):
        return "integer" if float(value).is_integer() else "real"
    return "text"


def _read_frame(data: bytes, ext: str) -> pd.DataFrame:
    buf = io.BytesIO(data)
    if ext == "csv":
        return pd.read_csv(buf)
    # First sheet only
    return pd.read_excel(buf, sheet_name=0)


# ──────────────────────────────────────────────────────────────────────────────
# Public API
# ──────────────────────────────────────────────────────────────────────────────

def ingest_bytes(data: bytes, name_or_ext: str) -> Dataset:
    """
    Parse raw file bytes into a Dataset.

    Args:
        data: File content.
        name_or_ext: File name or bare extension (csv, xls, xlsx).

    Raises:
        UnsupportedFormat: extension is not one of csv/xls/xlsx.
        EmptyDataset: no data rows after parsing.
        ParseError: the underlying reader failed.
    """
    ext = _normalize_extension(name_or_ext)
    if ext not in ACCEPTED_EXTENSIONS:
        _log.warning("Rejected upload with extension '%s'.", ext)
        raise UnsupportedFormat(
            f"Unsupported file type '.{ext}'. Please upload a .csv, .xls or .xlsx file."
        )

    _log.info("Parsing %s upload (%d bytes).", ext, len(data))
    try:
        frame = _read_frame(data, ext)
    except pd.errors.EmptyDataError as exc:
        raise EmptyDataset("The uploaded file contains no data.") from exc
    except Exception as exc:
        _log.error("Failed to parse %s file: %s", ext, exc)
        raise ParseError(
            "There was an error processing your file. Please ensure it is a valid file."
        ) from exc

    # Rows where every cell is blank carry no data
    frame = frame.dropna(how="all")
    if frame.empty:
        raise EmptyDataset("The uploaded file contains no data.")

    columns = _unique_columns(list(frame.columns))
    kinds: Dict[str, str] = {}
    rows: List[Dict[str, Scalar]] = []
    for raw_row in frame.itertuples(index=False, name=None):
        row: Dict[str, Scalar] = {}
        for col, raw in zip(columns, raw_row):
            value = _to_scalar(raw)
            if value is not None and col not in kinds:
                kinds[col] = _kind_of(raw)
            row[col] = value
        rows.append(row)

    for col in columns:
        kinds.setdefault(col, "text")

    name = name_or_ext if "." in str(name_or_ext) else None
    _log.info("Ingested %d rows x %d columns.", len(rows), len(columns))
    return Dataset(columns=columns, rows=rows, kinds=kinds, source_name=name)


def ingest_file(path: Union[str, Path]) -> Dataset:
    """Read a file from disk and ingest it (extension taken from the path)."""
    p = Path(path)
    ext = _normalize_extension(p.name)
    if ext not in ACCEPTED_EXTENSIONS:
        raise UnsupportedFormat(
            f"Unsupported file type '.{ext}'. Please upload a .csv, .xls or .xlsx file."
        )
    try:
        data = p.read_bytes()
    except OSError as exc:
        _log.error("Could not read %s: %s", p, exc)
        raise ParseError(f"Could not read the selected file: {exc}") from exc
    return ingest_bytes(data, p.name)
