# sheet_analyst/orchestration/adapters/result_format.py

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from sheet_analyst.backends.engine_bridge import ResultSet

_log = logging.getLogger(__name__)

# Trim long text cells in terminal tables
TEXT_PREVIEW_CHARS = 40


def primary_result(results: Sequence[ResultSet]) -> Optional[ResultSet]:
    """
    The result set that answers the question: the last one that has columns.
    """
    for result in reversed(list(results)):
        if result.columns:
            return result
    return None


def summarize_records(result: ResultSet, max_rows: int = 200) -> str:
    """
    JSON records for the report prompt, capped at `max_rows` with a note on
    how many rows were left out.
    """
    records = result.records()
    payload: Dict[str, Any] = {"rows": records[:max_rows]}
    if len(records) > max_rows:
        _log.info("Report input truncated to %d of %d rows.", max_rows, len(records))
        payload["truncated"] = True
        payload["total_rows"] = len(records)
    return json.dumps(payload, default=str, indent=2)


def _format_frame(frame: pd.DataFrame) -> pd.DataFrame:
    fmt_frame = frame.copy()

    # Trim long text columns
    for col in fmt_frame.select_dtypes(include=["object"]).columns:
        fmt_frame[col] = fmt_frame[col].map(
            lambda x: "" if x is None else str(x)[:TEXT_PREVIEW_CHARS]
        )

    # Integers with thousands separators
    for col in fmt_frame.select_dtypes(include=["int", "int64", "Int64"]).columns:
        fmt_frame[col] = fmt_frame[col].map(lambda x: f"{x:,}")

    # Floats with thousands separators and 2 decimals
    for col in fmt_frame.select_dtypes(include=["float", "float64"]).columns:
        fmt_frame[col] = fmt_frame[col].map(lambda x: "" if pd.isna(x) else f"{x:,.2f}")

    return fmt_frame


def format_table(
    columns: List[str],
    rows: List[Dict[str, Any]],
    top_n_rows: Optional[int] = 50,
) -> str:
    """Render records as a plain-text table for the terminal."""
    if not columns:
        return "(no columns)"
    frame = pd.DataFrame.from_records(rows, columns=columns)
    preview = frame if top_n_rows is None else frame.head(top_n_rows)
    text = _format_frame(preview).to_string(index=False)
    if top_n_rows is not None and len(frame) > top_n_rows:
        text += f"\n… {len(frame) - top_n_rows} more row(s)"
    return text
