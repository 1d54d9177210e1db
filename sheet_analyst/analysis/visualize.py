# sheet_analyst/analysis/visualize.py

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sheet_analyst.backends.engine_bridge import ResultSet

_log = logging.getLogger(__name__)

BAR_CHART = "barChart"
PIE = "pie"
TABLE = "table"

DEFAULT_PIE_MAX_CATEGORIES = 5


@dataclass
class Visualization:
    """Rendering hint handed to the presentation layer as-is."""

    type: str
    data: List[Dict[str, Any]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data, "columns": self.columns}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_chartable(result: ResultSet) -> bool:
    """Two columns: a categorical label and a numeric measure."""
    if len(result.columns) != 2 or not result.values:
        return False
    labels = [row[0] for row in result.values]
    measures = [row[1] for row in result.values]
    if any(_is_number(v) for v in labels if v is not None):
        return False
    present = [v for v in measures if v is not None]
    return bool(present) and all(_is_number(v) for v in present)


def suggest_visualization(
    result: Optional[ResultSet],
    *,
    pie_max_categories: int = DEFAULT_PIE_MAX_CATEGORIES,
) -> Optional[Visualization]:
    """
    Pick a chart or table for a result.

    A single scalar needs no visualization; a category/measure pair with more
    than one row becomes a pie (few categories) or a bar chart; anything else
    non-empty is a table.
    """
    if result is None or result.is_empty:
        return None
    if len(result.columns) == 1 and len(result.values) == 1:
        return None

    data = result.records()
    if len(result.values) > 1 and is_chartable(result):
        kind = PIE if len(result.values) <= pie_max_categories else BAR_CHART
    else:
        kind = TABLE
    _log.debug("Visualization chosen: %s (%d rows).", kind, len(data))
    return Visualization(type=kind, data=data, columns=list(result.columns))
