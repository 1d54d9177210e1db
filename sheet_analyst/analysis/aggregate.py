# sheet_analyst/analysis/aggregate.py

import logging
import math
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from sheet_analyst.analysis.plans import AggregationPlan
from sheet_analyst.backends.engine_bridge import ResultSet

_log = logging.getLogger(__name__)

Number = Union[int, float]


def _to_number(value: Any) -> Optional[Number]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    try:
        parsed = float(str(value).replace(",", "").strip())
    except ValueError:
        return None
    return None if math.isnan(parsed) else parsed


def aggregate_rows(
    rows: Iterable[Mapping[str, Any]],
    category_column: str,
    value_column: str,
) -> Dict[Any, Number]:
    """
    Group rows by exact category value.

    Rows with a null category are ignored. In SUM mode values that cannot be
    parsed as numbers are skipped; the skip count is logged.
    """
    counting = category_column == value_column
    totals: Dict[Any, Number] = {}
    skipped = 0

    for row in rows:
        category = row.get(category_column)
        if category is None or (isinstance(category, float) and math.isnan(category)):
            continue
        if counting:
            totals[category] = totals.get(category, 0) + 1
            continue
        number = _to_number(row.get(value_column))
        if number is None:
            skipped += 1
            continue
        totals[category] = totals.get(category, 0) + number

    if skipped:
        _log.info(
            "Aggregation skew: skipped %d non-numeric value(s) in column '%s'.",
            skipped,
            value_column,
        )
    return totals


def run_aggregation(plan: AggregationPlan, rows: Iterable[Mapping[str, Any]]) -> ResultSet:
    """Execute a chartable plan and shape the totals as a two-column result."""
    if not plan.is_chartable or not plan.category_column or not plan.value_column:
        raise ValueError("Only chartable plans can be aggregated.")
    totals = aggregate_rows(rows, plan.category_column, plan.value_column)
    value_label = "count" if plan.aggregation == "COUNT" else plan.value_column
    if value_label == plan.category_column:
        value_label = f"{value_label}_total"
    return ResultSet(
        columns=[plan.category_column, value_label],
        values=[[category, total] for category, total in totals.items()],
    )
