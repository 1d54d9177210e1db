# sheet_analyst/analysis/plans.py

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class SqlPlan:
    """A query string for the embedded engine."""

    sql: str


@dataclass(frozen=True)
class AggregationPlan:
    """
    Client-side grouping instruction.

    COUNT rows per category when both columns coincide, otherwise SUM the
    value column per category.
    """

    category_column: Optional[str]
    value_column: Optional[str]
    is_chartable: bool = True

    @property
    def aggregation(self) -> str:
        return "COUNT" if self.category_column == self.value_column else "SUM"


QueryPlan = Union[SqlPlan, AggregationPlan]
