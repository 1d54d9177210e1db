# sheet_analyst/orchestration/stages/query_compiler.py

import json
import logging
import re
from typing import Any, Dict, List, Optional

from langchain_core.runnables import Runnable
from pydantic import BaseModel, ConfigDict, Field

from sheet_analyst.analysis.plans import AggregationPlan, SqlPlan
from sheet_analyst.backends.engine_worker import split_statements
from sheet_analyst.errors import QueryError
from sheet_analyst.ingest.schema import SchemaDescriptor
from sheet_analyst.orchestration.session_state import TurnState
from sheet_analyst.orchestration.stages.stage_base import BaseNode

_log = logging.getLogger(__name__)

_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_READ_ONLY_START = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)


# ──────────────────────────────────────────────────────────────────────────────
# Text-query strategy
# ──────────────────────────────────────────────────────────────────────────────

class SqlQueryInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(description="The natural language query to translate to SQL.")
    table_schema: str = Field(alias="tableSchema", description="The schema of the SQL table to query.")


class SqlQueryOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sql_query: str = Field(
        alias="sqlQuery",
        description="The SQL query that answers the natural language query.",
    )


def clean_sql(text: str) -> str:
    """Strip Markdown code fences and surrounding whitespace."""
    return _FENCE.sub("", text.strip()).strip()


def check_read_only(sql: str) -> None:
    """
    Allow only SELECT / WITH statements.

    Raises:
        QueryError: empty SQL or any statement that could modify the table.
    """
    statements = split_statements(sql)
    if not statements:
        raise QueryError("The generated query was empty.", sql=sql)
    for statement in statements:
        if not _READ_ONLY_START.match(statement):
            _log.warning("Rejected non-SELECT statement.")
            raise QueryError("Only read-only SELECT statements are allowed.", sql=sql)


class SqlCompileNode(BaseNode):
    """Translate a clarified question into one SQLite query over `data`."""

    def __init__(
        self,
        schema: SchemaDescriptor,
        llm: Optional[Runnable] = None,
        *,
        read_only: bool = True,
    ) -> None:
        super().__init__(llm)
        self.schema = schema
        self.read_only = read_only

    async def compile(self, question: str) -> SqlPlan:
        _log.info("Compiling question to SQL.")
        inputs = SqlQueryInput(query=question, table_schema=self.schema.to_ddl())
        output = await self._ask_model("sql_query.md", inputs, SqlQueryOutput)
        sql = clean_sql(output.sql_query)
        if self.read_only:
            check_read_only(sql)
        _log.debug("Compiled SQL: %s", sql)
        return SqlPlan(sql=sql)

    async def __call__(self, state: TurnState) -> TurnState:
        plan = await self.compile(state.get("clarified_question") or state["question"])
        return {"plan": plan, "chartable": True}


# ──────────────────────────────────────────────────────────────────────────────
# Structural-aggregation strategy
# ──────────────────────────────────────────────────────────────────────────────

class ChartColumnsInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(description="The natural language query from the user.")
    column_names: List[str] = Field(alias="columnNames", description="The available column names in the dataset.")
    sample_rows: List[Dict[str, Any]] = Field(
        default_factory=list,
        alias="sampleRows",
        description="The first few rows of the dataset.",
    )


class ChartColumnsOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    category_column: Optional[str] = Field(
        default=None,
        alias="categoryColumn",
        description="Column holding the category labels (X-axis).",
    )
    value_column: Optional[str] = Field(
        default=None,
        alias="valueColumn",
        description="Column to aggregate (Y-axis); equal to categoryColumn to count rows.",
    )
    is_chartable: bool = Field(
        alias="isChartable",
        description="Whether a meaningful chart can be generated for the query.",
    )


def validate_columns(output: ChartColumnsOutput, schema: SchemaDescriptor) -> AggregationPlan:
    """
    Turn the model's column choice into a plan, refusing pairs that do not
    exist or cannot be summed.
    """
    not_chartable = AggregationPlan(category_column=None, value_column=None, is_chartable=False)
    if not output.is_chartable:
        return not_chartable

    category, value = output.category_column, output.value_column
    names = schema.column_names()
    if category not in names or value not in names:
        _log.warning("Model picked unknown columns: %s / %s", category, value)
        return not_chartable
    if category != value and schema.type_of(value) == "TEXT":
        _log.warning("Value column '%s' is not numeric; cannot sum it.", value)
        return not_chartable
    return AggregationPlan(category_column=category, value_column=value, is_chartable=True)


class ChartColumnsNode(BaseNode):
    """Choose a category/value column pair for client-side aggregation."""

    def __init__(
        self,
        schema: SchemaDescriptor,
        sample_rows: List[Dict[str, Any]],
        llm: Optional[Runnable] = None,
    ) -> None:
        super().__init__(llm)
        self.schema = schema
        self.sample_rows = sample_rows

    def _render_inputs(self, inputs: ChartColumnsInput) -> Dict[str, Any]:
        return {
            "query": inputs.query,
            "columnNames": "\n".join(f"- {name}" for name in inputs.column_names),
            "sampleRows": json.dumps(inputs.sample_rows, default=str, indent=2),
        }

    async def compile(self, question: str) -> AggregationPlan:
        _log.info("Selecting chart columns.")
        inputs = ChartColumnsInput(
            query=question,
            column_names=self.schema.column_names(),
            sample_rows=self.sample_rows,
        )
        output = await self._ask_model("chart_columns.md", inputs, ChartColumnsOutput)
        plan = validate_columns(output, self.schema)
        _log.info(
            "Aggregation plan: %s(%s) by %s, chartable=%s",
            plan.aggregation,
            plan.value_column,
            plan.category_column,
            plan.is_chartable,
        )
        return plan

    async def __call__(self, state: TurnState) -> TurnState:
        plan = await self.compile(state.get("clarified_question") or state["question"])
        return {"plan": plan, "chartable": plan.is_chartable}
