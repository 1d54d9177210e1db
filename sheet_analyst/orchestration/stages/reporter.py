# sheet_analyst/orchestration/stages/reporter.py

import logging
from typing import List, Optional

from langchain_core.runnables import Runnable
from pydantic import BaseModel, ConfigDict, Field

from sheet_analyst.analysis.visualize import DEFAULT_PIE_MAX_CATEGORIES, suggest_visualization
from sheet_analyst.backends.engine_bridge import ResultSet
from sheet_analyst.orchestration.adapters.result_format import primary_result, summarize_records
from sheet_analyst.orchestration.session_state import TurnState
from sheet_analyst.orchestration.stages.stage_base import BaseNode

_log = logging.getLogger(__name__)

NO_ANSWER_REPORT = (
    "I couldn't find a specific answer to that in your data. "
    "The query returned no matching rows."
)


class ReportInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(description="The user query to generate the data insights report.")
    data_summary: str = Field(alias="dataSummary", description="The query result, in JSON format.")
    visualizations: List[str] = Field(
        default_factory=list,
        description="Visualizations attached to the answer.",
    )


class ReportOutput(BaseModel):
    report: str = Field(description="The summarized data insights report in Markdown format.")


class ReportNode(BaseNode):
    """
    Reduce query results to a Markdown answer plus an optional
    chart/table descriptor.
    """

    def __init__(
        self,
        llm: Optional[Runnable] = None,
        *,
        max_rows: int = 200,
        pie_max_categories: int = DEFAULT_PIE_MAX_CATEGORIES,
    ) -> None:
        super().__init__(llm)
        self.max_rows = max_rows
        self.pie_max_categories = pie_max_categories

    async def summarize(self, question: str, results: List[ResultSet], *, visualize: bool = True) -> TurnState:
        result = primary_result(results)
        if result is None or result.is_empty:
            _log.info("Empty result; reporting that no answer was found.")
            return {"report": NO_ANSWER_REPORT, "visualization": None}

        visualization = (
            suggest_visualization(result, pie_max_categories=self.pie_max_categories)
            if visualize
            else None
        )
        inputs = ReportInput(
            query=question,
            data_summary=summarize_records(result, self.max_rows),
            visualizations=[visualization.type] if visualization else [],
        )
        output = await self._ask_model("report.md", inputs, ReportOutput)
        _log.info("Report generated (%d chars).", len(output.report))
        return {"report": output.report.strip(), "visualization": visualization}

    async def __call__(self, state: TurnState) -> TurnState:
        return await self.summarize(
            state.get("clarified_question") or state["question"],
            state.get("results") or [],
            visualize=state.get("chartable", True),
        )
