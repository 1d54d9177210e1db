# sheet_analyst/orchestration/build_flow.py

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from langchain_core.runnables import Runnable
from langgraph.graph import END, StateGraph

from sheet_analyst.analysis.aggregate import run_aggregation
from sheet_analyst.analysis.plans import AggregationPlan, SqlPlan
from sheet_analyst.backends.engine_bridge import QueryEngineBridge, ResultSet
from sheet_analyst.errors import TurnCancelled
from sheet_analyst.ingest.schema import SchemaDescriptor
from sheet_analyst.ingest.tabular import Dataset
from sheet_analyst.orchestration.session_state import TurnState
from sheet_analyst.orchestration.stages.clarifier import ClarifyNode
from sheet_analyst.orchestration.stages.query_compiler import ChartColumnsNode, SqlCompileNode
from sheet_analyst.orchestration.stages.reporter import ReportNode

_log = logging.getLogger(__name__)

STRATEGY_SQL = "sql"
STRATEGY_AGGREGATE = "aggregate"


@dataclass
class PipelineContext:
    """Everything one uploaded dataset's turns read from."""

    dataset: Dataset
    schema: SchemaDescriptor
    bridge: Optional[QueryEngineBridge] = None
    llm: Optional[Runnable] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    # False once the session has moved on to another dataset or was reset
    is_current: Callable[[], bool] = field(default=lambda: True)

    @property
    def strategy(self) -> str:
        return self.settings.get("agent", {}).get("strategy", STRATEGY_SQL)


def build_graph(ctx: PipelineContext) -> Any:
    """
    Assemble and compile the per-turn graph:

        clarify ─┬─> compile -> execute -> report -> finalize
                 └─> finalize   (clarification needed)
    """
    _log.info("Composing turn graph (strategy=%s) ...", ctx.strategy)
    agent_cfg = ctx.settings.get("agent", {})
    report_cfg = ctx.settings.get("report", {})
    ingest_cfg = ctx.settings.get("ingest", {})
    max_rows = int(report_cfg.get("max_rows", 200))

    clarifier = ClarifyNode(ctx.schema, ctx.llm)
    if ctx.strategy == STRATEGY_AGGREGATE:
        compiler = ChartColumnsNode(
            ctx.schema,
            ctx.dataset.sample(int(ingest_cfg.get("sample_rows", 5))),
            ctx.llm,
        )
    elif ctx.strategy == STRATEGY_SQL:
        if ctx.bridge is None:
            raise ValueError("The sql strategy needs a query engine bridge.")
        compiler = SqlCompileNode(ctx.schema, ctx.llm, read_only=agent_cfg.get("read_only_sql", True))
    else:
        raise ValueError(f"Unknown compile strategy: {ctx.strategy}")
    reporter = ReportNode(
        ctx.llm,
        max_rows=max_rows,
        pie_max_categories=int(report_cfg.get("pie_max_categories", 5)),
    )

    def _ensure_current(stage: str) -> None:
        if not ctx.is_current():
            _log.info("Turn superseded; skipping %s.", stage)
            raise TurnCancelled(f"The turn was superseded before {stage}.")

    async def _clarify(state: TurnState) -> TurnState:
        return await clarifier(state)

    async def _compile(state: TurnState) -> TurnState:
        _ensure_current("compile")
        return await compiler(state)

    async def _execute(state: TurnState) -> TurnState:
        _ensure_current("execute")
        plan = state["plan"]
        if isinstance(plan, SqlPlan):
            return {"results": await ctx.bridge.execute(plan.sql)}
        if isinstance(plan, AggregationPlan) and plan.is_chartable:
            return {"results": [run_aggregation(plan, ctx.dataset.rows)]}
        # Not chartable: report from a preview of the raw data instead
        _log.info("No chartable column pair; reporting on a data preview.")
        preview = ResultSet(
            columns=list(ctx.dataset.columns),
            values=[[row[c] for c in ctx.dataset.columns] for row in ctx.dataset.rows[:max_rows]],
        )
        return {"results": [preview]}

    async def _report(state: TurnState) -> TurnState:
        _ensure_current("report")
        return await reporter(state)

    def _finalize(state: TurnState) -> TurnState:
        return state

    def _route_label(state: TurnState) -> str:
        return "ask_back" if state.get("requires_clarification") else "answer"

    g = StateGraph(TurnState)
    g.add_node("clarify", _clarify)
    g.add_node("compile", _compile)
    g.add_node("execute", _execute)
    g.add_node("report", _report)
    g.add_node("finalize", _finalize)

    g.set_entry_point("clarify")
    g.add_conditional_edges(
        "clarify",
        _route_label,
        {"ask_back": "finalize", "answer": "compile"},
    )
    g.add_edge("compile", "execute")
    g.add_edge("execute", "report")
    g.add_edge("report", "finalize")
    g.add_edge("finalize", END)

    graph = g.compile()
    _log.info("Turn graph compiled successfully.")
    return graph
