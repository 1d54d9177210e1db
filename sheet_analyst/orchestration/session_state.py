# sheet_analyst/orchestration/session_state.py

from typing import TypedDict, Optional, Dict, Any, List

from sheet_analyst.analysis.plans import QueryPlan
from sheet_analyst.analysis.visualize import Visualization
from sheet_analyst.backends.engine_bridge import ResultSet


class TurnState(TypedDict, total=False):
    """
    Scratchpad for one pass through the turn graph.

    Keys:
        question               : The latest user utterance.
        history                : Prior turns as {role, content} with role user|system.
        clarified_question     : Resolved restatement of the question.
        requires_clarification : True when the turn must stop and ask back.
        next_question          : Clarifying question to show the user.
        plan                   : SqlPlan or AggregationPlan produced by the compiler.
        results                : Result sets from the engine or client-side aggregation.
        chartable              : False when the compiler found no chartable column pair.
        report                 : Markdown answer from the reporter.
        visualization          : Optional chart/table descriptor.
    """
    question: str
    history: List[Dict[str, Any]]
    clarified_question: str
    requires_clarification: bool
    next_question: Optional[str]
    plan: QueryPlan
    results: List[ResultSet]
    chartable: bool
    report: str
    visualization: Optional[Visualization]
