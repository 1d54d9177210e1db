# sheet_analyst/orchestration/run_once.py

import logging
from typing import Any, Dict, List, Optional

from sheet_analyst.orchestration.session_state import TurnState

_log = logging.getLogger(__name__)

# clarify, compile, execute, report, finalize
_TURN_RECURSION_LIMIT = 12


def _fmt_step(state: Dict[str, Any]) -> str:
    """One-line preview of which keys a graph step has filled in."""
    keys = ", ".join(sorted(k for k, v in state.items() if v is not None))
    return f"turn state: {keys}"


async def run_turn_once(
    graph: Any,
    question: str,
    history: Optional[List[Dict[str, Any]]] = None,
) -> TurnState:
    """
    Execute a single turn of the graph and return the final state.

    Args:
        graph: Compiled turn graph from build_graph().
        question: User's input.
        history: Prior turns as {role, content} (role user|system).

    Returns:
        Final TurnState. Stage errors propagate to the caller.
    """
    _log.info("Starting single-turn graph execution.")
    initial_state: TurnState = {
        "question": question,
        "history": list(history or []),
    }

    last_state: Optional[Dict[str, Any]] = None
    async for ev in graph.astream(
        initial_state,
        config={"recursion_limit": _TURN_RECURSION_LIMIT},
        stream_mode="values",
    ):
        last_state = ev
        _log.debug(_fmt_step(ev))

    _log.info("Graph execution completed.")
    return last_state or initial_state  # type: ignore[return-value]
