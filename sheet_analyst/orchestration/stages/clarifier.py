# sheet_analyst/orchestration/stages/clarifier.py

import logging
from typing import Any, Dict, List, Literal, Optional

from langchain_core.runnables import Runnable
from pydantic import BaseModel, ConfigDict, Field

from sheet_analyst.errors import InferenceError
from sheet_analyst.ingest.schema import SchemaDescriptor
from sheet_analyst.orchestration.session_state import TurnState
from sheet_analyst.orchestration.stages.stage_base import BaseNode

_log = logging.getLogger(__name__)


class HistoryTurn(BaseModel):
    role: Literal["user", "system"]
    content: str


class ClarificationInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str = Field(description="The ambiguous question asked by the user.")
    data_description: str = Field(
        alias="dataDescription",
        description="A description of the available data (the SQL table schema).",
    )
    conversation_history: List[HistoryTurn] = Field(
        default_factory=list,
        alias="conversationHistory",
        description="The history of the conversation.",
    )


class ClarificationOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    clarified_question: str = Field(
        default="",
        alias="clarifiedQuestion",
        description="The clarified question that can be used to generate an SQL query.",
    )
    requires_clarification: bool = Field(
        alias="requiresClarification",
        description="Whether the question requires further clarification.",
    )
    next_question: Optional[str] = Field(
        default=None,
        alias="nextQuestion",
        description="The next question to ask the user if clarification is required.",
    )


def format_history(history: List[HistoryTurn]) -> str:
    if not history:
        return "(none)"
    return "\n".join(f"{turn.role}: {turn.content}" for turn in history)


class ClarifyNode(BaseNode):
    """
    Gate that decides whether a question can be answered as-is or needs a
    follow-up question first.
    """

    def __init__(self, schema: SchemaDescriptor, llm: Optional[Runnable] = None) -> None:
        super().__init__(llm)
        self.schema = schema

    def _render_inputs(self, inputs: ClarificationInput) -> Dict[str, Any]:
        return {
            "question": inputs.question,
            "dataDescription": inputs.data_description,
            "conversationHistory": format_history(inputs.conversation_history),
        }

    async def resolve(self, question: str, history: List[Dict[str, Any]]) -> ClarificationOutput:
        _log.info("Checking question for ambiguity.")
        inputs = ClarificationInput(
            question=question,
            data_description=self.schema.to_ddl(),
            conversation_history=[HistoryTurn(**turn) for turn in history],
        )
        output = await self._ask_model("clarify.md", inputs, ClarificationOutput)
        if output.requires_clarification:
            if not (output.next_question or "").strip():
                raise InferenceError("Clarification was requested without a follow-up question.")
            _log.info("Question needs clarification.")
            return output
        if not output.clarified_question.strip():
            output.clarified_question = question
        _log.info("Question resolved: %s", output.clarified_question)
        return output

    async def __call__(self, state: TurnState) -> TurnState:
        output = await self.resolve(state["question"], state.get("history") or [])
        return {
            "requires_clarification": output.requires_clarification,
            "clarified_question": output.clarified_question,
            "next_question": output.next_question if output.requires_clarification else None,
        }
