from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage
from langchain_core.runnables import RunnableLambda

from sheet_analyst.backends.engine_bridge import QueryEngineBridge, ResultSet

SALES_CSV = b"category,sales\nA,10\nB,20\nA,5\n"


def reply(**fields: Any) -> str:
    """A model answer in the fenced-JSON shape Gemini usually returns."""
    return "```json\n" + json.dumps(fields) + "\n```"


def fake_llm(*responses: str) -> FakeListChatModel:
    return FakeListChatModel(responses=list(responses))


class RecordingLLM:
    """
    Async stand-in for the chat model.

    Records every rendered prompt, optionally waits on `gate` before
    answering, and replays `responses` in order.
    """

    def __init__(self, responses: List[str], gate: Optional[asyncio.Event] = None) -> None:
        self.responses = list(responses)
        self.prompts: List[str] = []
        self.gate = gate

    async def _respond(self, prompt: Any) -> AIMessage:
        self.prompts.append(prompt.to_string())
        if self.gate is not None:
            await self.gate.wait()
        return AIMessage(content=self.responses.pop(0))

    def runnable(self) -> RunnableLambda:
        return RunnableLambda(self._respond)


def failing_llm(message: str) -> RunnableLambda:
    def _boom(_: Any) -> Any:
        raise RuntimeError(message)

    return RunnableLambda(_boom)


class SpyBridge(QueryEngineBridge):
    """Bridge that counts execute() calls."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.executed: List[str] = []

    async def execute(self, sql: str) -> List[ResultSet]:
        self.executed.append(sql)
        return await super().execute(sql)


@pytest.fixture()
def settings() -> Dict[str, Any]:
    return {
        "agent": {"strategy": "sql", "read_only_sql": True},
        "engine": {"database": ":memory:", "request_timeout_seconds": 10},
        "ingest": {"sample_rows": 5},
        "report": {"max_rows": 200, "pie_max_categories": 5},
    }


@pytest.fixture()
def run() -> Callable[[Any], Any]:
    return asyncio.run
