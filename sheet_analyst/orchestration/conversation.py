# sheet_analyst/orchestration/conversation.py

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from langchain_core.runnables import Runnable

from sheet_analyst.analysis.plans import SqlPlan
from sheet_analyst.backends.engine_bridge import EngineState, QueryEngineBridge
from sheet_analyst.boot.load_settings import AppConfigLoader
from sheet_analyst.errors import (
    EmptyDataset,
    EngineError,
    InferenceError,
    ParseError,
    QueryError,
    SheetAnalystError,
    UnsupportedFormat,
)
from sheet_analyst.ingest.schema import SchemaDescriptor, derive_schema
from sheet_analyst.ingest.tabular import Dataset, ingest_bytes
from sheet_analyst.orchestration.build_flow import STRATEGY_SQL, PipelineContext, build_graph
from sheet_analyst.orchestration.run_once import run_turn_once
from sheet_analyst.orchestration.session_state import TurnState
from sheet_analyst.orchestration.transcript import (
    Content,
    Message,
    Role,
    TextContent,
    Transcript,
    VisualizationContent,
)

_log = logging.getLogger(__name__)

GENERIC_FAILURE = (
    "I'm sorry, I wasn't able to process that request. Please try asking in a different way."
)
SERVICE_UNAVAILABLE = (
    "The analysis service is temporarily unavailable. Please try again in a few moments."
)


class SessionStatus(enum.Enum):
    AWAITING_UPLOAD = "awaiting_upload"
    CHATTING = "chatting"


@dataclass(frozen=True)
class Notice:
    """Outcome of an upload attempt, shown to the user once."""

    accepted: bool
    title: str
    description: str


def describe_failure(exc: BaseException) -> str:
    """User-facing text for an error that ended a turn."""
    if isinstance(exc, QueryError):
        return (
            f"I couldn't run the query for that question: {exc}. "
            "Try rephrasing it or refer to the columns by name."
        )
    if isinstance(exc, EngineError):
        return f"The query engine failed: {exc}. Try uploading the file again."
    if isinstance(exc, InferenceError) and exc.transient:
        return SERVICE_UNAVAILABLE
    return GENERIC_FAILURE


class AnalystSession:
    """
    Conversation orchestrator for one user.

    - AWAITING_UPLOAD until a file is ingested, described and loaded
    - CHATTING: each question runs the turn graph; one turn at a time
    - reset() or a new upload invalidates any turn still in flight
    """

    def __init__(
        self,
        settings: Optional[Dict[str, Any]] = None,
        *,
        llm: Optional[Runnable] = None,
        bridge: Optional[QueryEngineBridge] = None,
    ) -> None:
        self.settings = settings if settings is not None else AppConfigLoader().get_config()
        self._llm = llm
        self._bridge = bridge
        self.transcript = Transcript()
        self.status = SessionStatus.AWAITING_UPLOAD
        self.file_name: Optional[str] = None
        self.dataset: Optional[Dataset] = None
        self.schema: Optional[SchemaDescriptor] = None
        self._graph: Optional[Any] = None
        self._epoch = 0
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def bridge(self) -> Optional[QueryEngineBridge]:
        return self._bridge

    # ──────────────────────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────────────────────
    def _strategy(self) -> str:
        return self.settings.get("agent", {}).get("strategy", STRATEGY_SQL)

    def _get_bridge(self) -> QueryEngineBridge:
        if self._bridge is None or self._bridge.state is EngineState.CLOSED:
            engine_cfg = self.settings.get("engine", {})
            self._bridge = QueryEngineBridge(
                database=engine_cfg.get("database", ":memory:"),
                request_timeout=float(engine_cfg.get("request_timeout_seconds", 30)),
            )
        return self._bridge

    async def _reset_engine(self) -> None:
        bridge = self._bridge
        if bridge is None or not bridge.has_table:
            return
        if bridge.state not in (EngineState.READY, EngineState.EXECUTING):
            return
        try:
            await bridge.reset()
        except EngineError as exc:
            # A broken engine is replaced on the next upload
            _log.error("Engine reset failed; closing it: %s", exc)
            await bridge.close()

    async def _discard_session(self, *, reset_engine: bool = True) -> None:
        """Drop dataset, schema, graph and transcript; optionally empty the engine."""
        self._epoch += 1
        self._busy = False
        self.transcript.clear()
        self.status = SessionStatus.AWAITING_UPLOAD
        self.file_name = None
        self.dataset = None
        self.schema = None
        self._graph = None
        if reset_engine:
            await self._reset_engine()

    @staticmethod
    def _content_from_state(state: TurnState) -> Content:
        if state.get("requires_clarification"):
            return TextContent(state.get("next_question") or "")
        report = state.get("report") or ""
        visualization = state.get("visualization")
        if visualization is not None:
            plan = state.get("plan")
            query = plan.sql if isinstance(plan, SqlPlan) else None
            return VisualizationContent(report=report, visualization=visualization, query=query)
        return TextContent(report)

    # ──────────────────────────────────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────────────────────────────────
    async def upload(self, data: bytes, filename: str) -> Notice:
        """
        Replace the current dataset with an uploaded file.

        The current session is only discarded once the new file has been
        ingested and loaded; a rejected file leaves it as it was.

        Returns:
            An accepted Notice when the session moved to CHATTING over the new
            file, otherwise a rejection Notice.
        """
        _log.info("Upload received: %s", filename)
        epoch = self._epoch

        try:
            dataset = ingest_bytes(data, filename)
            schema = derive_schema(dataset)
            ctx = PipelineContext(dataset=dataset, schema=schema, llm=self._llm, settings=self.settings)
            if self._strategy() == STRATEGY_SQL:
                ctx.bridge = self._get_bridge()
            graph = build_graph(ctx)
            if ctx.bridge is not None:
                await ctx.bridge.initialize()
                # A failed load keeps the previous table
                await ctx.bridge.load_table(schema, dataset.rows)
        except UnsupportedFormat as exc:
            return Notice(False, "Invalid File Type", str(exc))
        except EmptyDataset as exc:
            return Notice(False, "Empty File", str(exc))
        except ParseError as exc:
            return Notice(False, "File Processing Error", str(exc))
        except EngineError as exc:
            _log.error("Engine rejected the dataset: %s", exc)
            return Notice(False, "Query Engine Error", f"Could not load the data into the query engine: {exc}")
        except (SheetAnalystError, ValueError) as exc:
            _log.error("Session setup failed: %s", exc, exc_info=True)
            return Notice(False, "Setup Error", str(exc))

        if epoch != self._epoch:
            _log.warning("Upload of %s was superseded; discarding it.", filename)
            if self.dataset is None:
                # Reset landed while loading: the table must not outlive it
                await self._reset_engine()
            return Notice(False, "Upload Cancelled", "The session was reset while the file was loading.")

        await self._discard_session(reset_engine=ctx.bridge is None)
        current = self._epoch
        ctx.is_current = lambda: self._epoch == current

        self.dataset = dataset
        self.schema = schema
        self._graph = graph
        self.file_name = filename
        self.status = SessionStatus.CHATTING
        self.transcript.append(
            Role.ASSISTANT,
            TextContent(
                f'Your data from "{filename}" has been successfully processed. '
                "What would you like to know?"
            ),
        )
        _log.info("Session is chatting over %d rows.", len(dataset))
        return Notice(True, "File Loaded", f"{len(dataset)} rows, {len(schema.columns)} columns.")

    async def ask(self, question: str) -> Optional[Message]:
        """
        Run one question through the pipeline.

        Returns:
            The assistant message appended to the transcript, or None when the
            question was ignored (no dataset, empty text, a turn already in
            flight, or the session was reset before the turn finished).
        """
        question = (question or "").strip()
        if not question:
            return None
        if self.status is not SessionStatus.CHATTING or self._graph is None:
            _log.warning("Question ignored: no dataset loaded.")
            return None
        if self._busy:
            _log.warning("Question ignored: a turn is already in progress.")
            return None

        self._busy = True
        epoch = self._epoch
        history = self.transcript.history()
        self.transcript.append(Role.USER, TextContent(question))

        try:
            state = await run_turn_once(self._graph, question, history)
            content = self._content_from_state(state)
        except SheetAnalystError as exc:
            _log.warning("Turn failed: %s", exc)
            content = TextContent(describe_failure(exc))
        except Exception as exc:
            _log.error("Unhandled error during turn: %s", exc, exc_info=True)
            content = TextContent(GENERIC_FAILURE)
        finally:
            if epoch == self._epoch:
                self._busy = False

        if epoch != self._epoch:
            _log.info("Discarding reply for a turn that started before the last reset.")
            return None
        return self.transcript.append(Role.ASSISTANT, content)

    async def reset(self) -> None:
        """Back to AWAITING_UPLOAD with an empty engine and transcript."""
        _log.info("Resetting session.")
        await self._discard_session()

    async def close(self) -> None:
        await self._discard_session()
        if self._bridge is not None:
            await self._bridge.close()
