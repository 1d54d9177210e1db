# sheet_analyst/backends/engine_bridge.py

import asyncio
import enum
import itertools
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sheet_analyst.backends.engine_worker import EngineWorker, Message
from sheet_analyst.errors import (
    EngineError,
    EngineInitError,
    EngineNotReady,
    LoadError,
    QueryError,
)
from sheet_analyst.ingest.schema import SchemaDescriptor

_log = logging.getLogger(__name__)


class EngineState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    EXECUTING = "executing"
    CLOSED = "closed"


@dataclass
class ResultSet:
    """One statement's output: column names plus row values."""

    columns: List[str] = field(default_factory=list)
    values: List[List[Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.columns or not self.values

    def records(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.values]


# Which exception a failed action maps to
_ERRORS_BY_ACTION = {
    "init": EngineInitError,
    "create_table": LoadError,
    "exec": QueryError,
    "reset": EngineError,
}


class QueryEngineBridge:
    """
    Asynchronous client for the embedded engine worker.

    - Lazily starts the worker thread on `initialize()`
    - Sends request envelopes tagged with a correlation id
    - Resolves the awaiting caller when the matching response arrives
    - Allows a single request in flight; later callers queue on a lock
    """

    def __init__(
        self,
        *,
        database: str = ":memory:",
        request_timeout: float = 30.0,
        runtime_loader: Optional[Callable[[str], sqlite3.Connection]] = None,
    ) -> None:
        self._database = database
        self._timeout = request_timeout
        self._runtime_loader = runtime_loader
        self._worker: Optional[EngineWorker] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = asyncio.Lock()
        self._pending: Dict[str, "asyncio.Future[Message]"] = {}
        self._ids = itertools.count(1)
        self._state = EngineState.UNINITIALIZED
        self.has_table = False

    @property
    def state(self) -> EngineState:
        return self._state

    # ──────────────────────────────────────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────────────────────────────────────
    def _on_worker_message(self, response: Message) -> None:
        """Runs on the worker thread; hands the response to the event loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            _log.warning("Dropping engine response %s: no event loop.", response.get("correlationId"))
            return
        loop.call_soon_threadsafe(self._resolve, response)

    def _resolve(self, response: Message) -> None:
        corr = response.get("correlationId")
        fut = self._pending.pop(corr, None)
        if fut is None or fut.done():
            _log.warning("Discarding engine response with unknown or stale id: %s", corr)
            return
        fut.set_result(response)

    def _start_worker(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._worker = EngineWorker(
            self._on_worker_message,
            database=self._database,
            runtime_loader=self._runtime_loader,
        )
        self._worker.start()

    async def _stop_worker(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.stop()
        await asyncio.to_thread(worker.join, self._timeout)
        for fut in self._pending.values():
            if not fut.done():
                fut.cancel()
        self._pending.clear()

    async def _request(self, action: str, payload: Optional[Dict[str, Any]] = None) -> Message:
        if self._worker is None or self._loop is None:
            raise EngineNotReady("Engine worker is not running.")
        corr = str(next(self._ids))
        fut: "asyncio.Future[Message]" = self._loop.create_future()
        self._pending[corr] = fut
        envelope: Message = {"action": action, "correlationId": corr}
        if payload is not None:
            envelope["payload"] = payload
        _log.debug("Posting engine request %s (%s).", corr, action)
        self._worker.post(envelope)
        try:
            response = await asyncio.wait_for(fut, self._timeout)
        except asyncio.TimeoutError as exc:
            self._pending.pop(corr, None)
            _log.error("Engine request %s (%s) timed out.", corr, action)
            raise EngineError(f"The query engine did not respond to '{action}' in time.") from exc

        if response.get("type") == "error":
            error_cls = _ERRORS_BY_ACTION.get(action, EngineError)
            message = response.get("error") or "Unknown engine error"
            if error_cls is QueryError:
                raise QueryError(message, sql=(payload or {}).get("sql"))
            raise error_cls(message)
        return response

    def _check_ready(self, operation: str) -> None:
        if self._state not in (EngineState.READY, EngineState.EXECUTING):
            raise EngineNotReady(f"Cannot {operation}: engine is {self._state.value}.")

    async def _call(self, operation: str, action: str, payload: Optional[Dict[str, Any]] = None) -> Message:
        self._check_ready(operation)
        async with self._lock:
            # State may have changed while waiting in the queue
            self._check_ready(operation)
            self._state = EngineState.EXECUTING
            try:
                return await self._request(action, payload)
            finally:
                if self._state is EngineState.EXECUTING:
                    self._state = EngineState.READY

    # ──────────────────────────────────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────────────────────────────────
    async def initialize(self) -> None:
        """
        Start the worker and open the engine.

        Raises:
            EngineInitError: the engine runtime could not be loaded. The bridge
                stays UNINITIALIZED so the call can be retried.
        """
        if self._state in (EngineState.READY, EngineState.EXECUTING):
            return
        if self._state is EngineState.CLOSED:
            raise EngineNotReady("Engine has been closed.")

        async with self._lock:
            if self._state is EngineState.READY:
                return
            _log.info("Initializing embedded engine.")
            self._state = EngineState.INITIALIZING
            try:
                self._start_worker()
                await self._request("init")
            except EngineInitError:
                await self._stop_worker()
                self._state = EngineState.UNINITIALIZED
                raise
            except Exception as exc:
                await self._stop_worker()
                self._state = EngineState.UNINITIALIZED
                _log.error("Engine initialization failed: %s", exc)
                raise EngineInitError(str(exc)) from exc
            self._state = EngineState.READY
            _log.info("Embedded engine ready.")

    async def load_table(self, schema: SchemaDescriptor, rows: List[Dict[str, Any]]) -> int:
        """
        Replace the `data` table with the given rows.

        Returns:
            Number of rows inserted.
        """
        _log.info("Loading %d rows into the engine.", len(rows))
        response = await self._call(
            "load table",
            "create_table",
            {"schema": schema.to_ddl(), "columns": schema.column_names(), "data": rows},
        )
        self.has_table = True
        return int((response.get("results") or {}).get("rows", len(rows)))

    async def execute(self, sql: str) -> List[ResultSet]:
        """Run SQL text and return one ResultSet per statement that yields columns."""
        _log.info("Executing query on embedded engine.")
        response = await self._call("execute", "exec", {"sql": sql})
        results = [
            ResultSet(columns=list(r.get("columns") or []), values=[list(v) for v in r.get("values") or []])
            for r in response.get("results") or []
        ]
        _log.info("Query returned %d result set(s).", len(results))
        return results

    async def reset(self) -> None:
        """Discard the loaded table and reopen an empty engine."""
        _log.info("Resetting embedded engine.")
        await self._call("reset", "reset")
        self.has_table = False

    async def close(self) -> None:
        if self._state is EngineState.CLOSED:
            return
        async with self._lock:
            await self._stop_worker()
            self._state = EngineState.CLOSED
            self.has_table = False
        _log.info("Embedded engine closed.")
