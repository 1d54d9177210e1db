# sheet_analyst/backends/engine_worker.py

import json
import logging
import queue
import sqlite3
import threading
import datetime as dt
from typing import Any, Callable, Dict, List, Optional

_log = logging.getLogger(__name__)

Message = Dict[str, Any]


def split_statements(sql: str) -> List[str]:
    """
    Split SQL text into complete statements using SQLite's own tokenizer
    check. A trailing statement without a semicolon is kept.
    """
    statements: List[str] = []
    buf = ""
    for ch in sql:
        buf += ch
        if ch == ";" and sqlite3.complete_statement(buf):
            if buf.strip().rstrip(";").strip():
                statements.append(buf.strip())
            buf = ""
    if buf.strip():
        statements.append(buf.strip())
    return statements


def _cell(value: Any) -> Any:
    """Adapt a dataset value to something SQLite can bind."""
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value)
    return value


class EngineWorker(threading.Thread):
    """
    Dedicated thread owning the embedded SQLite connection.

    - Reads request envelopes from an inbox queue, one at a time
    - Posts response envelopes through `outbox`, echoing `correlationId`
    - Holds at most one table, `data`
    """

    def __init__(
        self,
        outbox: Callable[[Message], None],
        *,
        database: str = ":memory:",
        runtime_loader: Optional[Callable[[str], sqlite3.Connection]] = None,
    ) -> None:
        super().__init__(name="sheet-analyst-engine", daemon=True)
        self._outbox = outbox
        self._database = database
        self._runtime_loader = runtime_loader or sqlite3.connect
        self._inbox: "queue.Queue[Optional[Message]]" = queue.Queue()
        self._db: Optional[sqlite3.Connection] = None

    # ──────────────────────────────────────────────────────────────────────────
    # Mailbox
    # ──────────────────────────────────────────────────────────────────────────
    def post(self, message: Message) -> None:
        self._inbox.put(message)

    def stop(self) -> None:
        self._inbox.put(None)

    def run(self) -> None:
        _log.info("Engine worker started.")
        while True:
            message = self._inbox.get()
            if message is None:
                break
            self._outbox(self.handle(message))
        self._close_db()
        _log.info("Engine worker stopped.")

    # ──────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ──────────────────────────────────────────────────────────────────────────
    def handle(self, message: Message) -> Message:
        action = message.get("action")
        payload = message.get("payload") or {}
        corr = message.get("correlationId")
        _log.debug("Engine request %s: %s", corr, action)
        try:
            if action == "init":
                self._open_db()
                reply: Message = {"type": "init_success"}
            elif action == "create_table":
                count = self._create_table(payload.get("schema"), payload.get("columns"), payload.get("data"))
                reply = {"type": "table_created", "results": {"rows": count}}
            elif action == "exec":
                reply = {"type": "exec_result", "results": self._exec(payload.get("sql") or "")}
            elif action == "reset":
                self._close_db()
                self._open_db()
                reply = {"type": "reset_success"}
            else:
                raise ValueError(f"Unknown action: {action}")
        except Exception as exc:
            _log.warning("Engine request %s (%s) failed: %s", corr, action, exc)
            reply = {"type": "error", "error": str(exc)}
        reply["correlationId"] = corr
        return reply

    # ──────────────────────────────────────────────────────────────────────────
    # Engine operations
    # ──────────────────────────────────────────────────────────────────────────
    def _open_db(self) -> None:
        if self._db is not None:
            return
        conn = self._runtime_loader(self._database)
        # Explicit BEGIN/COMMIT so DDL is transactional too
        conn.isolation_level = None
        self._db = conn
        _log.info("Embedded engine opened (%s).", self._database)

    def _close_db(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def _require_db(self) -> sqlite3.Connection:
        if self._db is None:
            raise RuntimeError("Engine is not initialized.")
        return self._db

    def _create_table(
        self,
        ddl: Optional[str],
        columns: Optional[List[str]],
        rows: Optional[List[Dict[str, Any]]],
    ) -> int:
        db = self._require_db()
        if not ddl or not columns:
            raise ValueError("create_table requires a schema and column list.")
        rows = rows or []

        expected = list(columns)
        values: List[List[Any]] = []
        for idx, row in enumerate(rows):
            if len(row) != len(expected) or any(col not in row for col in expected):
                raise ValueError(
                    f"Row {idx} has {len(row)} values but the schema defines {len(expected)} columns."
                )
            values.append([_cell(row[col]) for col in expected])

        placeholders = ", ".join("?" for _ in expected)
        insert_sql = f"INSERT INTO data VALUES ({placeholders})"

        db.execute("BEGIN")
        try:
            db.execute("DROP TABLE IF EXISTS data")
            db.execute(ddl)
            # One prepared statement reused for every row
            db.executemany(insert_sql, values)
            db.execute("COMMIT")
        except Exception:
            db.execute("ROLLBACK")
            raise
        _log.info("Loaded %d rows into table 'data'.", len(values))
        return len(values)

    def _exec(self, sql: str) -> List[Dict[str, Any]]:
        db = self._require_db()
        results: List[Dict[str, Any]] = []
        for statement in split_statements(sql):
            cur = db.execute(statement)
            if cur.description is None:
                continue
            results.append(
                {
                    "columns": [d[0] for d in cur.description],
                    "values": [list(r) for r in cur.fetchall()],
                }
            )
        return results
