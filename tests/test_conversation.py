from __future__ import annotations

import asyncio

from sheet_analyst.orchestration.conversation import (
    GENERIC_FAILURE,
    SERVICE_UNAVAILABLE,
    AnalystSession,
    SessionStatus,
)
from sheet_analyst.orchestration.transcript import (
    Role,
    TextContent,
    Transcript,
    VisualizationContent,
)

from conftest import SALES_CSV, RecordingLLM, SpyBridge, failing_llm, fake_llm, reply

SALES_SQL = "SELECT category, SUM(sales) AS total FROM data GROUP BY category ORDER BY category"


def _resolved(question: str) -> str:
    return reply(clarifiedQuestion=question, requiresClarification=False)


async def _wait_for_prompt(llm: RecordingLLM, count: int = 1) -> None:
    while len(llm.prompts) < count:
        await asyncio.sleep(0.01)


def test_sales_question_gets_report_and_pie(run, settings):
    llm = fake_llm(
        _resolved("total sales per category"),
        reply(sqlQuery=SALES_SQL),
        reply(report="Category **B** sold the most (20)."),
    )

    async def scenario():
        session = AnalystSession(settings, llm=llm, bridge=SpyBridge())
        notice = await session.upload(SALES_CSV, "sales.csv")
        assert notice.accepted and notice.title == "File Loaded"
        assert session.status is SessionStatus.CHATTING
        msg = await session.ask("what are total sales per category?")
        transcript = list(session.transcript)
        await session.close()
        return msg, transcript

    msg, transcript = run(scenario())
    assert msg.role is Role.ASSISTANT
    assert isinstance(msg.content, VisualizationContent)
    assert msg.content.report == "Category **B** sold the most (20)."
    assert msg.content.visualization.type == "pie"
    assert msg.content.visualization.data == [
        {"category": "A", "total": 15},
        {"category": "B", "total": 20},
    ]
    assert msg.content.query == SALES_SQL
    assert [m.role for m in transcript] == [Role.ASSISTANT, Role.USER, Role.ASSISTANT]
    assert transcript[0].text == (
        'Your data from "sales.csv" has been successfully processed. What would you like to know?'
    )


def test_vague_question_is_answered_with_a_follow_up(run, settings):
    llm = fake_llm(
        reply(
            clarifiedQuestion="",
            requiresClarification=True,
            nextQuestion="Do you mean total sales, or sales for a specific category?",
        )
    )
    spy = SpyBridge()

    async def scenario():
        session = AnalystSession(settings, llm=llm, bridge=spy)
        await session.upload(SALES_CSV, "sales.csv")
        msg = await session.ask("is it good?")
        await session.close()
        return msg

    msg = run(scenario())
    assert isinstance(msg.content, TextContent)
    assert msg.text == "Do you mean total sales, or sales for a specific category?"
    assert spy.executed == []


def test_follow_up_answer_sees_earlier_turns(run, settings):
    llm = RecordingLLM(
        [
            reply(clarifiedQuestion="", requiresClarification=True, nextQuestion="For which category?"),
            _resolved("total sales for category A"),
            reply(sqlQuery="SELECT SUM(sales) AS total FROM data WHERE category = 'A'"),
            reply(report="Category A sold 15."),
        ]
    )

    async def scenario():
        session = AnalystSession(settings, llm=llm.runnable())
        await session.upload(SALES_CSV, "sales.csv")
        await session.ask("how much did we sell?")
        msg = await session.ask("A")
        await session.close()
        return msg

    msg = run(scenario())
    second_clarify = llm.prompts[1]
    assert "user: how much did we sell?" in second_clarify
    assert "system: For which category?" in second_clarify
    assert "Latest user message: A" in second_clarify
    # 1x1 result: report only
    assert isinstance(msg.content, TextContent)
    assert msg.text == "Category A sold 15."


def test_rejected_uploads_keep_waiting(run, settings):
    async def scenario():
        session = AnalystSession(settings, llm=fake_llm("unused"))
        bad_type = await session.upload(SALES_CSV, "notes.txt")
        empty = await session.upload(b"category,sales\n", "sales.csv")
        ignored = await session.ask("anything?")
        status = session.status
        await session.close()
        return bad_type, empty, ignored, status

    bad_type, empty, ignored, status = run(scenario())
    assert not bad_type.accepted and bad_type.title == "Invalid File Type"
    assert not empty.accepted and empty.title == "Empty File"
    assert ignored is None
    assert status is SessionStatus.AWAITING_UPLOAD


def test_query_error_is_reported_and_engine_stays_usable(run, settings):
    llm = fake_llm(
        _resolved("average discount"),
        reply(sqlQuery="SELECT AVG(discount) FROM data"),
        _resolved("number of rows"),
        reply(sqlQuery="SELECT COUNT(*) AS n FROM data"),
        reply(report="There are 3 rows."),
    )

    async def scenario():
        session = AnalystSession(settings, llm=llm)
        await session.upload(SALES_CSV, "sales.csv")
        failed = await session.ask("what is the average discount?")
        answered = await session.ask("how many rows are there?")
        await session.close()
        return failed, answered

    failed, answered = run(scenario())
    assert failed.text.startswith("I couldn't run the query for that question")
    assert "discount" in failed.text
    assert answered.text == "There are 3 rows."


def test_service_outage_message(run, settings):
    async def scenario():
        session = AnalystSession(settings, llm=failing_llm("503 Service Unavailable"))
        await session.upload(SALES_CSV, "sales.csv")
        msg = await session.ask("total sales?")
        busy = session.busy
        await session.close()
        return msg, busy

    msg, busy = run(scenario())
    assert msg.text == SERVICE_UNAVAILABLE
    assert busy is False


def test_malformed_model_output_gets_generic_apology(run, settings):
    async def scenario():
        session = AnalystSession(settings, llm=fake_llm("no json here"))
        await session.upload(SALES_CSV, "sales.csv")
        msg = await session.ask("total sales?")
        await session.close()
        return msg

    assert run(scenario()).text == GENERIC_FAILURE


def test_second_question_while_busy_is_ignored(run, settings):
    async def scenario():
        gate = asyncio.Event()
        llm = RecordingLLM(
            [_resolved("row count"), reply(sqlQuery="SELECT COUNT(*) AS n FROM data"), reply(report="3 rows.")],
            gate=gate,
        )
        session = AnalystSession(settings, llm=llm.runnable())
        await session.upload(SALES_CSV, "sales.csv")

        first = asyncio.create_task(session.ask("how many rows?"))
        await _wait_for_prompt(llm)
        assert session.busy
        second = await session.ask("and the total?")
        gate.set()
        answered = await first
        user_turns = [m for m in session.transcript if m.role is Role.USER]
        await session.close()
        return second, answered, user_turns

    second, answered, user_turns = run(scenario())
    assert second is None
    assert answered.text == "3 rows."
    assert [m.text for m in user_turns] == ["how many rows?"]


def test_reset_discards_turn_in_flight(run, settings):
    async def scenario():
        gate = asyncio.Event()
        llm = RecordingLLM(
            [_resolved("row count"), reply(sqlQuery="SELECT COUNT(*) AS n FROM data"), reply(report="3 rows.")],
            gate=gate,
        )
        session = AnalystSession(settings, llm=llm.runnable())
        await session.upload(SALES_CSV, "sales.csv")

        pending = asyncio.create_task(session.ask("how many rows?"))
        await _wait_for_prompt(llm)
        await session.reset()
        gate.set()
        late = await pending

        tables = await session.bridge.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        state = (late, len(session.transcript), session.status, session.busy, session.bridge.has_table)
        await session.close()
        return state, tables

    (late, transcript_len, status, busy, has_table), tables = run(scenario())
    assert late is None
    assert transcript_len == 0
    assert status is SessionStatus.AWAITING_UPLOAD
    assert busy is False
    assert has_table is False
    assert tables[0].values == []


def test_new_upload_starts_a_fresh_conversation(run, settings):
    async def scenario():
        session = AnalystSession(settings, llm=fake_llm("unused"))
        await session.upload(SALES_CSV, "first.csv")
        await session.upload(b"region,units\nNorth,4\n", "second.csv")
        texts = [m.text for m in session.transcript]
        rows = await session.bridge.execute("SELECT region, units FROM data")
        await session.close()
        return texts, rows

    texts, rows = run(scenario())
    assert len(texts) == 1 and '"second.csv"' in texts[0]
    assert rows[0].values == [["North", 4]]


def test_aggregate_strategy_charts_without_the_engine(run, settings):
    settings["agent"]["strategy"] = "aggregate"
    llm = fake_llm(
        _resolved("total sales per category"),
        reply(categoryColumn="category", valueColumn="sales", isChartable=True),
        reply(report="B leads."),
    )

    async def scenario():
        session = AnalystSession(settings, llm=llm)
        await session.upload(SALES_CSV, "sales.csv")
        msg = await session.ask("sales by category")
        bridge = session.bridge
        await session.close()
        return msg, bridge

    msg, bridge = run(scenario())
    assert bridge is None
    assert isinstance(msg.content, VisualizationContent)
    assert msg.content.query is None
    assert msg.content.visualization.type == "pie"
    assert msg.content.visualization.data == [
        {"category": "A", "sales": 15},
        {"category": "B", "sales": 20},
    ]


def test_aggregate_strategy_without_chart_reports_text(run, settings):
    settings["agent"]["strategy"] = "aggregate"
    llm = fake_llm(
        _resolved("describe the data"),
        reply(categoryColumn=None, valueColumn=None, isChartable=False),
        reply(report="Three sales records."),
    )

    async def scenario():
        session = AnalystSession(settings, llm=llm)
        await session.upload(SALES_CSV, "sales.csv")
        msg = await session.ask("describe the data")
        await session.close()
        return msg

    msg = run(scenario())
    assert isinstance(msg.content, TextContent)
    assert msg.text == "Three sales records."


def test_transcript_ids_are_never_reused():
    transcript = Transcript()
    transcript.append(Role.USER, TextContent("hi"))
    transcript.append(Role.ASSISTANT, TextContent("hello"))
    assert transcript.history() == [
        {"role": "user", "content": "hi"},
        {"role": "system", "content": "hello"},
    ]
    transcript.clear()
    msg = transcript.append(Role.USER, TextContent("again"))
    assert msg.id == 3
    assert len(transcript) == 1


def test_rejected_upload_keeps_the_current_conversation(run, settings):
    llm = fake_llm(
        _resolved("row count"),
        reply(sqlQuery="SELECT COUNT(*) AS n FROM data"),
        reply(report="There are 3 rows."),
    )

    async def scenario():
        session = AnalystSession(settings, llm=llm)
        await session.upload(SALES_CSV, "sales.csv")
        bad_type = await session.upload(b"just text", "notes.txt")
        empty = await session.upload(b"", "other.csv")
        kept = (session.status, session.file_name, len(session.transcript), session.dataset is not None)
        answered = await session.ask("how many rows are there?")
        await session.close()
        return bad_type, empty, kept, answered

    bad_type, empty, kept, answered = run(scenario())
    assert bad_type.title == "Invalid File Type"
    assert empty.title == "Empty File"
    assert kept == (SessionStatus.CHATTING, "sales.csv", 1, True)
    assert answered.text == "There are 3 rows."


def test_reset_during_upload_leaves_engine_empty(run, settings):
    async def scenario():
        session = AnalystSession(settings, llm=fake_llm("unused"))
        loading = asyncio.create_task(session.upload(SALES_CSV, "sales.csv"))
        await asyncio.sleep(0)
        await session.reset()
        notice = await loading
        tables = await session.bridge.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        state = (session.status, session.dataset, session.bridge.has_table)
        await session.close()
        return notice, tables, state

    notice, tables, (status, dataset, has_table) = run(scenario())
    assert notice.title == "Upload Cancelled"
    assert tables[0].values == []
    assert status is SessionStatus.AWAITING_UPLOAD
    assert dataset is None
    assert has_table is False


def test_turn_from_previous_upload_never_reaches_new_table(run, settings):
    settings["agent"]["read_only_sql"] = False
    spy = SpyBridge()

    async def scenario():
        gate = asyncio.Event()
        llm = RecordingLLM(
            [_resolved("wipe it"), reply(sqlQuery="DELETE FROM data"), reply(report="Done.")],
            gate=gate,
        )
        session = AnalystSession(settings, llm=llm.runnable(), bridge=spy)
        await session.upload(SALES_CSV, "sales.csv")

        pending = asyncio.create_task(session.ask("delete all rows"))
        await _wait_for_prompt(llm)
        notice = await session.upload(b"region,units\nNorth,4\nSouth,6\n", "second.csv")
        gate.set()
        late = await pending

        rows = await session.bridge.execute("SELECT COUNT(*) FROM data")
        prompts = list(llm.prompts)
        await session.close()
        return notice, late, rows, prompts

    notice, late, rows, prompts = run(scenario())
    assert notice.accepted
    assert late is None
    # only the clarify prompt went out; compile and execute were skipped
    assert len(prompts) == 1
    assert spy.executed == ["SELECT COUNT(*) FROM data"]
    assert rows[0].values == [[2]]
