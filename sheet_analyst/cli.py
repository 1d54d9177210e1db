# sheet_analyst/cli.py

import os
import sys
import asyncio
import logging
import argparse
from pathlib import Path
from typing import Dict, Any, Optional

from dotenv import load_dotenv

from sheet_analyst.boot.load_settings import AppConfigLoader
from sheet_analyst.errors import IngestError
from sheet_analyst.ingest.schema import SchemaDescriptor, derive_schema
from sheet_analyst.ingest.tabular import Dataset, ingest_file
from sheet_analyst.orchestration.adapters.result_format import format_table
from sheet_analyst.orchestration.conversation import AnalystSession, Notice
from sheet_analyst.orchestration.transcript import Message, VisualizationContent


# ──────────────────────────────────────────────────────────────────────────────
# UI helpers
# ──────────────────────────────────────────────────────────────────────────────

def _box(title: str) -> str:
    """Return a single-line title in a lightweight box."""
    pad = f"  {title.strip()}  "
    return f"┌{'─' * len(pad)}┐\n│{pad}│\n└{'─' * len(pad)}┘"

def _rule(text: str = "") -> str:
    """Horizontal rule with optional label."""
    label = f" {text.strip()} " if text else ""
    line = "─" * max(4, 72 - len(label))
    return f"{label}{line}"

def _print_welcome() -> None:
    print(_box("Sheet Analyst"))
    print("Commands: ':load PATH' new file - ':reset' start over - ':quit' exit.\n")

def _print_notice(notice: Notice) -> None:
    print(_box(notice.title))
    print(notice.description)

def _print_message(msg: Message) -> None:
    print(_rule(" response "))
    print(msg.text)
    if isinstance(msg.content, VisualizationContent):
        vis = msg.content.visualization
        print(f"\n{_rule(f' {vis.type} ')}")
        print(format_table(vis.columns, vis.data))
        if msg.content.query:
            print(f"\nSQL: {msg.content.query}")
    print(_rule())


# ──────────────────────────────────────────────────────────────────────────────
# Logging
# ──────────────────────────────────────────────────────────────────────────────

def setup_logging(runtime_cfg: Dict[str, Any], *, verbose: bool = False, debug: bool = False) -> None:
    """
    Initialize application logging using config values and verbosity flags.

    Args:
        runtime_cfg: Merged configuration dictionary.
        verbose: If True, log INFO and above to console.
        debug: If True, log DEBUG and above to console (overrides verbose).
    """
    log_cfg = runtime_cfg.get("logging", {})
    fmt = log_cfg.get("format", "%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    logfile = log_cfg.get("file", "logs/app.log")
    base_level = log_cfg.get("level", "WARNING").upper()

    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = getattr(logging, base_level, logging.WARNING)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    formatter = logging.Formatter(fmt)

    if verbose or debug:
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        root.addHandler(ch)

    log_dir = os.path.dirname(logfile)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    fh = logging.FileHandler(logfile)
    fh.setFormatter(formatter)
    root.addHandler(fh)


# ──────────────────────────────────────────────────────────────────────────────
# Schema inspection
# ──────────────────────────────────────────────────────────────────────────────

def _print_schema(dataset: Dataset, schema: SchemaDescriptor) -> None:
    """
    Pretty-print the inferred schema for an ingested file.
    """
    logging.info("Rendering schema for %s", dataset.source_name)
    print(f"\n{_box(f' Schema • {schema.table_name} • {len(dataset)} rows ')}")
    for col in schema.columns:
        kind = dataset.kinds.get(col.name, "")
        print(f"• {col.name:<28} | {col.type:<8} | {kind}")


def cmd_inspect(path: str) -> int:
    """
    Ingest a file and show the schema it would be queried with.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        dataset = ingest_file(path)
    except IngestError as exc:
        logging.error("Failed to ingest %s: %s", path, exc)
        print(_box("Could not read file"))
        print(f"Reason: {exc}")
        return 1

    schema = derive_schema(dataset)
    _print_schema(dataset, schema)
    print(f"\n{schema.to_ddl()}")
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# Chat
# ──────────────────────────────────────────────────────────────────────────────

async def _load_into(session: AnalystSession, path: str) -> None:
    p = Path(path).expanduser()
    try:
        data = p.read_bytes()
    except OSError as exc:
        logging.error("Could not read %s: %s", p, exc)
        print(_box("File Read Error"))
        print("Could not read the selected file.")
        return
    _print_notice(await session.upload(data, p.name))


async def run_chat(cfg: Dict[str, Any], path: Optional[str]) -> None:
    session = AnalystSession(cfg)
    _print_welcome()
    try:
        if path:
            await _load_into(session, path)
        while True:
            try:
                print(_rule(" ask "))
                user_text = (await asyncio.to_thread(input, " - ")).strip()
                print(_rule())
            except (EOFError, KeyboardInterrupt):
                print()
                break

            if user_text.lower() in {":quit", "exit", "quit"}:
                break
            if user_text.startswith(":load"):
                await _load_into(session, user_text[len(":load"):].strip())
                continue
            if user_text == ":reset":
                await session.reset()
                print(_box("Session reset - load a file to continue"))
                continue
            if session.dataset is None:
                print("Load a .csv, .xls or .xlsx file first with ':load PATH'.")
                continue

            reply = await session.ask(user_text)
            if reply is not None:
                _print_message(reply)
    finally:
        await session.close()


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the CLI argument parser.
    """
    parser = argparse.ArgumentParser(description="Sheet Analyst (CLI)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # inspect
    p_inspect = subparsers.add_parser(
        "inspect", help="Ingest a spreadsheet and print the inferred schema"
    )
    p_inspect.add_argument("file", help="Path to a .csv, .xls or .xlsx file")
    p_inspect.add_argument("-v", "--verbose", action="store_true", help="Verbose logs to console")
    p_inspect.add_argument("--debug", action="store_true", help="Debug logs (most detailed)")

    # chat
    p_chat = subparsers.add_parser(
        "chat", help="Interactive question-and-answer session over a spreadsheet"
    )
    p_chat.add_argument("file", nargs="?", default=None, help="Spreadsheet to load on start")
    p_chat.add_argument("--model", default=None, help="Gemini model name (overrides settings file)")
    p_chat.add_argument(
        "--strategy",
        choices=["sql", "aggregate"],
        default=None,
        help="Compile questions to SQL or to client-side aggregation (overrides settings file)",
    )
    p_chat.add_argument("-v", "--verbose", action="store_true", help="Verbose logs to console")
    p_chat.add_argument("--debug", action="store_true", help="Debug logs (most detailed)")

    return parser


def main() -> None:
    """
    Main entry point for the Sheet Analyst CLI.
    """
    parser = build_parser()
    args = parser.parse_args()

    # Load .env before settings so overrides like SHEET_ANALYST_SETTINGS apply
    load_dotenv()

    # Merge config
    settings_loader = AppConfigLoader()
    cfg = settings_loader.merge_with_args(args)

    # Logging
    setup_logging(cfg, verbose=args.verbose, debug=args.debug)

    if args.command == "inspect":
        sys.exit(cmd_inspect(args.file))

    if args.command == "chat":
        asyncio.run(run_chat(cfg, args.file))
        return

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
