"""Command line entry point.

``python -m toolrelay replay TRANSCRIPT --root DIR`` streams a saved model
transcript through the engine with the built-in tools and prints every
call event as one JSON line. ``python -m toolrelay schemas`` prints the
built-in tool schemas.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from .engine import ToolCallEngine
from .events import CallEvent, JsonlEventSink
from .lifecycle import ApprovalPolicy, AutoApprove, CallbackApproval
from .registry import ToolRegistry
from .settings import SettingsError, load_settings
from .tools import BUILTIN_SCHEMAS, register_builtin_tools
from .types import ValidatedCall
from .utils.logging import setup_logging

LOGGER = logging.getLogger(__name__)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1
    setup_logging(args.log_level, console=True, to_file=args.log_file)
    if args.command == "schemas":
        json.dump([schema.to_dict() for schema in BUILTIN_SCHEMAS], sys.stdout, indent=2)
        sys.stdout.write("\n")
        return 0
    return asyncio.run(_replay(args))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toolrelay", description="Tool-call protocol engine utilities.")
    parser.add_argument("--log-level", default=None, help="Logging level (defaults to $TOOLRELAY_LOG_LEVEL or INFO).")
    parser.add_argument("--log-file", action="store_true", help="Also write logs to ~/.toolrelay/logs.")
    commands = parser.add_subparsers(dest="command")

    replay = commands.add_parser("replay", help="Stream a transcript through the engine.")
    replay.add_argument("transcript", type=Path, help="Text file containing model output with <tool> blocks.")
    replay.add_argument("--root", type=Path, default=Path.cwd(), help="Workspace root for file tools.")
    replay.add_argument("--chunk-size", type=int, default=64, help="Characters per simulated stream chunk.")
    replay.add_argument("--settings", type=Path, default=None, help="Optional YAML settings file.")
    replay.add_argument("--auto-approve", action="store_true", help="Approve every call without prompting.")
    replay.add_argument(
        "--parallel",
        type=int,
        default=1,
        help="Maximum calls executed concurrently (bounded by max_parallelism).",
    )
    replay.add_argument("--events-file", type=Path, default=None, help="Also append events to this JSONL file.")

    commands.add_parser("schemas", help="Print the built-in tool schemas as JSON.")
    return parser


def _print_event(event: CallEvent) -> None:
    print(json.dumps(event.to_dict(), ensure_ascii=False, default=str), flush=True)


async def _prompt(call: ValidatedCall) -> bool:
    question = f"Run {call.tool_name} ({call.id}) with {dict(call.params)}? [y/N] "
    answer = await asyncio.to_thread(input, question)
    return answer.strip().lower() in {"y", "yes"}


def _chunks(text: str, size: int) -> list[str]:
    size = max(1, size)
    return [text[index : index + size] for index in range(0, len(text), size)]


async def _replay(args: argparse.Namespace) -> int:
    try:
        settings = load_settings(args.settings)
    except SettingsError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    try:
        transcript = args.transcript.read_text(encoding="utf-8")
    except OSError as exc:
        print(f"error: cannot read {args.transcript}: {exc}", file=sys.stderr)
        return 2

    registry = ToolRegistry()
    fetcher = register_builtin_tools(registry, args.root, settings=settings)
    policy: ApprovalPolicy = AutoApprove() if args.auto_approve or settings.auto_approve else CallbackApproval(_prompt)
    engine = ToolCallEngine(registry, settings=settings, policy=policy)
    engine.subscribe(_print_event)
    sink = JsonlEventSink(args.events_file) if args.events_file else None
    if sink is not None:
        engine.subscribe(sink)

    try:
        for chunk in _chunks(transcript, args.chunk_size):
            engine.feed(chunk)
        engine.finalize()
        results = await engine.drain(max_parallelism=args.parallel)
    finally:
        await fetcher.aclose()
        if sink is not None:
            sink.close()

    lifecycle = engine.lifecycle
    outcomes = [lifecycle.result(call_id) for call_id in lifecycle.call_ids()]
    failed = sum(1 for result in outcomes if result is None or not result.ok)
    LOGGER.info("Replayed %d call(s), %d executed; %d did not succeed", len(outcomes), len(results), failed)
    return 0 if failed == 0 else 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
