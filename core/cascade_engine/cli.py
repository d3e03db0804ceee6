"""
Command-line interface for the cascade engine.

Usage:
    cascade plan tree.json --root <node id>
    cascade run tree.json --root <node id> [--mock] [--model M] [--skip-previews]

The tree file is a JSON export of prompt rows, either a list or
``{"prompts": [...]}``; see InMemoryTreeProvider.from_json_file.
"""

import argparse
import asyncio
import json
import os
import signal
import sys

from cascade_engine.config import CascadeConfig
from cascade_engine.engine import CascadeExecutor, CascadeResult, InMemoryResultSink
from cascade_engine.errors import RootNotFoundError
from cascade_engine.llm import GenerationClient, LiteLLMGenerationClient, MockGenerationClient
from cascade_engine.observability import configure_logging
from cascade_engine.runtime import EventBus
from cascade_engine.tree import InMemoryTreeProvider, LevelPlanner


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("tree", help="Path to the JSON tree export")
    parser.add_argument("--root", required=True, help="Row id of the cascade root")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "WARNING"),
        help="Log level (default: $LOG_LEVEL or WARNING)",
    )
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )


def cmd_plan(args: argparse.Namespace) -> int:
    tree = InMemoryTreeProvider.from_json_file(args.tree)
    try:
        plan = asyncio.run(LevelPlanner(tree).plan(args.root))
    except RootNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1

    if args.json:
        print(
            json.dumps(
                {
                    "root": plan.root.id,
                    "levels": plan.levels,
                    "total_levels": plan.total_levels,
                    "total_node_count": plan.total_node_count,
                    "skipped": [s.model_dump(mode="json") for s in plan.skipped],
                },
                indent=2,
            )
        )
        return 0

    print(f"Cascade plan for {plan.root.display_name}")
    for level in plan.cascade_levels:
        names = ", ".join(plan.nodes[nid].display_name for nid in level.node_ids)
        print(f"  Level {level.index} (depth {level.depth}): {names}")
    print(f"  {plan.total_node_count} prompts across {plan.total_levels} levels")
    for skipped in plan.skipped:
        print(f"  Skipped: {skipped.node_name} ({skipped.reason.value})")
    return 0


def _make_client(args: argparse.Namespace, config: CascadeConfig) -> GenerationClient:
    if args.mock:
        return MockGenerationClient()
    if args.model:
        config.model = args.model
    return LiteLLMGenerationClient(config)


async def _run_cascade(args: argparse.Namespace) -> tuple[CascadeResult, InMemoryResultSink]:
    config = CascadeConfig()
    tree = InMemoryTreeProvider.from_json_file(args.tree)
    sink = InMemoryResultSink()
    executor = CascadeExecutor(
        tree=tree,
        client=_make_client(args, config),
        sink=sink,
        event_bus=EventBus(max_history=config.event_history_size),
    )

    loop = asyncio.get_running_loop()
    try:
        # Ctrl+C lets the prompt in flight finish, then stops
        loop.add_signal_handler(signal.SIGINT, executor.cancel)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        result = await executor.run(args.root, skip_all_previews=args.skip_previews)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    return result, sink


def cmd_run(args: argparse.Namespace) -> int:
    result, sink = asyncio.run(_run_cascade(args))

    if args.json:
        print(
            json.dumps(
                {
                    "run_id": result.run_id,
                    "status": result.status.value,
                    "completed": result.completed_node_ids,
                    "failed": [f.model_dump(mode="json") for f in result.failed_nodes],
                    "skipped": [s.model_dump(mode="json") for s in result.skipped_nodes],
                    "responses": {nid: out.text for nid, out in sink.results.items()},
                    "error": result.error,
                    "duration_ms": result.duration_ms,
                    "total_tokens": result.total_tokens,
                },
                indent=2,
            )
        )
    else:
        print(f"Cascade {result.status.value}{' (cancelled)' if result.cancelled else ''}")
        print(f"  {result.summary()}")
        for failed in result.failed_nodes:
            print(f"  Failed: {failed.node_name}: {failed.error}")
        if result.error:
            print(f"  Error: {result.error}")

    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="cascade",
        description="Run prompt tree cascades level by level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser("plan", help="Show the levels a cascade would run")
    _add_common(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")
    plan_parser.set_defaults(func=cmd_plan)

    run_parser = subparsers.add_parser("run", help="Run a cascade")
    _add_common(run_parser)
    run_parser.add_argument("--mock", action="store_true", help="Use scripted responses")
    run_parser.add_argument("--model", default=None, help="Model override (LiteLLM model string)")
    run_parser.add_argument(
        "--skip-previews", action="store_true", help="Suppress per-node preview confirmations"
    )
    run_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    run_parser.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
