"""Command line entry point: run agents, inspect traces, preview context."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from .agents.bootstrap import ensure_core_agents_registered
from .agents.runner import invoke_agent
from .blocks.context import compile_agent_context
from .blocks.registry import BLOCK_REGISTRY
from .errors import AgentError, BlockDefinitionNotFoundError
from .pipeline.events import EventStreamResult
from .services.container import Services, create_services
from .utils.logging import setup_logging

__all__ = ["main"]

LOGGER = logging.getLogger(__name__)

_DEFAULT_DATA_DIR = Path("data")


def _print_json(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, ensure_ascii=False, default=str)
    sys.stdout.write("\n")


async def _run_agent(services: Services, args: argparse.Namespace) -> int:
    payload = json.loads(args.input) if args.input else {}
    result = await invoke_agent(services, args.story, args.agent, payload)
    output = result.output
    if isinstance(output, EventStreamResult):
        async for line in output.ndjson():
            sys.stdout.write(line)
            sys.stdout.flush()
        await output.completion
        return 0
    _print_json({"run_id": result.run_id, "output": output})
    return 0


def _list_runs(services: Services, args: argparse.Namespace) -> int:
    records = services.traces.list_runs(args.story, limit=args.limit)
    _print_json([record.to_dict() for record in records])
    return 0


def _preview_blocks(services: Services, args: argparse.Namespace) -> int:
    definition = BLOCK_REGISTRY.get(args.agent)
    if definition is None:
        raise BlockDefinitionNotFoundError(args.agent)
    context = definition.build_preview_context(services, args.story)
    compiled = compile_agent_context(
        services.store,
        args.story,
        args.agent,
        context,
        {},
        block_store=services.block_store,
    )
    counter = services.tokens.get(context.model_id)
    blocks = [
        {
            "id": block.id,
            "role": block.role,
            "order": block.order,
            "source": block.source,
            "tokens": counter.count(block.content),
        }
        for block in compiled.blocks
    ]
    _print_json(
        {
            "agent": args.agent,
            "blocks": blocks,
            "total_tokens": sum(item["tokens"] for item in blocks),
            "messages": [message.to_dict() for message in compiled.messages],
        }
    )
    return 0


def _show_usage(services: Services, args: argparse.Namespace) -> int:
    _print_json(
        {
            "session": services.usage.session_usage(args.story).to_dict(),
            "project": services.usage.project_usage(args.story).to_dict(),
        }
    )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="errata", description="Errata agent engine")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=_DEFAULT_DATA_DIR,
        help="Directory holding stories and settings.json (default: ./data)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Invoke an agent through the runner")
    run.add_argument("agent", help="Agent name, e.g. generation.write")
    run.add_argument("--story", required=True, help="Story id")
    run.add_argument("--input", default=None, help="Agent input as a JSON object")

    runs = subparsers.add_parser("runs", help="List recorded agent runs")
    runs.add_argument("--story", required=True, help="Story id")
    runs.add_argument("--limit", type=int, default=30, help="Maximum number of records")

    blocks = subparsers.add_parser("blocks", help="Preview an agent's compiled context")
    blocks.add_argument("agent", help="Agent name")
    blocks.add_argument("--story", required=True, help="Story id")

    usage = subparsers.add_parser("usage", help="Show token usage for a story")
    usage.add_argument("--story", required=True, help="Story id")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    log_path = setup_logging(logging.DEBUG if args.debug else logging.WARNING, data_dir=args.data_dir)
    ensure_core_agents_registered()
    services = create_services(args.data_dir)
    LOGGER.debug("Logging to %s", log_path)
    LOGGER.debug("Services: %s", services.summary())

    try:
        if args.command == "run":
            return asyncio.run(_run_agent(services, args))
        if args.command == "runs":
            return _list_runs(services, args)
        if args.command == "blocks":
            return _preview_blocks(services, args)
        return _show_usage(services, args)
    except json.JSONDecodeError as exc:
        print(f"Invalid --input JSON: {exc}", file=sys.stderr)
        return 2
    except (AgentError, LookupError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
