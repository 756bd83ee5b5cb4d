"""
CLI entrypoint for the convogate library.

Examples:
    python -m convogate.cli list-tools
    python -m convogate.cli list-tools --mcp http://localhost:8000/mcp
    python -m convogate.cli run --provider openai --model gpt-4o-mini --prompt "What time is it?"
    python -m convogate.cli run --provider local --prompt "Hello" --max-rounds 2
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import urlparse

from .env import load_default_env
from .exceptions import GatewayError
from .orchestrator import Orchestrator, OrchestratorConfig
from .providers import ProviderCache, ProviderConfig
from .tools import LocalToolRegistry, MCPToolRegistry, ToolBridge, ToolServerConfig, ToolSource
from .types import EventType, Message, Role


def _default_registry() -> LocalToolRegistry:
    registry = LocalToolRegistry("local")

    @registry.tool(description="Echo back the provided text.")
    def echo(text: str) -> str:
        return json.dumps({"echo": text})

    @registry.tool(description="Current UTC time in ISO 8601 format.")
    def utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()

    return registry


def _registries(args: argparse.Namespace) -> List[ToolSource]:
    registries: List[ToolSource] = [_default_registry()]
    for index, url in enumerate(args.mcp or [], start=1):
        name = urlparse(url).hostname or f"mcp{index}"
        registries.append(
            MCPToolRegistry(
                ToolServerConfig(
                    name=name,
                    id=f"{name}_{index}" if len(args.mcp) > 1 else name,
                    url=url,
                    transport=args.mcp_transport,
                )
            )
        )
    return registries


async def list_tools(args: argparse.Namespace) -> None:
    async with ToolBridge(_registries(args)) as bridge:
        for descriptor in await bridge.build_toolset():
            print(f"- {descriptor.name} [{descriptor.source}]: {descriptor.description}")


async def run_turn(args: argparse.Namespace) -> int:
    provider = ProviderCache().get(
        ProviderConfig(
            provider=args.provider,
            model=args.model or "",
            base_url=args.base_url,
            timeout=args.timeout,
        )
    )
    config = OrchestratorConfig(
        model=args.model or "",
        temperature=args.temperature,
        max_tokens=args.max_tokens,
        max_tool_rounds=args.max_rounds,
        stream_timeout=args.timeout,
    )
    messages = [Message(role=Role.USER, content=args.prompt)]
    if args.system:
        messages.insert(0, Message(role=Role.SYSTEM, content=args.system))

    async with ToolBridge(_registries(args)) as bridge:
        turn = Orchestrator(provider, bridge, config).run(messages)
        async for event in turn:
            if event.type is EventType.DELTA:
                print(event.text, end="", flush=True)
            elif event.type is EventType.REASONING and args.show_reasoning:
                print(event.text, end="", flush=True, file=sys.stderr)
            elif event.type is EventType.TOOL_CALL and event.tool_call is not None:
                call = event.tool_call
                print(f"\n[tool] {call.tool_name}({json.dumps(call.arguments)})", file=sys.stderr)
            elif event.type is EventType.TOOL_RESULT and event.tool_result is not None:
                result = event.tool_result
                status = "ok" if result.ok else "error"
                print(f"[tool] {result.tool_name} -> {status}", file=sys.stderr)
            elif event.type is EventType.ERROR:
                print(f"\n{event.error}", file=sys.stderr)
            elif event.type is EventType.CANCELLED:
                print("\n[cancelled]", file=sys.stderr)
        print()
        print(turn.usage, file=sys.stderr)
        outcome = turn.outcome
        return 0 if outcome is not None and outcome.succeeded else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="convogate completion gateway CLI")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_mcp_options(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--mcp", action="append", metavar="URL", help="MCP tool server URL (repeatable)"
        )
        sub.add_argument(
            "--mcp-transport",
            default="streamable-http",
            choices=["streamable-http", "sse"],
            help="Transport used for every --mcp server",
        )

    list_parser = subparsers.add_parser("list-tools", help="List the merged toolset")
    add_mcp_options(list_parser)
    list_parser.set_defaults(func="list")

    run_parser = subparsers.add_parser("run", help="Run one chat turn")
    run_parser.add_argument(
        "--provider",
        default="openai",
        help="Provider name (openai|deepseek|qianfan|ollama|anthropic|local)",
    )
    run_parser.add_argument("--model", help="Model name; defaults to the provider's default")
    run_parser.add_argument("--base-url", help="Endpoint root for OpenAI-compatible vendors")
    run_parser.add_argument("--prompt", required=True, help="User prompt")
    run_parser.add_argument("--system", help="Optional system prompt")
    run_parser.add_argument("--temperature", type=float, help="Sampling temperature")
    run_parser.add_argument("--max-tokens", type=int, help="Max tokens per provider call")
    run_parser.add_argument("--max-rounds", type=int, default=5, help="Max tool rounds per turn")
    run_parser.add_argument(
        "--timeout", type=float, default=60.0, help="Provider stream idle timeout in seconds"
    )
    run_parser.add_argument(
        "--show-reasoning", action="store_true", help="Print reasoning deltas to stderr"
    )
    add_mcp_options(run_parser)
    run_parser.set_defaults(func="run")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    load_default_env()

    try:
        if args.func == "list":
            asyncio.run(list_tools(args))
            return 0
        if args.func == "run":
            return asyncio.run(run_turn(args))
    except GatewayError as exc:
        print(exc, file=sys.stderr)
        return 1
    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
