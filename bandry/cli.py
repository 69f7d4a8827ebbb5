"""CLI entry point: run one chat turn through the tool-planning agent.

Usage:
    bandry --config bandry.yaml --factory mypkg.models:OpenAIFactory "列出工作区文件"
    bandry --mode subagents --conversation-id c1 -v "Refactor the parser"

Progress goes to stderr, the streamed answer to stdout. Ctrl-C sets the
request's abort signal.
"""
from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import signal
import sys
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm

from .engine.config import UpdateCallback
from .engine.conversation_store import ConversationStore
from .engine.errors import CancellationError, OrchestrationError
from .engine.models import ChatMode, ChatSendInput, HITLApprovalRequest, HITLApprovalResponse
from .engine.planner_agent import ToolPlanningChatAgent
from .engine.providers.base import ModelsFactory
from .engine.providers.rate_limiter import RateLimitedModelsFactory
from .engine.sandbox import SandboxService
from .engine.yaml_config import AppConfig, load_app_config

console = Console(stderr=True)

_STAGE_STYLES = {
    "planning": "cyan",
    "model": "blue",
    "tool": "yellow",
    "clarification": "magenta",
    "final": "green",
    "error": "bold red",
}


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="bandry",
        description="Tool-planning coding assistant (one chat turn)",
    )
    parser.add_argument("message", help="The user message")
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (default: env-derived defaults)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ChatMode],
        default=ChatMode.DEFAULT.value,
        help="Planner mode (default: default)",
    )
    parser.add_argument(
        "--conversation-id",
        default=None,
        help="Conversation to attach the turn to",
    )
    parser.add_argument(
        "--factory",
        required=True,
        help="ModelsFactory to use, as module:attr",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    config = load_app_config(args.config)
    level = logging.DEBUG if args.verbose else getattr(
        logging, config.engine.log_level.upper(), logging.INFO,
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        factory = _load_factory(args.factory, config)
    except (ImportError, AttributeError, TypeError) as exc:
        console.print(f"[bold red]Error:[/] cannot load factory {escape(args.factory)}: {escape(str(exc))}")
        sys.exit(2)

    try:
        reply = asyncio.run(_run(config, factory, args))
    except CancellationError:
        console.print("\n[yellow]Interrupted.[/]")
        sys.exit(130)
    except OrchestrationError as exc:
        console.print(f"\n[bold red]Error:[/] {escape(str(exc))}")
        sys.exit(1)

    if reply is not None:
        print(reply)


async def _run(config: AppConfig, factory: ModelsFactory, args: argparse.Namespace) -> str | None:
    abort_signal = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort_signal.set)
    except NotImplementedError:
        pass  # Windows: Ctrl-C raises KeyboardInterrupt instead

    store = ConversationStore()
    if args.conversation_id:
        store.create_conversation(conversation_id=args.conversation_id)

    agent: ToolPlanningChatAgent | None = None

    async def ask_approval(request: HITLApprovalRequest) -> None:
        console.print(
            f"[bold magenta]Approval required[/] ({request.risk.value}): "
            f"{escape(request.operation)}\n  {escape(request.details)}"
        )
        approved = await asyncio.to_thread(Confirm.ask, "Allow?", console=console)
        if agent is not None:
            agent.submit_approval(HITLApprovalResponse(
                request.task_id, approved, None if approved else "Rejected by user",
            ))

    agent = ToolPlanningChatAgent(
        config,
        RateLimitedModelsFactory.from_config(factory, config),
        SandboxService(config),
        conversation_store=store,
        approval_emitter=ask_approval if config.engine.hitl_enabled else None,
    )

    streamed = False

    def on_delta(delta: str) -> None:
        nonlocal streamed
        streamed = True
        sys.stdout.write(delta)
        sys.stdout.flush()

    try:
        result = await agent.send(
            ChatSendInput(
                message=args.message,
                mode=ChatMode(args.mode),
                conversation_id=args.conversation_id,
            ),
            on_update=_progress_printer(),
            on_delta=on_delta,
            abort_signal=abort_signal,
        )
    finally:
        await factory.shutdown()

    console.print(
        f"[dim]{result.provider}/{result.model} · {result.latency_ms}ms"
        + (f" · {result.workspace_path}" if result.workspace_path else "")
        + "[/]"
    )
    if streamed:
        sys.stdout.write("\n")
        return None
    return result.reply


def _progress_printer() -> UpdateCallback:
    def on_update(stage: str, message: str, payload: Any = None) -> None:
        style = _STAGE_STYLES.get(stage, "white")
        console.print(f"[{style}]{stage:>13}[/] {escape(message)}", highlight=False)
        if payload and "clarification" in payload:
            for index, option in enumerate(payload["clarification"]["options"], 1):
                marker = " (recommended)" if option.get("recommended") else ""
                console.print(f"  {index}. {escape(option['label'])}{marker}")
    return on_update


def _load_factory(ref: str, config: AppConfig) -> ModelsFactory:
    """Resolve ``module:attr`` to a ModelsFactory instance.

    *attr* may be an instance, or a callable taking the AppConfig.
    """
    module_name, _, attr = ref.partition(":")
    if not module_name or not attr:
        raise ImportError("expected module:attr")
    target = getattr(importlib.import_module(module_name), attr)
    factory = target if isinstance(target, ModelsFactory) else target(config)
    if not isinstance(factory, ModelsFactory):
        raise TypeError(f"{ref} did not produce a ModelsFactory")
    return factory


if __name__ == "__main__":
    main()
