"""CLI entrypoint for ollama-gateway."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path

from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn

from .config import Settings, ensure_config_dir, load_settings
from .exceptions import GatewayError
from .gateway import Gateway
from .logging_utils import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollama-gateway",
        description="ollama-gateway - chat and model management for Ollama or "
        "OpenAI-compatible backends",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to an alternative config.toml",
    )
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("models", help="List available models")

    check = commands.add_parser("check", help="Check whether a model is available")
    check.add_argument("model")

    commands.add_parser("ensure", help="Start the local daemon if it is not running")

    chat = commands.add_parser("chat", help="Send one prompt and stream the reply")
    chat.add_argument("prompt")
    chat.add_argument("--model", default=None)
    chat.add_argument("--system", default=None, help="Optional system message")
    chat.add_argument(
        "--think",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Request extended reasoning (defaults to the configured value)",
    )

    pull = commands.add_parser("pull", help="Download a model with progress")
    pull.add_argument("model")
    return parser


def _print_error(console: Console, message: str) -> None:
    console.print(f"error: {message}", style="red", markup=False, highlight=False)


async def _chat(gateway: Gateway, args: argparse.Namespace, console: Console) -> int:
    if not await gateway.ensure_daemon():
        _print_error(console, "the local daemon did not become ready; start it manually")
        return 1

    messages = []
    if args.system:
        messages.append({"role": "system", "content": args.system})
    messages.append({"role": "user", "content": args.prompt})
    handle = gateway.start_chat_stream(
        {"messages": messages, "model": args.model or "", "think": args.think}
    )
    async for event in gateway.listen(handle):
        if event.kind == "chunk":
            console.out(event.text, end="", highlight=False)
        elif event.kind == "error":
            console.out("")
            _print_error(console, event.text)
            return 1
    console.out("")
    return 0


async def _pull(gateway: Gateway, args: argparse.Namespace, console: Console) -> int:
    handle = gateway.start_pull(args.model)
    columns = (
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>5.1f}%"),
        DownloadColumn(),
    )
    with Progress(*columns, console=console) as progress:
        task_id = progress.add_task(args.model, total=None)
        async for event in gateway.listen(handle):
            if event.kind == "error":
                _print_error(progress.console, event.text)
                return 1
            if event.progress is None:
                continue
            update = event.progress
            if update.raw:
                progress.console.print(update.status, markup=False, highlight=False)
            elif update.total > 0:
                progress.update(
                    task_id,
                    description=update.status or args.model,
                    total=update.total,
                    completed=update.completed,
                )
            else:
                progress.update(task_id, description=update.status or args.model)
    return 0


async def _run(args: argparse.Namespace, settings: Settings, console: Console) -> int:
    async with Gateway(settings) as gateway:
        try:
            if args.command == "models":
                for name in await gateway.list_models():
                    console.print(name, markup=False, highlight=False)
                return 0
            if args.command == "check":
                exists = await gateway.check_model_exists(model=args.model)
                console.print("present" if exists else "missing")
                return 0 if exists else 1
            if args.command == "ensure":
                ready = await gateway.ensure_daemon()
                console.print("ready" if ready else "not ready")
                return 0 if ready else 1
            if args.command == "chat":
                return await _chat(gateway, args, console)
            if args.command == "pull":
                return await _pull(gateway, args, console)
        except GatewayError as exc:
            _print_error(console, str(exc))
            return 1
    return 2


def main(argv: Sequence[str] | None = None) -> int:
    """Load settings, configure logging, and run one subcommand."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("ollama-gateway")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"ollama-gateway {version}")
        return 0

    if args.command is None:
        parser.print_help()
        return 2

    if args.config is None:
        ensure_config_dir()
    settings = load_settings(args.config)
    configure_logging(settings.logging.model_dump())
    return asyncio.run(_run(args, settings, Console()))


if __name__ == "__main__":
    raise SystemExit(main())
