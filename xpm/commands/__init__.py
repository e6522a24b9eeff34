"""
xaheen plugin subcommands.

Each module exposes ``<name>_command(args, manager) -> int``.
"""

import asyncio
import sys
from collections.abc import Coroutine
from typing import Any

from xaheen.plugin.manager import PluginManager


def run_async(manager: PluginManager, coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a coroutine on a fresh event loop, closing the registry client after."""

    async def runner() -> Any:
        try:
            return await coro
        finally:
            await manager.aclose()

    return asyncio.run(runner())


def warn(message: str) -> None:
    print(f"warning: {message}")


def error(message: str) -> None:
    print(f"error: {message}", file=sys.stderr)


def is_interactive() -> bool:
    return sys.stdin.isatty()


def confirm(question: str) -> bool:
    """Ask a yes/no question on the terminal (default no)."""
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")
