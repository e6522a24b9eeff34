"""
xaheen plugin update.
"""

from typing import Any

from xaheen.plugin.manager import PluginManager
from xpm.commands import error, run_async, warn


def update_command(args: Any, manager: PluginManager) -> int:
    results = run_async(manager, manager.update(args.name, global_=args.global_))

    if not results:
        print("No plugins installed")
        return 0

    failed = 0
    for result in results:
        for message in result.warnings:
            warn(message)
        if result.error:
            error(f"failed to update {result.name}: {result.error}")
            failed += 1
        elif result.updated:
            print(f"Updated {result.name} {result.current} -> {result.latest}")
        elif result.latest is not None:
            print(f"{result.name}@{result.current} is up to date")

    return 0 if failed == 0 else 1
