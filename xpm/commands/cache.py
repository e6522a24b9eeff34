"""
xaheen plugin cache.
"""

from typing import Any

from xaheen.plugin.manager import PluginManager


def cache_command(args: Any, manager: PluginManager) -> int:
    if args.cache_action == "list":
        entries = manager.cache_entries()
        if not entries:
            print("Plugin cache is empty")
            return 0
        for entry in entries:
            print(f"{entry.key}  {entry.size} bytes  {entry.fetched_at}")
        return 0

    if args.search:
        removed = manager.clear_cache(search=True)
        print(f"Cleared {removed} cached search response(s)")
        return 0

    removed = manager.clear_cache(args.name)
    target = f" for {args.name}" if args.name else ""
    print(f"Cleared {removed} cached archive(s){target}")
    return 0
