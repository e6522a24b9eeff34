"""
xaheen plugin search.
"""

from typing import Any

from xaheen.plugin.manager import PluginManager
from xaheen.plugin.registry import SearchFilters
from xpm.commands import run_async


def search_command(args: Any, manager: PluginManager) -> int:
    filters = SearchFilters(
        category=args.category,
        author=args.author,
        certified=True if args.certified else None,
        min_rating=args.min_rating,
        sort=args.sort,
        order=args.order,
        limit=args.limit,
    )
    results = run_async(manager, manager.search(args.query, filters, refresh=args.refresh))

    if not results:
        print("No plugins found")
        return 0

    for plugin in results:
        badge = " [certified]" if plugin.certified else ""
        print(
            f"{plugin.name}@{plugin.version}{badge}  "
            f"rating {plugin.rating:.1f}  downloads {plugin.downloads}  ({plugin.category})"
        )
        if plugin.description:
            print(f"  {plugin.description}")

    print(f"\n{len(results)} plugin(s) found")
    return 0
