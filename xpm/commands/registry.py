"""
xaheen plugin registry.

Marketplace statistics, health check and registry configuration.
"""

from typing import Any

from xaheen.config import open_config, render_settings
from xaheen.errors import ValidationError
from xaheen.plugin.manager import PluginManager
from xpm.commands import run_async


def registry_command(args: Any, manager: PluginManager) -> int:
    action = args.registry_action

    if action == "stats":
        stats = run_async(manager, manager.registry_stats())
        print(f"Plugins: {stats['total_plugins']}")
        print(f"Downloads: {stats['total_downloads']}")
        print(f"Average rating: {stats['avg_rating']:.1f}")
        print(f"Certified: {stats['certified_count']}")
        for category, count in sorted(stats["category_counts"].items()):
            print(f"  {category}: {count}")
        return 0

    if action == "health":
        health = run_async(manager, manager.registry_health())
        print(f"{health['url']}: {health['status']} ({health['latency_ms']} ms)")
        return 0

    if action == "config":
        print(f"# {manager.settings.config_file}")
        print(render_settings(manager.settings))
        return 0

    # set-url
    if not args.url.startswith(("http://", "https://")):
        raise ValidationError(f"Registry URL must start with http:// or https://: {args.url}")
    config = open_config(manager.settings.config_file)
    config.registry_url = args.url.rstrip("/")
    print(f"Registry URL set to {config.registry_url}")
    return 0
