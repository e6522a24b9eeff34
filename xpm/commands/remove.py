"""
xaheen plugin remove.

Uninstall a plugin. The cached archive is kept so a reinstall needs no download.
"""

from typing import Any

from xaheen.plugin.manager import PluginManager
from xpm.commands import confirm, error, is_interactive, warn


def remove_command(args: Any, manager: PluginManager) -> int:
    """
    Execute remove command.

    Confirmation is required unless --yes or --force is given; a
    non-interactive run without either fails.
    """
    if not (args.yes or args.force):
        if not is_interactive():
            error(f"removing {args.name} requires confirmation; re-run with --yes")
            return 1
        if not confirm(f"Remove plugin {args.name}?"):
            print("Removal cancelled")
            return 1

    result = manager.remove(args.name, global_=args.global_)

    print(f"Removed {result.record.name}@{result.record.version}")
    if result.commands and args.verbose:
        print(f"  commands removed: {', '.join(result.commands)}")
    for message in result.warnings:
        warn(message)
    return 0
