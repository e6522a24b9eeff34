"""
xaheen plugin list.
"""

from typing import Any

from xaheen.plugin.manager import PluginManager


def list_command(args: Any, manager: PluginManager) -> int:
    records = manager.list_installed(global_=args.global_)
    scope = "global" if args.global_ else "project"

    if not records:
        print(f"No {scope} plugins installed")
        return 0

    for record in records:
        flags = " [forced]" if record.forced else ""
        print(f"{record.name}@{record.version}{flags}")
        if args.detailed:
            if record.description:
                print(f"  description: {record.description}")
            print(f"  source: {record.source}")
            print(f"  installed: {record.installed_at}")
            print(f"  requires xaheen: {record.host_range}")
            print(f"  commands: {', '.join(record.commands) or '-'}")
            print(f"  path: {record.install_path}")

    print(f"\n{len(records)} {scope} plugin(s) installed")
    return 0
