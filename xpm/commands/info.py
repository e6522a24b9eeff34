"""
xaheen plugin info.

Show installed state and registry metadata for one plugin.
"""

from typing import Any

from xaheen.plugin.manager import PluginDetails, PluginManager
from xpm.commands import run_async, warn


def info_command(args: Any, manager: PluginManager) -> int:
    details: PluginDetails = run_async(manager, manager.info(args.name))

    for message in details.warnings:
        warn(message)

    metadata = details.metadata
    if metadata is not None:
        print(f"{metadata.name}@{metadata.version}")
        if metadata.description:
            print(f"  {metadata.description}")
        print(f"  author: {metadata.author or '-'}")
        print(f"  category: {metadata.category}")
        print(f"  certified: {'yes' if metadata.certified else 'no'}")
        print(f"  rating: {metadata.rating:.1f}")
        print(f"  downloads: {metadata.downloads}")
        print(f"  requires xaheen: {metadata.host_range}")
        print(f"  license: {metadata.license}")
        if metadata.keywords:
            print(f"  keywords: {', '.join(metadata.keywords)}")
        if metadata.repository:
            print(f"  repository: {metadata.repository}")
        if details.versions:
            print(f"  versions: {', '.join(details.versions)}")

    record = details.record
    if record is None:
        print("  installed: no")
    else:
        print(f"  installed: {record.version} ({record.source}) at {record.install_path}")
        print(f"  commands: {', '.join(record.commands) or '-'}")
    return 0
