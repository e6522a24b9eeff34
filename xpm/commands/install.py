"""
xaheen plugin install.

Install plugins from the registry or a local archive.
"""

from typing import Any

from xaheen.plugin.manager import BatchResult, InstallResult, PluginManager, parse_target
from xpm.commands import confirm, error, is_interactive, run_async, warn


def install_command(args: Any, manager: PluginManager) -> int:
    """
    Execute install command.

    Args:
        args: Parsed command-line arguments
        manager: Plugin manager

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    return run_async(manager, install_async(args, manager))


async def confirm_uncertified(args: Any, manager: PluginManager) -> bool:
    """Ask before installing registry plugins that are not certified."""
    for target in args.targets:
        parsed = parse_target(target)
        if parsed.name is None:
            continue
        metadata = await manager.registry.get_metadata(parsed.name, parsed.version)
        if not metadata.certified and not confirm(
            f"{metadata.key} is not certified by the Xaheen registry. Install anyway?"
        ):
            return False
    return True


async def install_async(args: Any, manager: PluginManager) -> int:
    """Async install implementation."""
    if not args.yes and is_interactive():
        if not await confirm_uncertified(args, manager):
            print("Installation cancelled")
            return 1

    batch: BatchResult = await manager.install_many(
        args.targets,
        force=args.force,
        global_=args.global_,
        refresh=args.refresh,
    )

    for result in batch.results:
        report(result, args.verbose)
    for target, e in batch.errors.items():
        error(f"failed to install {target}: {e}")

    if args.verbose and len(args.targets) > 1:
        print(f"\nInstalled: {len(batch.results)}, Failed: {len(batch.errors)}")

    return 0 if batch.ok else 1


def report(result: InstallResult, verbose: bool = False) -> None:
    record = result.record
    for message in result.warnings:
        warn(message)
    if result.already_installed:
        return

    suffix = " (from cache)" if result.cache_hit else ""
    if result.previous_version and result.previous_version != record.version:
        print(f"Updated {record.name} {result.previous_version} -> {record.version}{suffix}")
    else:
        print(f"Installed {record.name}@{record.version}{suffix}")

    if record.commands:
        print(f"  commands: {', '.join(record.commands)}")
    if verbose:
        print(f"  path: {record.install_path}")
