"""
xaheen CLI - plugin-extensible code generation front end.

Usage:
    xaheen plugin install <name>[@version]...   Install plugin(s)
    xaheen plugin remove <name>                 Remove plugin
    xaheen plugin update [name]                 Update plugin(s)
    xaheen plugin list                          List installed plugins
    xaheen plugin info <name>                   Show plugin info
    xaheen plugin search [query]                Search registry
    xaheen plugin cache clear|list              Manage the archive cache
    xaheen plugin registry stats|health|config|set-url
    xaheen <plugin-command> [options]           Run a plugin command
"""

import argparse
import json
import logging
import sys
from typing import Any

from xaheen import __version__
from xaheen.config import load_settings
from xaheen.errors import XaheenError
from xaheen.plugin.commands import CommandDescriptor
from xaheen.plugin.manager import PluginManager
from xaheen.plugin.models import CATEGORIES
from xaheen.plugin.registry import SORT_KEYS, SORT_ORDERS
from xpm.commands import error, warn

OPTION_TYPES = {"str": str, "int": int, "float": float}


def _add_scope(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--global", dest="global_", action="store_true", help="Use the global plugins directory"
    )


def _add_plugin_group(subparsers: Any) -> None:
    plugin = subparsers.add_parser("plugin", help="Manage xaheen plugins")
    actions = plugin.add_subparsers(dest="plugin_action", metavar="<action>", required=True)

    install = actions.add_parser("install", help="Install plugin(s)")
    install.add_argument("targets", nargs="+", help="name, name@version or path to a .tgz")
    _add_scope(install)
    install.add_argument(
        "--force", action="store_true", help="Ignore compatibility and command conflicts"
    )
    install.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompts")
    install.add_argument("--refresh", action="store_true", help="Re-download cached archives")

    remove = actions.add_parser("remove", help="Remove a plugin")
    remove.add_argument("name")
    _add_scope(remove)
    remove.add_argument("--force", action="store_true", help="Remove without confirmation")
    remove.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompt")

    list_ = actions.add_parser("list", help="List installed plugins")
    list_.add_argument("--detailed", action="store_true", help="Show full records")
    _add_scope(list_)

    info = actions.add_parser("info", help="Show plugin details")
    info.add_argument("name")

    search = actions.add_parser("search", help="Search the plugin registry")
    search.add_argument("query", nargs="?")
    search.add_argument("--category", choices=CATEGORIES)
    search.add_argument("--author")
    search.add_argument("--certified", action="store_true", help="Only certified plugins")
    search.add_argument("--min-rating", type=float, dest="min_rating")
    search.add_argument("--sort", choices=SORT_KEYS, default="downloads")
    search.add_argument("--order", choices=SORT_ORDERS)
    search.add_argument("--limit", type=int)
    search.add_argument("--refresh", action="store_true", help="Bypass cached results")

    update = actions.add_parser("update", help="Update plugin(s) to the latest version")
    update.add_argument("name", nargs="?")
    _add_scope(update)

    cache = actions.add_parser("cache", help="Manage the plugin archive cache")
    cache_actions = cache.add_subparsers(dest="cache_action", metavar="<action>", required=True)
    clear = cache_actions.add_parser("clear", help="Remove cached archives")
    clear.add_argument("name", nargs="?")
    clear.add_argument("--search", action="store_true", help="Only clear cached search results")
    cache_actions.add_parser("list", help="List cached archives")

    registry = actions.add_parser("registry", help="Plugin registry")
    registry_actions = registry.add_subparsers(
        dest="registry_action", metavar="<action>", required=True
    )
    registry_actions.add_parser("stats", help="Marketplace statistics")
    registry_actions.add_parser("health", help="Check registry availability")
    registry_actions.add_parser("config", help="Show effective configuration")
    set_url = registry_actions.add_parser("set-url", help="Set the registry URL")
    set_url.add_argument("url")


def _add_plugin_command(subparsers: Any, descriptor: CommandDescriptor) -> None:
    help_text = descriptor.help or f"Provided by plugin {descriptor.plugin}"
    command = subparsers.add_parser(
        descriptor.name,
        help=f"{help_text} [{descriptor.plugin}]",
        description=help_text,
    )

    dests = {}
    for name, spec in descriptor.options.items():
        dest = "opt_" + name.replace("-", "_")
        dests[dest] = name
        kind = spec.get("type", "str")
        kwargs: dict[str, Any] = {"dest": dest, "help": spec.get("help")}
        if kind == "bool":
            kwargs["action"] = "store_true"
        else:
            kwargs["type"] = OPTION_TYPES[kind]
            kwargs["default"] = spec.get("default")
            kwargs["required"] = bool(spec.get("required", False))
        command.add_argument(f"--{name}", **kwargs)

    command.set_defaults(plugin_options=dests)


def create_parser(commands: list[CommandDescriptor] | None = None) -> argparse.ArgumentParser:
    """Create the argument parser, including registered plugin commands."""
    parser = argparse.ArgumentParser(
        prog="xaheen",
        description="Xaheen CLI - plugin-extensible code generation",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--version", action="version", version=f"xaheen {__version__}")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")
    _add_plugin_group(subparsers)
    for descriptor in commands or []:
        _add_plugin_command(subparsers, descriptor)

    return parser


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("xaheen").setLevel(level)


def dispatch(args: argparse.Namespace, manager: PluginManager) -> int:
    """Route a ``plugin <action>`` invocation."""
    action = args.plugin_action

    if action == "install":
        from xpm.commands.install import install_command

        return install_command(args, manager)

    elif action == "remove":
        from xpm.commands.remove import remove_command

        return remove_command(args, manager)

    elif action == "list":
        from xpm.commands.list import list_command

        return list_command(args, manager)

    elif action == "info":
        from xpm.commands.info import info_command

        return info_command(args, manager)

    elif action == "search":
        from xpm.commands.search import search_command

        return search_command(args, manager)

    elif action == "update":
        from xpm.commands.update import update_command

        return update_command(args, manager)

    elif action == "cache":
        from xpm.commands.cache import cache_command

        return cache_command(args, manager)

    from xpm.commands.registry import registry_command

    return registry_command(args, manager)


def run_plugin_command(args: argparse.Namespace, manager: PluginManager) -> int:
    """Run a plugin-contributed command through the command registry."""
    options = {name: getattr(args, dest) for dest, name in args.plugin_options.items()}
    result = manager.commands.invoke(args.command, options)

    if result.message:
        print(result.message)
    if result.data and args.verbose:
        print(json.dumps(result.data, indent=2, default=str))
    return 0 if result.success else 1


def main(argv: list[str] | None = None, manager: PluginManager | None = None) -> int:
    """Main entry point for the xaheen CLI."""
    argv = sys.argv[1:] if argv is None else argv
    verbose = "-v" in argv or "--verbose" in argv
    configure_logging(verbose)

    try:
        if manager is None:
            manager = PluginManager(load_settings())

        # Plugin commands must be registered before parsing
        for message in manager.startup():
            warn(message)

        parser = create_parser(manager.commands.list_commands())
        args = parser.parse_args(argv)

        if args.command is None:
            parser.print_help()
            return 0

        if args.command == "plugin":
            return dispatch(args, manager)

        return run_plugin_command(args, manager)

    except XaheenError as e:
        error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except Exception as e:
        error(f"unexpected error: {e}")
        if verbose:
            import traceback

            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
