"""
Command Registry.

This module holds the live set of plugin-contributed CLI commands.

Key features:
- Per-plugin registration state
- Command name conflict detection, including reserved host commands
- Forced registration keeps the first registrant's commands
- Dispatch through the PluginHandler contract
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from xaheen.errors import CommandConflictError, NotFoundError
from xaheen.plugin.loader import CommandResult, PluginHandler

logger = logging.getLogger(__name__)

RESERVED_COMMANDS = frozenset({"plugin", "help"})


class RegistrationState(Enum):
    """Plugin registration state."""

    NOT_REGISTERED = "not_registered"
    REGISTERED = "registered"


@dataclass
class CommandDescriptor:
    """
    A command contributed by a plugin.

    Attributes:
        name: Top-level command name
        plugin: Owning plugin name
        handler: Handler invoked through execute(options)
        help: One-line help text
        options: Option name -> {type, help, default, required}
    """

    name: str
    plugin: str
    handler: PluginHandler
    help: str = ""
    options: dict[str, dict[str, Any]] = field(default_factory=dict)


class CommandRegistry:
    """
    Live command surface of one PluginManager.

    A fresh registry is created per manager; there is no module-level state.
    """

    def __init__(self, reserved: frozenset[str] = RESERVED_COMMANDS):
        self.reserved = reserved
        self._commands: dict[str, CommandDescriptor] = {}
        self._owned: dict[str, list[str]] = {}  # plugin -> command names
        self._lock = threading.Lock()

    def _conflicts(self, plugin: str, names: list[str]) -> list[str]:
        messages = []
        for name in names:
            if name in self.reserved:
                messages.append(f"'{name}' is a reserved xaheen command")
                continue
            owner = self._commands.get(name)
            if owner is not None and owner.plugin != plugin:
                messages.append(f"'{name}' is already provided by plugin '{owner.plugin}'")
        return messages

    def check_conflicts(self, plugin: str, names: list[str]) -> list[str]:
        """
        List conflicts the given command names would cause.

        Commands already owned by the same plugin never conflict, so an
        upgrade can re-declare its own commands.

        Returns:
            Conflict messages (empty if none)
        """
        with self._lock:
            return self._conflicts(plugin, names)

    def register(
        self, plugin: str, descriptors: list[CommandDescriptor], force: bool = False
    ) -> list[str]:
        """
        Register a plugin's commands.

        Any commands the plugin already had are replaced.

        Args:
            plugin: Plugin name
            descriptors: Commands to register
            force: Skip conflicting commands instead of failing

        Returns:
            Warnings for skipped commands

        Raises:
            CommandConflictError: On conflicts when not forced
        """
        with self._lock:
            conflicts = self._conflicts(plugin, [d.name for d in descriptors])
            if conflicts and not force:
                raise CommandConflictError(
                    f"Command conflict for plugin '{plugin}': " + "; ".join(conflicts)
                )

            self._remove(plugin)

            warnings = []
            registered = []
            for descriptor in descriptors:
                name = descriptor.name
                owner = self._commands.get(name)
                if name in self.reserved or (owner is not None and owner.plugin != plugin):
                    warnings.append(
                        f"command '{name}' of plugin '{plugin}' skipped: "
                        f"{self._conflicts(plugin, [name])[0]}"
                    )
                    continue
                self._commands[name] = descriptor
                registered.append(name)

            self._owned[plugin] = registered

        for warning in warnings:
            logger.info(warning)
        logger.debug("registered %s: %s", plugin, ", ".join(registered) or "(no commands)")
        return warnings

    def _remove(self, plugin: str) -> list[str]:
        names = self._owned.pop(plugin, [])
        for name in names:
            descriptor = self._commands.get(name)
            if descriptor is not None and descriptor.plugin == plugin:
                del self._commands[name]
        return names

    def deregister(self, plugin: str) -> list[str]:
        """
        Remove all commands of a plugin.

        Returns:
            Removed command names (empty if the plugin was not registered)
        """
        with self._lock:
            names = self._remove(plugin)
        if names:
            logger.debug("deregistered %s: %s", plugin, ", ".join(names))
        return names

    def state(self, plugin: str) -> RegistrationState:
        with self._lock:
            if plugin in self._owned:
                return RegistrationState.REGISTERED
            return RegistrationState.NOT_REGISTERED

    def get(self, name: str) -> CommandDescriptor | None:
        with self._lock:
            return self._commands.get(name)

    def names(self) -> list[str]:
        """Registered command names, sorted."""
        with self._lock:
            return sorted(self._commands)

    def commands_of(self, plugin: str) -> list[str]:
        with self._lock:
            return list(self._owned.get(plugin, []))

    def list_commands(self) -> list[CommandDescriptor]:
        """Registered commands sorted by name."""
        with self._lock:
            return [self._commands[name] for name in sorted(self._commands)]

    def invoke(self, name: str, options: dict[str, Any]) -> CommandResult:
        """
        Run a registered command.

        Args:
            name: Command name
            options: Parsed options

        Returns:
            CommandResult from the handler

        Raises:
            NotFoundError: If no such command is registered
        """
        descriptor = self.get(name)
        if descriptor is None:
            raise NotFoundError(f"Unknown command: {name}")

        logger.debug("invoking %s (plugin %s)", name, descriptor.plugin)
        result = descriptor.handler.execute(options)
        if not isinstance(result, CommandResult):
            result = CommandResult(data={"result": result})
        return result
