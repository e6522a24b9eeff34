"""
Xaheen Plugin System - Plugin lifecycle management and loading.

This module handles:
- Registry search and metadata lookup
- Host version compatibility checks
- Archive fetching and caching
- Isolated dependency installation
- Atomic installation and removal
- Command registration and dispatch
"""

from xaheen.plugin.commands import CommandDescriptor, CommandRegistry
from xaheen.plugin.loader import CommandResult, PluginHandler
from xaheen.plugin.manager import PluginManager
from xaheen.plugin.models import InstalledPluginRecord, PluginMetadata

__all__ = [
    "CommandDescriptor",
    "CommandRegistry",
    "CommandResult",
    "InstalledPluginRecord",
    "PluginHandler",
    "PluginManager",
    "PluginMetadata",
]
