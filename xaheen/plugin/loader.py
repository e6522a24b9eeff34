"""
Plugin Handler Loader.

This module imports plugin entry modules and resolves command handlers.

Key features:
- importlib integration for dynamic loading
- Module caching, one module per plugin
- The plugin's deps/ directory is put on sys.path before import
- Handlers are resolved lazily, on first invocation
"""

import importlib.util
import inspect
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any, Protocol, runtime_checkable

from xaheen.errors import XaheenError
from xaheen.plugin.deps import DEPS_DIR

logger = logging.getLogger(__name__)


class LoaderError(XaheenError):
    """Raised when a plugin module or handler cannot be loaded."""

    pass


@dataclass
class CommandResult:
    """
    Result of a plugin command.

    Attributes:
        success: Whether the command succeeded
        message: Text shown to the user
        data: Structured output
    """

    success: bool = True
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PluginHandler(Protocol):
    """Fixed entry point every plugin command is called through."""

    def execute(self, options: dict[str, Any]) -> CommandResult: ...


# Module cache: plugin_name -> module
_module_cache: dict[str, ModuleType] = {}


def _module_name(plugin_name: str) -> str:
    return f"xaheen_plugin_{plugin_name.replace('-', '_')}"


def load_plugin_module(plugin_dir: Path, main: str, plugin_name: str) -> ModuleType:
    """
    Load a plugin's entry module.

    Args:
        plugin_dir: Installed plugin directory
        main: Entry file relative to plugin_dir
        plugin_name: Plugin name

    Returns:
        Loaded module

    Raises:
        LoaderError: If loading fails
    """
    if plugin_name in _module_cache:
        return _module_cache[plugin_name]

    entry_point = plugin_dir / main
    if not entry_point.exists():
        raise LoaderError(f"Entry point not found: {entry_point}")

    deps_dir = plugin_dir / DEPS_DIR
    if deps_dir.is_dir() and str(deps_dir) not in sys.path:
        sys.path.insert(0, str(deps_dir))

    module_name = _module_name(plugin_name)
    try:
        spec = importlib.util.spec_from_file_location(module_name, entry_point)
        if spec is None or spec.loader is None:
            raise LoaderError(f"Failed to create module spec for {entry_point}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        spec.loader.exec_module(module)

    except Exception as e:
        sys.modules.pop(module_name, None)
        if isinstance(e, LoaderError):
            raise
        raise LoaderError(f"Failed to load plugin {plugin_name}: {e}") from e

    _module_cache[plugin_name] = module
    logger.debug("loaded plugin module %s from %s", module_name, entry_point)
    return module


def unload_plugin_module(plugin_name: str, plugin_dir: Path | None = None) -> None:
    """
    Unload a plugin module and clear it from the cache.

    Args:
        plugin_name: Name of plugin to unload
        plugin_dir: Installed plugin directory, to drop its deps/ from sys.path
    """
    _module_cache.pop(plugin_name, None)
    sys.modules.pop(_module_name(plugin_name), None)

    if plugin_dir is not None:
        deps_dir = str(plugin_dir / DEPS_DIR)
        if deps_dir in sys.path:
            sys.path.remove(deps_dir)


def is_module_cached(plugin_name: str) -> bool:
    return plugin_name in _module_cache


def clear_cache() -> None:
    """Clear all cached plugin modules."""
    for plugin_name in list(_module_cache):
        unload_plugin_module(plugin_name)


class _CallableHandler:
    """Adapts a plain function to PluginHandler."""

    def __init__(self, func: Any):
        self.func = func

    def execute(self, options: dict[str, Any]) -> CommandResult:
        result = self.func(options)
        if isinstance(result, CommandResult):
            return result
        if result is None:
            return CommandResult()
        if isinstance(result, str):
            return CommandResult(message=result)
        if isinstance(result, dict):
            return CommandResult(
                success=bool(result.get("success", True)),
                message=str(result.get("message", "")),
                data=dict(result.get("data", {})),
            )
        return CommandResult(data={"result": result})


def resolve_handler(module: ModuleType, attr: str) -> PluginHandler:
    """
    Resolve a command handler from a plugin module.

    The attribute may be an object with an ``execute`` method, a class whose
    instances have one, or a plain callable taking the options dict.

    Raises:
        LoaderError: If the attribute is missing or unusable
    """
    target = getattr(module, attr, None)
    if target is None:
        raise LoaderError(f"Handler '{attr}' not found in {module.__name__}")

    if inspect.isclass(target):
        try:
            target = target()
        except Exception as e:
            raise LoaderError(f"Failed to instantiate handler '{attr}': {e}") from e

    if isinstance(target, PluginHandler):
        return target
    if callable(target):
        return _CallableHandler(target)
    raise LoaderError(f"Handler '{attr}' in {module.__name__} is not callable")


class LazyHandler:
    """
    PluginHandler that imports the plugin module on first execute().

    Registering commands therefore never runs plugin code.
    """

    def __init__(self, plugin_name: str, plugin_dir: Path, main: str, attr: str):
        self.plugin_name = plugin_name
        self.plugin_dir = plugin_dir
        self.main = main
        self.attr = attr
        self._handler: PluginHandler | None = None

    def load(self) -> PluginHandler:
        if self._handler is None:
            module = load_plugin_module(self.plugin_dir, self.main, self.plugin_name)
            self._handler = resolve_handler(module, self.attr)
        return self._handler

    def execute(self, options: dict[str, Any]) -> CommandResult:
        return self.load().execute(options)
