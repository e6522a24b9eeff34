"""
Xaheen - AI-native developer productivity CLI.

This package holds the plugin lifecycle subsystem used by the ``xaheen`` CLI:
- Configuration (TOML-backed, environment overrides)
- Plugin registry client, archive cache, installers
- Command registry for plugin-contributed subcommands
"""

__version__ = "2.0.0"

# Host version that plugins declare compatibility against
HOST_VERSION = __version__

__all__ = ["__version__", "HOST_VERSION"]
