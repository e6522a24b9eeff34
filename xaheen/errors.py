"""
Xaheen error taxonomy.

Every error raised by the plugin subsystem derives from XaheenError so the CLI
boundary can render it and exit non-zero. Lower components raise these
unchanged; nothing here is retried implicitly.
"""


class XaheenError(Exception):
    """Base exception for all Xaheen errors."""

    pass


class ValidationError(XaheenError):
    """Raised when user input, a version string, or a manifest is invalid."""

    pass


class ConfigError(XaheenError):
    """Raised when configuration cannot be loaded or saved."""

    pass


class NotFoundError(XaheenError):
    """Raised when a plugin, version, or cache entry does not exist."""

    pass


class IncompatibleVersionError(XaheenError):
    """Raised when a plugin's host range excludes the running CLI version."""

    pass


class CommandConflictError(XaheenError):
    """Raised when a plugin declares a command name owned by another plugin."""

    pass


class PackageCorruptedError(XaheenError):
    """Raised when a downloaded or cached archive fails verification."""

    pass


class DependencyInstallError(XaheenError):
    """Raised when a plugin's own dependencies cannot be installed."""

    pass


class NetworkError(XaheenError):
    """Raised when the plugin registry cannot be reached or misbehaves."""

    pass


class NetworkTimeoutError(XaheenError):
    """Raised when a registry request exceeds the configured timeout."""

    pass


class PluginPermissionError(XaheenError):
    """Raised when the plugins or cache directory cannot be written."""

    pass


class BusyError(XaheenError):
    """Raised when another process holds the plugins lock for too long."""

    pass
