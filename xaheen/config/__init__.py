"""
Xaheen Configuration System - TOML-based configuration management.

This module provides:
- The settings schema for the plugin subsystem
- Loading with precedence defaults < TOML file < environment
- Runtime typed access with auto-flush (ConfigProxy)

Example usage:
    import xaheen.config

    settings = xaheen.config.load_settings()
    print(settings.registry_url)

    cfg = xaheen.config.open_config()
    cfg.registry_url = "https://registry.example.com/plugins"   # auto-flushes
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from xaheen.config.runtime import ConfigProxy
from xaheen.config.schema import ConfigField
from xaheen.config.toml_handler import generate_toml_from_schema
from xaheen.errors import ConfigError, ValidationError

# TOML table holding plugin settings
SECTION = "plugins"

CONFIG_ENV = "XAHEEN_CONFIG"

DEFAULT_REGISTRY_URL = "https://registry.xaheen.com/plugins"


def field(
    type_: type,
    default: Any,
    description: str = "",
    min: Any = None,
    max: Any = None,
    choices: list[Any] | None = None,
    env: str | None = None,
) -> ConfigField:
    """
    Helper function to create a ConfigField.

    Example:
        field(int, 4, "Concurrent downloads", min=1, max=16)
    """
    return ConfigField(
        type_=type_,
        default=default,
        description=description,
        min=min,
        max=max,
        choices=choices,
        env=env,
    )


SETTINGS_SCHEMA: dict[str, ConfigField] = {
    "registry_url": field(
        str, DEFAULT_REGISTRY_URL, "Plugin registry base URL", min=1,
        env="XAHEEN_REGISTRY_URL",
    ),
    "api_key": field(
        str, "", "Registry API key (sent as a bearer token when set)",
        env="XAHEEN_API_KEY",
    ),
    "plugins_dir": field(
        str, ".xaheen/plugins", "Project plugins directory", min=1,
        env="XAHEEN_PLUGINS_DIR",
    ),
    "global_plugins_dir": field(
        str, "~/.xaheen/plugins", "Global plugins directory", min=1,
        env="XAHEEN_GLOBAL_PLUGINS_DIR",
    ),
    "cache_dir": field(
        str, "~/.xaheen/cache/plugins", "Plugin archive cache directory", min=1,
        env="XAHEEN_CACHE_DIR",
    ),
    "manifest_file": field(
        str, "installed.json", "Manifest file name inside each plugins directory", min=1,
    ),
    "request_timeout": field(
        float, 30.0, "Registry request timeout in seconds", min=0.1, max=600.0,
    ),
    "search_cache_ttl": field(
        int, 300, "Seconds a cached search response stays fresh", min=0, max=86400,
    ),
    "max_workers": field(
        int, 4, "Concurrent downloads during batch installs", min=1, max=16,
    ),
    "lock_timeout": field(
        float, 10.0, "Seconds to wait for the plugins lock before failing", min=0.0,
        max=600.0,
    ),
}


@dataclass(frozen=True)
class Settings:
    """
    Effective settings for one CLI invocation.

    Attributes mirror SETTINGS_SCHEMA; directories are expanded to absolute paths.
    """

    registry_url: str
    api_key: str
    plugins_dir: Path
    global_plugins_dir: Path
    cache_dir: Path
    manifest_file: str
    request_timeout: float
    search_cache_ttl: int
    max_workers: int
    lock_timeout: float
    config_file: Path

    def redacted(self) -> dict[str, Any]:
        """Settings as plain values with the API key masked."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        if values["api_key"]:
            values["api_key"] = values["api_key"][:4] + "****"
        return {
            k: str(v) if isinstance(v, Path) else v for k, v in values.items()
        }


def default_config_file(env: Mapping[str, str] | None = None) -> Path:
    """Path of the user config file (``XAHEEN_CONFIG`` overrides)."""
    env = os.environ if env is None else env
    override = env.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return Path("~/.xaheen/config.toml").expanduser()


def open_config(config_file: Path | None = None) -> ConfigProxy:
    """
    Get runtime configuration accessor for the plugin settings section.

    Args:
        config_file: TOML file (defaults to default_config_file())

    Returns:
        ConfigProxy instance for runtime access
    """
    return ConfigProxy(SECTION, SETTINGS_SCHEMA, config_file or default_config_file())


def load_settings(
    config_file: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load effective settings.

    Args:
        config_file: TOML file (defaults to default_config_file())
        env: Environment mapping (defaults to os.environ)

    Returns:
        Settings instance

    Raises:
        ConfigError: If the file or an environment override is invalid
    """
    env = os.environ if env is None else env
    config_file = config_file or default_config_file(env)
    values = open_config(config_file).as_dict()

    for name, spec in SETTINGS_SCHEMA.items():
        if spec.env and env.get(spec.env):
            try:
                value = spec.coerce(env[spec.env])
                spec.validate(value)
            except ValidationError as e:
                raise ConfigError(f"Invalid value for {spec.env}: {e}") from e
            values[name] = value

    for name in ("plugins_dir", "global_plugins_dir", "cache_dir"):
        values[name] = Path(values[name]).expanduser().absolute()

    return Settings(
        config_file=config_file,
        request_timeout=float(values.pop("request_timeout")),
        lock_timeout=float(values.pop("lock_timeout")),
        **values,
    )


def render_settings(settings: Settings) -> str:
    """Render effective settings as commented TOML (API key masked)."""
    data = settings.redacted()
    data.pop("config_file")
    return generate_toml_from_schema(SECTION, SETTINGS_SCHEMA, data)


__all__ = [
    "SECTION",
    "SETTINGS_SCHEMA",
    "ConfigError",
    "Settings",
    "default_config_file",
    "field",
    "load_settings",
    "open_config",
    "render_settings",
]
