"""
Runtime Configuration Access.

This module provides runtime access to configuration with auto-flush on write.

Key features:
- ConfigProxy class with attribute-based access
- Auto-flush to TOML file on attribute write
- Thread-safe file writes with locking
- Validation on write
"""

import threading
from pathlib import Path
from typing import Any

from xaheen.config.schema import ConfigField, generate_default_config, validate_config
from xaheen.config.toml_handler import load_document, read_toml, write_toml
from xaheen.errors import ConfigError, ValidationError


class ConfigProxy:
    """
    Proxy object for runtime configuration access.

    Provides attribute-based access to one section of the TOML config file.
    All writes are validated against the schema and immediately flushed.

    Example:
        cfg = ConfigProxy('plugins', schema, config_file)
        url = cfg.registry_url                         # Read
        cfg.registry_url = "https://example.com/api"   # Write (auto-flushes)
    """

    def __init__(
        self,
        section: str,
        schema: dict[str, ConfigField],
        config_file: Path,
    ):
        """
        Initialize ConfigProxy.

        Args:
            section: TOML table holding the settings
            schema: Schema dictionary (field_name -> ConfigField)
            config_file: Path to the TOML config file
        """
        # Use object.__setattr__ to avoid triggering our custom __setattr__
        object.__setattr__(self, "_section", section)
        object.__setattr__(self, "_schema", schema)
        object.__setattr__(self, "_config_file", config_file)
        object.__setattr__(self, "_lock", threading.Lock())
        object.__setattr__(self, "_cache", {})

        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file, filling missing fields with defaults."""
        values = generate_default_config(self._schema)

        if self._config_file.exists():
            data = read_toml(self._config_file)
            section = data.get(self._section, {})
            if not isinstance(section, dict):
                raise ConfigError(
                    f"[{self._section}] in {self._config_file} must be a table"
                )
            try:
                validate_config(section, self._schema, partial=True)
            except ValidationError as e:
                raise ConfigError(f"Invalid config in {self._config_file}: {e}") from e
            values.update(section)

        object.__setattr__(self, "_cache", values)

    def __getattr__(self, name: str) -> Any:
        """
        Get configuration value by attribute access.

        Raises:
            AttributeError: If field doesn't exist in schema
        """
        if name.startswith("_"):
            return object.__getattribute__(self, name)

        if name not in self._schema:
            raise AttributeError(
                f"Configuration field '{name}' not found in schema for [{self._section}]"
            )

        return self._cache[name]

    def __setattr__(self, name: str, value: Any) -> None:
        """
        Set configuration value by attribute access with auto-flush.

        Raises:
            AttributeError: If field doesn't exist in schema
            ValidationError: If value fails validation
        """
        if name.startswith("_"):
            object.__setattr__(self, name, value)
            return

        if name not in self._schema:
            raise AttributeError(
                f"Configuration field '{name}' not found in schema for [{self._section}]"
            )

        self._schema[name].validate(value)

        with self._lock:
            self._cache[name] = value
            self._flush(name, value)

    def _flush(self, name: str, value: Any) -> None:
        """
        Write one changed field back to the TOML file.

        Only the changed key is touched so comments and unrelated sections
        in the user's file are preserved.
        """
        doc = load_document(self._config_file)
        if self._section not in doc:
            doc[self._section] = {}
        doc[self._section][name] = value
        write_toml(self._config_file, doc)

    def as_dict(self) -> dict[str, Any]:
        """Return a copy of the current values."""
        return dict(self._cache)

    def __repr__(self) -> str:
        """String representation of ConfigProxy."""
        return f"ConfigProxy({self._section}, {self._config_file})"
