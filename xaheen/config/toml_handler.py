"""
TOML File I/O Handler.

This module provides TOML parsing and writing with comment preservation.

Key features:
- Parse TOML files using tomllib
- Write TOML files using tomlkit (preserves comments and formatting)
- Render settings as TOML with descriptive comments
"""

import os
import tomllib
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import TOMLKitError

from xaheen.errors import ConfigError


class TOMLError(ConfigError):
    """Raised when a TOML file cannot be read or written."""

    pass


def read_toml(file_path: Path) -> dict[str, Any]:
    """
    Read and parse a TOML file.

    Args:
        file_path: Path to the TOML file

    Returns:
        Parsed TOML data as dictionary

    Raises:
        TOMLError: If file cannot be read or parsed
    """
    try:
        with open(file_path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise TOMLError(f"TOML file not found: {file_path}") from e
    except tomllib.TOMLDecodeError as e:
        raise TOMLError(f"Failed to parse TOML file {file_path}: {e}") from e
    except OSError as e:
        raise TOMLError(f"Failed to read TOML file {file_path}: {e}") from e


def load_document(file_path: Path) -> tomlkit.TOMLDocument:
    """
    Load a TOML file as a tomlkit document so comments survive a rewrite.

    Args:
        file_path: Path to the TOML file

    Returns:
        tomlkit document (empty if the file does not exist)

    Raises:
        TOMLError: If file exists but cannot be parsed
    """
    if not file_path.exists():
        return tomlkit.document()
    try:
        return tomlkit.parse(file_path.read_text(encoding="utf-8"))
    except (OSError, TOMLKitError) as e:
        raise TOMLError(f"Failed to parse TOML file {file_path}: {e}") from e


def write_toml(file_path: Path, data: dict[str, Any]) -> None:
    """
    Write data to a TOML file using tomlkit (preserves formatting).

    The file is written to a sibling temp file and renamed into place.

    Args:
        file_path: Path to the TOML file
        data: Data (or tomlkit document) to write

    Raises:
        TOMLError: If file cannot be written
    """
    tmp_path = file_path.with_name(f".{file_path.name}.tmp")
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(tmp_path, "w", encoding="utf-8") as f:
            tomlkit.dump(data, f)
        os.replace(tmp_path, file_path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise TOMLError(f"Failed to write TOML file {file_path}: {e}") from e


def generate_toml_from_schema(
    section: str, schema: dict[str, Any], config_data: dict[str, Any]
) -> str:
    """
    Generate TOML content from schema with descriptive comments.

    Args:
        section: Section name (used as table header)
        schema: Schema dictionary (field_name -> ConfigField)
        config_data: Configuration data (field_name -> value)

    Returns:
        TOML string with comments
    """
    doc = tomlkit.document()

    doc.add(tomlkit.comment(f"Configuration for {section}"))
    doc.add(tomlkit.nl())

    table = tomlkit.table()

    for field_name, field in schema.items():
        if field.description:
            table.add(tomlkit.comment(field.description))

        constraints = []
        if field.min is not None:
            constraints.append(f"min: {field.min}")
        if field.max is not None:
            constraints.append(f"max: {field.max}")
        if field.choices is not None:
            constraints.append(f"choices: {field.choices}")
        if field.env:
            constraints.append(f"env: {field.env}")

        if constraints:
            table.add(tomlkit.comment(f"Constraints: {', '.join(constraints)}"))

        value = config_data.get(field_name, field.default)
        table.add(field_name, value)
        table.add(tomlkit.nl())

    doc.add(section, table)

    return tomlkit.dumps(doc)
