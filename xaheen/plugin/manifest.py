"""
Plugin Package Manifest.

This module parses and validates the ``manifest.json`` shipped at the root of
every plugin archive.

Key features:
- Structural validation of required and optional fields
- Command declarations (name, help, handler, options)
- Host range validation via the compatibility resolver
- Dependency specifiers validated as PEP 508 requirements
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from packaging.requirements import InvalidRequirement, Requirement

from xaheen.errors import ValidationError
from xaheen.plugin.compat import parse_range, parse_version

MANIFEST_NAME = "manifest.json"

NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
COMMAND_RE = re.compile(r"^[a-z][a-z0-9-]*$")
HANDLER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
OPTION_RE = re.compile(r"^[a-z][a-z0-9_-]*$")

OPTION_TYPES = ("str", "int", "float", "bool")


class ManifestError(ValidationError):
    """Raised when a manifest file cannot be read or parsed."""

    pass


@dataclass
class CommandSpec:
    """
    A command declared by a plugin.

    Attributes:
        name: Subcommand name
        help: One-line help text
        handler: Attribute of the entry module implementing the command
        options: Option name -> {type, help, default, required}
    """

    name: str
    help: str = ""
    handler: str = ""
    options: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass
class PackageManifest:
    """
    Represents a plugin package manifest.

    Attributes:
        name: Plugin name (unique identifier)
        version: Plugin version
        main: Entry point file path
        description: Plugin description
        author: Plugin author
        host_range: Supported xaheen versions
        commands: Declared commands
        dependencies: PyPI project -> version specifier
        raw_data: Raw manifest data
    """

    name: str
    version: str
    main: str
    description: str
    author: str
    host_range: str
    commands: list[CommandSpec]
    dependencies: dict[str, str]
    raw_data: dict[str, Any]

    @property
    def command_names(self) -> list[str]:
        return [c.name for c in self.commands]

    def requirements(self) -> list[str]:
        """Dependencies as pip requirement strings."""
        return [f"{name}{spec if spec != '*' else ''}" for name, spec in self.dependencies.items()]


def parse_manifest(manifest_path: Path) -> PackageManifest:
    """
    Parse a manifest.json file.

    Args:
        manifest_path: Path to manifest.json

    Returns:
        PackageManifest object

    Raises:
        ManifestError: If file cannot be read or parsed
        ValidationError: If manifest is invalid
    """
    try:
        with open(manifest_path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest file not found: {manifest_path}") from e
    except json.JSONDecodeError as e:
        raise ManifestError(f"Failed to parse manifest JSON: {e}") from e
    except OSError as e:
        raise ManifestError(f"Failed to read manifest file: {e}") from e

    return manifest_from_dict(data)


def manifest_from_dict(data: Any) -> PackageManifest:
    """
    Build a PackageManifest from already-decoded JSON.

    Raises:
        ValidationError: If manifest is invalid
    """
    if not isinstance(data, dict):
        raise ValidationError("Manifest must be a JSON object")

    validate_manifest_structure(data)

    commands = [
        CommandSpec(
            name=entry["name"],
            help=entry.get("help", ""),
            handler=entry.get("handler") or entry["name"].replace("-", "_"),
            options=dict(entry.get("options", {})),
        )
        for entry in data.get("commands", [])
    ]

    return PackageManifest(
        name=data["name"],
        version=data["version"],
        main=data["main"],
        description=data.get("description", ""),
        author=data.get("author", ""),
        host_range=data.get("xaheen", "*"),
        commands=commands,
        dependencies=dict(data.get("dependencies", {})),
        raw_data=data,
    )


def validate_plugin_name(name: Any) -> str:
    """
    Validate a plugin name (lowercase alphanumeric with hyphens).

    Raises:
        ValidationError: If the name is invalid
    """
    if not isinstance(name, str) or not NAME_RE.match(name) or len(name) > 214:
        raise ValidationError(
            f"Invalid plugin name: {name!r}. "
            f"Must be lowercase alphanumeric with hyphens only."
        )
    return name


def validate_manifest_structure(data: dict[str, Any]) -> None:
    """
    Validate manifest structure and required fields.

    Args:
        data: Parsed manifest data

    Raises:
        ValidationError: If manifest structure is invalid
    """
    for required in ("name", "version", "main"):
        if required not in data:
            raise ValidationError(f"Missing required field: {required}")

    validate_plugin_name(data["name"])

    if not isinstance(data["version"], str):
        raise ValidationError(f"Invalid version: {data['version']!r}")
    parse_version(data["version"])

    main = data["main"]
    if (
        not isinstance(main, str)
        or not main.endswith(".py")
        or Path(main).is_absolute()
        or ".." in Path(main).parts
    ):
        raise ValidationError(f"Invalid main entry point: {main}. Must be a relative .py file")

    for text_field in ("description", "author"):
        if text_field in data and not isinstance(data[text_field], str):
            raise ValidationError(f"'{text_field}' field must be a string")

    if "xaheen" in data:
        if not isinstance(data["xaheen"], str):
            raise ValidationError("'xaheen' field must be a version range string")
        parse_range(data["xaheen"])

    _validate_commands(data.get("commands", []))

    if "dependencies" in data:
        if not isinstance(data["dependencies"], dict):
            raise ValidationError("'dependencies' field must be a dictionary")
        for dep_name, spec in data["dependencies"].items():
            if not isinstance(spec, str):
                raise ValidationError(f"Dependency specifier must be string: {spec!r}")
            requirement = f"{dep_name}{spec if spec != '*' else ''}"
            try:
                Requirement(requirement)
            except InvalidRequirement as e:
                raise ValidationError(
                    f"Invalid dependency '{dep_name}': {e}"
                ) from e


def _validate_commands(commands: Any) -> None:
    if not isinstance(commands, list):
        raise ValidationError("'commands' field must be a list")

    seen: set[str] = set()
    for entry in commands:
        if not isinstance(entry, dict) or "name" not in entry:
            raise ValidationError("Each command must be an object with a 'name'")

        name = entry["name"]
        if not isinstance(name, str) or not COMMAND_RE.match(name):
            raise ValidationError(
                f"Invalid command name: {name!r}. "
                f"Must start with a letter and use lowercase letters, digits and hyphens."
            )
        if name in seen:
            raise ValidationError(f"Duplicate command name: {name}")
        seen.add(name)

        handler = entry.get("handler")
        if handler is not None and (not isinstance(handler, str) or not HANDLER_RE.match(handler)):
            raise ValidationError(f"Invalid handler for command {name}: {handler!r}")

        if "help" in entry and not isinstance(entry["help"], str):
            raise ValidationError(f"Help for command {name} must be a string")

        options = entry.get("options", {})
        if not isinstance(options, dict):
            raise ValidationError(f"Options for command {name} must be an object")
        for opt_name, opt in options.items():
            if not OPTION_RE.match(opt_name) or opt_name == "help":
                raise ValidationError(f"Invalid option name for command {name}: {opt_name!r}")
            if not isinstance(opt, dict):
                raise ValidationError(f"Option {opt_name} of {name} must be an object")
            if opt.get("type", "str") not in OPTION_TYPES:
                raise ValidationError(
                    f"Option {opt_name} of {name} has unsupported type {opt.get('type')!r}"
                )
