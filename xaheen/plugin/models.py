"""
Plugin data model.

Records exchanged between the registry client, cache, installers and the
command registry. Registry payloads use camelCase keys; records persisted by
this package use snake_case.
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from xaheen.errors import ValidationError

CATEGORIES = ("generator", "template", "integration", "tool", "theme")

SOURCES = ("registry", "local", "global")


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(UTC).isoformat()


@dataclass
class PluginMetadata:
    """
    Registry metadata for one plugin version.

    Attributes:
        name: Plugin name
        version: Plugin version
        description: Short description
        author: Author name
        category: One of CATEGORIES
        keywords: Search keywords
        host_range: Supported host (xaheen) version range
        certified: Whether the registry certified the plugin
        rating: Average rating, 0..5
        downloads: Download count
        repository: Source repository URL
        checksum: Archive digest, ``sha256:<hex>``
        tarball: Archive download URL
    """

    name: str
    version: str
    description: str = ""
    author: str = ""
    category: str = "tool"
    keywords: list[str] = field(default_factory=list)
    host_range: str = "*"
    certified: bool = False
    rating: float = 0.0
    downloads: int = 0
    repository: str | None = None
    homepage: str | None = None
    license: str = "MIT"
    checksum: str | None = None
    tarball: str | None = None
    last_updated: str | None = None
    dependencies: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Cache key, ``name@version``."""
        return f"{self.name}@{self.version}"

    @classmethod
    def from_registry(cls, data: dict[str, Any]) -> "PluginMetadata":
        """
        Build metadata from a registry JSON object.

        Registry entries may wrap metadata as ``{"metadata": {...},
        "downloadUrl": ..., "checksum": ...}``; both shapes are accepted.

        Raises:
            ValidationError: If required fields are missing or mistyped
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Registry entry must be an object, got {type(data).__name__}")

        meta = data.get("metadata", data)
        if not isinstance(meta, dict):
            raise ValidationError("Registry entry 'metadata' must be an object")

        for required in ("name", "version"):
            if not isinstance(meta.get(required), str) or not meta[required]:
                raise ValidationError(f"Registry entry missing '{required}'")

        try:
            rating = float(meta.get("rating", 0) or 0)
            downloads = int(meta.get("downloads", 0) or 0)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Registry entry for {meta['name']} has invalid rating/downloads"
            ) from e

        return cls(
            name=meta["name"],
            version=meta["version"],
            description=meta.get("description", "") or "",
            author=meta.get("author", "") or "",
            category=meta.get("category", "tool") or "tool",
            keywords=list(meta.get("keywords", []) or []),
            host_range=meta.get("xaheenVersion", meta.get("hostRange", "*")) or "*",
            certified=bool(meta.get("certified", False)),
            rating=rating,
            downloads=downloads,
            repository=meta.get("repository"),
            homepage=meta.get("homepage"),
            license=meta.get("license", "MIT") or "MIT",
            checksum=data.get("checksum", meta.get("checksum")),
            tarball=data.get("downloadUrl", meta.get("tarball")),
            last_updated=meta.get("lastUpdated"),
            dependencies=dict(meta.get("dependencies", {}) or {}),
        )


@dataclass
class InstalledPluginRecord:
    """
    One entry of the plugin manifest file.

    Attributes:
        name: Plugin name (unique key)
        version: Installed version
        install_path: Directory holding the plugin files
        installed_at: ISO-8601 UTC timestamp
        commands: Command names contributed by the plugin
        source: registry, local or global
        forced: Whether a compatibility or conflict check was bypassed
    """

    name: str
    version: str
    install_path: Path
    installed_at: str
    commands: list[str] = field(default_factory=list)
    source: str = "registry"
    forced: bool = False
    host_range: str = "*"
    checksum: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["install_path"] = str(self.install_path)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InstalledPluginRecord":
        """
        Parse a persisted record.

        Raises:
            ValidationError: If the record is malformed
        """
        try:
            source = data.get("source", "registry")
            if source not in SOURCES:
                raise ValidationError(f"Unknown plugin source: {source}")
            return cls(
                name=data["name"],
                version=data["version"],
                install_path=Path(data["install_path"]),
                installed_at=data["installed_at"],
                commands=list(data.get("commands", [])),
                source=source,
                forced=bool(data.get("forced", False)),
                host_range=data.get("host_range", "*"),
                checksum=data.get("checksum"),
                description=data.get("description", ""),
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed plugin record: {e}") from e

    def equivalent(self, other: "InstalledPluginRecord") -> bool:
        """Same install apart from the timestamp."""
        mine = self.to_dict()
        theirs = other.to_dict()
        mine.pop("installed_at")
        theirs.pop("installed_at")
        return mine == theirs


@dataclass
class CacheEntry:
    """
    A cached plugin archive.

    Attributes:
        key: ``name@version``
        path: Archive path inside the cache directory
        checksum: ``sha256:<hex>`` of the archive
        fetched_at: ISO-8601 UTC timestamp
        size: Archive size in bytes
    """

    key: str
    path: Path
    checksum: str
    fetched_at: str
    size: int = 0

    @property
    def name(self) -> str:
        return self.key.rsplit("@", 1)[0]

    @property
    def version(self) -> str:
        return self.key.rsplit("@", 1)[1]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["path"] = str(self.path)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        return cls(
            key=data["key"],
            path=Path(data["path"]),
            checksum=data["checksum"],
            fetched_at=data["fetched_at"],
            size=int(data.get("size", 0)),
        )
