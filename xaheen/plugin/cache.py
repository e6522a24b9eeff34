"""
Plugin Package Cache.

Archives fetched from the registry are kept under ``<cache_dir>/archives``
keyed by ``name@version`` and indexed in ``<cache_dir>/index.json``.

Key features:
- Cache hits are re-verified against the recorded digest before use
- Downloads stream into a temp file while hashing, then os.replace
- Digest mismatches never reach the cache
- Stale partial downloads are swept opportunistically
"""

import hashlib
import json
import logging
import os
import re
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from xaheen.errors import PackageCorruptedError, PluginPermissionError, ValidationError
from xaheen.plugin.models import CacheEntry, PluginMetadata, utc_now
from xaheen.plugin.registry import RegistryClient
from xaheen.plugin.store import atomic_write_json, file_lock

logger = logging.getLogger(__name__)

INDEX_SCHEMA_VERSION = 1
PARTIAL_MAX_AGE = 3600
_HEX_RE = re.compile(r"^[0-9a-f]{64}$")


def normalize_digest(digest: str) -> str:
    """
    Normalize an archive digest to ``sha256:<hex>``.

    Raises:
        ValidationError: If the digest is not a sha256 digest
    """
    algorithm, sep, value = digest.strip().partition(":")
    if not sep:
        algorithm, value = "sha256", algorithm
    value = value.lower()
    if algorithm.lower() != "sha256" or not _HEX_RE.match(value):
        raise ValidationError(f"Unsupported archive digest: {digest!r}")
    return f"sha256:{value}"


def file_digest(path: Path) -> str:
    """sha256 digest of a file as ``sha256:<hex>``."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return f"sha256:{hasher.hexdigest()}"


@dataclass
class FetchResult:
    """
    Result of PackageCache.fetch().

    Attributes:
        path: Verified archive path
        cache_hit: True if no download happened
        entry: Cache index entry
    """

    path: Path
    cache_hit: bool
    entry: CacheEntry


class PackageCache:
    """
    Content-verified archive cache.

    Index mutations are serialized by a threading lock and, across
    processes, by ``<cache_dir>/.lock``.
    """

    def __init__(self, cache_dir: Path, registry: RegistryClient, lock_timeout: float = 10.0):
        """
        Initialize PackageCache.

        Args:
            cache_dir: Cache root
            registry: Client used for downloads and search-cache clearing
            lock_timeout: Seconds to wait for the cache lock
        """
        self.cache_dir = cache_dir
        self.archives_dir = cache_dir / "archives"
        self.index_path = cache_dir / "index.json"
        self.lock_path = cache_dir / ".lock"
        self.registry = registry
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()

    def archive_path(self, name: str, version: str) -> Path:
        return self.archives_dir / f"{name}@{version}.tgz"

    # Index

    def _read_index(self) -> dict[str, CacheEntry]:
        if not self.index_path.exists():
            return {}
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
            return {
                key: CacheEntry.from_dict(entry)
                for key, entry in data.get("entries", {}).items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError, ValueError) as e:
            # The index only describes files that can be re-downloaded
            logger.warning("cache index %s is unreadable, starting empty: %s", self.index_path, e)
            return {}

    def _update_index(self, mutator: Callable[[dict[str, CacheEntry]], None]) -> None:
        with self._lock, file_lock(self.lock_path, self.lock_timeout, "plugin cache"):
            entries = self._read_index()
            mutator(entries)
            atomic_write_json(
                self.index_path,
                {
                    "schema_version": INDEX_SCHEMA_VERSION,
                    "entries": {key: entries[key].to_dict() for key in sorted(entries)},
                },
            )

    def entries(self) -> list[CacheEntry]:
        """All index entries sorted by key."""
        with self._lock:
            entries = self._read_index()
        return [entries[key] for key in sorted(entries)]

    def lookup(self, name: str, version: str, expected: str | None = None) -> CacheEntry | None:
        """
        Find a verified cache entry.

        An entry whose file is missing or whose digest does not match the
        recorded (or expected) digest is evicted.

        Args:
            name: Plugin name
            version: Plugin version
            expected: Registry digest, if known

        Returns:
            CacheEntry, or None on a miss
        """
        key = f"{name}@{version}"
        with self._lock:
            entry = self._read_index().get(key)
        if entry is None:
            return None

        reason = None
        if not entry.path.is_file():
            reason = "archive file is missing"
        else:
            actual = file_digest(entry.path)
            if actual != entry.checksum:
                reason = f"digest {actual} does not match recorded {entry.checksum}"
            elif expected is not None and actual != normalize_digest(expected):
                reason = f"digest {actual} does not match registry {expected}"

        if reason:
            logger.warning("evicting cached %s: %s", key, reason)
            self.evict(name, version)
            return None
        return entry

    # Fetch

    async def fetch(self, metadata: PluginMetadata, refresh: bool = False) -> FetchResult:
        """
        Return a verified archive for metadata, downloading on a miss.

        Args:
            metadata: Registry metadata (name, version, checksum, tarball)
            refresh: Ignore and replace any cached archive

        Returns:
            FetchResult

        Raises:
            PackageCorruptedError: If the download does not match the digest
            NetworkError: If the download fails
            NetworkTimeoutError: If the download times out
        """
        self.sweep_partial()

        if refresh:
            self.evict(metadata.name, metadata.version)
        else:
            entry = self.lookup(metadata.name, metadata.version, metadata.checksum)
            if entry is not None:
                logger.debug("cache hit: %s", metadata.key)
                return FetchResult(path=entry.path, cache_hit=True, entry=entry)

        logger.debug("cache miss: %s", metadata.key)
        entry = await self._download(metadata)
        return FetchResult(path=entry.path, cache_hit=False, entry=entry)

    async def _download(self, metadata: PluginMetadata) -> CacheEntry:
        expected = normalize_digest(metadata.checksum) if metadata.checksum else None
        if expected is None:
            logger.warning("registry published no digest for %s", metadata.key)

        try:
            self.archives_dir.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=self.archives_dir, prefix=f".{metadata.key}.", suffix=".tmp"
            )
        except PermissionError as e:
            raise PluginPermissionError(f"permission denied writing {self.archives_dir}") from e

        temp_path: Path | None = Path(temp_name)
        hasher = hashlib.sha256()
        size = 0
        try:
            with os.fdopen(fd, "wb") as f:
                async for chunk in self.registry.download(self.registry.download_url(metadata)):
                    f.write(chunk)
                    hasher.update(chunk)
                    size += len(chunk)
                f.flush()
                os.fsync(f.fileno())

            digest = f"sha256:{hasher.hexdigest()}"
            if size == 0:
                raise PackageCorruptedError(f"downloaded archive for {metadata.key} is empty")
            if expected is not None and digest != expected:
                raise PackageCorruptedError(
                    f"checksum mismatch for {metadata.key}: expected {expected}, got {digest}"
                )

            final_path = self.archive_path(metadata.name, metadata.version)
            os.replace(temp_path, final_path)
            temp_path = None
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

        entry = CacheEntry(
            key=metadata.key,
            path=final_path,
            checksum=digest,
            fetched_at=utc_now(),
            size=size,
        )

        def _put(entries: dict[str, CacheEntry]) -> None:
            entries[entry.key] = entry

        self._update_index(_put)
        logger.info("cached %s (%d bytes)", metadata.key, size)
        return entry

    # Maintenance

    def evict(self, name: str, version: str) -> bool:
        """
        Remove one cached archive.

        Returns:
            True if an entry or file was removed
        """
        key = f"{name}@{version}"
        removed = []

        def _drop(entries: dict[str, CacheEntry]) -> None:
            entry = entries.pop(key, None)
            if entry is not None:
                removed.append(entry)

        self._update_index(_drop)

        path = self.archive_path(name, version)
        existed = path.exists()
        path.unlink(missing_ok=True)
        for entry in removed:
            entry.path.unlink(missing_ok=True)
        return bool(removed) or existed

    def clear(self, name: str | None = None) -> int:
        """
        Remove cached archives.

        Args:
            name: Only this plugin's archives (all plugins when None)

        Returns:
            Number of archives removed
        """
        removed: list[CacheEntry] = []

        def _drop(entries: dict[str, CacheEntry]) -> None:
            for key in list(entries):
                if name is None or entries[key].name == name:
                    removed.append(entries.pop(key))

        self._update_index(_drop)

        count = 0
        for entry in removed:
            if entry.path.exists():
                count += 1
            entry.path.unlink(missing_ok=True)

        # Archives the index lost track of
        if self.archives_dir.exists():
            pattern = f"{name}@*.tgz" if name else "*.tgz"
            for path in self.archives_dir.glob(pattern):
                path.unlink(missing_ok=True)
                count += 1

        logger.debug("cleared %d cached archive(s)%s", count, f" for {name}" if name else "")
        return count

    def clear_search(self) -> int:
        """Remove cached search responses."""
        return self.registry.clear_search_cache()

    def sweep_partial(self, max_age: float = PARTIAL_MAX_AGE) -> int:
        """
        Delete partial downloads older than max_age seconds.

        Returns:
            Number of files removed
        """
        if not self.archives_dir.exists():
            return 0
        cutoff = time.time() - max_age
        swept = 0
        for path in self.archives_dir.glob(".*.tmp"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    swept += 1
            except FileNotFoundError:
                continue
        if swept:
            logger.debug("swept %d partial download(s)", swept)
        return swept
