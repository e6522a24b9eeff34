"""
Plugin Registry Client.

This module queries the remote plugin registry over HTTP.

Key features:
- Search with category/author/certified/rating filters and deterministic ranking
- Metadata and version listing per plugin
- Marketplace statistics and health checks
- Streaming archive downloads
- Short-TTL on-disk cache for search responses

Transient failures are surfaced immediately; nothing here retries.
"""

import hashlib
import json
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from xaheen.errors import (
    NetworkError,
    NetworkTimeoutError,
    NotFoundError,
    ValidationError,
)
from xaheen.plugin.compat import parse_version
from xaheen.plugin.manifest import validate_plugin_name
from xaheen.plugin.models import CATEGORIES, PluginMetadata
from xaheen.plugin.store import atomic_write_json

logger = logging.getLogger(__name__)

SORT_KEYS = ("rating", "downloads", "name", "updated")
SORT_ORDERS = ("asc", "desc")


@dataclass
class SearchFilters:
    """
    Search filters.

    Attributes:
        category: Exact category match
        author: Case-insensitive substring of the author
        certified: Only certified (True) or uncertified (False) plugins
        min_rating: Minimum rating
        sort: One of SORT_KEYS
        order: asc or desc (default desc, asc for name)
        limit: Maximum number of results
    """

    category: str | None = None
    author: str | None = None
    certified: bool | None = None
    min_rating: float | None = None
    sort: str = "downloads"
    order: str | None = None
    limit: int | None = None

    def validate(self) -> None:
        """
        Raises:
            ValidationError: If a filter value is out of range
        """
        if self.category is not None and self.category not in CATEGORIES:
            raise ValidationError(
                f"Unknown category: {self.category}. Expected one of {', '.join(CATEGORIES)}"
            )
        if self.sort not in SORT_KEYS:
            raise ValidationError(
                f"Unknown sort key: {self.sort}. Expected one of {', '.join(SORT_KEYS)}"
            )
        if self.order is not None and self.order not in SORT_ORDERS:
            raise ValidationError(f"Unknown sort order: {self.order}")
        if self.min_rating is not None and not 0 <= self.min_rating <= 5:
            raise ValidationError(f"min rating must be between 0 and 5, got {self.min_rating}")
        if self.limit is not None and self.limit < 1:
            raise ValidationError(f"limit must be positive, got {self.limit}")


def apply_filters(
    plugins: list[PluginMetadata], query: str | None, filters: SearchFilters
) -> list[PluginMetadata]:
    """Filter plugins by query text and SearchFilters (limit not applied)."""
    results = plugins

    if query:
        keyword = query.lower()
        results = [
            p
            for p in results
            if keyword in p.name.lower()
            or keyword in p.description.lower()
            or any(keyword in k.lower() for k in p.keywords)
        ]

    if filters.category:
        results = [p for p in results if p.category == filters.category]

    if filters.author:
        author = filters.author.lower()
        results = [p for p in results if author in p.author.lower()]

    if filters.certified is not None:
        results = [p for p in results if p.certified == filters.certified]

    if filters.min_rating:
        results = [p for p in results if p.rating >= filters.min_rating]

    return results


def rank(
    plugins: list[PluginMetadata], sort: str = "downloads", order: str | None = None
) -> list[PluginMetadata]:
    """
    Sort plugins; ties are always broken by name ascending.

    Args:
        plugins: Plugins to sort
        sort: One of SORT_KEYS
        order: asc or desc (default desc, asc for name)

    Returns:
        New sorted list
    """
    order = order or ("asc" if sort == "name" else "desc")
    by_name = sorted(plugins, key=lambda p: p.name)

    if sort == "name":
        return by_name if order == "asc" else list(reversed(by_name))

    def sort_key(p: PluginMetadata) -> Any:
        if sort == "rating":
            return p.rating
        if sort == "downloads":
            return p.downloads
        return p.last_updated or ""

    # sorted() is stable, so equal keys keep the name order
    return sorted(by_name, key=sort_key, reverse=order == "desc")


def _entries(payload: Any, *keys: str) -> list[Any]:
    """Unwrap a list that may be nested under one of keys."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in keys:
            if isinstance(payload.get(key), list):
                return payload[key]
    raise NetworkError("Malformed registry response: expected a list")


class RegistryClient:
    """
    Async client for the plugin registry.

    Use as an async context manager, or call aclose() when done.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_key: str = "",
        cache_dir: Path | None = None,
        search_ttl: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize RegistryClient.

        Args:
            base_url: Registry base URL
            timeout: Request timeout in seconds
            api_key: Bearer token (optional)
            cache_dir: Directory for cached search responses (None disables caching)
            search_ttl: Seconds a cached search response stays fresh
            transport: Custom httpx transport (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self.search_cache_dir = cache_dir / "search" if cache_dir else None
        self.search_ttl = search_ttl
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json", "User-Agent": "xaheen-cli"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _check_status(self, response: httpx.Response, what: str) -> None:
        if response.status_code == 404:
            raise NotFoundError(f"{what} not found in registry")
        if response.is_error:
            raise NetworkError(
                f"registry returned HTTP {response.status_code} for {what}"
            )

    async def _get_json(
        self, path: str, what: str, params: dict[str, Any] | None = None
    ) -> Any:
        """
        GET a registry path and decode JSON.

        Raises:
            NetworkTimeoutError: If the request times out
            NetworkError: If the registry cannot be reached or errors
            NotFoundError: On HTTP 404
        """
        client = self._get_client()
        logger.debug("GET %s%s params=%s", self.base_url, path, params)

        try:
            response = await client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(
                f"registry request timed out after {self.timeout}s ({what})"
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"unable to connect to plugin registry at {self.base_url}: {e}"
            ) from e

        self._check_status(response, what)

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Malformed registry response for {what}") from e

    # Search

    def _search_cache_path(self, params: dict[str, Any]) -> Path | None:
        if self.search_cache_dir is None:
            return None
        digest = hashlib.sha256(
            json.dumps([self.base_url, params], sort_keys=True).encode()
        ).hexdigest()[:24]
        return self.search_cache_dir / f"{digest}.json"

    def _read_search_cache(self, path: Path | None) -> list[Any] | None:
        if path is None or self.search_ttl <= 0 or not path.exists():
            return None
        try:
            cached = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.debug("ignoring unreadable search cache %s: %s", path, e)
            return None
        if not isinstance(cached, dict) or not isinstance(cached.get("plugins"), list):
            logger.debug("ignoring malformed search cache %s", path)
            return None
        if time.time() - cached.get("fetched_at", 0) > self.search_ttl:
            return None
        return cached["plugins"]

    def _write_search_cache(self, path: Path | None, entries: list[Any]) -> None:
        if path is None or self.search_ttl <= 0:
            return
        try:
            atomic_write_json(path, {"fetched_at": time.time(), "plugins": entries})
        except Exception as e:
            # A cache write failure must not fail the search itself
            logger.warning("could not cache search results: %s", e)

    def clear_search_cache(self) -> int:
        """
        Remove cached search responses.

        Returns:
            Number of cached responses removed
        """
        if self.search_cache_dir is None or not self.search_cache_dir.exists():
            return 0
        removed = 0
        for path in self.search_cache_dir.glob("*.json"):
            path.unlink(missing_ok=True)
            removed += 1
        return removed

    async def search(
        self,
        query: str | None = None,
        filters: SearchFilters | None = None,
        refresh: bool = False,
    ) -> list[PluginMetadata]:
        """
        Search the registry.

        Args:
            query: Free-text query (name, description, keywords)
            filters: SearchFilters
            refresh: Bypass the cached response

        Returns:
            Ranked list of PluginMetadata

        Raises:
            ValidationError: If filters are invalid
            NetworkError: If the registry cannot be reached
            NetworkTimeoutError: If the request times out
        """
        filters = filters or SearchFilters()
        filters.validate()

        params: dict[str, Any] = {}
        if query:
            params["q"] = query
        if filters.category:
            params["category"] = filters.category
        if filters.author:
            params["author"] = filters.author
        if filters.certified is not None:
            params["certified"] = str(filters.certified).lower()
        if filters.min_rating:
            params["minRating"] = filters.min_rating
        params["sortBy"] = filters.sort
        if filters.order:
            params["sortOrder"] = filters.order

        cache_path = self._search_cache_path(params)
        entries = None if refresh else self._read_search_cache(cache_path)

        if entries is None:
            payload = await self._get_json("/search", "search results", params=params)
            entries = _entries(payload, "plugins", "results")
            self._write_search_cache(cache_path, entries)
        else:
            logger.debug("search cache hit: %s", cache_path)

        plugins = [PluginMetadata.from_registry(e) for e in entries]
        results = rank(apply_filters(plugins, query, filters), filters.sort, filters.order)

        if filters.limit:
            results = results[: filters.limit]
        return results

    # Metadata

    async def get_metadata(self, name: str, version: str | None = None) -> PluginMetadata:
        """
        Get metadata for a plugin (latest version unless version given).

        Raises:
            ValidationError: If the name or version is invalid
            NotFoundError: If the plugin or version does not exist
            NetworkError: If the registry cannot be reached
        """
        validate_plugin_name(name)
        if version is not None:
            parse_version(version)
            path = f"/plugins/{name}/{version}"
            what = f"plugin {name}@{version}"
        else:
            path = f"/plugins/{name}"
            what = f"plugin {name}"

        metadata = PluginMetadata.from_registry(await self._get_json(path, what))

        if metadata.name != name or (version is not None and metadata.version != version):
            raise NetworkError(
                f"registry answered {metadata.key} when asked for {what}"
            )
        return metadata

    async def list_versions(self, name: str) -> list[str]:
        """
        List published versions of a plugin, oldest first.

        Raises:
            NotFoundError: If the plugin does not exist
            NetworkError: If the registry cannot be reached
        """
        validate_plugin_name(name)
        payload = await self._get_json(f"/plugins/{name}/versions", f"plugin {name}")

        versions = []
        for raw in _entries(payload, "versions"):
            try:
                versions.append((parse_version(str(raw)), str(raw)))
            except ValidationError:
                logger.warning("registry lists invalid version %r for %s", raw, name)
        return [raw for _, raw in sorted(versions)]

    # Marketplace

    async def stats(self) -> dict[str, Any]:
        """Marketplace statistics as reported by the registry."""
        payload = await self._get_json("/stats", "registry statistics")
        if not isinstance(payload, dict):
            raise NetworkError("Malformed registry response for registry statistics")
        return {
            "total_plugins": int(payload.get("totalPlugins", 0)),
            "total_downloads": int(payload.get("totalDownloads", 0)),
            "avg_rating": float(payload.get("avgRating", 0.0)),
            "certified_count": int(payload.get("certifiedCount", 0)),
            "category_counts": dict(payload.get("categoryCounts", {})),
        }

    async def health(self) -> dict[str, Any]:
        """Registry health with round-trip latency in milliseconds."""
        started = time.perf_counter()
        payload = await self._get_json("/health", "registry health")
        latency_ms = (time.perf_counter() - started) * 1000
        status = payload.get("status", "ok") if isinstance(payload, dict) else "ok"
        return {"url": self.base_url, "status": status, "latency_ms": round(latency_ms, 1)}

    # Downloads

    def download_url(self, metadata: PluginMetadata) -> str:
        """Absolute archive URL for a plugin version."""
        if metadata.tarball:
            if metadata.tarball.startswith(("http://", "https://")):
                return metadata.tarball
            return f"{self.base_url}/{metadata.tarball.lstrip('/')}"
        return f"{self.base_url}/plugins/{metadata.name}/{metadata.version}/download"

    async def download(self, url: str) -> AsyncIterator[bytes]:
        """
        Stream a plugin archive.

        Args:
            url: Absolute archive URL (see download_url)

        Yields:
            Chunks of archive bytes

        Raises:
            NotFoundError: If the archive does not exist
            NetworkError: If the registry cannot be reached
            NetworkTimeoutError: If the transfer times out
        """
        client = self._get_client()
        logger.debug("downloading %s", url)

        try:
            async with client.stream("GET", url) as response:
                self._check_status(response, f"archive {url}")
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(
                f"download of {url} timed out after {self.timeout}s"
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"unable to connect to plugin registry at {self.base_url}: {e}"
            ) from e

