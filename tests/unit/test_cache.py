"""
Tests for the package cache.
"""

import hashlib
import os
import time

import pytest

from xaheen.errors import NetworkError, PackageCorruptedError, ValidationError
from xaheen.plugin.cache import PackageCache, file_digest, normalize_digest
from xaheen.plugin.models import PluginMetadata


@pytest.fixture
def cache(settings, make_registry_client):
    return PackageCache(settings.cache_dir, make_registry_client(), lock_timeout=1.0)


async def _metadata(cache, name, version=None) -> PluginMetadata:
    return await cache.registry.get_metadata(name, version)


class TestDigest:
    def test_normalize(self):
        hexdigest = "a" * 64
        assert normalize_digest(f"sha256:{hexdigest}") == f"sha256:{hexdigest}"
        assert normalize_digest(f"SHA256:{hexdigest.upper()}") == f"sha256:{hexdigest}"
        assert normalize_digest(hexdigest) == f"sha256:{hexdigest}"

    def test_unsupported(self):
        with pytest.raises(ValidationError, match="Unsupported archive digest"):
            normalize_digest("md5:abc")


class TestPackageCache:
    """Test fetch, verification and maintenance."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, fake_registry):
        archive = fake_registry.publish("xaheen-stripe-integration", "2.1.0")
        metadata = await _metadata(cache, "xaheen-stripe-integration", "2.1.0")

        first = await cache.fetch(metadata)
        assert not first.cache_hit
        assert first.path.read_bytes() == archive
        assert first.entry.checksum == "sha256:" + hashlib.sha256(archive).hexdigest()
        assert first.entry.size == len(archive)
        assert len(fake_registry.downloads) == 1

        second = await cache.fetch(metadata)
        assert second.cache_hit
        assert second.path == first.path
        assert len(fake_registry.downloads) == 1

        await cache.registry.aclose()

    @pytest.mark.asyncio
    async def test_refresh_downloads_again(self, cache, fake_registry):
        fake_registry.publish("xaheen-stripe-integration", "2.1.0")
        metadata = await _metadata(cache, "xaheen-stripe-integration")

        await cache.fetch(metadata)
        result = await cache.fetch(metadata, refresh=True)

        assert not result.cache_hit
        assert len(fake_registry.downloads) == 2
        await cache.registry.aclose()

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, cache, fake_registry):
        """A download that does not match the registry digest never reaches the cache."""
        fake_registry.publish("xaheen-auth-generator", "1.0.0", checksum="sha256:" + "0" * 64)
        metadata = await _metadata(cache, "xaheen-auth-generator")

        with pytest.raises(PackageCorruptedError, match="checksum mismatch"):
            await cache.fetch(metadata)

        assert cache.entries() == []
        assert list(cache.archives_dir.iterdir()) == []
        await cache.registry.aclose()

    @pytest.mark.asyncio
    async def test_tampered_entry_is_evicted(self, cache, fake_registry):
        fake_registry.publish("xaheen-auth-generator", "1.0.0")
        metadata = await _metadata(cache, "xaheen-auth-generator")

        first = await cache.fetch(metadata)
        first.path.write_bytes(b"tampered")

        second = await cache.fetch(metadata)
        assert not second.cache_hit
        assert file_digest(second.path) == metadata.checksum
        assert len(fake_registry.downloads) == 2
        await cache.registry.aclose()

    @pytest.mark.asyncio
    async def test_failed_download_leaves_no_temp_file(self, cache, fake_registry):
        fake_registry.publish("xaheen-auth-generator", "1.0.0")
        metadata = await _metadata(cache, "xaheen-auth-generator")
        fake_registry.down = True

        with pytest.raises(NetworkError, match="unable to connect"):
            await cache.fetch(metadata)

        assert list(cache.archives_dir.iterdir()) == []
        await cache.registry.aclose()

    @pytest.mark.asyncio
    async def test_evict_and_clear(self, cache, fake_registry):
        fake_registry.publish("xaheen-auth-generator", "1.0.0")
        fake_registry.publish("xaheen-auth-generator", "1.1.0")
        fake_registry.publish("xaheen-dark-theme", "0.1.0")

        for name, version in [
            ("xaheen-auth-generator", "1.0.0"),
            ("xaheen-auth-generator", "1.1.0"),
            ("xaheen-dark-theme", "0.1.0"),
        ]:
            await cache.fetch(await _metadata(cache, name, version))

        assert [e.key for e in cache.entries()] == [
            "xaheen-auth-generator@1.0.0",
            "xaheen-auth-generator@1.1.0",
            "xaheen-dark-theme@0.1.0",
        ]

        assert cache.evict("xaheen-auth-generator", "1.0.0")
        assert not cache.evict("xaheen-auth-generator", "1.0.0")

        assert cache.clear("xaheen-auth-generator") == 1
        assert [e.key for e in cache.entries()] == ["xaheen-dark-theme@0.1.0"]

        assert cache.clear() == 1
        assert cache.entries() == []
        await cache.registry.aclose()

    def test_sweep_partial(self, cache):
        cache.archives_dir.mkdir(parents=True)
        stale = cache.archives_dir / ".xaheen-auth-generator@1.0.0.abc.tmp"
        fresh = cache.archives_dir / ".xaheen-auth-generator@1.0.0.def.tmp"
        stale.write_bytes(b"partial")
        fresh.write_bytes(b"partial")
        old = time.time() - 7200
        os.utime(stale, (old, old))

        assert cache.sweep_partial() == 1
        assert not stale.exists()
        assert fresh.exists()

    def test_unreadable_index_starts_empty(self, cache):
        cache.cache_dir.mkdir(parents=True)
        cache.index_path.write_text("not json")
        assert cache.entries() == []
