"""
Tests for the plugin lifecycle manager.

Every test drives PluginManager against FakeRegistry (httpx.MockTransport)
and a fake pip runner, with project/global/cache directories under tmp_path.
"""

import asyncio
import os
import shutil
from dataclasses import replace
from unittest.mock import patch

import httpx
import pytest

from xaheen.errors import (
    CommandConflictError,
    DependencyInstallError,
    IncompatibleVersionError,
    NetworkError,
    NotFoundError,
    PackageCorruptedError,
    ValidationError,
)
from xaheen.plugin.commands import RegistrationState
from xaheen.plugin.deps import DependencyInstaller
from xaheen.plugin.manager import PluginManager, parse_target

AUTH = "xaheen-auth-generator"
STRIPE = "xaheen-stripe-integration"


def _assert_consistent(manager):
    """Every manifest record's commands are registered to it, and nothing else is."""
    expected = {}
    for record in manager.list_installed() + manager.list_installed(global_=True):
        for command in record.commands:
            expected[command] = record.name
    registered = {d.name: d.plugin for d in manager.commands.list_commands()}
    assert registered == expected


class TestParseTarget:
    def test_name_and_version(self):
        target = parse_target("xaheen-auth-generator@1.4.2")
        assert (target.name, target.version, target.archive) == (AUTH, "1.4.2", None)
        assert parse_target(AUTH).version is None

    def test_invalid(self):
        with pytest.raises(ValidationError, match="Missing version"):
            parse_target("xaheen-auth-generator@")
        with pytest.raises(ValidationError):
            parse_target("Not A Name")
        with pytest.raises(ValidationError):
            parse_target("xaheen-auth-generator@not-a-version")

    def test_missing_local_archive(self, tmp_path):
        with pytest.raises(NotFoundError, match="archive not found"):
            parse_target(str(tmp_path / "nothing.tgz"))


class TestInstall:
    """Test installing from the registry and from local archives."""

    @pytest.mark.asyncio
    async def test_install_registers_commands(self, manager, fake_registry, settings):
        fake_registry.publish(AUTH, "1.4.2", commands=("auth", "auth-init"))

        result = await manager.install(AUTH)

        record = result.record
        assert (record.name, record.version, record.source) == (AUTH, "1.4.2", "registry")
        assert record.commands == ["auth", "auth-init"]
        assert record.install_path == settings.plugins_dir / AUTH
        assert (record.install_path / "manifest.json").is_file()
        assert not result.cache_hit
        assert manager.commands.state(AUTH) is RegistrationState.REGISTERED
        assert manager.commands.invoke("auth", {"dry_run": True}).message == (
            f"{AUTH}:auth [('dry_run', True)]"
        )
        _assert_consistent(manager)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_install_pinned_version(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        fake_registry.publish(AUTH, "1.4.2")

        result = await manager.install(f"{AUTH}@1.0.0")

        assert result.record.version == "1.0.0"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_already_installed(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.4.2")
        await manager.install(AUTH)

        again = await manager.install(AUTH)

        assert again.already_installed
        assert again.warnings == [f"{AUTH}@1.4.2 is already installed"]
        assert len(fake_registry.downloads) == 1
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_upgrade_replaces_previous(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        await manager.install(f"{AUTH}@1.0.0")
        fake_registry.publish(AUTH, "1.1.0")

        result = await manager.install(AUTH)

        assert result.previous_version == "1.0.0"
        assert manager.project.store.get(AUTH).version == "1.1.0"
        _assert_consistent(manager)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_incompatible_host_version(self, manager, fake_registry):
        """An incompatible plugin is refused before anything is downloaded."""
        fake_registry.publish(AUTH, "3.0.0", host_range="^3.0.0")

        with pytest.raises(IncompatibleVersionError, match="requires xaheen"):
            await manager.install(AUTH)

        assert fake_registry.downloads == []
        assert manager.list_installed() == []
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_force_overrides_incompatibility(self, manager, fake_registry):
        fake_registry.publish(AUTH, "3.0.0", host_range="^3.0.0")

        result = await manager.install(AUTH, force=True)

        assert result.record.forced
        assert any("installing anyway" in w for w in result.warnings)
        assert manager.commands.names() == ["hello"]
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_command_conflict(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0", commands=("deploy",))
        fake_registry.publish(STRIPE, "1.0.0", commands=("deploy", "stripe"))
        await manager.install(AUTH)

        with pytest.raises(CommandConflictError, match="'deploy' is already provided"):
            await manager.install(STRIPE)

        assert manager.project.store.get(STRIPE) is None
        assert not (manager.project.plugin_dir(STRIPE)).exists()
        _assert_consistent(manager)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_forced_conflict_skips_commands(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0", commands=("deploy",))
        fake_registry.publish(STRIPE, "1.0.0", commands=("deploy", "stripe"))
        await manager.install(AUTH)

        result = await manager.install(STRIPE, force=True)

        assert result.record.commands == ["stripe"]
        assert result.record.forced
        assert any("skipped" in w for w in result.warnings)
        assert manager.commands.get("deploy").plugin == AUTH
        _assert_consistent(manager)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_conflict_with_installed_plugin_without_startup(self, make_manager, fake_registry):
        """Conflicts are checked against the manifests, not only this run's registrations."""
        fake_registry.publish(AUTH, "1.0.0", commands=("deploy",))
        fake_registry.publish(STRIPE, "1.0.0", commands=("deploy",))
        first = make_manager()
        await first.install(AUTH)
        await first.aclose()

        second = make_manager()
        with pytest.raises(CommandConflictError, match=f"'deploy' is already provided by plugin '{AUTH}'"):
            await second.install(STRIPE)
        await second.aclose()

        third = make_manager()
        batch = await third.install_many([STRIPE])
        assert isinstance(batch.errors[STRIPE], CommandConflictError)
        await third.aclose()

        assert [r.name for r in second.list_installed()] == [AUTH]
        assert second.project.store.get(AUTH).commands == ["deploy"]
        _assert_consistent(second)

    @pytest.mark.asyncio
    async def test_local_archive(self, manager, archive_factory, tmp_path):
        archive = tmp_path / "xaheen-dark-theme-0.1.0.tgz"
        archive.write_bytes(archive_factory("xaheen-dark-theme", "0.1.0", commands=("theme",)))

        result = await manager.install(str(archive))

        assert result.record.source == "local"
        assert result.record.checksum.startswith("sha256:")
        assert manager.commands.names() == ["theme"]
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_local_archive_incompatible(self, manager, archive_factory, tmp_path):
        archive = tmp_path / "old.tgz"
        archive.write_bytes(archive_factory("xaheen-old-plugin", "0.1.0", host_range="^1.0.0"))

        with pytest.raises(IncompatibleVersionError):
            await manager.install(str(archive))

        assert not manager.project.plugin_dir("xaheen-old-plugin").exists()
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_global_install(self, manager, fake_registry, settings):
        fake_registry.publish(AUTH, "1.0.0")

        result = await manager.install(AUTH, global_=True)

        assert result.record.source == "global"
        assert result.record.install_path == settings.global_plugins_dir / AUTH
        assert manager.list_installed() == []
        assert [r.name for r in manager.list_installed(global_=True)] == [AUTH]
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_corrupted_package_evicted_from_cache(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0", archive=b"definitely not a tarball")

        with pytest.raises(PackageCorruptedError):
            await manager.install(AUTH)

        assert manager.cache_entries() == []
        assert manager.list_installed() == []
        await manager.aclose()


class TestInstallAtomicity:
    """A failed install leaves the filesystem and manifest as they were."""

    @pytest.mark.asyncio
    async def test_dependency_failure_changes_nothing(self, manager, fake_registry, pip_runner, settings):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        fake_registry.publish(
            STRIPE, "2.1.0", commands=("stripe",), dependencies={"stripe": ">=5.0"}
        )
        await manager.install(AUTH)

        manifest_before = manager.project.store.path.read_bytes()
        listing_before = sorted(os.listdir(settings.plugins_dir))
        pip_runner.returncode = 1
        pip_runner.stderr = "ERROR: Could not find a version that satisfies stripe>=5.0"

        with pytest.raises(DependencyInstallError, match="Could not find a version"):
            await manager.install(STRIPE)

        assert manager.project.store.path.read_bytes() == manifest_before
        assert sorted(os.listdir(settings.plugins_dir)) == listing_before
        assert manager.commands.state(STRIPE) is RegistrationState.NOT_REGISTERED
        _assert_consistent(manager)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_dependencies_installed_into_plugin(self, manager, fake_registry, pip_runner):
        fake_registry.publish(STRIPE, "2.1.0", dependencies={"stripe": ">=5.0"})

        result = await manager.install(STRIPE)

        assert pip_runner.calls[0][-1] == "stripe>=5.0"
        assert (result.record.install_path / "deps" / "partial.txt").is_file()
        await manager.aclose()


class TestRemove:
    """Test remove and the install/remove round trip."""

    @pytest.mark.asyncio
    async def test_remove(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        await manager.install(AUTH)

        result = manager.remove(AUTH)

        assert result.record.name == AUTH
        assert result.commands == ["auth"]
        assert manager.list_installed() == []
        assert manager.commands.names() == []
        assert not manager.project.plugin_dir(AUTH).exists()
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_remove_global_keeps_project_commands(self, make_manager, fake_registry, settings):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        first = make_manager()
        await first.install(AUTH, global_=True)
        await first.install(AUTH)
        await first.aclose()

        manager = make_manager()
        manager.startup()
        result = manager.remove(AUTH, global_=True)

        assert result.commands == []
        assert [r.name for r in manager.list_installed()] == [AUTH]
        assert manager.commands.get("auth").handler.plugin_dir == settings.plugins_dir / AUTH
        _assert_consistent(manager)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_remove_project_falls_back_to_global(self, make_manager, fake_registry, settings):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        manager = make_manager()
        await manager.install(AUTH, global_=True)
        await manager.install(AUTH)

        manager.remove(AUTH)

        assert manager.list_installed() == []
        assert manager.commands.get("auth").handler.plugin_dir == settings.global_plugins_dir / AUTH
        _assert_consistent(manager)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_manifest_write_failure_restores_commands(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        await manager.install(AUTH)

        with patch(
            "xaheen.plugin.store.atomic_write_json",
            side_effect=OSError(28, "No space left on device"),
        ):
            with pytest.raises(OSError, match="No space left"):
                manager.remove(AUTH)

        assert manager.project.store.get(AUTH) is not None
        assert manager.project.plugin_dir(AUTH).is_dir()
        assert manager.commands.names() == ["auth"]
        _assert_consistent(manager)
        await manager.aclose()

    def test_remove_not_installed(self, manager):
        with pytest.raises(NotFoundError, match="not installed"):
            manager.remove(AUTH)

    @pytest.mark.asyncio
    async def test_round_trip_uses_cache(self, manager, fake_registry):
        """install, remove, install yields an equivalent record without a second download."""
        fake_registry.publish(AUTH, "1.4.2")
        first = await manager.install(AUTH)
        manager.remove(AUTH)

        second = await manager.install(AUTH)

        assert second.cache_hit
        assert len(fake_registry.downloads) == 1
        assert first.record.equivalent(second.record)
        _assert_consistent(manager)
        await manager.aclose()


class TestBatchInstall:
    @pytest.mark.asyncio
    async def test_failures_do_not_stop_others(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        fake_registry.publish(STRIPE, "1.0.0", commands=("stripe",))

        batch = await manager.install_many([AUTH, "xaheen-missing", STRIPE, AUTH])

        assert not batch.ok
        assert [r.record.name for r in batch.results] == [AUTH, STRIPE]
        assert list(batch.errors) == ["xaheen-missing"]
        assert isinstance(batch.errors["xaheen-missing"], NotFoundError)
        assert manager.commands.names() == ["auth", "stripe"]
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_network_phase_bounded_by_max_workers(
        self, settings, fake_registry, pip_runner, make_registry_client
    ):
        names = [f"xaheen-plugin-{i}" for i in range(6)]
        for i, name in enumerate(names):
            fake_registry.publish(name, "1.0.0", commands=(f"run-{i}",))

        in_flight = 0
        peak = 0

        async def handler(request):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            try:
                await asyncio.sleep(0.01)
                return fake_registry.handler(request)
            finally:
                in_flight -= 1

        manager = PluginManager(
            replace(settings, max_workers=2),
            registry=make_registry_client(transport=httpx.MockTransport(handler)),
            dependency_installer=DependencyInstaller(runner=pip_runner),
        )

        batch = await manager.install_many(names)

        assert batch.ok
        assert [r.record.name for r in batch.results] == names
        assert peak == 2
        await manager.aclose()


class TestUpdate:
    """Test update of one and all plugins."""

    @pytest.mark.asyncio
    async def test_update_one(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        await manager.install(AUTH)
        fake_registry.publish(AUTH, "1.1.0")

        [result] = await manager.update(AUTH)

        assert (result.current, result.latest, result.updated) == ("1.0.0", "1.1.0", True)
        assert manager.project.store.get(AUTH).version == "1.1.0"
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_up_to_date(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        await manager.install(AUTH)

        [result] = await manager.update(AUTH)

        assert not result.updated
        assert result.latest == "1.0.0"
        assert len(fake_registry.downloads) == 1
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_update_not_installed(self, manager):
        with pytest.raises(NotFoundError):
            await manager.update(AUTH)
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_update_all_collects_errors(self, manager, fake_registry, archive_factory, tmp_path):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        fake_registry.publish(STRIPE, "1.0.0", commands=("stripe",))
        await manager.install_many([AUTH, STRIPE])
        archive = tmp_path / "theme.tgz"
        archive.write_bytes(archive_factory("xaheen-dark-theme", "0.1.0", commands=("theme",)))
        await manager.install(str(archive))

        fake_registry.publish(AUTH, "1.1.0", commands=("auth",))
        del fake_registry.plugins[STRIPE]

        results = {r.name: r for r in await manager.update()}

        assert results[AUTH].updated
        assert "not found" in results[STRIPE].error
        assert "local archive" in results["xaheen-dark-theme"].warnings[0]
        assert not results["xaheen-dark-theme"].updated
        await manager.aclose()


class TestStartup:
    """Test command activation from the manifests at startup."""

    @pytest.mark.asyncio
    async def test_startup_registers_installed(self, make_manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0", commands=("auth",))
        first = make_manager()
        await first.install(AUTH)
        await first.aclose()

        second = make_manager()
        assert second.startup() == []
        assert second.commands.names() == ["auth"]
        assert second.startup() == []

    @pytest.mark.asyncio
    async def test_missing_directory_becomes_warning(self, make_manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        first = make_manager()
        result = await first.install(AUTH)
        await first.aclose()
        shutil.rmtree(result.record.install_path)

        second = make_manager()
        warnings = second.startup()

        assert len(warnings) == 1
        assert "is missing" in warnings[0]
        assert second.commands.names() == []

    @pytest.mark.asyncio
    async def test_project_shadows_global(self, make_manager, fake_registry, settings):
        fake_registry.publish(AUTH, "1.0.0")
        first = make_manager()
        await first.install(AUTH, global_=True)
        await first.install(AUTH)
        await first.aclose()

        second = make_manager()
        warnings = second.startup()

        assert any("installed globally and in the project" in w for w in warnings)
        assert second.commands.get("hello").handler.plugin_dir == settings.plugins_dir / AUTH


class TestInfo:
    @pytest.mark.asyncio
    async def test_info_combines_sources(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        fake_registry.publish(AUTH, "1.1.0")
        await manager.install(f"{AUTH}@1.0.0")

        details = await manager.info(AUTH)

        assert details.record.version == "1.0.0"
        assert details.metadata.version == "1.1.0"
        assert details.versions == ["1.0.0", "1.1.0"]
        assert details.warnings == []
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_registry_down_is_warning_when_installed(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        await manager.install(AUTH)
        fake_registry.down = True

        details = await manager.info(AUTH)

        assert details.metadata is None
        assert details.warnings[0].startswith("registry unavailable")
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_registry_down_and_not_installed(self, manager, fake_registry):
        fake_registry.down = True
        with pytest.raises(NetworkError):
            await manager.info(AUTH)
        await manager.aclose()


class TestCacheMaintenance:
    @pytest.mark.asyncio
    async def test_remove_keeps_cache_and_clear_empties_it(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        await manager.install(AUTH)
        manager.remove(AUTH)

        assert [e.key for e in manager.cache_entries()] == [f"{AUTH}@1.0.0"]
        assert manager.clear_cache(AUTH) == 1
        assert manager.cache_entries() == []
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_clear_search_only(self, manager, fake_registry):
        fake_registry.publish(AUTH, "1.0.0")
        await manager.install(AUTH)
        await manager.search("auth")

        assert manager.clear_cache(search=True) == 1
        assert len(manager.cache_entries()) == 1
        await manager.aclose()
