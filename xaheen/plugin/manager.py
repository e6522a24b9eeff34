"""
Plugin Manager.

This module provides plugin lifecycle management.

Key features:
- Install from the registry (name, name@version) or a local archive
- Concurrent network phase, serialized commit phase for batches
- Host compatibility gate with --force override
- Command registration kept in step with the durable manifest
- Update, remove, list, info, search and cache maintenance
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from xaheen import HOST_VERSION
from xaheen.config import Settings
from xaheen.errors import (
    CommandConflictError,
    NetworkError,
    NetworkTimeoutError,
    NotFoundError,
    PackageCorruptedError,
    ValidationError,
    XaheenError,
)
from xaheen.plugin.cache import FetchResult, PackageCache, file_digest
from xaheen.plugin.commands import CommandDescriptor, CommandRegistry
from xaheen.plugin.compat import check_compatibility, compare_versions, parse_version
from xaheen.plugin.deps import DependencyInstaller
from xaheen.plugin.installer import FilesystemInstaller, StagedPlugin
from xaheen.plugin.loader import LazyHandler, unload_plugin_module
from xaheen.plugin.manifest import (
    MANIFEST_NAME,
    PackageManifest,
    parse_manifest,
    validate_plugin_name,
)
from xaheen.plugin.models import CacheEntry, InstalledPluginRecord, PluginMetadata, utc_now
from xaheen.plugin.registry import RegistryClient, SearchFilters

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".tgz", ".tar.gz")


@dataclass
class InstallTarget:
    """
    A parsed install argument.

    Attributes:
        raw: Argument as given
        name: Plugin name (registry targets)
        version: Requested version, None for latest
        archive: Local archive path (local targets)
    """

    raw: str
    name: str | None = None
    version: str | None = None
    archive: Path | None = None


def parse_target(target: str) -> InstallTarget:
    """
    Parse ``name``, ``name@version`` or a local archive path.

    Raises:
        ValidationError: If the name or version is invalid
        NotFoundError: If a local archive does not exist
    """
    target = target.strip()
    if target.endswith(ARCHIVE_SUFFIXES) or "/" in target or "\\" in target:
        archive = Path(target).expanduser()
        if not archive.is_file():
            raise NotFoundError(f"Plugin archive not found: {target}")
        return InstallTarget(raw=target, archive=archive.resolve())

    name, sep, version = target.partition("@")
    validate_plugin_name(name)
    if sep:
        if not version:
            raise ValidationError(f"Missing version after '@' in {target!r}")
        parse_version(version)
        return InstallTarget(raw=target, name=name, version=version)
    return InstallTarget(raw=target, name=name)


@dataclass
class InstallResult:
    """
    Outcome of one install.

    Attributes:
        record: Manifest record of the installed plugin
        warnings: Non-fatal messages for the user
        cache_hit: Archive came from the cache (no download)
        already_installed: Nothing was done
        previous_version: Version replaced by this install
    """

    record: InstalledPluginRecord
    warnings: list[str] = field(default_factory=list)
    cache_hit: bool = False
    already_installed: bool = False
    previous_version: str | None = None


@dataclass
class BatchResult:
    """Outcome of install_many(): results in target order plus per-target errors."""

    results: list[InstallResult] = field(default_factory=list)
    errors: dict[str, XaheenError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class RemoveResult:
    record: InstalledPluginRecord
    commands: list[str]
    warnings: list[str] = field(default_factory=list)


@dataclass
class UpdateResult:
    """
    Outcome of updating one plugin.

    Attributes:
        name: Plugin name
        current: Version before the update
        latest: Newest registry version (None if not checked)
        updated: Whether a new version was installed
        warnings: Non-fatal messages
        error: Failure message when updating several plugins
    """

    name: str
    current: str
    latest: str | None = None
    updated: bool = False
    warnings: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class PluginDetails:
    """Installed record and/or registry metadata for one plugin."""

    name: str
    record: InstalledPluginRecord | None = None
    metadata: PluginMetadata | None = None
    versions: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class _Prepared:
    """Output of the network phase of an install."""

    target: InstallTarget
    archive: Path
    metadata: PluginMetadata | None = None
    entry: CacheEntry | None = None
    cache_hit: bool = False
    forced: bool = False
    warnings: list[str] = field(default_factory=list)
    already: InstalledPluginRecord | None = None


class PluginManager:
    """
    Plugin lifecycle manager.

    Owns the command registry for one CLI invocation and coordinates the
    registry client, cache, dependency installer and the two plugin roots
    (project and global).
    """

    def __init__(
        self,
        settings: Settings,
        host_version: str = HOST_VERSION,
        registry: RegistryClient | None = None,
        cache: PackageCache | None = None,
        commands: CommandRegistry | None = None,
        dependency_installer: DependencyInstaller | None = None,
    ):
        """
        Initialize PluginManager.

        Args:
            settings: Effective settings
            host_version: Running CLI version
            registry: Registry client (built from settings when None)
            cache: Package cache (built from settings when None)
            commands: Command registry (fresh when None)
            dependency_installer: Dependency installer (pip when None)
        """
        self.settings = settings
        self.host_version = host_version
        self.registry = registry or RegistryClient(
            settings.registry_url,
            timeout=settings.request_timeout,
            api_key=settings.api_key,
            cache_dir=settings.cache_dir,
            search_ttl=settings.search_cache_ttl,
        )
        self.cache = cache or PackageCache(
            settings.cache_dir, self.registry, lock_timeout=settings.lock_timeout
        )
        self.commands = commands or CommandRegistry()
        self.dependencies = dependency_installer or DependencyInstaller()
        self.project = FilesystemInstaller(
            settings.plugins_dir, settings.manifest_file, settings.lock_timeout
        )
        self.global_ = FilesystemInstaller(
            settings.global_plugins_dir, settings.manifest_file, settings.lock_timeout
        )
        self._started = False

    def installer_for(self, global_: bool = False) -> FilesystemInstaller:
        return self.global_ if global_ else self.project

    async def aclose(self) -> None:
        await self.registry.aclose()

    # Activation

    def _descriptors(self, manifest: PackageManifest, plugin_dir: Path) -> list[CommandDescriptor]:
        return [
            CommandDescriptor(
                name=command.name,
                plugin=manifest.name,
                handler=LazyHandler(manifest.name, plugin_dir, manifest.main, command.handler),
                help=command.help,
                options=command.options,
            )
            for command in manifest.commands
        ]

    def _activate(self, record: InstalledPluginRecord, force: bool = False) -> list[str]:
        """Register an installed plugin's commands from its package manifest."""
        manifest = parse_manifest(record.install_path / MANIFEST_NAME)
        descriptors = [
            d
            for d in self._descriptors(manifest, record.install_path)
            if d.name in record.commands
        ]
        return self.commands.register(record.name, descriptors, force=force)

    def startup(self) -> list[str]:
        """
        Register the commands of every installed plugin.

        Plugins from both roots are activated in installation order. A
        project plugin shadows a global plugin of the same name. Conflicts
        and missing plugin directories become warnings.

        Returns:
            Warnings
        """
        if self._started:
            return []
        self._started = True

        warnings = []
        records: dict[str, InstalledPluginRecord] = {}
        for installer in (self.global_, self.project):
            for name, record in installer.store.load().items():
                if name in records:
                    warnings.append(
                        f"plugin {name} is installed globally and in the project; "
                        f"using {record.install_path}"
                    )
                records[name] = record

        for record in sorted(records.values(), key=lambda r: (r.installed_at, r.name)):
            if not (record.install_path / MANIFEST_NAME).is_file():
                warnings.append(
                    f"plugin {record.name} is recorded but {record.install_path} is missing; "
                    f"reinstall it with 'xaheen plugin install {record.name}'"
                )
                continue
            try:
                warnings.extend(self._activate(record, force=True))
            except XaheenError as e:
                warnings.append(f"plugin {record.name} could not be activated: {e}")

        for warning in warnings:
            logger.info(warning)
        return warnings

    # Install

    async def _prepare(
        self, target: str, force: bool, global_: bool, refresh: bool
    ) -> _Prepared:
        """Network phase: resolve metadata, gate compatibility, fetch the archive."""
        parsed = parse_target(target)
        if parsed.archive is not None:
            return _Prepared(target=parsed, archive=parsed.archive)

        metadata = await self.registry.get_metadata(parsed.name, parsed.version)
        prepared = _Prepared(target=parsed, archive=Path(), metadata=metadata)

        existing = self.installer_for(global_).store.get(metadata.name)
        if existing is not None and existing.version == metadata.version and not force:
            prepared.already = existing
            return prepared

        compat = check_compatibility(metadata.name, metadata.host_range, self.host_version, force)
        if compat.forced:
            prepared.forced = True
            prepared.warnings.append(compat.warning)

        fetched: FetchResult = await self.cache.fetch(metadata, refresh=refresh)
        prepared.archive = fetched.path
        prepared.entry = fetched.entry
        prepared.cache_hit = fetched.cache_hit
        return prepared

    def _stage(self, installer: FilesystemInstaller, prepared: _Prepared) -> StagedPlugin:
        metadata = prepared.metadata
        if metadata is None:
            return installer.stage(prepared.archive, label="local")
        try:
            return installer.stage(
                prepared.archive,
                label=metadata.name,
                expected_name=metadata.name,
                expected_version=metadata.version,
            )
        except PackageCorruptedError:
            self.cache.evict(metadata.name, metadata.version)
            raise

    def _commit(self, prepared: _Prepared, force: bool, global_: bool) -> InstallResult:
        """Filesystem phase: stage, install dependencies, commit, activate."""
        if prepared.already is not None:
            record = prepared.already
            return InstallResult(
                record=record,
                warnings=[f"{record.name}@{record.version} is already installed"],
                already_installed=True,
            )

        installer = self.installer_for(global_)
        warnings = list(prepared.warnings)
        forced = prepared.forced

        with installer.lock():
            installer.sweep_orphans()
            staged = self._stage(installer, prepared)
            manifest = staged.manifest

            try:
                if prepared.metadata is None:
                    compat = check_compatibility(
                        manifest.name, manifest.host_range, self.host_version, force
                    )
                    if compat.forced:
                        forced = True
                        warnings.append(compat.warning)

                existing = installer.store.get(manifest.name)
                if existing is not None and existing.version == manifest.version and not force:
                    installer.discard(staged)
                    return InstallResult(
                        record=existing,
                        warnings=warnings + [f"{existing.name}@{existing.version} is already installed"],
                        already_installed=True,
                    )

                conflicts = self.commands.check_conflicts(manifest.name, manifest.command_names)
                if conflicts:
                    if not force:
                        raise CommandConflictError(
                            f"Command conflict for plugin '{manifest.name}': " + "; ".join(conflicts)
                        )
                    forced = True

                skipped = {
                    name
                    for name in manifest.command_names
                    if self.commands.check_conflicts(manifest.name, [name])
                }

                self.dependencies.install(manifest.requirements(), staged.path)

                if prepared.metadata is not None:
                    source = "global" if global_ else "registry"
                    checksum = prepared.entry.checksum if prepared.entry else None
                else:
                    source = "local"
                    checksum = file_digest(prepared.archive)

                record = InstalledPluginRecord(
                    name=manifest.name,
                    version=manifest.version,
                    install_path=installer.plugin_dir(manifest.name),
                    installed_at=utc_now(),
                    commands=[n for n in manifest.command_names if n not in skipped],
                    source=source,
                    forced=forced,
                    host_range=manifest.host_range,
                    checksum=checksum,
                    description=manifest.description,
                )
            except BaseException:
                installer.discard(staged)
                raise

            installer.commit(staged, record)

        unload_plugin_module(record.name, record.install_path)
        descriptors = [
            d
            for d in self._descriptors(manifest, record.install_path)
            if d.name in record.commands
        ]
        self.commands.register(record.name, descriptors, force=force)
        warnings.extend(
            f"command '{name}' of plugin '{record.name}' skipped: "
            f"{self.commands.check_conflicts(record.name, [name])[0]}"
            for name in sorted(skipped)
        )

        for warning in warnings:
            logger.info(warning)
        return InstallResult(
            record=record,
            warnings=warnings,
            cache_hit=prepared.cache_hit,
            previous_version=existing.version if existing else None,
        )

    async def install(
        self,
        target: str,
        force: bool = False,
        global_: bool = False,
        refresh: bool = False,
    ) -> InstallResult:
        """
        Install one plugin.

        Args:
            target: ``name``, ``name@version`` or a local archive path
            force: Bypass compatibility and command-conflict checks, reinstall
            global_: Install into the global plugins directory
            refresh: Re-download even if the archive is cached

        Returns:
            InstallResult

        Raises:
            XaheenError: Any lifecycle failure (see xaheen.errors)
        """
        # Conflicts are checked against every installed plugin, not just this run's
        self.startup()
        prepared = await self._prepare(target, force, global_, refresh)
        return self._commit(prepared, force, global_)

    async def install_many(
        self,
        targets: list[str],
        force: bool = False,
        global_: bool = False,
        refresh: bool = False,
    ) -> BatchResult:
        """
        Install several plugins.

        Metadata lookups and downloads run concurrently (up to max_workers);
        commits run one at a time in target order. A failing target does not
        stop the others.

        Returns:
            BatchResult
        """
        self.startup()
        targets = list(dict.fromkeys(targets))
        semaphore = asyncio.Semaphore(self.settings.max_workers)

        async def prepare(target: str) -> _Prepared:
            async with semaphore:
                return await self._prepare(target, force, global_, refresh)

        outcomes = await asyncio.gather(
            *(prepare(target) for target in targets), return_exceptions=True
        )

        batch = BatchResult()
        for target, outcome in zip(targets, outcomes):
            if isinstance(outcome, XaheenError):
                batch.errors[target] = outcome
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            try:
                batch.results.append(self._commit(outcome, force, global_))
            except XaheenError as e:
                batch.errors[target] = e
        return batch

    # Update

    async def _update_one(self, record: InstalledPluginRecord, global_: bool) -> UpdateResult:
        result = UpdateResult(name=record.name, current=record.version)
        if record.source == "local":
            result.warnings.append(
                f"{record.name} was installed from a local archive; skipping update"
            )
            return result

        latest = await self.registry.get_metadata(record.name)
        result.latest = latest.version
        if compare_versions(latest.version, record.version) <= 0:
            return result

        installed = await self.install(f"{record.name}@{latest.version}", global_=global_)
        result.updated = not installed.already_installed
        result.warnings.extend(installed.warnings)
        return result

    async def update(self, name: str | None = None, global_: bool = False) -> list[UpdateResult]:
        """
        Update one plugin, or all plugins of a root, to the latest version.

        Args:
            name: Plugin to update (all when None)
            global_: Use the global plugins directory

        Returns:
            One UpdateResult per plugin considered

        Raises:
            NotFoundError: If name is given but not installed
            XaheenError: Failures when updating a single named plugin
        """
        installer = self.installer_for(global_)
        records = installer.store.load()

        if name is not None:
            if name not in records:
                raise NotFoundError(f"Plugin {name} is not installed")
            return [await self._update_one(records[name], global_)]

        results = []
        for plugin_name in sorted(records):
            try:
                results.append(await self._update_one(records[plugin_name], global_))
            except XaheenError as e:
                logger.debug("update of %s failed: %s", plugin_name, e)
                results.append(
                    UpdateResult(
                        name=plugin_name,
                        current=records[plugin_name].version,
                        error=str(e),
                    )
                )
        return results

    # Remove

    def remove(self, name: str, global_: bool = False) -> RemoveResult:
        """
        Uninstall a plugin.

        Commands are deregistered first, then the manifest entry is removed,
        then the plugin directory. The cached archive is kept. If the same
        plugin is still installed in the other root, that copy's commands
        take over.

        Raises:
            NotFoundError: If the plugin is not installed
        """
        validate_plugin_name(name)
        self.startup()
        installer = self.installer_for(global_)

        with installer.lock():
            installer.sweep_orphans()
            record = installer.store.get(name)
            if record is None:
                raise NotFoundError(f"Plugin {name} is not installed")

            commands = self.commands.deregister(name)
            unload_plugin_module(name, record.install_path)
            try:
                removed, warnings = installer.uninstall(name)
            except BaseException:
                # Manifest unchanged: keep the command surface in step with it
                if commands:
                    self._activate(record, force=True)
                raise

        remaining = self.installer_for(not global_).store.get(name)
        if remaining is not None and (remaining.install_path / MANIFEST_NAME).is_file():
            try:
                warnings.extend(self._activate(remaining, force=True))
            except XaheenError as e:
                warnings.append(f"plugin {name} could not be activated: {e}")
            commands = [c for c in commands if self.commands.get(c) is None]

        for warning in warnings:
            logger.info(warning)
        return RemoveResult(record=removed, commands=commands, warnings=warnings)

    # Queries

    def list_installed(self, global_: bool = False) -> list[InstalledPluginRecord]:
        """Installed plugins of one root, sorted by name."""
        records = self.installer_for(global_).store.load()
        return [records[name] for name in sorted(records)]

    def find_installed(self, name: str) -> InstalledPluginRecord | None:
        """Installed record from the project root, else the global root."""
        return self.project.store.get(name) or self.global_.store.get(name)

    async def info(self, name: str) -> PluginDetails:
        """
        Combine installed state with registry metadata.

        Registry failures are reported as warnings when the plugin is
        installed locally.

        Raises:
            NotFoundError: If neither installed nor in the registry
        """
        validate_plugin_name(name)
        details = PluginDetails(name=name, record=self.find_installed(name))

        try:
            details.metadata = await self.registry.get_metadata(name)
            details.versions = await self.registry.list_versions(name)
        except NotFoundError:
            if details.record is None:
                raise
            details.warnings.append(f"{name} is not published in the registry")
        except (NetworkError, NetworkTimeoutError) as e:
            if details.record is None:
                raise
            details.warnings.append(f"registry unavailable: {e}")

        return details

    async def search(
        self,
        query: str | None = None,
        filters: SearchFilters | None = None,
        refresh: bool = False,
    ) -> list[PluginMetadata]:
        return await self.registry.search(query, filters, refresh=refresh)

    # Cache

    def clear_cache(self, name: str | None = None, search: bool = False) -> int:
        """
        Clear cached archives, or only cached search responses.

        Returns:
            Number of items removed
        """
        if search:
            return self.cache.clear_search()
        if name is not None:
            validate_plugin_name(name)
        return self.cache.clear(name)

    def cache_entries(self) -> list[CacheEntry]:
        return self.cache.entries()

    # Registry

    async def registry_stats(self) -> dict[str, Any]:
        return await self.registry.stats()

    async def registry_health(self) -> dict[str, Any]:
        return await self.registry.health()
