"""
Filesystem Installer.

Commits plugin files and manifest records for one plugins root. A commit is
all-or-nothing: until the manifest write succeeds the previous plugin
directory can be restored and the manifest file is untouched.

Layout of a plugins root::

    <root>/installed.json          manifest
    <root>/.lock                   cross-process lock
    <root>/<name>/                 installed plugin (manifest.json, deps/)
    <root>/.staging-<name>-<hex>/  extraction in progress
    <root>/.trash-<name>-<hex>/    previous version during replacement
"""

import copy
import logging
import os
import secrets
import shutil
import tarfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from xaheen.errors import (
    NotFoundError,
    PackageCorruptedError,
    PluginPermissionError,
    ValidationError,
)
from xaheen.plugin.manifest import MANIFEST_NAME, PackageManifest, parse_manifest
from xaheen.plugin.models import InstalledPluginRecord
from xaheen.plugin.store import ManifestStore, file_lock

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"
TRASH_PREFIX = ".trash-"


@dataclass
class StagedPlugin:
    """
    An extracted, validated plugin awaiting commit.

    Attributes:
        path: Staging directory
        manifest: Parsed package manifest
    """

    path: Path
    manifest: PackageManifest


def _member_parts(member: tarfile.TarInfo) -> tuple[str, ...]:
    if member.name.startswith("/") or PurePosixPath(member.name).is_absolute():
        raise PackageCorruptedError(f"Archive member has an absolute path: {member.name}")
    parts = PurePosixPath(member.name).parts
    if ".." in parts:
        raise PackageCorruptedError(f"Archive member escapes the package: {member.name}")
    return parts


class FilesystemInstaller:
    """
    Stage, commit and remove plugins under one plugins root.
    """

    def __init__(self, root: Path, manifest_file: str = "installed.json", lock_timeout: float = 10.0):
        """
        Initialize FilesystemInstaller.

        Args:
            root: Plugins root directory
            manifest_file: Manifest file name inside root
            lock_timeout: Seconds to wait for the root lock
        """
        self.root = root
        self.lock_timeout = lock_timeout
        self.store = ManifestStore(root / manifest_file)

    def plugin_dir(self, name: str) -> Path:
        return self.root / name

    @contextmanager
    def lock(self) -> Iterator[None]:
        """
        Hold the cross-process lock for this root.

        Raises:
            BusyError: If another process holds it past lock_timeout
        """
        with file_lock(self.root / ".lock", self.lock_timeout, f"plugins directory {self.root}"):
            yield

    def sweep_orphans(self) -> list[Path]:
        """
        Remove staging and trash directories left by interrupted runs.

        Call with the root lock held.

        Returns:
            Removed directories
        """
        if not self.root.exists():
            return []
        swept = []
        for path in self.root.iterdir():
            if path.is_dir() and path.name.startswith((STAGING_PREFIX, TRASH_PREFIX)):
                shutil.rmtree(path, ignore_errors=True)
                swept.append(path)
        if swept:
            logger.info("removed %d orphaned director(ies) in %s", len(swept), self.root)
        return swept

    # Install

    def stage(
        self,
        archive: Path,
        label: str,
        expected_name: str | None = None,
        expected_version: str | None = None,
    ) -> StagedPlugin:
        """
        Extract an archive into a fresh staging directory and validate it.

        Args:
            archive: Plugin archive (.tgz)
            label: Name used for the staging directory
            expected_name: Name the package manifest must declare
            expected_version: Version the package manifest must declare

        Returns:
            StagedPlugin

        Raises:
            PackageCorruptedError: If the archive is unreadable, unsafe or invalid
            PluginPermissionError: If the root is not writable
        """
        staging = self.root / f"{STAGING_PREFIX}{label}-{secrets.token_hex(4)}"
        try:
            staging.mkdir(parents=True)
        except PermissionError as e:
            raise PluginPermissionError(f"permission denied writing {self.root}") from e

        try:
            self._extract(archive, staging)
            manifest = self._validate_staged(staging, archive, expected_name, expected_version)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.debug("staged %s@%s in %s", manifest.name, manifest.version, staging)
        return StagedPlugin(path=staging, manifest=manifest)

    def _extract(self, archive: Path, staging: Path) -> None:
        try:
            with tarfile.open(archive, "r:*") as tar:
                members = tar.getmembers()
                parts = [_member_parts(m) for m in members]
                parts_by_member = [(m, p) for m, p in zip(members, parts) if p]
                if not parts_by_member:
                    raise PackageCorruptedError(f"Archive {archive.name} is empty")

                # Strip a single wrapping directory such as "package/"
                tops = {p[0] for _, p in parts_by_member}
                strip = len(tops) == 1 and not any(
                    len(p) == 1 and not m.isdir() for m, p in parts_by_member
                )

                for member, member_parts in parts_by_member:
                    if strip:
                        member_parts = member_parts[1:]
                        if not member_parts:
                            continue
                    target = copy.copy(member)
                    target.name = "/".join(member_parts)
                    tar.extract(target, staging, filter="data")
        except PermissionError as e:
            raise PluginPermissionError(f"permission denied extracting into {staging}") from e
        except (tarfile.TarError, OSError, EOFError) as e:
            raise PackageCorruptedError(f"Failed to extract {archive.name}: {e}") from e

    def _validate_staged(
        self,
        staging: Path,
        archive: Path,
        expected_name: str | None,
        expected_version: str | None,
    ) -> PackageManifest:
        try:
            manifest = parse_manifest(staging / MANIFEST_NAME)
        except ValidationError as e:
            raise PackageCorruptedError(f"Invalid plugin package {archive.name}: {e}") from e

        if expected_name is not None and manifest.name != expected_name:
            raise PackageCorruptedError(
                f"Archive {archive.name} contains {manifest.name}, expected {expected_name}"
            )
        if expected_version is not None and manifest.version != expected_version:
            raise PackageCorruptedError(
                f"Archive {archive.name} contains {manifest.name}@{manifest.version}, "
                f"expected version {expected_version}"
            )
        if not (staging / manifest.main).is_file():
            raise PackageCorruptedError(
                f"Entry point {manifest.main} missing from {archive.name}"
            )
        return manifest

    def discard(self, staged: StagedPlugin) -> None:
        """Throw away a staged plugin."""
        shutil.rmtree(staged.path, ignore_errors=True)

    def commit(self, staged: StagedPlugin, record: InstalledPluginRecord) -> None:
        """
        Move a staged plugin into place and record it in the manifest.

        On failure the previous plugin directory is restored, the manifest is
        unchanged and the staged files are removed.

        Args:
            staged: Output of stage()
            record: Manifest record to write

        Raises:
            PluginPermissionError: If the root is not writable
        """
        target = self.plugin_dir(record.name)
        trash: Path | None = None
        moved_in = False

        try:
            if target.exists():
                trash = self.root / f"{TRASH_PREFIX}{record.name}-{secrets.token_hex(4)}"
                os.replace(target, trash)
            os.replace(staged.path, target)
            moved_in = True
            self.store.upsert(record)
        except BaseException as e:
            if moved_in:
                shutil.rmtree(target, ignore_errors=True)
            else:
                shutil.rmtree(staged.path, ignore_errors=True)
            if trash is not None:
                os.replace(trash, target)
            if isinstance(e, PermissionError):
                raise PluginPermissionError(f"permission denied writing {self.root}") from e
            raise

        if trash is not None:
            shutil.rmtree(trash, ignore_errors=True)
        logger.info("installed %s@%s into %s", record.name, record.version, target)

    # Uninstall

    def uninstall(self, name: str) -> tuple[InstalledPluginRecord, list[str]]:
        """
        Remove a plugin's manifest record, then its directory.

        Args:
            name: Plugin name

        Returns:
            (removed record, warnings)

        Raises:
            NotFoundError: If the plugin is not installed in this root
        """
        record = self.store.remove(name)
        if record is None:
            raise NotFoundError(f"Plugin {name} is not installed in {self.root}")

        warnings = []
        path = record.install_path
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            logger.debug("plugin directory %s already gone", path)
        except OSError as e:
            warnings.append(f"{name} was removed but residual files remain at {path}: {e}")
            logger.info(warnings[-1])

        logger.info("uninstalled %s@%s from %s", record.name, record.version, self.root)
        return record, warnings
