"""
Plugin Manifest Store.

The manifest file is the single source of truth for installed plugins in one
plugins root. It is treated as a single-table key-value store:

- Reads never observe a partial write (temp file + fsync + os.replace)
- Mutations are read-modify-write under a process-local lock
- The file carries a schema version
"""

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from xaheen.errors import BusyError, PluginPermissionError, ValidationError
from xaheen.plugin.models import InstalledPluginRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """
    Write JSON atomically.

    - No intermediate state: temp file in the same directory, then rename
    - File and directory fsync where supported (failure only logs)
    - The temp file is removed on failure and the original is left in place

    Args:
        path: Destination file
        data: JSON-serializable data

    Raises:
        PluginPermissionError: If the directory is not writable
    """
    dir_path = path.parent
    temp_path = None
    try:
        dir_path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=dir_path,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as f:
            temp_path = Path(f.name)
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError as e:
                logger.warning("fsync failed for %s: %s", path, e)

        os.replace(temp_path, path)
        temp_path = None

        try:
            dir_fd = os.open(dir_path, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError as e:
            logger.debug("directory fsync failed for %s: %s", dir_path, e)
        finally:
            os.close(dir_fd)

    except PermissionError as e:
        raise PluginPermissionError(f"permission denied writing {path}") from e
    finally:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)


@contextmanager
def file_lock(lock_path: Path, timeout: float, what: str) -> Iterator[None]:
    """
    Hold a cross-process lock file.

    Args:
        lock_path: Lock file path
        timeout: Seconds to wait before giving up
        what: Human-readable name of the locked resource

    Raises:
        BusyError: If the lock is not acquired within timeout
        PluginPermissionError: If the lock file cannot be created
    """
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        raise PluginPermissionError(f"permission denied creating {lock_path.parent}") from e

    lock = FileLock(lock_path, timeout=timeout)
    try:
        lock.acquire()
    except Timeout as e:
        raise BusyError(
            f"{what} is locked by another xaheen process ({lock_path}); "
            f"gave up after {timeout}s"
        ) from e
    except PermissionError as e:
        raise PluginPermissionError(f"permission denied locking {lock_path}") from e

    try:
        yield
    finally:
        lock.release()


class ManifestStore:
    """
    Read and mutate one PluginManifestFile.

    All writes go through update(), which serializes read-modify-write cycles
    within the process. Cross-process exclusion is the caller's lock file.
    """

    def __init__(self, path: Path):
        """
        Initialize ManifestStore.

        Args:
            path: Manifest file path (``<pluginsDir>/<manifest_file>``)
        """
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict[str, InstalledPluginRecord]:
        if not self.path.exists():
            return {}

        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"Corrupted plugin manifest {self.path}: {e}") from e
        except PermissionError as e:
            raise PluginPermissionError(f"permission denied reading {self.path}") from e

        if not isinstance(data, dict):
            raise ValidationError(f"Corrupted plugin manifest {self.path}: not an object")

        schema_version = data.get("schema_version", SCHEMA_VERSION)
        if not isinstance(schema_version, int) or schema_version > SCHEMA_VERSION:
            raise ValidationError(
                f"Plugin manifest {self.path} has unsupported schema version "
                f"{schema_version!r} (supported: {SCHEMA_VERSION})"
            )

        plugins = data.get("plugins", {})
        if not isinstance(plugins, dict):
            raise ValidationError(f"Corrupted plugin manifest {self.path}: 'plugins' is not an object")

        records = {}
        for name, entry in plugins.items():
            record = InstalledPluginRecord.from_dict(entry)
            if record.name != name:
                raise ValidationError(
                    f"Corrupted plugin manifest {self.path}: key {name!r} holds {record.name!r}"
                )
            records[name] = record
        return records

    def _write(self, records: dict[str, InstalledPluginRecord]) -> None:
        atomic_write_json(
            self.path,
            {
                "schema_version": SCHEMA_VERSION,
                "plugins": {name: records[name].to_dict() for name in sorted(records)},
            },
        )

    def load(self) -> dict[str, InstalledPluginRecord]:
        """
        Load all records.

        Returns:
            Mapping of plugin name -> record

        Raises:
            ValidationError: If the manifest is corrupted
        """
        with self._lock:
            return self._read()

    def get(self, name: str) -> InstalledPluginRecord | None:
        """Get one record, or None if the plugin is not installed."""
        return self.load().get(name)

    def update(
        self, mutator: Callable[[dict[str, InstalledPluginRecord]], None]
    ) -> dict[str, InstalledPluginRecord]:
        """
        Apply a mutation as one read-modify-write cycle.

        Args:
            mutator: Function mutating the records mapping in place

        Returns:
            The records as written
        """
        with self._lock:
            records = self._read()
            mutator(records)
            self._write(records)
            return records

    def upsert(self, record: InstalledPluginRecord) -> None:
        """Insert or replace a record."""

        def _put(records: dict[str, InstalledPluginRecord]) -> None:
            records[record.name] = record

        self.update(_put)
        logger.debug("manifest %s: recorded %s@%s", self.path, record.name, record.version)

    def remove(self, name: str) -> InstalledPluginRecord | None:
        """
        Remove a record.

        Returns:
            The removed record, or None if absent (manifest left untouched)
        """
        with self._lock:
            records = self._read()
            if name not in records:
                return None
            removed = records.pop(name)
            self._write(records)

        logger.debug("manifest %s: removed %s", self.path, name)
        return removed
