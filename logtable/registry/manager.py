"""
Hot-reloadable schema registry backed by a watched directory.

The manager keeps three maps behind one reader/writer lock:

- the schema cache, keyed by "project:table"
- the file index, file path -> key of the schema that file last produced
- the owner map, key -> file path whose load last wrote the cache entry

Deleting a file evicts the cache entry only when that file is the current
owner of the key, so two files defining the same (project, table) resolve as
last-write-wins without a naming convention.

Backend calls (`driver.create_schema`) always happen outside the lock.
"""

from __future__ import annotations

import os
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from logtable.domain.document import load_schema_file
from logtable.domain.models import Schema, schema_key
from logtable.errors import LogTableError, NotFoundError
from logtable.storage.abstract import StorageDriver
from logtable.utils.logging import get_logger
from logtable.utils.rwlock import ReadWriteLock

log = get_logger(__name__)

PathLike = Union[str, bytes, "os.PathLike[str]"]


class ManagerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RUNNING = "running"
    STOPPED = "stopped"


def _normalize(path: PathLike) -> str:
    return os.path.realpath(os.fsdecode(path))


class _SchemaDirHandler(FileSystemEventHandler):
    """Translates watchdog events into manager loads and evictions."""

    def __init__(self, manager: "SchemaManager") -> None:
        super().__init__()
        self._manager = manager

    def _dispatch_safely(self, action: Callable[[str], object], path: PathLike) -> None:
        if not self._manager.is_schema_file(path):
            return
        try:
            action(_normalize(path))
        except Exception:
            # The observer thread must survive a bad file.
            log.exception("Schema file event failed", extra={"path": os.fsdecode(path)})

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch_safely(self._manager.reload_file, event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch_safely(self._manager.reload_file, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._dispatch_safely(self._manager.evict_file, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._dispatch_safely(self._manager.evict_file, event.src_path)
        self._dispatch_safely(self._manager.reload_file, event.dest_path)


class SchemaManager:
    """
    Owns the in-memory schema cache and keeps it in sync with a directory.

    Parameters
    ----------
    driver : StorageDriver
        Backend that materializes and persists every loaded schema.
    schemas_dir : str | Path
        Directory holding one YAML schema document per file.
    suffixes : iterable[str]
        File suffixes treated as schema files.
    observer_factory : callable
        Builds the watchdog observer; replaced in tests.

    Notes
    -----
    States move UNINITIALIZED -> RUNNING -> STOPPED. A stopped manager
    cannot be restarted; build a new one.
    """

    def __init__(
        self,
        driver: StorageDriver,
        schemas_dir: Union[str, Path],
        suffixes: Iterable[str] = (".yaml", ".yml"),
        observer_factory: Callable[[], Observer] = Observer,
    ) -> None:
        self.driver = driver
        self.schemas_dir = Path(schemas_dir)
        self.suffixes = tuple(suffix.lower() for suffix in suffixes)
        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None

        self._lock = ReadWriteLock()
        self._schemas: Dict[str, Schema] = {}
        self._file_keys: Dict[str, str] = {}
        self._key_owners: Dict[str, str] = {}

        self._state = ManagerState.UNINITIALIZED
        self._state_lock = threading.Lock()

    @property
    def state(self) -> ManagerState:
        return self._state

    def is_schema_file(self, path: PathLike) -> bool:
        return os.fsdecode(path).lower().endswith(self.suffixes)

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        """
        Load every schema file in the directory, then start watching it.

        Files that fail to parse, validate or persist are logged and skipped.
        """
        with self._state_lock:
            if self._state is not ManagerState.UNINITIALIZED:
                raise RuntimeError(f"schema manager cannot start from state {self._state.value}")

            self.schemas_dir.mkdir(parents=True, exist_ok=True)
            loaded = 0
            for path in sorted(self.schemas_dir.iterdir()):
                if path.is_file() and self.is_schema_file(path.name):
                    loaded += self._load_or_skip(path)

            observer = self._observer_factory()
            observer.schedule(_SchemaDirHandler(self), str(self.schemas_dir), recursive=False)
            observer.start()
            self._observer = observer
            self._state = ManagerState.RUNNING

        log.info(
            "Schema manager started",
            extra={"dir": str(self.schemas_dir), "loaded": loaded, "backend": self.driver.name},
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop watching and discard the cache. Persisted schemas are untouched."""
        with self._state_lock:
            if self._state is ManagerState.STOPPED:
                return
            if self._observer is not None:
                self._observer.stop()
                self._observer.join(timeout)
                self._observer = None
            with self._lock.write_lock():
                self._schemas.clear()
                self._file_keys.clear()
                self._key_owners.clear()
                # Set under the write lock so a late load or evict sees it.
                self._state = ManagerState.STOPPED
        log.info("Schema manager stopped", extra={"dir": str(self.schemas_dir)})

    def __enter__(self) -> "SchemaManager":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # -- loading ---------------------------------------------------------

    def _load_or_skip(self, path: PathLike) -> int:
        try:
            self.load_file(path)
        except LogTableError as exc:
            log.warning(
                "Skipping schema file",
                extra={"path": os.fsdecode(path), "error": str(exc), "error_type": type(exc).__name__},
            )
            return 0
        return 1

    def reload_file(self, path: PathLike) -> None:
        """Watch-event entry point: load, logging and skipping failures."""
        if not os.path.exists(path):
            # Created-then-removed before the event was handled.
            return
        self._load_or_skip(path)

    def load_file(self, path: PathLike) -> Schema:
        """
        Parse, validate and persist one schema file, then cache the result.

        Raises
        ------
        ParseError
            The file cannot be read or is not a schema document.
        SchemaValidationError, UnsupportedOperationError, BackendError
            Propagated from the driver; the cache is left unchanged.

        Once the manager is stopped the schema is still persisted but no
        longer cached.
        """
        file_path = _normalize(path)
        schema = load_schema_file(file_path)
        stored = self.driver.create_schema(schema)

        with self._lock.write_lock():
            if self._state is ManagerState.STOPPED:
                log.debug(
                    "Manager stopped, not caching",
                    extra={"path": file_path, "schema": stored.key},
                )
                return stored
            previous_key = self._file_keys.get(file_path)
            if previous_key is not None and previous_key != stored.key:
                self._release(file_path, previous_key)
            self._file_keys[file_path] = stored.key
            self._key_owners[stored.key] = file_path
            self._schemas[stored.key] = stored

        log.info(
            "Schema loaded",
            extra={"path": file_path, "schema": stored.key, "fields": len(stored.fields)},
        )
        return stored

    def evict_file(self, path: PathLike) -> Optional[str]:
        """
        Forget a file. Returns the evicted key, or None when nothing was evicted.

        The backend keeps the schema and its table.
        """
        file_path = _normalize(path)
        with self._lock.write_lock():
            if self._state is ManagerState.STOPPED:
                return None
            key = self._file_keys.pop(file_path, None)
            evicted = key if key is not None and self._release(file_path, key) else None
        if evicted:
            log.info("Schema evicted", extra={"path": file_path, "schema": evicted})
        else:
            log.debug("No schema owned by removed file", extra={"path": file_path})
        return evicted

    def _release(self, file_path: str, key: str) -> bool:
        # Caller holds the write lock.
        if self._key_owners.get(key) != file_path:
            return False
        del self._key_owners[key]
        self._schemas.pop(key, None)
        return True

    # -- lookups ---------------------------------------------------------

    def get_schema(self, project: str, table: str) -> Schema:
        key = schema_key(project, table)
        with self._lock.read_lock():
            schema = self._schemas.get(key)
        if schema is None:
            raise NotFoundError(f"schema not registered: {key}")
        return schema

    def list_schemas(self) -> List[Schema]:
        with self._lock.read_lock():
            return [self._schemas[key] for key in sorted(self._schemas)]

    def schema_for_file(self, path: PathLike) -> Optional[Schema]:
        file_path = _normalize(path)
        with self._lock.read_lock():
            key = self._file_keys.get(file_path)
            return self._schemas.get(key) if key is not None else None

    def tracked_files(self) -> Dict[str, str]:
        """Snapshot of the file index (path -> key)."""
        with self._lock.read_lock():
            return dict(self._file_keys)


__all__ = ["ManagerState", "SchemaManager"]
