"""Repository interface and implementations for persisting the sync cache."""

import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import structlog
from pydantic import ValidationError

from todosync.models.task import SyncCache

log = structlog.stdlib.get_logger()


class CacheCorruptionError(Exception):
    """Raised when the persisted cache exists but cannot be read back."""

    pass


class CacheRepository(ABC):
    """Abstract storage for the sync cache.

    The cache is always loaded and saved as one unit, so implementations only
    need whole-record reads and writes.
    """

    @abstractmethod
    def load(self) -> SyncCache:
        """Load the persisted cache.

        Returns:
            The stored cache, or an empty one if nothing has been saved yet

        Raises:
            CacheCorruptionError: If stored data exists but is unreadable
        """
        pass

    @abstractmethod
    def save(self, cache: SyncCache) -> None:
        """Persist the whole cache.

        Raises:
            OSError: If the write fails
        """
        pass


class JsonFileCacheRepository(CacheRepository):
    """Stores the cache as a single JSON document on disk.

    Writes go to a temporary file in the same directory which then replaces
    the target, so a crash mid-write leaves the previous cache intact.
    """

    def __init__(self, path: str | Path):
        """
        Initialize the repository.

        Args:
            path: Location of the cache file; parent directories are created on save
        """
        self._path = Path(path)
        log.info("json_cache_repository_initialized", path=str(self._path))

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SyncCache:
        if not self._path.exists():
            log.info("cache_file_not_found", path=str(self._path))
            return SyncCache()

        try:
            raw = self._path.read_text(encoding="utf-8")
            if not raw.strip():
                raise CacheCorruptionError(f"Cache file is empty: {self._path}")
            return SyncCache.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError, UnicodeDecodeError) as e:
            raise CacheCorruptionError(f"Cache file is unreadable: {self._path}: {e}") from e
        except OSError as e:
            raise CacheCorruptionError(f"Failed to read cache file {self._path}: {e}") from e

    def save(self, cache: SyncCache) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = cache.model_dump_json(indent=2)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        log.debug("cache_saved", path=str(self._path), ref_count=len(cache.refs))


class InMemoryCacheRepository(CacheRepository):
    """Keeps the cache in memory; survives only as long as the object does."""

    def __init__(self, initial: SyncCache | None = None):
        self._stored: str | None = initial.model_dump_json() if initial is not None else None
        self.save_count = 0

    def load(self) -> SyncCache:
        if self._stored is None:
            return SyncCache()
        try:
            return SyncCache.model_validate_json(self._stored)
        except ValidationError as e:
            raise CacheCorruptionError(f"In-memory cache is unreadable: {e}") from e

    def save(self, cache: SyncCache) -> None:
        self._stored = cache.model_dump_json()
        self.save_count += 1
