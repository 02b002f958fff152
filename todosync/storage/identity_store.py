"""Persisted mapping of local anchors to remote task identities."""

from datetime import datetime
from typing import Iterable

import structlog

from todosync.models.task import ListCursor, RemoteRef, SyncCache
from todosync.storage.cache_repository import CacheCorruptionError, CacheRepository

log = structlog.stdlib.get_logger()


class IdentityStore:
    """Anchor to RemoteRef mapping plus per-list delta cursors.

    The store is the single writer of the sync cache. Every mutation is
    persisted immediately; a failed write is logged, the store is marked dirty,
    and the write is retried on the next mutation or ``flush()``.
    """

    def __init__(self, repository: CacheRepository):
        """
        Initialize the store and load persisted state.

        Args:
            repository: Backend that loads and saves the cache
        """
        self._repository = repository
        self._dirty = False
        self.recovered_from_corruption = False

        try:
            self._cache = repository.load()
        except CacheCorruptionError as e:
            log.warning("cache_corrupted_starting_empty", error=str(e))
            self._cache = SyncCache()
            self.recovered_from_corruption = True

        log.info(
            "identity_store_loaded",
            ref_count=len(self._cache.refs),
            cursor_count=len(self._cache.cursors),
            recovered=self.recovered_from_corruption,
        )

    @property
    def dirty(self) -> bool:
        """True while a persisted write is still outstanding."""
        return self._dirty

    def get(self, anchor_id: str) -> RemoteRef | None:
        return self._cache.refs.get(anchor_id)

    def put(self, anchor_id: str, ref: RemoteRef) -> None:
        """
        Insert or replace the ref for an anchor and persist.

        A remote task can belong to only one anchor; any other anchor holding
        the same (list, task) pair is evicted.

        Args:
            anchor_id: Anchor suffix
            ref: Remote identity and last-synced hash
        """
        holder = self.find_by_remote(ref.list_id, ref.task_id)
        if holder is not None and holder != anchor_id:
            log.warning(
                "remote_ref_reassigned",
                list_id=ref.list_id,
                task_id=ref.task_id,
                previous_anchor_id=holder,
                anchor_id=anchor_id,
            )
            del self._cache.refs[holder]

        self._cache.refs[anchor_id] = ref.model_copy()
        self._persist()

    def remove(self, anchor_id: str) -> bool:
        """
        Drop a single entry.

        Returns:
            True if an entry was removed
        """
        if anchor_id not in self._cache.refs:
            return False
        del self._cache.refs[anchor_id]
        self._persist()
        return True

    def remove_stale(self, live_anchor_ids: Iterable[str]) -> list[str]:
        """
        Delete entries whose anchor no longer exists locally.

        Only the cache is touched; remote tasks are left alone.

        Args:
            live_anchor_ids: Anchors found by the latest vault scan

        Returns:
            Anchor ids that were removed
        """
        live = set(live_anchor_ids)
        stale = [anchor_id for anchor_id in self._cache.refs if anchor_id not in live]
        for anchor_id in stale:
            del self._cache.refs[anchor_id]

        if stale:
            log.info("stale_refs_removed", count=len(stale), anchor_ids=stale)
            self._persist()
        return stale

    def reset_all(self) -> None:
        """Forget every ref and cursor, forcing a full resync of every list."""
        ref_count = len(self._cache.refs)
        self._cache = SyncCache()
        self._persist()
        log.info("identity_store_reset", removed_refs=ref_count)

    def find_by_remote(self, list_id: str, task_id: str) -> str | None:
        """Return the anchor holding the given remote task, if any."""
        for anchor_id, ref in self._cache.refs.items():
            if ref.list_id == list_id and ref.task_id == task_id:
                return anchor_id
        return None

    def refs_for_list(self, list_id: str) -> dict[str, RemoteRef]:
        return {a: r for a, r in self._cache.refs.items() if r.list_id == list_id}

    def anchor_ids(self) -> list[str]:
        return list(self._cache.refs)

    def get_cursor(self, list_id: str) -> ListCursor | None:
        return self._cache.cursors.get(list_id)

    def set_cursor(self, list_id: str, cursor: str | None, synced_at: datetime) -> bool:
        """
        Advance the delta cursor for a list.

        Cursors only move forward: an update older than the stored one is
        refused.

        Args:
            list_id: Remote list identifier
            cursor: New opaque cursor
            synced_at: Time of the fetch that produced the cursor

        Returns:
            True if the cursor was stored
        """
        current = self._cache.cursors.get(list_id)
        if current is not None and current.last_synced_at is not None:
            if synced_at < current.last_synced_at:
                log.warning(
                    "cursor_update_refused",
                    list_id=list_id,
                    stored_at=current.last_synced_at.isoformat(),
                    offered_at=synced_at.isoformat(),
                )
                return False

        self._cache.cursors[list_id] = ListCursor(cursor=cursor, last_synced_at=synced_at)
        self._persist()
        return True

    def clear_cursor(self, list_id: str) -> None:
        """Rewind a list to a full fetch on its next sync."""
        if self._cache.cursors.pop(list_id, None) is not None:
            log.info("cursor_cleared", list_id=list_id)
            self._persist()

    def snapshot(self) -> SyncCache:
        """Deep copy of the current in-memory cache."""
        return self._cache.model_copy(deep=True)

    def flush(self) -> bool:
        """
        Retry an outstanding write.

        Returns:
            True if nothing is left unsaved
        """
        if self._dirty:
            self._persist()
        return not self._dirty

    def _persist(self) -> None:
        try:
            self._repository.save(self._cache)
        except OSError as e:
            self._dirty = True
            log.error("cache_persist_failed", error=str(e), ref_count=len(self._cache.refs))
            return

        if self._dirty:
            log.info("cache_persist_recovered")
        self._dirty = False
