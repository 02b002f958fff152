"""Reconciliation decisions between local, remote and cached task state."""

import structlog

from todosync.models.task import RemoteRef, RemoteTask, TrackedTask
from todosync.sync.models import SyncAction

log = structlog.stdlib.get_logger()


class ReconciliationEngine:
    """Pure decision function over one anchor's three views.

    The engine performs no I/O and holds no state; callers apply the returned
    action. Conflicts are resolved remote-wins: ``CONFLICT`` tells the caller
    to pull.
    """

    def decide(
        self,
        local: TrackedTask | None,
        remote: RemoteTask | None,
        cached: RemoteRef | None,
    ) -> SyncAction:
        """
        Decide what to do for one task.

        Args:
            local: Task found in the vault, if any
            remote: Task reported by the remote fetch, if any
            cached: Ref from the identity cache, if any

        Returns:
            The action to apply
        """
        if local is None:
            if cached is not None:
                # Anchor gone locally; forget it without touching the remote
                return SyncAction.DROP_REF
            if remote is None:
                return SyncAction.NO_OP
            if remote.linked_anchor_id:
                # Already linked to an anchor that is not in this vault scan
                return SyncAction.NO_OP
            return SyncAction.PULL_REMOTE

        if cached is None:
            return SyncAction.PUSH_LOCAL

        local_changed = local.semantic_hash != cached.hash

        if remote is None:
            return SyncAction.PUSH_LOCAL if local_changed else SyncAction.NO_OP

        remote_changed = self.remote_changed(remote, cached)

        if local_changed and remote_changed:
            if local.semantic_hash == remote.semantic_hash:
                return SyncAction.NO_OP
            log.warning(
                "sync_conflict_remote_wins",
                anchor_id=local.anchor_id,
                list_id=remote.list_id,
                task_id=remote.task_id,
            )
            return SyncAction.CONFLICT
        if local_changed:
            return SyncAction.PUSH_LOCAL
        if remote_changed:
            return SyncAction.PULL_REMOTE
        return SyncAction.NO_OP

    @staticmethod
    def remote_changed(remote: RemoteTask, cached: RemoteRef) -> bool:
        """
        Whether the remote task moved away from the cached state.

        The content must differ from the cached hash, and when both markers
        are known the remote marker must be newer than the cached one.
        """
        if remote.semantic_hash == cached.hash:
            return False
        if remote.modified_at is None or cached.remote_modified_at is None:
            return True
        return remote.modified_at > cached.remote_modified_at
