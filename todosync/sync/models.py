"""Data models for synchronization runs."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SyncAction(str, Enum):
    """Per-anchor reconciliation outcome."""

    PUSH_LOCAL = "push_local"
    PULL_REMOTE = "pull_remote"
    NO_OP = "no_op"
    CONFLICT = "conflict"
    DROP_REF = "drop_ref"


class SyncState(str, Enum):
    """Lifecycle of a single sync run."""

    IDLE = "idle"
    SCANNING = "scanning"
    RECONCILING = "reconciling"
    APPLYING = "applying"
    PERSISTING = "persisting"
    ABORTED = "aborted"


class ListSyncReport(BaseModel):
    """Report of one list's synchronization."""

    list_id: str = Field(..., description="Remote list that was synced")
    pushed: int = Field(default=0, ge=0, description="Local tasks written to the remote")
    pulled: int = Field(default=0, ge=0, description="Remote tasks written to the vault")
    conflicts: int = Field(default=0, ge=0, description="Conflicts resolved remote-wins")
    skipped: int = Field(default=0, ge=0, description="Items deliberately left alone")
    removed: int = Field(default=0, ge=0, description="Cache entries dropped")
    errored: int = Field(default=0, ge=0, description="Items that failed")
    full_fetch: bool = Field(default=False, description="Whether a full snapshot was fetched")
    cursor_advanced: bool = Field(default=False, description="Whether the delta cursor moved")
    run_skipped: bool = Field(
        default=False, description="List was not synced because another run was in flight"
    )
    written_paths: list[str] = Field(default_factory=list, description="Vault files written")
    errors: list[str] = Field(default_factory=list, description="Item error messages")

    @property
    def total_changes(self) -> int:
        """Get total number of changes applied."""
        return self.pushed + self.pulled + self.removed

    @property
    def success(self) -> bool:
        """Check if the list synced without item errors."""
        return self.errored == 0


class VaultSyncSummary(BaseModel):
    """Aggregated result of a full-vault sync."""

    reason: str = Field(default="manual", description="What triggered the run")
    lists: list[ListSyncReport] = Field(default_factory=list, description="Per-list reports")
    cleaned: int = Field(default=0, ge=0, description="Stale cache entries removed")
    skipped: bool = Field(default=False, description="Run did not execute (another was in flight)")
    aborted: bool = Field(default=False, description="Run stopped on a batch-level failure")
    reauth_required: bool = Field(default=False, description="Abort was an authorization failure")
    start_time: datetime | None = Field(default=None, description="Run start timestamp")
    end_time: datetime | None = Field(default=None, description="Run end timestamp")
    errors: list[str] = Field(default_factory=list, description="Run-level error messages")

    def _total(self, field: str) -> int:
        return sum(getattr(report, field) for report in self.lists)

    @property
    def pushed(self) -> int:
        return self._total("pushed")

    @property
    def pulled(self) -> int:
        return self._total("pulled")

    @property
    def conflicts(self) -> int:
        return self._total("conflicts")

    @property
    def skipped_items(self) -> int:
        return self._total("skipped")

    @property
    def removed(self) -> int:
        return self._total("removed") + self.cleaned

    @property
    def errored(self) -> int:
        return self._total("errored")

    @property
    def written_paths(self) -> list[str]:
        """Distinct vault files written during the run, in first-write order."""
        seen: dict[str, None] = {}
        for report in self.lists:
            for path in report.written_paths:
                seen.setdefault(path, None)
        return list(seen)

    @property
    def duration_seconds(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the run executed completely without errors."""
        return not self.skipped and not self.aborted and self.errored == 0 and not self.errors

    def notice(self) -> str:
        """One-line user-facing summary of the run."""
        if self.skipped:
            return "Sync skipped: another sync is already running."
        if self.aborted:
            if self.reauth_required:
                return "Sync stopped: Microsoft To Do rejected the credentials. Sign in again."
            return "Sync stopped: the remote service could not be reached. Will retry next time."

        parts = [f"{self.pushed} pushed", f"{self.pulled} pulled"]
        if self.conflicts:
            parts.append(f"{self.conflicts} conflicts (remote kept)")
        if self.removed:
            parts.append(f"{self.removed} removed")
        if self.errored:
            parts.append(f"{self.errored} failed")
        return "Sync finished: " + ", ".join(parts) + "."


class SyncAbortedError(Exception):
    """A sync run stopped on a batch-level failure.

    Carries the partial summary of what completed before the abort.
    """

    def __init__(
        self,
        summary: VaultSyncSummary,
        cause: Exception,
        reauth_required: bool = False,
    ):
        super().__init__(f"Sync aborted: {cause}")
        self.summary = summary
        self.cause = cause
        self.reauth_required = reauth_required
