"""Pydantic models for local tasks, remote tasks, and the sync cache."""

import hashlib
import json
from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Priority(str, Enum):
    """Task importance, mirroring the remote service's three levels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Subtask(BaseModel):
    """A checklist entry belonging to a task."""

    title: str = Field(default=..., description="Subtask text")
    completed: bool = Field(default=False, description="Whether the subtask is checked")


def normalize_text(value: str) -> str:
    """Collapse runs of whitespace so formatting edits do not change meaning."""
    return " ".join(value.split())


def semantic_hash(
    title: str,
    completed: bool,
    priority: Priority,
    due_date: date | None,
    subtasks: list[Subtask],
) -> str:
    """
    Compute the digest over the fields that carry user intent.

    Local and remote tasks are hashed with this same function so the results
    are directly comparable.

    Args:
        title: Task title
        completed: Completion state
        priority: Task priority
        due_date: Optional due date
        subtasks: Ordered subtasks

    Returns:
        SHA-256 hex digest
    """
    payload = {
        "title": normalize_text(title),
        "completed": bool(completed),
        "priority": Priority(priority).value,
        "due_date": due_date.isoformat() if due_date else None,
        "subtasks": [[normalize_text(s.title), bool(s.completed)] for s in subtasks],
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class TrackedTask(BaseModel):
    """A task discovered in the vault by its anchor token."""

    anchor_id: str = Field(default=..., min_length=1, description="Anchor suffix after the prefix")
    title: str = Field(default=..., min_length=1, description="Task title without markers")
    completed: bool = Field(default=False, description="Checkbox state")
    priority: Priority = Field(default=Priority.NORMAL, description="Task priority")
    due_date: date | None = Field(default=None, description="Optional due date")
    subtasks: list[Subtask] = Field(default_factory=list, description="Ordered subtasks")
    notes: str = Field(default="", description="Free text lines under the task")

    # Source position; never part of the hash
    file_path: str | None = Field(default=None, description="Vault-relative file path")
    line_start: int = Field(default=0, ge=0, description="Index of the task line")
    line_end: int = Field(default=0, ge=0, description="Index one past the last block line")
    indent: str = Field(default="", description="Leading whitespace of the task line")

    @property
    def semantic_hash(self) -> str:
        """Digest over title, completion, priority, due date and subtasks."""
        return semantic_hash(self.title, self.completed, self.priority, self.due_date, self.subtasks)


class RemoteTask(BaseModel):
    """A task as reported by the remote service."""

    list_id: str = Field(default=..., description="Remote list identifier")
    task_id: str = Field(default=..., description="Remote task identifier")
    title: str = Field(default="", description="Task title")
    completed: bool = Field(default=False, description="Completion state")
    priority: Priority = Field(default=Priority.NORMAL, description="Task importance")
    due_date: date | None = Field(default=None, description="Optional due date")
    subtasks: list[Subtask] = Field(default_factory=list, description="Checklist items")
    notes: str = Field(default="", description="Task body text")
    modified_at: datetime | None = Field(default=None, description="Last-modified marker")
    linked_resource_id: str | None = Field(
        default=None, description="Linked resource that points back at the vault"
    )
    linked_anchor_id: str | None = Field(
        default=None, description="Anchor id the linked resource refers to"
    )
    linked_web_url: str | None = Field(
        default=None, description="Address the linked resource opens, if any"
    )

    @property
    def semantic_hash(self) -> str:
        """Digest comparable with TrackedTask.semantic_hash."""
        return semantic_hash(self.title, self.completed, self.priority, self.due_date, self.subtasks)


class TodoList(BaseModel):
    """A remote task list."""

    list_id: str = Field(default=..., description="Remote list identifier")
    name: str = Field(default="", description="Display name")


class RemoteRef(BaseModel):
    """Cached identity of an anchor on the remote side."""

    list_id: str = Field(default=..., description="Remote list identifier")
    task_id: str = Field(default=..., description="Remote task identifier")
    linked_resource_id: str | None = Field(default=None, description="Linked resource id")
    hash: str = Field(default=..., description="Semantic hash at the last successful sync")
    remote_modified_at: datetime | None = Field(
        default=None, description="Remote marker observed at the last successful sync"
    )


class ListCursor(BaseModel):
    """Delta position for one remote list."""

    cursor: str | None = Field(default=None, description="Opaque delta cursor, None means full fetch")
    last_synced_at: datetime | None = Field(default=None, description="Last successful fetch")


class SyncCache(BaseModel):
    """Everything persisted between runs."""

    refs: dict[str, RemoteRef] = Field(default_factory=dict, description="RemoteRef by anchor id")
    cursors: dict[str, ListCursor] = Field(default_factory=dict, description="Cursor by list id")

    @field_validator("refs")
    @classmethod
    def validate_unique_remote_pairs(cls, v: dict[str, RemoteRef]) -> dict[str, RemoteRef]:
        """Reject caches where two anchors claim the same remote task."""
        seen: dict[tuple[str, str], str] = {}
        for anchor_id, ref in v.items():
            key = (ref.list_id, ref.task_id)
            if key in seen:
                raise ValueError(
                    f"anchors {seen[key]} and {anchor_id} both map to task {ref.task_id}"
                )
            seen[key] = anchor_id
        return v
