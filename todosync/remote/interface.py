"""Capability interface for the remote task service."""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field

from todosync.models.task import RemoteTask, TodoList, TrackedTask


class DeltaPage(BaseModel):
    """One page of a delta query."""

    tasks: list[RemoteTask] = Field(default_factory=list, description="Changed or current tasks")
    removed_task_ids: list[str] = Field(
        default_factory=list, description="Tasks deleted since the cursor was issued"
    )
    next_link: str | None = Field(default=None, description="Link to the next page, if any")
    delta_link: str | None = Field(
        default=None, description="Cursor for the next incremental query, on the last page"
    )


class RemoteTodoApi(ABC):
    """Abstract interface for the remote To Do service.

    The sync engine only talks to this interface, so it can run against the
    real Graph client or an in-memory fake. Implementations raise the errors
    in :mod:`todosync.remote.errors` so callers can tell retriable failures
    from fatal ones.
    """

    @abstractmethod
    async def list_lists(self) -> list[TodoList]:
        """Return every task list visible to the account."""

    @abstractmethod
    async def list_tasks(self, list_id: str, filter_text: Optional[str] = None) -> list[RemoteTask]:
        """Return the tasks in a list, optionally filtered by a service-side query."""

    @abstractmethod
    async def get_task(self, list_id: str, task_id: str) -> RemoteTask | None:
        """Return one task with its checklist and linked resources, or None if it is gone."""

    @abstractmethod
    async def create_task(self, list_id: str, task: TrackedTask) -> RemoteTask:
        """Create a task from a local task and return the stored result."""

    @abstractmethod
    async def update_task(self, list_id: str, task_id: str, task: TrackedTask) -> RemoteTask:
        """Overwrite a remote task's fields from a local task and return the stored result."""

    @abstractmethod
    async def create_linked_resource(
        self, list_id: str, task_id: str, anchor_id: str, web_url: str | None
    ) -> str:
        """Attach a linked resource pointing at a vault anchor; return its id."""

    @abstractmethod
    async def update_linked_resource(
        self,
        list_id: str,
        task_id: str,
        linked_resource_id: str,
        anchor_id: str,
        web_url: str | None,
    ) -> None:
        """Repoint an existing linked resource at a vault anchor."""

    @abstractmethod
    async def get_delta_page(self, list_id: str, link: str | None) -> DeltaPage:
        """Fetch one page of a delta query.

        Args:
            list_id: List being queried
            link: None to start a full enumeration, otherwise a delta cursor or
                a ``next_link`` from a previous page

        Raises:
            InvalidCursorError: If ``link`` is a cursor the service no longer accepts
        """
