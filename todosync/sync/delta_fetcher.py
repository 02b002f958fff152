"""Paginated incremental fetch of remote task state."""

import structlog
from pydantic import BaseModel, Field

from todosync.models.task import RemoteTask
from todosync.remote.errors import InvalidCursorError, TransientNetworkError
from todosync.remote.interface import RemoteTodoApi
from todosync.utils.retry import async_exponential_backoff_retry

log = structlog.stdlib.get_logger()


class DeltaResult(BaseModel):
    """Coherent snapshot produced by walking every page of a delta query."""

    tasks: list[RemoteTask] = Field(default_factory=list, description="Current state of changed tasks")
    removed_task_ids: list[str] = Field(default_factory=list, description="Tasks deleted remotely")
    new_cursor: str | None = Field(default=None, description="Cursor for the next incremental fetch")
    full_fetch: bool = Field(default=False, description="True if this is a complete enumeration")


class DeltaFetcher:
    """Walks delta pages for a list and falls back to a full fetch when needed.

    Stateless between calls; the caller owns the cursor.
    """

    def __init__(
        self,
        remote: RemoteTodoApi,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        """
        Initialize the fetcher.

        Args:
            remote: Remote API to query
            max_retries: Retries per page on transient failures
            base_delay: Initial backoff in seconds
            max_delay: Backoff ceiling in seconds
        """
        self._remote = remote
        self._get_page = async_exponential_backoff_retry(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            exceptions=(TransientNetworkError,),
        )(remote.get_delta_page)

    async def fetch_delta(self, list_id: str, cursor: str | None) -> DeltaResult:
        """
        Fetch everything that changed in a list since ``cursor``.

        Args:
            list_id: Remote list identifier
            cursor: Cursor from the previous fetch, or None for a full enumeration

        Returns:
            DeltaResult merging all pages

        Raises:
            TransientNetworkError: If a page still fails after all retries
            InvalidCursorError: If the service rejects a full enumeration
        """
        if cursor is None:
            return await self._walk(list_id, None)

        try:
            return await self._walk(list_id, cursor)
        except InvalidCursorError as e:
            log.warning("delta_cursor_invalid_full_fetch", list_id=list_id, error=str(e))
            return await self._walk(list_id, None)

    async def _walk(self, list_id: str, cursor: str | None) -> DeltaResult:
        tasks: dict[str, RemoteTask] = {}
        removed: dict[str, None] = {}
        link = cursor
        page_count = 0

        while True:
            page = await self._get_page(list_id, link)
            page_count += 1

            for task in page.tasks:
                removed.pop(task.task_id, None)
                tasks[task.task_id] = task
            for task_id in page.removed_task_ids:
                tasks.pop(task_id, None)
                removed[task_id] = None

            if page.next_link:
                link = page.next_link
                continue

            result = DeltaResult(
                tasks=list(tasks.values()),
                removed_task_ids=list(removed),
                new_cursor=page.delta_link,
                full_fetch=cursor is None,
            )
            log.info(
                "delta_fetched",
                list_id=list_id,
                pages=page_count,
                tasks=len(result.tasks),
                removed=len(result.removed_task_ids),
                full_fetch=result.full_fetch,
            )
            return result
