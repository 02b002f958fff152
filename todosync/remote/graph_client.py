"""Microsoft Graph To Do client implementing the remote capability interface."""

import asyncio
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

import requests
import structlog
from requests.exceptions import ConnectionError, RequestException, Timeout

from todosync.models.task import Priority, RemoteTask, Subtask, TodoList, TrackedTask
from todosync.remote.errors import (
    InvalidCursorError,
    RateLimitedError,
    RemoteValidationError,
    TransientNetworkError,
    UnauthorizedError,
)
from todosync.remote.interface import DeltaPage, RemoteTodoApi
from todosync.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()

# Error codes Graph uses when a delta token can no longer be resumed
INVALID_CURSOR_CODES = frozenset({"syncStateNotFound", "syncStateInvalid", "resyncRequired"})

GRAPH_DATETIME_RE = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$"
)

DETAIL_EXPAND = "checklistItems,linkedResources"


def parse_graph_datetime(value: str | None) -> datetime | None:
    """
    Parse a Graph timestamp such as ``2024-05-01T10:00:00.1234567Z``.

    Graph emits seven fractional digits, which ``datetime.fromisoformat``
    does not accept on every supported Python version, so the fraction is
    truncated to microseconds. Naive values are taken as UTC.
    """
    if not value:
        return None
    match = GRAPH_DATETIME_RE.match(value.strip())
    if not match:
        log.warning("unparseable_remote_timestamp", value=value)
        return None
    frac = (match.group("frac") or "0")[:6].ljust(6, "0")
    tz = match.group("tz")
    if tz and tz != "Z":
        return datetime.fromisoformat(f"{match.group('base')}.{frac}{tz}")
    return datetime.fromisoformat(f"{match.group('base')}.{frac}").replace(tzinfo=timezone.utc)


def _is_valid_web_url(url: str | None) -> bool:
    """Graph rejects local addresses in linked resources; obsidian:// links are fine."""
    if not url or not url.strip():
        return False
    if "localhost" in url or "127.0.0.1" in url or re.search(r"192\.168\.\d+\.\d+", url):
        return False
    return "://" in url


class GraphTodoClient(RemoteTodoApi):
    """Microsoft To Do over Microsoft Graph, using a requests session.

    Blocking HTTP calls run in a worker thread so the event loop only suspends
    at these remote-call boundaries. Authentication is supplied from outside:
    either a bearer token or a callable returning a current one.
    """

    def __init__(
        self,
        token: str | Callable[[], str],
        base_url: str = "https://graph.microsoft.com/v1.0",
        application_name: str = "Obsidian Microsoft To Do Sync",
        anchor_prefix: str = "MSTD",
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 60.0,
    ):
        """
        Initialize the Graph client.

        Args:
            token: Bearer token, or a callable that returns one per request
            base_url: Graph API root
            application_name: Name recorded on linked resources
            anchor_prefix: Prefix of vault anchors, stored in linked resources
            timeout_seconds: Per-request timeout
            session: Optional pre-configured requests session
            max_retries: Retries for transient failures of non-delta requests
            retry_base_delay: Initial backoff delay in seconds
            retry_max_delay: Backoff ceiling in seconds
        """
        self._token = token
        self._base_url = str(base_url).rstrip("/")
        self._application_name = application_name
        self._anchor_prefix = anchor_prefix
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._request = exponential_backoff_retry(
            max_retries=max_retries,
            base_delay=retry_base_delay,
            max_delay=retry_max_delay,
            exceptions=(TransientNetworkError,),
        )(self._send)
        log.info("graph_client_initialized", base_url=self._base_url, max_retries=max_retries)

    # Capability interface

    async def list_lists(self) -> list[TodoList]:
        return await asyncio.to_thread(self._list_lists)

    async def list_tasks(self, list_id: str, filter_text: Optional[str] = None) -> list[RemoteTask]:
        return await asyncio.to_thread(self._list_tasks, list_id, filter_text)

    async def get_task(self, list_id: str, task_id: str) -> RemoteTask | None:
        return await asyncio.to_thread(self._get_task, list_id, task_id)

    async def create_task(self, list_id: str, task: TrackedTask) -> RemoteTask:
        return await asyncio.to_thread(self._create_task, list_id, task)

    async def update_task(self, list_id: str, task_id: str, task: TrackedTask) -> RemoteTask:
        return await asyncio.to_thread(self._update_task, list_id, task_id, task)

    async def create_linked_resource(
        self, list_id: str, task_id: str, anchor_id: str, web_url: str | None
    ) -> str:
        return await asyncio.to_thread(
            self._create_linked_resource, list_id, task_id, anchor_id, web_url
        )

    async def update_linked_resource(
        self,
        list_id: str,
        task_id: str,
        linked_resource_id: str,
        anchor_id: str,
        web_url: str | None,
    ) -> None:
        await asyncio.to_thread(
            self._update_linked_resource, list_id, task_id, linked_resource_id, anchor_id, web_url
        )

    async def get_delta_page(self, list_id: str, link: str | None) -> DeltaPage:
        return await asyncio.to_thread(self._get_delta_page, list_id, link)

    # HTTP plumbing

    def _headers(self) -> dict[str, str]:
        token = self._token() if callable(self._token) else self._token
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _send(
        self,
        method: str,
        url: str,
        params: Optional[dict[str, str]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Issue one request and translate failures into the remote error taxonomy."""
        if not url.startswith("http"):
            url = f"{self._base_url}{url}"

        try:
            response = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(),
                timeout=self._timeout,
            )
        except (ConnectionError, Timeout) as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e
        except RequestException as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

        self._raise_for_status(response, method, url)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _raise_for_status(self, response: requests.Response, method: str, url: str) -> None:
        status = response.status_code
        if status < 400:
            return

        code = ""
        message = response.reason or ""
        try:
            error = response.json().get("error", {})
            code = error.get("code", "") or ""
            message = error.get("message", message) or message
        except (ValueError, AttributeError):
            pass

        detail = f"{method} {url} -> {status} {code}: {message}".strip()

        if status in (401, 403):
            raise UnauthorizedError(detail, status_code=status)
        if status == 410 or code in INVALID_CURSOR_CODES:
            raise InvalidCursorError(detail, status_code=status)
        if status == 429 or (status == 503 and "Retry-After" in response.headers):
            raise RateLimitedError(
                detail,
                retry_after=self._parse_retry_after(response.headers.get("Retry-After")),
                status_code=status,
            )
        if status >= 500 or status == 408:
            raise TransientNetworkError(detail, status_code=status)
        raise RemoteValidationError(detail, status_code=status)

    @staticmethod
    def _parse_retry_after(value: str | None) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    def _collect(self, url: str, params: Optional[dict[str, str]] = None) -> list[dict[str, Any]]:
        """Follow ``@odata.nextLink`` and return all items of a collection."""
        items: list[dict[str, Any]] = []
        response = self._request("GET", url, params=params) or {}
        while True:
            items.extend(response.get("value", []))
            next_link = response.get("@odata.nextLink")
            if not next_link:
                return items
            response = self._request("GET", next_link) or {}

    # Operations

    def _list_lists(self) -> list[TodoList]:
        lists = [
            TodoList(list_id=item["id"], name=item.get("displayName", ""))
            for item in self._collect("/me/todo/lists")
        ]
        log.info("remote_lists_fetched", list_count=len(lists))
        return lists

    def _list_tasks(self, list_id: str, filter_text: Optional[str] = None) -> list[RemoteTask]:
        params = {"$expand": DETAIL_EXPAND}
        if filter_text:
            params["$filter"] = filter_text
        items = self._collect(f"/me/todo/lists/{list_id}/tasks", params=params)
        return [self._convert_to_remote_task(item, list_id) for item in items]

    def _get_task(self, list_id: str, task_id: str) -> RemoteTask | None:
        try:
            data = self._request(
                "GET",
                f"/me/todo/lists/{list_id}/tasks/{task_id}",
                params={"$expand": DETAIL_EXPAND},
            )
        except RemoteValidationError as e:
            if e.status_code == 404:
                log.info("remote_task_not_found", list_id=list_id, task_id=task_id)
                return None
            raise
        return self._convert_to_remote_task(data, list_id)

    def _create_task(self, list_id: str, task: TrackedTask) -> RemoteTask:
        """Create the task and its checklist in one POST.

        A single request means a created task id is never lost to a failed
        follow-up call.
        """
        payload = self._build_task_payload(task, include_empty_due=False)
        checklist = [{"displayName": s.title, "isChecked": s.completed} for s in task.subtasks]
        if checklist:
            payload["checklistItems"] = checklist
        log.debug("creating_remote_task", list_id=list_id, anchor_id=task.anchor_id)
        created = self._request("POST", f"/me/todo/lists/{list_id}/tasks", json_body=payload)

        # The create response does not expand the checklist
        created.setdefault("checklistItems", checklist)
        return self._convert_to_remote_task(created, list_id)

    def _update_task(self, list_id: str, task_id: str, task: TrackedTask) -> RemoteTask:
        payload = self._build_task_payload(task, include_empty_due=True)
        updated = self._request(
            "PATCH", f"/me/todo/lists/{list_id}/tasks/{task_id}", json_body=payload
        )
        self._replace_checklist(list_id, task_id, task.subtasks)
        return self._get_task(list_id, task_id) or self._convert_to_remote_task(updated, list_id)

    def _replace_checklist(self, list_id: str, task_id: str, subtasks: list[Subtask]) -> None:
        """Make the remote checklist equal to ``subtasks``, skipping the calls if it already is."""
        endpoint = f"/me/todo/lists/{list_id}/tasks/{task_id}/checklistItems"
        existing = self._collect(endpoint)
        current = [(item.get("displayName", ""), bool(item.get("isChecked"))) for item in existing]
        desired = [(s.title, s.completed) for s in subtasks]
        if current == desired:
            return

        for item in existing:
            self._request("DELETE", f"{endpoint}/{item['id']}")
        for title, checked in desired:
            self._request("POST", endpoint, json_body={"displayName": title, "isChecked": checked})

    def _linked_resource_body(self, anchor_id: str, web_url: str | None) -> dict[str, str]:
        block_id = f"{self._anchor_prefix}{anchor_id}"
        body = {
            "applicationName": self._application_name,
            "externalId": block_id,
            "displayName": f"Tracking Block Link: {block_id}",
        }
        # webUrl is optional; omit anything Graph would reject
        if _is_valid_web_url(web_url):
            body["webUrl"] = web_url
        return body

    def _create_linked_resource(
        self, list_id: str, task_id: str, anchor_id: str, web_url: str | None
    ) -> str:
        created = self._request(
            "POST",
            f"/me/todo/lists/{list_id}/tasks/{task_id}/linkedResources",
            json_body=self._linked_resource_body(anchor_id, web_url),
        )
        return created["id"]

    def _update_linked_resource(
        self,
        list_id: str,
        task_id: str,
        linked_resource_id: str,
        anchor_id: str,
        web_url: str | None,
    ) -> None:
        self._request(
            "PATCH",
            f"/me/todo/lists/{list_id}/tasks/{task_id}/linkedResources/{linked_resource_id}",
            json_body=self._linked_resource_body(anchor_id, web_url),
        )

    def _get_delta_page(self, list_id: str, link: str | None) -> DeltaPage:
        # Not retried here: the delta fetcher owns retry and cursor fallback
        url = link or f"/me/todo/lists/{list_id}/tasks/delta"
        response = self._send("GET", url) or {}

        page = DeltaPage(
            next_link=response.get("@odata.nextLink"),
            delta_link=response.get("@odata.deltaLink"),
        )
        for item in response.get("value", []):
            if "@removed" in item:
                page.removed_task_ids.append(item["id"])
                continue
            # Delta results carry no checklist or linked resources; hydrate them
            detailed = self._get_task(list_id, item["id"])
            if detailed is None:
                page.removed_task_ids.append(item["id"])
            else:
                page.tasks.append(detailed)

        log.debug(
            "delta_page_fetched",
            list_id=list_id,
            task_count=len(page.tasks),
            removed_count=len(page.removed_task_ids),
            has_next=page.next_link is not None,
        )
        return page

    # Conversion

    def _build_task_payload(self, task: TrackedTask, include_empty_due: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": task.title,
            "status": "completed" if task.completed else "notStarted",
            "importance": task.priority.value,
            "body": {"content": task.notes, "contentType": "text"},
        }
        if task.due_date is not None:
            payload["dueDateTime"] = {
                "dateTime": f"{task.due_date.isoformat()}T00:00:00.0000000",
                "timeZone": "UTC",
            }
        elif include_empty_due:
            payload["dueDateTime"] = None
        return payload

    def _convert_to_remote_task(self, data: dict[str, Any], list_id: str) -> RemoteTask:
        """
        Convert a Graph todoTask resource to a RemoteTask.

        Raises:
            ValueError: If required fields are missing
        """
        try:
            task_id = data["id"]
        except KeyError as e:
            log.error("missing_required_field", field=str(e), list_id=list_id)
            raise ValueError(f"Missing required field in Graph task: {e}")

        due_date = None
        due = data.get("dueDateTime") or {}
        if due.get("dateTime"):
            due_date = date.fromisoformat(due["dateTime"][:10])

        body = data.get("body") or {}
        notes = ""
        if str(body.get("contentType", "text")).lower() == "text":
            notes = (body.get("content") or "").strip()

        try:
            priority = Priority(data.get("importance", "normal"))
        except ValueError:
            priority = Priority.NORMAL

        linked_resource_id = None
        linked_anchor_id = None
        linked_web_url = None
        for resource in data.get("linkedResources") or []:
            external_id = resource.get("externalId") or ""
            if external_id.startswith(self._anchor_prefix) and len(external_id) > len(
                self._anchor_prefix
            ):
                linked_resource_id = resource.get("id")
                linked_anchor_id = external_id[len(self._anchor_prefix):]
                linked_web_url = resource.get("webUrl")
                break

        return RemoteTask(
            list_id=list_id,
            task_id=task_id,
            title=data.get("title", ""),
            completed=data.get("status") == "completed",
            priority=priority,
            due_date=due_date,
            subtasks=[
                Subtask(title=item.get("displayName", ""), completed=bool(item.get("isChecked")))
                for item in data.get("checklistItems") or []
            ],
            notes=notes,
            modified_at=parse_graph_datetime(data.get("lastModifiedDateTime")),
            linked_resource_id=linked_resource_id,
            linked_anchor_id=linked_anchor_id,
            linked_web_url=linked_web_url,
        )
