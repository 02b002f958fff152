"""Render tasks back into Markdown blocks."""

import uuid

from todosync.models.task import Priority, RemoteTask, TrackedTask
from todosync.scanning.task_scanner import escape_note

PRIORITY_SYMBOLS = {
    Priority.HIGH: "⏫",
    Priority.LOW: "\U0001F53D",
}

CHILD_INDENT = "    "


def new_anchor_id() -> str:
    """Generate a fresh alphanumeric anchor suffix."""
    return uuid.uuid4().hex[:12]


def to_tracked_task(
    remote: RemoteTask,
    anchor_id: str,
    indent: str = "",
    notes: str | None = None,
    file_path: str | None = None,
) -> TrackedTask:
    """
    Build the local representation of a remote task.

    Args:
        remote: Task as reported by the service
        anchor_id: Anchor the task is (or will be) written under
        indent: Indentation of the task line
        notes: Local notes to keep; the remote body is used when None
        file_path: File the block lives in

    Returns:
        TrackedTask carrying the remote task's semantic fields
    """
    return TrackedTask(
        anchor_id=anchor_id,
        title=" ".join(remote.title.split()),
        completed=remote.completed,
        priority=remote.priority,
        due_date=remote.due_date,
        subtasks=[s.model_copy() for s in remote.subtasks],
        notes=remote.notes if notes is None else notes,
        file_path=file_path,
        indent=indent,
    )


def render_task_line(task: TrackedTask, anchor_prefix: str, indent: str | None = None) -> str:
    """Render the task's own line, ending in its anchor token."""
    indent = task.indent if indent is None else indent
    parts = [f"{indent}- [{'x' if task.completed else ' '}]", task.title]

    symbol = PRIORITY_SYMBOLS.get(task.priority)
    if symbol:
        parts.append(symbol)
    if task.due_date:
        parts.append(f"\U0001F4C5 {task.due_date.isoformat()}")

    parts.append(f"^{anchor_prefix}{task.anchor_id}")
    return " ".join(parts)


def render_task_block(task: TrackedTask, anchor_prefix: str, indent: str | None = None) -> list[str]:
    """
    Render a task with its subtasks and notes.

    Subtasks and notes are indented one level deeper than the task line, so
    scanning the result yields the same semantic fields. Note lines that look
    like checkboxes are escaped so they do not scan back as subtasks.

    Returns:
        Lines without trailing newlines
    """
    indent = task.indent if indent is None else indent
    child = f"{indent}{CHILD_INDENT}"

    lines = [render_task_line(task, anchor_prefix, indent)]
    for subtask in task.subtasks:
        lines.append(f"{child}- [{'x' if subtask.completed else ' '}] {subtask.title}")
    for note in task.notes.splitlines():
        if note.strip():
            lines.append(f"{child}{escape_note(note.strip())}")
    return lines
