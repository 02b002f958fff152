"""Scanning Markdown for tracked tasks and rendering them back."""

from todosync.scanning.formatter import (
    new_anchor_id,
    render_task_block,
    render_task_line,
    to_tracked_task,
)
from todosync.scanning.task_scanner import ChangeScanner, MalformedTaskError, compute_hash

__all__ = [
    "ChangeScanner",
    "MalformedTaskError",
    "compute_hash",
    "new_anchor_id",
    "render_task_block",
    "render_task_line",
    "to_tracked_task",
]
