"""Change scanning: extract anchored tasks and their semantic hashes from Markdown."""

import re
from datetime import date
from typing import Iterator

import structlog

from todosync.models.task import Priority, Subtask, TrackedTask, normalize_text

log = structlog.stdlib.get_logger()

CHECKBOX_RE = re.compile(r"^(?P<indent>[ \t]*)[-*+]\s+\[(?P<status>[ xX])\]\s*(?P<body>.*?)\s*$")
DUE_DATE_RE = re.compile("\U0001F4C5\ufe0f?\\s*(\\d{4}-\\d{2}-\\d{2})")
COMPLETION_DATE_RE = re.compile("✅\ufe0f?\\s*\\d{4}-\\d{2}-\\d{2}")
PRIORITY_RE = re.compile("([\U0001F53A⏫\U0001F53C\U0001F53D⏬])\ufe0f?")

PRIORITY_MARKERS = {
    "🔺": Priority.HIGH,
    "⏫": Priority.HIGH,
    "🔼": Priority.NORMAL,
    "🔽": Priority.LOW,
    "⏬": Priority.LOW,
}


class MalformedTaskError(ValueError):
    """An anchored line that cannot be read as a task."""

    def __init__(self, message: str, anchor_id: str, line_number: int):
        super().__init__(message)
        self.anchor_id = anchor_id
        self.line_number = line_number


def escape_note(note: str) -> str:
    """
    Prefix a backslash to a note line that would otherwise scan as a checkbox.

    Lines already escaped get one more backslash so that :func:`unescape_note`
    always restores the original text.
    """
    if CHECKBOX_RE.match(note.lstrip("\\")):
        return f"\\{note}"
    return note


def unescape_note(note: str) -> str:
    """Inverse of :func:`escape_note`."""
    stripped = note.lstrip("\\")
    if stripped != note and CHECKBOX_RE.match(stripped):
        return note[1:]
    return note


def indent_width(line: str) -> int:
    """Width of leading whitespace, counting a tab as four columns."""
    expanded = line.expandtabs(4)
    return len(expanded) - len(expanded.lstrip())


def parse_task_text(body: str) -> tuple[str, Priority, date | None]:
    """
    Split inline markers off a task's text.

    Args:
        body: Text after the checkbox, with the anchor already removed

    Returns:
        Tuple of (normalized title, priority, due date)
    """
    due_date = None
    due_match = DUE_DATE_RE.search(body)
    if due_match:
        try:
            due_date = date.fromisoformat(due_match.group(1))
        except ValueError:
            due_date = None
    body = DUE_DATE_RE.sub(" ", body)
    body = COMPLETION_DATE_RE.sub(" ", body)

    priority = Priority.NORMAL
    priority_match = PRIORITY_RE.search(body)
    if priority_match:
        priority = PRIORITY_MARKERS[priority_match.group(1)]
    body = PRIORITY_RE.sub(" ", body)

    return normalize_text(body), priority, due_date


class ChangeScanner:
    """Finds anchored tasks in document text.

    A tracked task is a Markdown checkbox line ending in ``^<prefix><suffix>``.
    Deeper-indented lines below it form its block: checkbox lines become
    subtasks, anything else becomes notes. The block ends at the first blank
    line, the first line indented no deeper than the task, or the next
    anchored line.
    """

    def __init__(self, anchor_prefix: str = "MSTD"):
        """
        Initialize the scanner.

        Args:
            anchor_prefix: Fixed prefix of anchor tokens
        """
        self.anchor_prefix = anchor_prefix
        prefix = re.escape(anchor_prefix)
        self._anchor_re = re.compile(rf"\s*\^{prefix}(?P<anchor>[A-Za-z0-9]+)\s*$")
        self._anchor_anywhere_re = re.compile(rf"\^{prefix}[A-Za-z0-9]+")

    def contains_anchor(self, text: str) -> bool:
        """Quick check whether a document holds any tracked task."""
        return self._anchor_anywhere_re.search(text) is not None

    def anchor_token(self, anchor_id: str) -> str:
        """Full token as written in the document, e.g. ``^MSTDabc123``."""
        return f"^{self.anchor_prefix}{anchor_id}"

    def scan(self, text: str, file_path: str | None = None) -> Iterator[TrackedTask]:
        """
        Yield every well-formed anchored task in ``text``.

        Each call starts from scratch, so the result can be iterated again by
        calling ``scan`` again. Malformed blocks are logged and skipped.

        Args:
            text: Full document text
            file_path: Vault-relative path recorded on each task

        Yields:
            TrackedTask instances in document order
        """
        lines = text.splitlines()
        index = 0
        while index < len(lines):
            anchor_match = self._anchor_re.search(lines[index])
            if anchor_match is None:
                index += 1
                continue

            try:
                task = self._parse_block(lines, index, anchor_match, file_path)
            except MalformedTaskError as e:
                log.warning(
                    "malformed_task_skipped",
                    file_path=file_path,
                    line_number=e.line_number,
                    anchor_id=e.anchor_id,
                    error=str(e),
                )
                index += 1
                continue

            yield task
            index = task.line_end

    def compute_hash(self, task: TrackedTask) -> str:
        """Stable digest over the task's semantic fields."""
        return task.semantic_hash

    def _parse_block(
        self,
        lines: list[str],
        index: int,
        anchor_match: re.Match,
        file_path: str | None,
    ) -> TrackedTask:
        line = lines[index]
        anchor_id = anchor_match.group("anchor")

        task_match = CHECKBOX_RE.match(line[: anchor_match.start()])
        if task_match is None:
            raise MalformedTaskError("anchor is not on a checkbox line", anchor_id, index + 1)

        title, priority, due_date = parse_task_text(task_match.group("body"))
        if not title:
            raise MalformedTaskError("task has no title", anchor_id, index + 1)

        base_width = indent_width(line)
        subtasks: list[Subtask] = []
        notes: list[str] = []

        end = index + 1
        while end < len(lines):
            child = lines[end]
            if not child.strip() or indent_width(child) <= base_width:
                break
            if self._anchor_re.search(child):
                break

            child_match = CHECKBOX_RE.match(child)
            if child_match:
                child_title = normalize_text(child_match.group("body"))
                if child_title:
                    subtasks.append(
                        Subtask(title=child_title, completed=child_match.group("status") in "xX")
                    )
            else:
                notes.append(unescape_note(child.strip()))
            end += 1

        return TrackedTask(
            anchor_id=anchor_id,
            title=title,
            completed=task_match.group("status") in "xX",
            priority=priority,
            due_date=due_date,
            subtasks=subtasks,
            notes="\n".join(notes),
            file_path=file_path,
            line_start=index,
            line_end=end,
            indent=task_match.group("indent"),
        )


def compute_hash(task: TrackedTask) -> str:
    """Module-level shortcut for :meth:`ChangeScanner.compute_hash`."""
    return task.semantic_hash
