"""Ticket store: markdown tickets with frontmatter-style fields.

A ticket is any ``*.md`` file under a session directory carrying at least
an ``id:`` line::

    ---
    id: a1b2c3
    title: Add dark mode toggle
    status: Triage
    order: 20
    updated: 2026-01-31
    ---

Tickets without an ``id:`` line fall back to the ``linear_ticket_<id>.md``
filename convention.
"""

from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

SKIP_DIRS = frozenset({".git", "node_modules", ".pickle"})
PARENT_TICKET_IDS = frozenset({"parent", "linear_ticket_parent", "task_priority_parent"})
DONE_STATUSES = frozenset({"done", "canceled"})
DEFAULT_STATUS = "Triage"

_ID_RE = re.compile(r"^[ \t]*id:[ \t]*(.+?)[ \t]*$", re.MULTILINE)
_STATUS_RE = re.compile(r"^[ \t]*status:[ \t]*(.+?)[ \t]*$", re.MULTILINE)
_TITLE_RE = re.compile(r"^[ \t]*title:[ \t]*(.+?)[ \t]*$", re.MULTILINE)
_ORDER_RE = re.compile(r"^[ \t]*order:[ \t]*[\"']?(-?\d+(?:\.\d+)?)", re.MULTILINE)
_HEADING_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_FILENAME_ID_RE = re.compile(r"^linear_ticket_(.+)\.md$")

_STATUS_LINE_RE = re.compile(r"^([ \t]*)status:.*$", re.MULTILINE)
_UPDATED_LINE_RE = re.compile(r"^([ \t]*)updated:.*$", re.MULTILINE)
# Group 1 starts at the closing fence of a leading "---" block.
_FRONTMATTER_CLOSE_RE = re.compile(r"---[ \t]*\r?\n.*?^(---)[ \t]*$", re.MULTILINE | re.DOTALL)


@dataclass
class Task:
    """A unit of work: a phase pseudo-task or a ticket."""

    id: str
    title: str
    completed: bool = False
    body: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_phase(self) -> bool:
        return self.id.startswith("phase-")


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1].strip()
    return value


def _creation_time(st: os.stat_result) -> float:
    """Filesystem creation time, or mtime where the platform has no birthtime."""
    birthtime = getattr(st, "st_birthtime", None)
    if birthtime:
        return float(birthtime)
    return st.st_mtime


def is_completed_status(status: str) -> bool:
    return status.strip().lower() in DONE_STATUSES


def is_parent_ticket(task: Task) -> bool:
    """Parent/epic tickets group work and are never executed directly."""
    return task.id in PARENT_TICKET_IDS or "[epic]" in task.title.lower()


def parse_ticket(path: Path, content: str, created: float) -> Task | None:
    """Parse one markdown file into a ticket Task, or None if it has no id."""
    status = DEFAULT_STATUS
    title = "Untitled"
    order_match = _ORDER_RE.search(content)
    order = float(order_match.group(1)) if order_match else math.inf
    if status_match := _STATUS_RE.search(content):
        status = _unquote(status_match.group(1))

    id_match = _ID_RE.search(content)
    if id_match:
        ticket_id = _unquote(id_match.group(1))
        if title_match := _TITLE_RE.search(content):
            title = _unquote(title_match.group(1))
    else:
        filename_match = _FILENAME_ID_RE.match(path.name)
        if not filename_match:
            return None
        ticket_id = filename_match.group(1)
        if heading := _HEADING_RE.search(content):
            title = heading.group(1).strip()
        log.warning("No frontmatter id in %s, using filename id: %s", path.name, ticket_id)

    if not ticket_id:
        return None

    return Task(
        id=ticket_id,
        title=title,
        completed=is_completed_status(status),
        body=content,
        metadata={
            "type": "ticket",
            "path": str(path),
            "status": status,
            "order": order,
            "created": created,
        },
    )


def scan_tickets(directory: str | Path) -> list[Task]:
    """Recursively collect every ticket under *directory*.

    Unreadable files and directories are skipped.
    """
    tickets: list[Task] = []
    stack = [Path(directory)]
    while stack:
        current = stack.pop()
        try:
            entries = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            continue
        subdirs: list[Path] = []
        for entry in entries:
            if entry.name in SKIP_DIRS:
                continue
            try:
                if entry.is_dir():
                    subdirs.append(entry)
                    continue
                if entry.suffix != ".md" or not entry.is_file():
                    continue
                content = entry.read_text(encoding="utf-8", errors="replace")
                created = _creation_time(entry.stat())
            except OSError:
                continue
            ticket = parse_ticket(entry, content, created)
            if ticket is not None:
                tickets.append(ticket)
        # Depth-first in name order
        stack.extend(reversed(subdirs))
    return tickets


def _sort_key(task: Task) -> tuple[float, float]:
    return (task.metadata.get("order", math.inf), task.metadata.get("created", 0.0))


def implementable_tickets(directory: str | Path) -> list[Task]:
    """Non-parent tickets in execution order: (order, creation time) ascending."""
    tickets = [t for t in scan_tickets(directory) if not is_parent_ticket(t)]
    tickets.sort(key=_sort_key)
    return tickets


def find_next_ticket(directory: str | Path) -> Task | None:
    return next((t for t in implementable_tickets(directory) if not t.completed), None)


def find_ticket(directory: str | Path, ticket_id: str) -> Task | None:
    return next((t for t in scan_tickets(directory) if t.id == ticket_id), None)


def count_tickets(directory: str | Path, *, completed: bool) -> int:
    return sum(1 for t in implementable_tickets(directory) if t.completed == completed)


def mark_ticket_done(path: str | Path, *, today: date | None = None) -> None:
    """Set the ticket's status line to Done and stamp its updated date.

    A ticket without a status line gets one, inside its frontmatter block
    when it has one, otherwise in a new block at the top of the file.
    """
    ticket_path = Path(path)
    content = ticket_path.read_text(encoding="utf-8")
    stamp = (today or date.today()).isoformat()
    if _STATUS_LINE_RE.search(content):
        content = _STATUS_LINE_RE.sub(lambda m: f"{m.group(1)}status: Done", content, count=1)
    elif match := _FRONTMATTER_CLOSE_RE.match(content):
        content = f"{content[: match.start(1)]}status: Done\n{content[match.start(1) :]}"
    else:
        content = f"---\nstatus: Done\nupdated: {stamp}\n---\n{content}"
    content = _UPDATED_LINE_RE.sub(lambda m: f"{m.group(1)}updated: {stamp}", content, count=1)
    ticket_path.write_text(content, encoding="utf-8")
