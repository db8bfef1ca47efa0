"""Task Source: the single point deciding which unit of work runs next.

Before any ticket exists the session runs two phase pseudo-tasks
(``phase-prd`` then ``phase-breakdown``). After that, tickets are worked
one at a time: the first incomplete ticket is locked into
``state.current_ticket`` and stays locked until it is marked complete.
"""

from __future__ import annotations

import logging
from pathlib import Path

from picklerick.state import SessionState, require_state, save_state
from picklerick.tickets import (
    Task,
    count_tickets,
    find_next_ticket,
    find_ticket,
    implementable_tickets,
    mark_ticket_done,
)

log = logging.getLogger(__name__)

__all__ = ["PHASE_BREAKDOWN", "PHASE_PRD", "PickleTaskSource", "Task"]

PHASE_PRD = "phase-prd"
PHASE_BREAKDOWN = "phase-breakdown"


def _prd_task(state: SessionState) -> Task:
    return Task(
        id=PHASE_PRD,
        title="Draft PRD",
        body=state.original_prompt,
        metadata={"type": "phase", "phase": "prd"},
    )


def _breakdown_task() -> Task:
    return Task(
        id=PHASE_BREAKDOWN,
        title="Breakdown Tickets",
        body="Break the PRD into tickets",
        metadata={"type": "phase", "phase": "breakdown"},
    )


class PickleTaskSource:
    """Task Source backed by a session directory and its ``state.json``."""

    def __init__(self, session_dir: str | Path):
        self.session_dir = Path(session_dir)

    def _load(self) -> SessionState:
        return require_state(self.session_dir)

    def _save(self, state: SessionState) -> None:
        save_state(self.session_dir, state)

    def get_next_task(self) -> Task | None:
        """Return the next unit of work, locking a ticket if one is selected.

        Returns None when every ticket is complete.
        """
        state = self._load()

        if state.step == "prd":
            return _prd_task(state)
        if state.step == "breakdown":
            return _breakdown_task()

        if state.current_ticket:
            locked = find_ticket(self.session_dir, state.current_ticket)
            if locked is not None and not locked.completed:
                return locked
            log.debug("Locked ticket %s no longer pending, selecting next", state.current_ticket)

        ticket = find_next_ticket(self.session_dir)
        if ticket is None:
            return None

        if state.current_ticket != ticket.id:
            state.current_ticket = ticket.id
            state.step = "research"
            self._save(state)
            log.info("Locked ticket %s: %s", ticket.id, ticket.title)
        return ticket

    def get_task(self, task_id: str) -> Task | None:
        if task_id == PHASE_PRD:
            return _prd_task(self._load())
        if task_id == PHASE_BREAKDOWN:
            return _breakdown_task()
        return find_ticket(self.session_dir, task_id)

    def get_all_tasks(self) -> list[Task]:
        return implementable_tickets(self.session_dir)

    def mark_complete(self, task_id: str) -> None:
        """Record completion of a phase pseudo-task or a ticket."""
        state = self._load()

        if task_id == PHASE_PRD:
            state.step = "breakdown"
            self._save(state)
            return
        if task_id == PHASE_BREAKDOWN:
            state.step = "research"
            state.current_ticket = None
            self._save(state)
            return

        ticket = find_ticket(self.session_dir, task_id)
        if ticket is None:
            log.warning("Cannot mark %s complete: ticket file not found", task_id)
            return
        if not ticket.completed:
            mark_ticket_done(ticket.metadata["path"])

        if state.current_ticket == task_id:
            state.current_ticket = None
            self._save(state)

    def count_remaining(self) -> int:
        state = self._load()
        remaining = count_tickets(self.session_dir, completed=False)
        if state.step == "prd":
            return remaining + 2
        if state.step == "breakdown":
            return remaining + 1
        return remaining
