"""Prompt construction for one agent turn.

Every prompt carries the same frame (persona, injected context, turn
boundary rules) around a phase-specific mission. For tickets the phase is
resolved from the documents next to the ticket file and its status.
"""

from __future__ import annotations

import logging
from pathlib import Path

from picklerick.phases import (
    Phase,
    collect_artifacts,
    read_ticket_status,
    resolve_doc_path,
    resolve_phase,
)
from picklerick.state import SessionState
from picklerick.task_source import PHASE_BREAKDOWN, PHASE_PRD
from picklerick.tickets import Task

log = logging.getLogger(__name__)

PERSONA = """\
You are Pickle Rick: a hyper-competent, impatient engineer who turned
himself into a pickle to avoid therapy. You despise slop: dead code,
vague tickets, untested changes, and jerry-work of any kind. You work
precisely, explain what you are about to do, then do it.
Wubba lubba dub dub."""

TURN_RULES = """\
**STRICT TURN BOUNDARY**:
1. You are FORBIDDEN from executing more than one phase (e.g., Research and then Planning) in a single turn.
2. Once you have updated a ticket status or created a document, you MUST STOP.
3. Do NOT read the files you just wrote to determine the "next step."

**CRITICAL OUTPUT RULES**:
- After outputting the completion phrase (e.g., "I AM DONE", "Phase Complete"), you MUST IMMEDIATELY STOP generating.
- If the turn ends before the phase is finished, end your response with [STOP_TURN].
- NEVER output "<persona_override>", "<context>" or any XML-like system tags.
- NEVER generate or predict what the next iteration's prompt might be."""


def ticket_file_path(session_dir: str | Path, ticket_id: str) -> Path:
    return Path(session_dir) / ticket_id / f"linear_ticket_{ticket_id}.md"


def _prd_instruction(session_dir: Path) -> str:
    return f"""Phase: REQUIREMENTS.
Mission: Stop the user from guessing. Pin down the 'Why', 'Who', and 'What'.
Action: YOU MUST EXECUTE tools to define scope and draft a PRD in {session_dir / "prd.md"}.

When the PRD is saved and finalized, YOU ARE DONE.
Output: "PRD Drafted. I AM DONE\""""


def _breakdown_instruction(session_dir: Path) -> str:
    return f"""Phase: BREAKDOWN.
Mission: Deconstruct the PRD into atomic, manageable tickets. No vague tasks.
Action: YOU MUST EXECUTE tools to create the tickets under {session_dir}.
Each ticket lives at {session_dir}/<id>/linear_ticket_<id>.md with lines for
id, title, status (Triage) and a numerical order reflecting the implementation
sequence (e.g., 10, 20, 30).

When you have finished creating the tickets, YOU ARE DONE.
Output: "Tickets Created. I AM DONE\""""


def _ticket_instruction(task: Task, phase: Phase, ticket_dir: Path, ticket_path: Path) -> str:
    artifacts = collect_artifacts(ticket_dir)
    research_path = (
        resolve_doc_path(ticket_dir, "research")
        or resolve_doc_path(ticket_dir, "research_review")
        or ticket_dir / "research.md"
    )
    plan_path = (
        resolve_doc_path(ticket_dir, "plan")
        or resolve_doc_path(ticket_dir, "plan_review")
        or ticket_dir / "plan.md"
    )
    header = f"Ticket Path: {ticket_path}"

    if phase is Phase.RESEARCH:
        return f"""Phase: RESEARCH (Ticket: {task.title}).
Mission: You are the Documentarian. Analyze the codebase and requirements.
{header}

EXECUTION PROTOCOL:
1. Read the ticket.
2. Conduct research using available tools.
3. Create a Research Document in {research_path}.
4. Update the ticket status to 'Research in Review'.

When done, Output: "Research Phase Complete.\""""

    if phase is Phase.RESEARCH_REVIEW:
        return f"""Phase: RESEARCH REVIEW (Ticket: {task.title}).
Mission: Review the research for the ticket.
{header}

EXECUTION PROTOCOL:
1. Read the research in {research_path}.
2. Critique it and record the review in {ticket_dir / "research_review.md"}.
3. If approved, update the ticket status to 'Ready for Plan'.
4. If it needs revision, update the ticket status to 'Research revision needed'.

When done, Output: "Review Phase Complete.\""""

    if phase is Phase.PLAN:
        if not artifacts.has_research:
            body = f"""RESEARCH DOCUMENT IS MISSING: {research_path}
You are FORBIDDEN from planning without research. Conduct research and save
it to {research_path} before proceeding."""
        else:
            body = f"""EXECUTION PROTOCOL:
1. Read the ticket and research docs.
2. Create an Implementation Plan in {plan_path}.
3. Update the ticket status to 'Plan in Review'."""
        return f"""Phase: PLANNING (Ticket: {task.title}).
Mission: You are the Architect. Create a detailed implementation plan.
{header}

{body}

When done, Output: "Planning Phase Complete.\""""

    if phase is Phase.PLAN_REVIEW:
        return f"""Phase: PLAN REVIEW (Ticket: {task.title}).
Mission: Review the implementation plan for safety and specificity.
{header}

EXECUTION PROTOCOL:
1. Read the plan in {plan_path}.
2. Critique it and record the review in {ticket_dir / "plan_review.md"}.
3. If approved, update the ticket status to 'Ready for Dev'.
4. If rejected, update the ticket status back to 'Plan Needed'.

When done, Output: "Review Phase Complete.\""""

    if phase is Phase.REFACTOR:
        return f"""Phase: REFACTOR (Ticket: {task.title}).
Mission: Make the code lean, readable and maintainable. Prefer deletion over expansion.
{header}

EXECUTION PROTOCOL:
1. Check files modified during implementation for slop (unused imports, debug output, bad formatting).
2. Fix any issues found.
3. Run the linter/formatter if available.
4. Create a refactor summary at {ticket_dir / "refactor.md"}.
5. Ensure the ticket status is 'Done'.

When done, Output: "Refactoring Phase Complete. I AM DONE\""""

    if phase is Phase.DONE:
        return f"""Phase: COMPLETE (Ticket: {task.title}).
This ticket is fully complete. No action required.
Output: "Ticket already complete. I AM DONE\""""

    missing = []
    if not artifacts.has_research:
        missing.append(f"- MISSING: {research_path}")
    if not artifacts.has_plan:
        missing.append(f"- MISSING: {plan_path}")
    if missing:
        body = "\n".join(
            [
                "MANDATORY DOCUMENTS MISSING.",
                *missing,
                "",
                "You are FORBIDDEN from writing code. Create the missing documentation first.",
            ]
        )
    else:
        body = f"""EXECUTION PROTOCOL:
1. READ the ticket, research ({research_path}) and plan ({plan_path}).
2. IMPLEMENT the code (you are already in a dedicated session worktree).
3. VERIFY (test/lint).
4. Create an implementation summary at {ticket_dir / "implementation.md"}.
5. Update the ticket status to 'In Progress' (refactoring comes next).

When implementation is verified, Output: "Implementation Phase Complete.\""""
    return f"""Phase: IMPLEMENTATION (Ticket: {task.title}).
Mission: Complete this ticket.
{header}

{body}"""


def build_prompt(
    state: SessionState,
    task: Task | None,
    *,
    session_dir: str | Path | None = None,
    working_dir: str | Path | None = None,
) -> str:
    """Build the full prompt for *task*.

    ``session_dir`` and ``working_dir`` override the state's paths so the
    agent sees locations inside the session worktree.

    Raises FileNotFoundError when a ticket's file is missing, which means
    the session directory no longer matches its state.
    """
    session = Path(session_dir or state.session_dir)
    workdir = Path(working_dir or state.working_dir)
    phase_name = state.step
    ticket_path: Path | None = None

    if task is None:
        instruction = "Phase: UNKNOWN. No task selected."
    elif task.id == PHASE_PRD:
        phase_name = "prd"
        instruction = _prd_instruction(session)
    elif task.id == PHASE_BREAKDOWN:
        phase_name = "breakdown"
        instruction = _breakdown_instruction(session)
    else:
        ticket_dir = session / task.id
        ticket_path = ticket_file_path(session, task.id)
        if not ticket_path.exists():
            raise FileNotFoundError(
                f"Ticket file missing at {ticket_path}: the session state is corrupted "
                "or the file was deleted"
            )
        phase = resolve_phase(collect_artifacts(ticket_dir), read_ticket_status(ticket_path))
        log.debug("Ticket %s resolved to phase %s", task.id, phase)
        phase_name = str(phase)
        instruction = _ticket_instruction(task, phase, ticket_dir, ticket_path)

    context = "\n".join(
        [
            "<context>",
            f"  WORKING_DIR: {workdir}",
            f"  SESSION_ROOT: {session}",
            f"  USER_PROMPT: {state.original_prompt}",
            f"  CURRENT_TASK: {task.title if task else 'None'}",
            f"  TICKET_ID: {task.id if task else 'None'}",
            f"  TICKET_PATH: {ticket_path or 'None'}",
            f"  CURRENT_PHASE: {phase_name}",
            f"  ITERATION: {state.iteration}",
            "",
            "  These paths are injected for you; use them for all file operations.",
            "</context>",
        ]
    )

    return f"""<persona_override>
{context}

{PERSONA}

*** MISSION ***
{instruction}

{TURN_RULES}
</persona_override>"""
