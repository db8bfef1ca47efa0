"""Per-ticket phase resolution.

The phase a ticket is in is derived, never stored: it follows from which
documents exist next to the ticket file and from the ticket's status line.
Status strings act as approval shortcuts so a human reviewer can move a
ticket forward ("Ready for Plan", "Ready for Dev") without writing the
review documents the agent would otherwise produce.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

_STATUS_RE = re.compile(r"status:\s*[\"']?([^\"'\n]+)[\"']?", re.IGNORECASE)


class Phase(StrEnum):
    RESEARCH = "research"
    RESEARCH_REVIEW = "research_review"
    PLAN = "plan"
    PLAN_REVIEW = "plan_review"
    IMPLEMENT = "implement"
    REFACTOR = "refactor"
    DONE = "done"


DOC_NAMES = ("research", "research_review", "plan", "plan_review", "implementation", "refactor")


@dataclass(frozen=True)
class ArtifactSet:
    """Which logical documents exist for one ticket."""

    research: bool = False
    research_review: bool = False
    plan: bool = False
    plan_review: bool = False
    implementation: bool = False
    refactor: bool = False

    @property
    def has_research(self) -> bool:
        return self.research or self.research_review

    @property
    def has_plan(self) -> bool:
        return self.plan or self.plan_review


def resolve_doc_path(directory: str | Path, name: str) -> Path | None:
    """Find the document for logical *name* in *directory*.

    ``<name>.md`` wins; otherwise the lexicographically latest
    ``<name>_*.md`` (date-stamped variants sort chronologically).
    """
    directory = Path(directory)
    exact = directory / f"{name}.md"
    if exact.exists():
        return exact
    # "research_*.md" must not pick up "research_review.md"
    longer = tuple(other for other in DOC_NAMES if other.startswith(f"{name}_"))
    pattern = re.compile(rf"^{re.escape(name)}_.*\.md$")
    try:
        matches = sorted(
            p.name
            for p in directory.iterdir()
            if pattern.match(p.name) and not p.name.startswith(longer)
        )
    except OSError:
        return None
    if matches:
        return directory / matches[-1]
    return None


def collect_artifacts(ticket_dir: str | Path) -> ArtifactSet:
    return ArtifactSet(
        **{name: resolve_doc_path(ticket_dir, name) is not None for name in DOC_NAMES}
    )


def read_ticket_status(ticket_path: str | Path) -> str:
    """Lowercased status of a ticket file, or "" when unreadable."""
    try:
        content = Path(ticket_path).read_text(encoding="utf-8")
    except OSError:
        return ""
    match = _STATUS_RE.search(content)
    return match.group(1).strip().lower() if match else ""


def plan_approved(status: str) -> bool:
    return "ready for dev" in status or "in progress" in status or status == "done"


def research_approved(status: str) -> bool:
    # A later-phase status implies the earlier approval.
    return "ready for plan" in status or "plan" in status or plan_approved(status)


def resolve_phase(artifacts: ArtifactSet, status: str) -> Phase:
    """Decide the phase for a ticket. Pure: no filesystem access."""
    status = status.strip().lower()
    if artifacts.refactor:
        return Phase.DONE

    research_ok = research_approved(status)
    plan_ok = plan_approved(status)

    if not artifacts.has_research and not research_ok:
        return Phase.RESEARCH
    if artifacts.research and not artifacts.research_review and not research_ok:
        return Phase.RESEARCH_REVIEW
    if not artifacts.has_plan and not plan_ok:
        return Phase.PLAN
    if artifacts.plan and not artifacts.plan_review and not plan_ok:
        return Phase.PLAN_REVIEW
    if status in ("done", "in progress") or artifacts.implementation:
        return Phase.REFACTOR
    return Phase.IMPLEMENT
