"""Pull request support for finished sessions.

The description is generated from the session's ``prd.md`` and tickets.
Creating the PR itself needs an authenticated ``gh`` CLI; without one the
description is saved next to the session state for manual use.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from picklerick.tickets import implementable_tickets

log = logging.getLogger(__name__)

PR_DESCRIPTION_FILENAME = "pr_description.md"

_HEADING_RE = re.compile(r"^#\s+(.+?)\s*$", re.MULTILINE)
_SECTION_RE = re.compile(r"^#{2,}\s+(.+?)\s*$", re.MULTILINE)


@dataclass
class PRDescription:
    title: str
    body: str

    def to_markdown(self) -> str:
        return f"# {self.title}\n\n{self.body}"


def _section_text(markdown: str, name: str) -> str:
    """First paragraph of the section whose heading starts with *name*."""
    headings = list(_SECTION_RE.finditer(markdown))
    for i, heading in enumerate(headings):
        if not heading.group(1).lower().startswith(name.lower()):
            continue
        end = headings[i + 1].start() if i + 1 < len(headings) else len(markdown)
        paragraph = markdown[heading.end() : end].strip().split("\n\n", 1)[0]
        return " ".join(paragraph.split())
    return ""


def generate_pr_description(session_dir: str | Path, branch: str, base_branch: str) -> PRDescription:
    session = Path(session_dir)
    prd_path = session / "prd.md"
    prd = prd_path.read_text(encoding="utf-8") if prd_path.exists() else ""

    title = "Pickle session changes"
    if heading := _HEADING_RE.search(prd):
        # "# Dark Mode PRD" -> "Dark Mode"
        title = re.sub(r"\s*\bPRD\b\s*$", "", heading.group(1)).strip() or title

    lines = ["## Summary", ""]
    if problem := _section_text(prd, "Problem"):
        lines += [f"**Problem:** {problem}", ""]

    tickets = implementable_tickets(session)
    if tickets:
        lines += ["## Tickets", ""]
        lines += [f"- [{'x' if t.completed else ' '}] {t.title}" for t in tickets]
        lines.append("")

    lines.append(f"**Branch:** `{branch}` → `{base_branch}`")
    return PRDescription(title=title, body="\n".join(lines))


def save_pr_description(session_dir: str | Path, description: PRDescription) -> Path:
    path = Path(session_dir) / PR_DESCRIPTION_FILENAME
    path.write_text(description.to_markdown(), encoding="utf-8")
    log.info("PR description saved to %s", path)
    return path


def is_gh_available() -> bool:
    """True when ``gh`` is installed and authenticated."""
    try:
        result = subprocess.run(["gh", "auth", "status"], capture_output=True, text=True)
    except OSError:
        return False
    return result.returncode == 0


def get_origin_url(cwd: str | Path) -> str | None:
    result = subprocess.run(
        ["git", "remote", "get-url", "origin"],
        cwd=str(cwd),
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def push_branch(branch: str, cwd: str | Path) -> None:
    """Push *branch* to origin with upstream tracking. Raises RuntimeError."""
    try:
        subprocess.run(
            ["git", "push", "--set-upstream", "origin", branch],
            cwd=str(cwd),
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to push {branch}: {e.stderr.strip()}") from None


def create_pull_request(
    branch: str,
    base_branch: str,
    title: str,
    body: str,
    cwd: str | Path,
    *,
    draft: bool = False,
) -> str | None:
    """Push *branch* and open a PR against *base_branch*.

    Returns the PR URL, or None if pushing or ``gh pr create`` fails.
    """
    try:
        push_branch(branch, cwd)
    except RuntimeError as e:
        log.warning("%s", e)
        return None

    args = ["gh", "pr", "create", "--base", base_branch, "--head", branch, "--title", title, "--body", body]
    if draft:
        args.append("--draft")
    try:
        result = subprocess.run(args, cwd=str(cwd), capture_output=True, text=True)
    except OSError as e:
        log.warning("gh pr create failed: %s", e)
        return None
    if result.returncode != 0:
        log.warning("gh pr create failed: %s", result.stderr.strip())
        return None
    return result.stdout.strip().splitlines()[-1] if result.stdout.strip() else None
