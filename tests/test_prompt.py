"""Tests for prompt construction."""

from pathlib import Path

import pytest

from picklerick.prompt import build_prompt, ticket_file_path
from picklerick.task_source import PickleTaskSource
from picklerick.tickets import Task, find_ticket


def _ticket(session, ticket_id):
    return find_ticket(session.session_dir, ticket_id)


def test_prd_prompt_frame(session):
    task = PickleTaskSource(session.session_dir).get_next_task()
    prompt = build_prompt(session, task)

    assert prompt.startswith("<persona_override>")
    assert prompt.rstrip().endswith("</persona_override>")
    assert "Phase: REQUIREMENTS." in prompt
    assert str(Path(session.session_dir) / "prd.md") in prompt
    assert "USER_PROMPT: Add dark mode" in prompt
    assert "CURRENT_PHASE: prd" in prompt
    assert "ITERATION: 1" in prompt
    assert "TICKET_PATH: None" in prompt
    assert "Wubba lubba dub dub" in prompt
    assert "[STOP_TURN]" in prompt


def test_breakdown_prompt(session):
    session.step = "breakdown"
    prompt = build_prompt(session, PickleTaskSource(session.session_dir).get_task("phase-breakdown"))
    assert "Phase: BREAKDOWN." in prompt
    assert "linear_ticket_<id>.md" in prompt
    assert "CURRENT_PHASE: breakdown" in prompt


def test_overridden_paths_are_injected(session, tmp_path):
    task = PickleTaskSource(session.session_dir).get_next_task()
    prompt = build_prompt(session, task, session_dir=tmp_path / "mirror", working_dir=tmp_path / "wt")
    assert f"WORKING_DIR: {tmp_path / 'wt'}" in prompt
    assert f"SESSION_ROOT: {tmp_path / 'mirror'}" in prompt


def test_research_prompt_for_new_ticket(session, make_ticket):
    path = make_ticket(session.session_dir, "t1", title="Toggle")
    prompt = build_prompt(session, _ticket(session, "t1"))
    assert "Phase: RESEARCH (Ticket: Toggle)" in prompt
    assert f"TICKET_PATH: {path}" in prompt
    assert "TICKET_ID: t1" in prompt
    assert "CURRENT_PHASE: research" in prompt


def test_research_review_prompt(session, make_ticket):
    path = make_ticket(session.session_dir, "t1", title="Toggle", status="Research in Review")
    (path.parent / "research.md").write_text("findings")
    prompt = build_prompt(session, _ticket(session, "t1"))
    assert "Phase: RESEARCH REVIEW (Ticket: Toggle)" in prompt
    assert str(path.parent / "research.md") in prompt


def test_plan_prompt_warns_about_missing_research(session, make_ticket):
    make_ticket(session.session_dir, "t1", title="Toggle", status="Ready for Plan")
    prompt = build_prompt(session, _ticket(session, "t1"))
    assert "Phase: PLANNING (Ticket: Toggle)" in prompt
    assert "RESEARCH DOCUMENT IS MISSING" in prompt


def test_plan_review_prompt_uses_dated_plan(session, make_ticket):
    path = make_ticket(session.session_dir, "t1", status="Plan in Review")
    for name in ("research.md", "research_review.md", "plan_2026-01-02.md"):
        (path.parent / name).write_text("x")
    prompt = build_prompt(session, _ticket(session, "t1"))
    assert "Phase: PLAN REVIEW" in prompt
    assert str(path.parent / "plan_2026-01-02.md") in prompt


def test_implementation_prompt_lists_missing_documents(session, make_ticket):
    make_ticket(session.session_dir, "t1", status="Ready for Dev")
    prompt = build_prompt(session, _ticket(session, "t1"))
    assert "Phase: IMPLEMENTATION" in prompt
    assert "MANDATORY DOCUMENTS MISSING." in prompt
    assert prompt.count("- MISSING:") == 2


def test_implementation_prompt_with_documents(session, make_ticket):
    path = make_ticket(session.session_dir, "t1", status="Ready for Dev")
    for name in ("research.md", "plan.md"):
        (path.parent / name).write_text("x")
    prompt = build_prompt(session, _ticket(session, "t1"))
    assert "MANDATORY DOCUMENTS MISSING." not in prompt
    assert "EXECUTION PROTOCOL" in prompt
    assert "CURRENT_PHASE: implement" in prompt


def test_refactor_and_done_prompts(session, make_ticket):
    path = make_ticket(session.session_dir, "t1", status="In Progress")
    assert "Phase: REFACTOR" in build_prompt(session, _ticket(session, "t1"))
    (path.parent / "refactor.md").write_text("x")
    prompt = build_prompt(session, _ticket(session, "t1"))
    assert "Phase: COMPLETE" in prompt
    assert "I AM DONE" in prompt


def test_missing_ticket_file_raises(session):
    task = Task(id="ghost", title="Ghost", metadata={"type": "ticket"})
    with pytest.raises(FileNotFoundError, match="session state is corrupted"):
        build_prompt(session, task)


def test_no_task_prompt(session):
    prompt = build_prompt(session, None)
    assert "No task selected" in prompt
    assert "CURRENT_TASK: None" in prompt


def test_ticket_file_path(tmp_path):
    assert ticket_file_path(tmp_path, "t1") == tmp_path / "t1" / "linear_ticket_t1.md"
