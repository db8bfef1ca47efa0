"""Tests for per-ticket phase resolution."""

import pytest

from picklerick.phases import (
    ArtifactSet,
    Phase,
    collect_artifacts,
    read_ticket_status,
    resolve_doc_path,
    resolve_phase,
)

THROUGH_PLAN_REVIEW = ArtifactSet(research=True, research_review=True, plan=True, plan_review=True)


@pytest.mark.parametrize(
    ("artifacts", "status", "expected"),
    [
        (ArtifactSet(), "triage", Phase.RESEARCH),
        (ArtifactSet(research=True), "research in review", Phase.RESEARCH_REVIEW),
        (ArtifactSet(research=True, research_review=True), "ready for plan", Phase.PLAN),
        (ArtifactSet(), "ready for plan", Phase.PLAN),
        (ArtifactSet(research=True), "ready for plan", Phase.PLAN),
        (ArtifactSet(research=True, research_review=True, plan=True), "plan in review", Phase.PLAN_REVIEW),
        (THROUGH_PLAN_REVIEW, "ready for dev", Phase.IMPLEMENT),
        (ArtifactSet(), "ready for dev", Phase.IMPLEMENT),
        (ArtifactSet(research=True, plan=True), "ready for dev", Phase.IMPLEMENT),
        (ArtifactSet(research=True, research_review=True, plan=True, plan_review=True, implementation=True), "ready for dev", Phase.REFACTOR),
        (ArtifactSet(), "in progress", Phase.REFACTOR),
        (ArtifactSet(), "done", Phase.REFACTOR),
        (ArtifactSet(refactor=True), "triage", Phase.DONE),
        (ArtifactSet(refactor=True), "research in review", Phase.DONE),
    ],
)
def test_resolve_phase(artifacts, status, expected):
    assert resolve_phase(artifacts, status) is expected


def test_resolve_phase_normalizes_status():
    assert resolve_phase(ArtifactSet(), "  Ready For Dev ") is Phase.IMPLEMENT


def test_review_only_counts_as_research():
    assert ArtifactSet(research_review=True).has_research
    assert resolve_phase(ArtifactSet(research_review=True), "triage") is Phase.PLAN


def test_resolve_doc_path_prefers_exact(tmp_path):
    (tmp_path / "plan.md").write_text("x")
    (tmp_path / "plan_2026-01-01.md").write_text("x")
    assert resolve_doc_path(tmp_path, "plan") == tmp_path / "plan.md"


def test_resolve_doc_path_latest_dated_variant(tmp_path):
    (tmp_path / "research_2026-01-01.md").write_text("x")
    (tmp_path / "research_2026-02-01.md").write_text("x")
    assert resolve_doc_path(tmp_path, "research") == tmp_path / "research_2026-02-01.md"


def test_resolve_doc_path_does_not_confuse_review(tmp_path):
    (tmp_path / "research_review.md").write_text("x")
    assert resolve_doc_path(tmp_path, "research") is None
    assert resolve_doc_path(tmp_path, "research_review") == tmp_path / "research_review.md"


def test_resolve_doc_path_missing_dir(tmp_path):
    assert resolve_doc_path(tmp_path / "nope", "plan") is None


def test_collect_artifacts(tmp_path):
    (tmp_path / "research_2026-01-01.md").write_text("x")
    (tmp_path / "plan.md").write_text("x")
    assert collect_artifacts(tmp_path) == ArtifactSet(research=True, plan=True)


def test_read_ticket_status(tmp_path):
    ticket = tmp_path / "t.md"
    ticket.write_text('---\nid: t\nstatus: "Ready for Dev"\n---\n')
    assert read_ticket_status(ticket) == "ready for dev"
    assert read_ticket_status(tmp_path / "missing.md") == ""
