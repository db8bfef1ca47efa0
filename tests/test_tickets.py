"""Tests for the markdown ticket store."""

from datetime import date
from pathlib import Path

from picklerick.tickets import (
    count_tickets,
    find_next_ticket,
    find_ticket,
    implementable_tickets,
    mark_ticket_done,
    parse_ticket,
    scan_tickets,
)


def test_parse_ticket_frontmatter(tmp_path):
    path = tmp_path / "t1.md"
    content = "---\nid: t1\ntitle: 'Add toggle'\nstatus: \"In Progress\"\norder: 20\n---\nbody\n"
    task = parse_ticket(path, content, created=5.0)
    assert task.id == "t1"
    assert task.title == "Add toggle"
    assert not task.completed
    assert task.body == content
    assert task.metadata == {
        "type": "ticket",
        "path": str(path),
        "status": "In Progress",
        "order": 20.0,
        "created": 5.0,
    }


def test_parse_ticket_defaults():
    task = parse_ticket(Path("x.md"), "id: abc\n", created=0.0)
    assert task.title == "Untitled"
    assert task.metadata["status"] == "Triage"
    assert task.metadata["order"] == float("inf")


def test_parse_ticket_filename_fallback(tmp_path):
    path = tmp_path / "linear_ticket_abc.md"
    task = parse_ticket(path, "# Fix the header\n\nNo frontmatter here.\n", created=0.0)
    assert task.id == "abc"
    assert task.title == "Fix the header"


def test_parse_ticket_without_id_is_skipped(tmp_path):
    assert parse_ticket(tmp_path / "notes.md", "# Notes\n", created=0.0) is None


def test_done_and_canceled_are_completed(tmp_path):
    for status in ("Done", "canceled"):
        task = parse_ticket(tmp_path / "a.md", f"id: a\nstatus: {status}\n", created=0.0)
        assert task.completed


def test_scan_skips_hidden_tool_dirs(session, make_ticket):
    make_ticket(session.session_dir, "t1")
    hidden = Path(session.session_dir) / ".pickle" / "t2"
    hidden.mkdir(parents=True)
    (hidden / "linear_ticket_t2.md").write_text("id: t2\n")
    assert [t.id for t in scan_tickets(session.session_dir)] == ["t1"]


def test_order_beats_creation_time(session, make_ticket):
    make_ticket(session.session_dir, "late", order=10, created=200)
    make_ticket(session.session_dir, "early", order=20, created=100)
    make_ticket(session.session_dir, "unordered", created=50)
    assert [t.id for t in implementable_tickets(session.session_dir)] == ["late", "early", "unordered"]


def test_creation_time_breaks_ties(session, make_ticket):
    make_ticket(session.session_dir, "b", created=200)
    make_ticket(session.session_dir, "a", created=100)
    assert [t.id for t in implementable_tickets(session.session_dir)] == ["a", "b"]


def test_parent_and_epic_tickets_excluded(session, make_ticket):
    make_ticket(session.session_dir, "parent", order=1)
    make_ticket(session.session_dir, "e1", title="[Epic] Theming", order=2)
    make_ticket(session.session_dir, "t1", order=3)
    assert [t.id for t in implementable_tickets(session.session_dir)] == ["t1"]
    # Still addressable by id
    assert find_ticket(session.session_dir, "parent") is not None


def test_find_next_ticket_skips_completed(session, make_ticket):
    make_ticket(session.session_dir, "t1", order=10, status="Done")
    make_ticket(session.session_dir, "t2", order=20)
    assert find_next_ticket(session.session_dir).id == "t2"


def test_find_next_ticket_none_when_all_done(session, make_ticket):
    make_ticket(session.session_dir, "t1", status="Done")
    assert find_next_ticket(session.session_dir) is None


def test_count_tickets(session, make_ticket):
    make_ticket(session.session_dir, "t1", status="Done")
    make_ticket(session.session_dir, "t2")
    make_ticket(session.session_dir, "t3")
    assert count_tickets(session.session_dir, completed=True) == 1
    assert count_tickets(session.session_dir, completed=False) == 2


def test_mark_ticket_done_rewrites_status_and_date(session, make_ticket):
    path = make_ticket(session.session_dir, "t1", status="In Progress")
    mark_ticket_done(path, today=date(2026, 3, 4))
    content = path.read_text()
    assert "status: Done" in content
    assert "updated: 2026-03-04" in content
    assert "In Progress" not in content
    assert find_ticket(session.session_dir, "t1").completed


def test_mark_ticket_done_adds_status_to_filename_ticket(session):
    ticket_dir = Path(session.session_dir) / "abc"
    ticket_dir.mkdir()
    path = ticket_dir / "linear_ticket_abc.md"
    path.write_text("# Fix thing\n")

    mark_ticket_done(path, today=date(2026, 3, 4))

    assert path.read_text() == "---\nstatus: Done\nupdated: 2026-03-04\n---\n# Fix thing\n"
    ticket = find_ticket(session.session_dir, "abc")
    assert ticket.completed
    assert ticket.title == "Fix thing"


def test_mark_ticket_done_adds_status_inside_frontmatter(tmp_path):
    path = tmp_path / "t1.md"
    path.write_text("---\nid: t1\ntitle: Toggle\n---\nbody\n")

    mark_ticket_done(path, today=date(2026, 3, 4))

    assert path.read_text() == "---\nid: t1\ntitle: Toggle\nstatus: Done\n---\nbody\n"


def test_mark_ticket_done_twice_is_stable(session, make_ticket):
    path = make_ticket(session.session_dir, "t1", status="In Progress")
    mark_ticket_done(path, today=date(2026, 3, 4))
    first = path.read_text()

    mark_ticket_done(path, today=date(2026, 3, 4))

    assert path.read_text() == first
    assert first.count("status:") == 1
    assert find_ticket(session.session_dir, "t1").metadata["status"] == "Done"
