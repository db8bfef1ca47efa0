"""Shared test fixtures: isolated settings, projects, sessions and tickets."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

import picklerick.tickets as tickets
from picklerick.settings import Settings
from picklerick.state import SessionState, create_session


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Never read the developer's ~/.pickle/settings.toml or PICKLE_* env."""
    for var in ("PICKLE_PROVIDER", "PICKLE_MODEL", "PICKLE_MAX_ITERATIONS"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "settings.toml"
    monkeypatch.setattr("picklerick.settings.SETTINGS_PATH", path)
    return path


@pytest.fixture(autouse=True)
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "pickle-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "pickle-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "pickle-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "pickle-tests@example.com")


@pytest.fixture()
def mtime_creation(monkeypatch):
    """Use mtime as ticket creation time so tests can set it with os.utime."""
    monkeypatch.setattr(tickets, "_creation_time", lambda st: st.st_mtime)


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    (project / ".pickle-root").touch()
    return project


@pytest.fixture()
def git_project(tmp_path: Path) -> Path:
    """A git repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    project = tmp_path / "repo"
    project.mkdir()
    subprocess.run(["git", "init", "-b", "main"], cwd=str(project), check=True, capture_output=True)
    (project / "README.md").write_text("hello\n")
    subprocess.run(["git", "add", "README.md"], cwd=str(project), check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "init"], cwd=str(project), check=True, capture_output=True)
    return project


@pytest.fixture()
def session(project_dir: Path) -> SessionState:
    return create_session(project_dir, "Add dark mode", settings=Settings())


@pytest.fixture()
def make_ticket(mtime_creation):
    """Write ``<session_dir>/<id>/linear_ticket_<id>.md`` and return its path."""

    def _make(
        session_dir: str | Path,
        ticket_id: str,
        *,
        title: str | None = None,
        status: str = "Triage",
        order: int | None = None,
        created: float | None = None,
    ) -> Path:
        ticket_dir = Path(session_dir) / ticket_id
        ticket_dir.mkdir(parents=True, exist_ok=True)
        lines = ["---", f"id: {ticket_id}", f'title: "{title or ticket_id}"', f"status: {status}"]
        if order is not None:
            lines.append(f"order: {order}")
        lines += ["updated: 2026-01-01", "---", "", f"# {title or ticket_id}", ""]
        path = ticket_dir / f"linear_ticket_{ticket_id}.md"
        path.write_text("\n".join(lines), encoding="utf-8")
        if created is not None:
            os.utime(path, (created, created))
        return path

    return _make
