"""Tests for the pickle CLI."""

import json

import pytest
from click.testing import CliRunner

from _fake_provider import FakeProvider
from picklerick.cli import main
from picklerick.providers import AgentResult
from picklerick.state import load_state


@pytest.fixture()
def runner():
    return CliRunner()


def _last_json(output):
    return json.loads(output.strip().splitlines()[-1])


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "version" in result.output


def test_validate_settings_without_file(runner):
    result = runner.invoke(main, ["validate-settings"])
    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["ok"] is True
    assert payload["errors"] == []
    assert payload["warnings"]


def test_validate_settings_invalid(runner, isolated_settings):
    isolated_settings.write_text('[model]\nprovider = "copilot"\n')
    result = runner.invoke(main, ["validate-settings"])
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert 'Invalid provider "copilot"' in payload["errors"][0]


def test_sessions_lists_project_sessions(runner, session, project_dir, monkeypatch):
    monkeypatch.chdir(project_dir)
    result = runner.invoke(main, ["sessions"])
    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert [s["original_prompt"] for s in payload] == ["Add dark mode"]
    assert payload[0]["status"] == "PRD (Iteration 1)"
    assert payload[0]["prd_mode"] is False


def test_run_requires_prompt_or_resume(runner):
    result = runner.invoke(main, ["run"])
    assert result.exit_code == 2
    payload = _last_json(result.output)
    assert payload == {"ok": False, "error": "Provide a PROMPT or --resume SESSION_DIR."}


def test_run_rejects_oversized_prompt(runner):
    result = runner.invoke(main, ["run", "x" * 100_001])
    assert result.exit_code == 2
    assert "max 100,000" in _last_json(result.output)["error"]


def test_run_new_session(runner, project_dir, monkeypatch):
    monkeypatch.chdir(project_dir)
    provider = FakeProvider()
    monkeypatch.setattr("picklerick.cli.create_provider", lambda name: provider)

    result = runner.invoke(main, ["run", "Add dark mode", "--max-iterations", "5", "--completion-promise", "SHIPPED"])

    assert result.exit_code == 0, result.output
    payload = _last_json(result.output)
    assert payload["ok"] is True
    assert payload["worktree"] is None
    assert payload["iteration"] == 3
    state = load_state(payload["session_dir"])
    assert state.max_iterations == 5
    assert state.completion_promise == "SHIPPED"
    assert not state.active
    assert len(provider.calls) == 2


def test_prd_flag_is_listed_by_sessions(runner, project_dir, monkeypatch):
    monkeypatch.chdir(project_dir)
    monkeypatch.setattr("picklerick.cli.create_provider", lambda name: FakeProvider())

    result = runner.invoke(main, ["run", "Ship the PRD", "--prd", "--max-iterations", "1"])
    assert result.exit_code == 0, result.output

    listed = json.loads(runner.invoke(main, ["sessions"]).output)
    assert [(s["original_prompt"], s["prd_mode"]) for s in listed] == [("Ship the PRD", True)]

def test_run_resume_existing_session(runner, session, monkeypatch):
    provider = FakeProvider()
    monkeypatch.setattr("picklerick.cli.create_provider", lambda name: provider)

    result = runner.invoke(
        main, ["run", "--resume", session.session_dir, "--provider", "codex", "--max-iterations", "1"]
    )

    assert result.exit_code == 0, result.output
    assert _last_json(result.output)["session_dir"] == session.session_dir
    assert load_state(session.session_dir).step == "breakdown"


def test_run_resume_without_state(runner, tmp_path):
    result = runner.invoke(main, ["run", "--resume", str(tmp_path)])
    assert result.exit_code == 1
    assert "No valid session state" in _last_json(result.output)["error"]


def test_run_unavailable_provider(runner, project_dir, monkeypatch):
    class Missing(FakeProvider):
        def is_available(self):
            return False

    monkeypatch.chdir(project_dir)
    monkeypatch.setattr("picklerick.cli.create_provider", lambda name: Missing())
    result = runner.invoke(main, ["run", "Add dark mode"])
    assert result.exit_code == 1
    assert _last_json(result.output)["error"] == "fake-agent not found on PATH"


def test_run_failure_suggests_resume(runner, session, monkeypatch):
    provider = FakeProvider([AgentResult(success=False, error="quota exceeded")])
    monkeypatch.setattr("picklerick.cli.create_provider", lambda name: provider)

    result = runner.invoke(main, ["run", "--resume", session.session_dir])

    assert result.exit_code == 1
    error = _last_json(result.output)["error"]
    assert error.startswith("quota exceeded. Resume with: pickle run --resume ")
    assert session.session_dir in error


def test_changes_without_worktree(runner, session):
    result = runner.invoke(main, ["changes", session.session_dir])
    assert result.exit_code == 1
    assert "No worktree for this session" in _last_json(result.output)["error"]


def test_unknown_command_suggests(runner):
    result = runner.invoke(main, ["sesions"])
    assert result.exit_code == 2
    assert "Did you mean: sessions" in _last_json(result.output)["error"]


def test_changes_without_state_is_json_error(runner, tmp_path):
    result = runner.invoke(main, ["changes", str(tmp_path)])
    assert result.exit_code == 1
    assert _last_json(result.output) == {"ok": False, "error": f"State not found in {tmp_path}"}
