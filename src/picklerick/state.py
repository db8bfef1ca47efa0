"""Durable session state.

One JSON document per session at ``<session_dir>/state.json``. It is
rewritten in full on every save (write to a temp file, then rename) and
validated against ``SESSION_STATE_SCHEMA`` on load.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import time
from dataclasses import asdict, dataclass, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate

from picklerick.paths import find_project_root, session_path, sessions_dir
from picklerick.settings import (
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_TIME_MINUTES,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    Settings,
    load_settings,
)

log = logging.getLogger(__name__)

STATE_FILENAME = "state.json"

# Session-wide phases first, then the per-ticket workflow.
STEPS = (
    "prd",
    "breakdown",
    "research",
    "research_review",
    "plan",
    "plan_review",
    "implement",
    "refactor",
    "done",
)

SESSION_STATE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": [
        "active",
        "working_dir",
        "step",
        "iteration",
        "max_iterations",
        "max_time_minutes",
        "worker_timeout_seconds",
        "start_time_epoch",
        "completion_promise",
        "original_prompt",
        "current_ticket",
        "session_dir",
    ],
    "properties": {
        "active": {"type": "boolean"},
        "working_dir": {"type": "string"},
        "step": {"enum": list(STEPS)},
        "iteration": {"type": "integer", "minimum": 0},
        "max_iterations": {"type": "integer"},
        "max_time_minutes": {"type": "number"},
        "worker_timeout_seconds": {"type": "number"},
        "start_time_epoch": {"type": "number"},
        "completion_promise": {"type": ["string", "null"]},
        "original_prompt": {"type": "string"},
        "current_ticket": {"type": ["string", "null"]},
        "session_dir": {"type": "string"},
        "started_at": {"type": "string"},
        "provider_session_id": {"type": ["string", "null"]},
        "is_prd_mode": {"type": "boolean"},
    },
}


class SessionStateError(RuntimeError):
    """Raised when a session's state file is required but missing or invalid."""


@dataclass
class SessionState:
    active: bool
    working_dir: str
    step: str
    iteration: int
    max_iterations: int
    max_time_minutes: float
    worker_timeout_seconds: float
    start_time_epoch: float
    completion_promise: str | None
    original_prompt: str
    current_ticket: str | None
    session_dir: str
    started_at: str = ""
    provider_session_id: str | None = None
    is_prd_mode: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionState:
        """Build a state from a decoded document, ignoring unknown keys."""
        validate(instance=data, schema=SESSION_STATE_SCHEMA)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @property
    def session_name(self) -> str:
        return Path(self.session_dir).name


@dataclass
class SessionSummary:
    original_prompt: str
    status: str
    started_at: str
    session_dir: str
    prd_mode: bool = False


def load_state(session_dir: str | Path) -> SessionState | None:
    """Load a session's state, or None when absent or unreadable."""
    path = Path(session_dir) / STATE_FILENAME
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return SessionState.from_dict(data)
    except (OSError, json.JSONDecodeError, ValidationError, TypeError) as e:
        log.error("Failed to load state from %s: %s", path, e)
        return None


def save_state(session_dir: str | Path, state: SessionState) -> None:
    """Persist *state* in full, replacing the previous document atomically."""
    directory = Path(session_dir)
    directory.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(state.to_dict(), indent=2)
    fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp, directory / STATE_FILENAME)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def require_state(session_dir: str | Path) -> SessionState:
    state = load_state(session_dir)
    if state is None:
        raise SessionStateError(f"State not found in {session_dir}")
    return state


def new_session_id() -> str:
    today = datetime.now(UTC).strftime("%Y-%m-%d")
    return f"{today}-{secrets.token_hex(4)}"


def create_session(
    cwd: str | Path,
    prompt: str,
    *,
    is_prd_mode: bool = False,
    settings: Settings | None = None,
) -> SessionState:
    """Create and persist a fresh session rooted at the project containing *cwd*."""
    root = find_project_root(cwd)
    directory = session_path(root, new_session_id())
    directory.mkdir(parents=True, exist_ok=True)

    settings = settings or load_settings()
    max_iterations = settings.max_iterations or DEFAULT_MAX_ITERATIONS

    state = SessionState(
        active=True,
        working_dir=str(root),
        step="prd",
        iteration=1,
        max_iterations=max_iterations,
        max_time_minutes=DEFAULT_MAX_TIME_MINUTES,
        worker_timeout_seconds=DEFAULT_WORKER_TIMEOUT_SECONDS,
        start_time_epoch=int(time.time()),
        completion_promise=DEFAULT_COMPLETION_PROMISE,
        original_prompt=prompt,
        current_ticket=None,
        session_dir=str(directory),
        started_at=datetime.now(UTC).isoformat(),
        is_prd_mode=is_prd_mode,
    )
    save_state(directory, state)
    log.info("Created session %s", directory)
    return state


def describe_status(state: SessionState) -> str:
    if state.active and state.step != "done":
        return f"{state.step.upper()} (Iteration {state.iteration})"
    return "Done"


def list_sessions(cwd: str | Path) -> list[SessionSummary]:
    """Summarize every session under the project containing *cwd*, newest first."""
    root_sessions = sessions_dir(find_project_root(cwd))
    if not root_sessions.is_dir():
        return []

    summaries: list[SessionSummary] = []
    for entry in sorted(root_sessions.iterdir()):
        if not entry.is_dir():
            continue
        state = load_state(entry)
        if state is None:
            continue
        summaries.append(
            SessionSummary(
                original_prompt=state.original_prompt,
                status=describe_status(state),
                started_at=state.started_at,
                session_dir=state.session_dir,
                prd_mode=state.is_prd_mode,
            )
        )
    summaries.sort(key=lambda s: s.started_at, reverse=True)
    return summaries
