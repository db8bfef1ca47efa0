"""Normalized agent events.

Each provider adapter turns one line of its CLI's JSON output into zero or
more of these events. Everything downstream (result assembly, logging,
progress display) only sees this closed set.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# Step labels shown to the user while an agent works.
READING_CODE = "Reading code"
IMPLEMENTING = "Implementing"
WRITING_TESTS = "Writing tests"
TESTING = "Testing"
LINTING = "Linting"
COMMITTING = "Committing"
STAGING = "Staging"

STEP_LABELS = (READING_CODE, IMPLEMENTING, WRITING_TESTS, TESTING, LINTING, COMMITTING, STAGING)


@dataclass(frozen=True)
class TextEvent:
    text: str


@dataclass(frozen=True)
class StepEvent:
    label: str


@dataclass(frozen=True)
class UsageEvent:
    """Running totals as reported by the CLI. None leaves a total unchanged."""

    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str


@dataclass(frozen=True)
class SessionStartEvent:
    session_id: str


AgentEvent = TextEvent | StepEvent | UsageEvent | ErrorEvent | SessionStartEvent

_READ_TOOL_HINTS = ("read", "glob", "grep", "search", "list")
_WRITE_TOOL_HINTS = ("write", "edit", "patch", "file")
_LINT_HINTS = ("lint", "eslint", "biome", "prettier", "ruff")
_TEST_HINTS = ("pytest", "vitest", "jest", "bun test", "npm test", "go test")
_READ_COMMAND_HINTS = ("rg", "ripgrep", "grep", "sed", "cat", "ls", "find", "fd", "tree", "head", "tail")
_SHELL_TOOLS = ("bash", "exec", "shell")


def _dig(obj: Any, *keys: str | int) -> Any:
    for key in keys:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
            obj = obj[key]
        elif isinstance(obj, dict):
            obj = obj.get(key)
        else:
            return None
    return obj


def _first_str(*candidates: Any) -> str:
    for value in candidates:
        if isinstance(value, str) and value:
            return value.lower()
    return ""


def is_test_path(path: str) -> bool:
    lower = path.lower()
    name = lower.rsplit("/", 1)[-1]
    return (
        ".test." in lower
        or ".spec." in lower
        or "__tests__" in lower
        or lower.endswith("_test.go")
        or lower.endswith("_test.py")
        or name.startswith("test_")
        or "/tests/" in lower
    )


def detect_step(payload: dict[str, Any]) -> str | None:
    """Infer a step label from one decoded CLI event, or None.

    The three CLIs nest the interesting fields differently (under ``part``,
    under ``item``, or at the top level), so every known location is tried.
    """
    root = payload.get("part") or payload.get("item") or payload
    if not isinstance(root, dict):
        root = payload

    tool = _first_str(root.get("tool"), root.get("name"), root.get("tool_name"), payload.get("tool"))
    if not tool and isinstance(payload.get("item"), dict):
        # Codex items carry no tool name, only a kind such as "file_change".
        tool = _first_str(root.get("type"))
    command = _first_str(
        root.get("command"),
        _dig(root, "input", "command"),
        _dig(root, "state", "input", "command"),
        payload.get("command"),
    )
    file_path = _first_str(
        root.get("file_path"),
        root.get("filePath"),
        root.get("path"),
        _dig(root, "files", 0),
        _dig(root, "paths", 0),
        _dig(root, "changes", 0, "path"),
        payload.get("file_path"),
    )
    description = _first_str(
        root.get("description"),
        _dig(root, "metadata", "description"),
        _dig(root, "state", "title"),
        payload.get("description"),
    )
    title = _first_str(root.get("title"), _dig(root, "metadata", "title"))
    combined = f"{title} {description} {command}"

    is_write = any(hint in tool for hint in _WRITE_TOOL_HINTS)

    if any(hint in tool for hint in _READ_TOOL_HINTS):
        return READING_CODE
    if "git commit" in combined:
        return COMMITTING
    if "git add" in combined:
        return STAGING
    if any(hint in combined for hint in _LINT_HINTS):
        return LINTING
    if any(hint in combined for hint in _TEST_HINTS):
        return TESTING
    if is_write:
        return WRITING_TESTS if is_test_path(file_path) else IMPLEMENTING
    if tool in _SHELL_TOOLS or "command" in tool:
        if any(command.startswith(h) or f" {h}" in command for h in _READ_COMMAND_HINTS):
            return READING_CODE
    return None
