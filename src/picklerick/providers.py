"""Provider adapters for external coding-agent CLIs.

Each adapter runs one CLI as a subprocess, writes the prompt to its stdin
and reads newline-delimited JSON events from stdout and stderr. The CLIs
use incompatible event schemas; ``normalize`` maps one raw line into the
shared event set in :mod:`picklerick.events`, and ``execute_streaming``
folds those events into an :class:`AgentResult`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from picklerick.events import (
    AgentEvent,
    ErrorEvent,
    SessionStartEvent,
    StepEvent,
    TextEvent,
    UsageEvent,
    detect_step,
)
from picklerick.settings import get_configured_provider

log = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], None]

# Agent output lines can be very large (whole file contents in tool events).
STREAM_LIMIT = 10 * 1024 * 1024


@dataclass
class AgentResult:
    success: bool
    response: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    session_id: str | None = None
    error: str | None = None
    timed_out: bool = False


@dataclass
class ProviderOptions:
    resume_session_id: str | None = None
    model_override: str | None = None
    extra_args: list[str] = field(default_factory=list)
    extra_include_paths: list[str] = field(default_factory=list)
    timeout_seconds: float | None = None


def compact_error(text: str) -> str:
    """Collapse all whitespace so an error fits on one line."""
    return " ".join(text.split())


def decode_line(line: str) -> dict[str, Any] | None:
    """Decode one JSON event line, returning None for anything else."""
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return int(value)
    return None


class _StreamAccumulator:
    """Folds normalized events into result fields as lines arrive."""

    def __init__(self, provider: BaseProvider, on_event: EventCallback | None) -> None:
        self._provider = provider
        self._on_event = on_event
        self.response_parts: list[str] = []
        self.input_tokens = 0
        self.output_tokens = 0
        self.session_id: str | None = None
        self.error: str | None = None
        self.raw_lines: list[str] = []

    def feed(self, line: str) -> None:
        if not line.lstrip().startswith("{"):
            self.raw_lines.append(line)
        for event in self._provider.normalize(line):
            self._apply(event)
            if self._on_event is not None:
                try:
                    self._on_event(event)
                except Exception:
                    log.exception("Event callback failed for %s", type(event).__name__)

    def _apply(self, event: AgentEvent) -> None:
        match event:
            case TextEvent(text=text):
                self.response_parts.append(text)
            case UsageEvent(input_tokens=inp, output_tokens=out):
                if inp is not None:
                    self.input_tokens = inp
                if out is not None:
                    self.output_tokens = out
            case SessionStartEvent(session_id=session_id):
                self.session_id = session_id
            case ErrorEvent(message=message):
                # First structured error wins.
                if self.error is None:
                    self.error = message

    @property
    def response(self) -> str:
        return "".join(self.response_parts)

    def result(self, exit_code: int) -> AgentResult:
        error = self.error
        if error is None and exit_code != 0:
            error = "\n".join(self.raw_lines) or f"Unknown execution error (exit code {exit_code})"
        if error is not None:
            return AgentResult(
                success=False,
                response=self.response,
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
                session_id=self.session_id,
                error=compact_error(error),
            )
        return AgentResult(
            success=True,
            response=self.response or "Task completed",
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            session_id=self.session_id,
        )


class BaseProvider:
    """Shared subprocess plumbing. Subclasses define args and event mapping."""

    name: str = ""
    cli_command: str = ""

    def is_available(self) -> bool:
        return shutil.which(self.cli_command) is not None

    def build_args(self, options: ProviderOptions) -> list[str]:
        raise NotImplementedError

    def parse_event(self, payload: dict[str, Any]) -> list[AgentEvent]:
        raise NotImplementedError

    def normalize(self, line: str) -> list[AgentEvent]:
        """Map one raw output line to events. Never raises."""
        payload = decode_line(line)
        if payload is None:
            return []
        try:
            return self.parse_event(payload)
        except (AttributeError, TypeError, ValueError):
            log.debug("Skipping unparseable %s event: %s", self.name, line[:200], exc_info=True)
            return []

    def _step(self, payload: dict[str, Any]) -> list[AgentEvent]:
        label = detect_step(payload)
        return [StepEvent(label)] if label else []

    async def execute_streaming(
        self,
        prompt: str,
        work_dir: str,
        on_event: EventCallback | None = None,
        options: ProviderOptions | None = None,
    ) -> AgentResult:
        """Run the CLI on *prompt* inside *work_dir* and collect its result.

        Provider failures are returned as ``success=False`` results, never
        raised. When ``options.timeout_seconds`` elapses the process is
        killed and the result reports a timeout.
        """
        options = options or ProviderOptions()
        args = self.build_args(options)
        log.debug("Running %s %s in %s", self.cli_command, " ".join(args), work_dir)

        try:
            process = await asyncio.create_subprocess_exec(
                self.cli_command,
                *args,
                cwd=work_dir,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            return AgentResult(success=False, error=compact_error(f"Failed to start {self.cli_command}: {e}"))

        acc = _StreamAccumulator(self, on_event)

        async def feed_stdin() -> None:
            assert process.stdin
            try:
                process.stdin.write(prompt.encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                log.debug("%s closed stdin before the prompt was written", self.cli_command)
            finally:
                process.stdin.close()

        async def pump(stream: asyncio.StreamReader) -> None:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    log.debug("Dropping oversized %s output line", self.cli_command)
                    continue
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip("\r\n")
                if line.strip():
                    acc.feed(line)

        async def run() -> int:
            assert process.stdout and process.stderr
            await asyncio.gather(feed_stdin(), pump(process.stdout), pump(process.stderr))
            return await process.wait()

        try:
            exit_code = await asyncio.wait_for(run(), timeout=options.timeout_seconds)
        except TimeoutError:
            log.warning("%s timed out after %ss", self.cli_command, options.timeout_seconds)
            result = acc.result(exit_code=1)
            result.success = False
            result.timed_out = True
            result.error = f"Agent timed out after {options.timeout_seconds}s"
            return result
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        log.debug("%s exited with code %d", self.cli_command, exit_code)
        return acc.result(exit_code)


def _codex_error(event: dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict):
        message = error.get("message") or (error.get("data") or {}).get("message")
        if message:
            return message
    return event.get("message") or "Unknown error"


class CodexProvider(BaseProvider):
    name = "Codex"
    cli_command = "codex"

    def build_args(self, options: ProviderOptions) -> list[str]:
        args = ["exec"]
        if options.resume_session_id:
            args += ["resume", options.resume_session_id]
        args.append("--json")
        if options.model_override:
            args += ["--model", options.model_override]
        args += options.extra_args
        # codex rejects extra include directories; the prompt comes last on stdin.
        args.append("-")
        return args

    def parse_event(self, payload: dict[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        kind = payload.get("type") or ""

        if kind == "thread.started" and payload.get("thread_id"):
            events.append(SessionStartEvent(payload["thread_id"]))

        item = payload.get("item")
        if isinstance(item, dict):
            item_type = "".join(c for c in (item.get("type") or "").lower() if c.isalnum())
            if item_type == "agentmessage" and item.get("text"):
                events.append(TextEvent(item["text"]))
            events += self._step(payload)

        usage = payload.get("usage")
        if isinstance(usage, dict):
            events.append(
                UsageEvent(
                    input_tokens=_int_or_none(usage.get("input_tokens")),
                    output_tokens=_int_or_none(usage.get("output_tokens")),
                )
            )

        if kind.endswith(".failed") or kind == "error":
            events.append(ErrorEvent(_codex_error(payload)))
        return events


class GeminiProvider(BaseProvider):
    name = "Gemini CLI"
    cli_command = "gemini"

    def build_args(self, options: ProviderOptions) -> list[str]:
        args = ["-s", "-y", "-o", "stream-json"]
        for path in options.extra_include_paths:
            args += ["--include-directories", path]
        if options.resume_session_id:
            args += ["-r", options.resume_session_id]
        if options.model_override:
            args += ["-m", options.model_override]
        args += options.extra_args
        return args

    def parse_event(self, payload: dict[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        kind = payload.get("type")

        if kind == "init" and payload.get("session_id"):
            events.append(SessionStartEvent(payload["session_id"]))
        elif kind == "message" and payload.get("role") == "assistant" and payload.get("content"):
            events.append(TextEvent(payload["content"]))
        elif kind == "result":
            usage = payload.get("usage") or payload.get("stats") or {}
            events.append(
                UsageEvent(
                    input_tokens=_int_or_none(usage.get("input_tokens")),
                    output_tokens=_int_or_none(usage.get("output_tokens")),
                )
            )
        elif kind == "error":
            error = payload.get("error")
            message = error.get("message") if isinstance(error, dict) else None
            events.append(ErrorEvent(message or payload.get("message") or "Unknown error"))

        events += self._step(payload)
        return events


class OpencodeProvider(BaseProvider):
    name = "OpenCode"
    cli_command = "opencode"

    def build_args(self, options: ProviderOptions) -> list[str]:
        args = ["run", "--format", "json"]
        if options.resume_session_id:
            args += ["-s", options.resume_session_id]
        if options.model_override:
            args += ["-m", options.model_override]
        args += options.extra_args
        return args

    def parse_event(self, payload: dict[str, Any]) -> list[AgentEvent]:
        events: list[AgentEvent] = []
        kind = payload.get("type")
        part = payload.get("part") if isinstance(payload.get("part"), dict) else {}

        if kind == "step_start":
            session_id = payload.get("sessionID") or part.get("sessionID")
            if session_id:
                events.append(SessionStartEvent(session_id))
        elif kind == "text" and part.get("text"):
            events.append(TextEvent(part["text"]))
        elif kind == "step_finish":
            tokens = part.get("tokens") or {}
            # Zero counts are treated as "not reported".
            events.append(
                UsageEvent(
                    input_tokens=_int_or_none(tokens.get("input")) or None,
                    output_tokens=_int_or_none(tokens.get("output")) or None,
                )
            )
        elif kind == "error":
            error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
            message = (error.get("data") or {}).get("message") or error.get("message")
            events.append(ErrorEvent(message or payload.get("message") or "Unknown error"))

        events += self._step(payload)
        return events


PROVIDERS: dict[str, type[BaseProvider]] = {
    "codex": CodexProvider,
    "gemini": GeminiProvider,
    "opencode": OpencodeProvider,
}


def create_provider(name: str | None = None) -> BaseProvider:
    """Instantiate the named provider, or the configured one."""
    key = (name or get_configured_provider()).strip().lower()
    try:
        return PROVIDERS[key]()
    except KeyError:
        raise ValueError(f"Unknown provider '{name}'. Must be one of: {', '.join(PROVIDERS)}") from None
