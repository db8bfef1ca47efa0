"""Worker host: runs a session's executor behind a message channel.

The host side (:class:`WorkerClient`) and the worker side
(:class:`WorkerHost`) are two independent state machines that only share a
:class:`WorkerChannel`, a pair of queues carrying typed messages:

host -> worker: StartRequest, StopRequest, InputResponse
worker -> host: ProgressEvent, InputRequest, DoneEvent, ErrorEvent

Blocking "ask the user" calls inside the executor become an
InputRequest/InputResponse exchange, so the host can answer them from
its own context.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from picklerick.executor import (
    ExecutionResult,
    ProgressCallback,
    ProgressReport,
    SequentialExecutor,
    SessionError,
)
from picklerick.git_ops import WorktreeInfo
from picklerick.providers import BaseProvider, create_provider
from picklerick.state import SessionState

log = logging.getLogger(__name__)

DEFAULT_INPUT_ANSWER = "n"


@dataclass(frozen=True)
class StartRequest:
    state: SessionState


@dataclass(frozen=True)
class StopRequest:
    pass


@dataclass(frozen=True)
class InputResponse:
    answer: str


@dataclass(frozen=True)
class ProgressEvent:
    report: ProgressReport


@dataclass(frozen=True)
class InputRequest:
    query: str


@dataclass(frozen=True)
class DoneEvent:
    worktree_info: WorktreeInfo | None = None


@dataclass(frozen=True)
class ErrorEvent:
    message: str


HostMessage = StartRequest | StopRequest | InputResponse
WorkerMessage = ProgressEvent | InputRequest | DoneEvent | ErrorEvent

ProviderFactory = Callable[[], BaseProvider]
InputHandler = Callable[[str], Awaitable[str]]


class WorkerChannel:
    """Two one-way queues between a host and its worker."""

    def __init__(self) -> None:
        self.to_worker: asyncio.Queue[HostMessage] = asyncio.Queue()
        self.to_host: asyncio.Queue[WorkerMessage] = asyncio.Queue()


async def _receive(queue: asyncio.Queue, other: asyncio.Task | None):
    """Next queued message, or None once *other* finishes with the queue empty."""
    receive = asyncio.ensure_future(queue.get())
    waiters: set[asyncio.Future] = {receive}
    if other is not None:
        waiters.add(other)
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        receive.cancel()
        raise
    if receive.done():
        return receive.result()
    receive.cancel()
    # A message put just before *other* finished stays in the queue.
    with contextlib.suppress(asyncio.QueueEmpty):
        return queue.get_nowait()
    return None


class WorkerHost:
    """Worker side of the channel: idle -> running -> finished | stopped."""

    def __init__(
        self,
        channel: WorkerChannel,
        *,
        provider_factory: ProviderFactory | None = None,
        host_managed: bool = True,
    ):
        self.channel = channel
        self.provider_factory = provider_factory or create_provider
        self.host_managed = host_managed
        self.status = "idle"
        self._task: asyncio.Task | None = None
        self._pending_input: asyncio.Future[str] | None = None

    async def _ask(self, query: str) -> str:
        self._pending_input = asyncio.get_running_loop().create_future()
        await self.channel.to_host.put(InputRequest(query))
        try:
            return await self._pending_input
        finally:
            self._pending_input = None

    def _report(self, report: ProgressReport) -> None:
        self.channel.to_host.put_nowait(ProgressEvent(report))

    async def _execute(self, state: SessionState) -> None:
        try:
            executor = SequentialExecutor(
                state,
                self.provider_factory(),
                self._ask,
                host_managed=self.host_managed,
            ).on_progress(self._report)
            result = await executor.run()
        except asyncio.CancelledError:
            self.status = "stopped"
            raise
        except Exception as e:
            log.exception("Worker for %s failed", state.session_dir)
            self.status = "finished"
            await self.channel.to_host.put(ErrorEvent(str(e)))
            return
        self.status = "finished"
        await self.channel.to_host.put(DoneEvent(result.worktree_info))

    def _handle(self, message: HostMessage) -> None:
        match message:
            case StartRequest(state=state):
                if self.status != "idle":
                    log.warning("Ignoring start request: worker is %s", self.status)
                    return
                self.status = "running"
                self._task = asyncio.create_task(self._execute(state))
            case StopRequest():
                self._stop()
            case InputResponse(answer=answer):
                if self._pending_input is not None and not self._pending_input.done():
                    self._pending_input.set_result(answer)
                else:
                    log.warning("Input response with no pending request")

    def _stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self.status = "stopped"

    async def serve(self) -> None:
        """Process host messages until the session finishes or is stopped."""
        try:
            while self.status not in ("finished", "stopped"):
                message = await _receive(self.channel.to_worker, self._task)
                if message is None:
                    break
                self._handle(message)
        except asyncio.CancelledError:
            self._stop()
            raise
        if self._task is not None and not self._task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._task


class WorkerClient:
    """Host side of the channel: idle -> running -> done | failed | stopped."""

    def __init__(
        self,
        *,
        provider_factory: ProviderFactory | None = None,
        host_managed: bool = True,
    ):
        self.channel = WorkerChannel()
        self.status = "idle"
        self._host = WorkerHost(self.channel, provider_factory=provider_factory, host_managed=host_managed)
        self._worker_task: asyncio.Task | None = None
        self._on_progress: ProgressCallback | None = None
        self._on_input: InputHandler | None = None

    def on_progress(self, callback: ProgressCallback) -> WorkerClient:
        self._on_progress = callback
        return self

    def on_input(self, handler: InputHandler) -> WorkerClient:
        self._on_input = handler
        return self

    async def run(self, state: SessionState) -> ExecutionResult:
        """Run *state*'s session in a worker and wait for it to finish.

        Raises SessionError when the worker reports an error.
        """
        if self.status != "idle":
            raise RuntimeError(f"Worker client already {self.status}")
        self._worker_task = asyncio.create_task(self._host.serve())
        self.status = "running"
        await self.channel.to_worker.put(StartRequest(state))

        while True:
            message = await _receive(self.channel.to_host, self._worker_task)
            match message:
                case ProgressEvent(report=report):
                    if self._on_progress is not None:
                        self._on_progress(report)
                case InputRequest(query=query):
                    answer = await self._on_input(query) if self._on_input else DEFAULT_INPUT_ANSWER
                    await self.channel.to_worker.put(InputResponse(answer))
                case DoneEvent(worktree_info=worktree_info):
                    self.status = "done"
                    return ExecutionResult(worktree_info=worktree_info)
                case ErrorEvent(message=error):
                    self.status = "failed"
                    raise SessionError(error)
                case None:
                    if self.status == "stopped" or self._worker_task.cancelled():
                        self.status = "stopped"
                        return ExecutionResult()
                    self.status = "failed"
                    self._worker_task.result()
                    raise SessionError("Worker exited without reporting a result")

    async def stop(self) -> None:
        """Stop the worker outright. An in-flight agent process is killed."""
        self.status = "stopped"
        if self._worker_task is None or self._worker_task.done():
            return
        self.channel.to_worker.put_nowait(StopRequest())
        self._worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker_task


class SessionRegistry:
    """Sessions running under one host, keyed by session directory."""

    def __init__(self) -> None:
        self._running: dict[str, tuple[WorkerClient, asyncio.Task[ExecutionResult]]] = {}

    def __contains__(self, session_dir: object) -> bool:
        return str(session_dir) in self._running

    def __len__(self) -> int:
        return len(self._running)

    def session_dirs(self) -> list[str]:
        return sorted(self._running)

    def get(self, session_dir: str | Path) -> WorkerClient | None:
        entry = self._running.get(str(session_dir))
        return entry[0] if entry else None

    def launch(self, state: SessionState, client: WorkerClient | None = None) -> asyncio.Task[ExecutionResult]:
        """Start *state*'s session in its own worker and track it until it ends."""
        key = state.session_dir
        if key in self._running:
            raise RuntimeError(f"Session already running: {key}")
        client = client or WorkerClient()
        task = asyncio.create_task(client.run(state))
        self._running[key] = (client, task)
        task.add_done_callback(lambda _t: self._running.pop(key, None))
        return task

    async def stop(self, session_dir: str | Path) -> None:
        entry = self._running.get(str(session_dir))
        if entry is None:
            return
        client, task = entry
        await client.stop()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def stop_all(self) -> None:
        for session_dir in list(self._running):
            await self.stop(session_dir)
