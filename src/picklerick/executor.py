"""Sequential executor: the per-session control loop.

Each iteration asks the task source for the next unit of work, builds the
phase prompt, runs one agent turn and records completion. State is saved
before the iteration counter advances, so resuming a session re-enters at
the last completed task boundary.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from picklerick.events import AgentEvent, StepEvent, TextEvent
from picklerick.git_ops import (
    PR_COMMIT_MESSAGE,
    WORKTREE_EXCLUDES,
    WorktreeInfo,
    cleanup_worktree,
    commit_pending,
    create_worktree,
    get_current_branch,
    sync_files,
    sync_worktree_to_original,
)
from picklerick.prompt import build_prompt
from picklerick.providers import BaseProvider, ProviderOptions, compact_error
from picklerick.pull_requests import (
    create_pull_request,
    generate_pr_description,
    is_gh_available,
    save_pr_description,
)
from picklerick.settings import get_configured_model
from picklerick.state import SessionState, load_state, save_state
from picklerick.task_source import PickleTaskSource
from picklerick.tickets import Task

log = logging.getLogger(__name__)

SESSION_LOG_FILENAME = "session.log"
DEBUG_DIRNAME = "debug"
COMPLETION_PHRASE = "I AM DONE"
STOP_TURN_MARKER = "[STOP_TURN]"
MIN_INVOCATION_TIMEOUT_SECONDS = 10

# Master-side bookkeeping that the worktree mirror must never overwrite.
SESSION_SYNC_EXCLUDES = ("state.json", SESSION_LOG_FILENAME, DEBUG_DIRNAME)

QuestionHandler = Callable[[str], Awaitable[str]]


@dataclass
class ProgressReport:
    iteration: int
    task_title: str | None = None
    step: str | None = None


@dataclass
class ExecutionResult:
    worktree_info: WorktreeInfo | None = None


ProgressCallback = Callable[[ProgressReport], None]


class SessionError(RuntimeError):
    """A session aborted because an agent turn failed."""


class SessionLogHandler(logging.Handler):
    """Logging handler that appends records to a session's ``session.log``."""

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(self.format(record) + "\n")
        except Exception:
            self.handleError(record)


def is_task_complete(response: str, completion_promise: str | None) -> bool:
    """Either completion signal in the final response completes the task."""
    if completion_promise and f"<promise>{completion_promise}</promise>" in response:
        return True
    return COMPLETION_PHRASE in response


async def ask_stdin(query: str) -> str:
    return await asyncio.to_thread(input, query)


def _append(path: Path, text: str) -> None:
    with contextlib.suppress(OSError):
        with open(path, "a", encoding="utf-8") as f:
            f.write(text)


class SequentialExecutor:
    """Runs one session's tasks strictly in order until done or out of budget.

    In host-managed mode the end-of-session merge/PR decision is left to the
    caller: the worktree identity is returned instead of asking.
    """

    def __init__(
        self,
        state: SessionState,
        provider: BaseProvider,
        question_handler: QuestionHandler | None = None,
        *,
        verbose: bool = False,
        host_managed: bool = False,
        model: str | None = None,
    ):
        self.state = state
        self.provider = provider
        self.question_handler = question_handler or ask_stdin
        self.verbose = verbose
        self.host_managed = host_managed
        self.model = model
        self._progress_callback: ProgressCallback | None = None
        self._current_task_title: str | None = None

    @property
    def session_dir(self) -> Path:
        return Path(self.state.session_dir)

    def on_progress(self, callback: ProgressCallback) -> SequentialExecutor:
        self._progress_callback = callback
        return self

    def _emit_progress(self, step: str | None = None) -> None:
        if self._progress_callback is None:
            return
        self._progress_callback(
            ProgressReport(iteration=self.state.iteration, task_title=self._current_task_title, step=step)
        )

    def _save(self) -> None:
        save_state(self.session_dir, self.state)

    def _deactivate(self) -> None:
        self.state.active = False
        self._save()

    def _reload_state(self) -> None:
        """Adopt the on-disk state, which the task source may have changed."""
        fresh = load_state(self.session_dir)
        if fresh is None:
            return
        if not fresh.provider_session_id and self.state.provider_session_id:
            fresh.provider_session_id = self.state.provider_session_id
        self.state = fresh

    def _elapsed_seconds(self) -> float:
        return time.time() - self.state.start_time_epoch

    def _budget_exhausted(self) -> bool:
        if self.state.max_iterations > 0 and self.state.iteration > self.state.max_iterations:
            log.info("Max iterations reached (%d)", self.state.max_iterations)
            return True
        if self.state.max_time_minutes > 0 and self._elapsed_seconds() > self.state.max_time_minutes * 60:
            log.info("Time limit reached (%s minutes)", self.state.max_time_minutes)
            return True
        return False

    def _invocation_timeout(self) -> float | None:
        timeout: float | None = self.state.worker_timeout_seconds or None
        if self.state.max_time_minutes > 0:
            remaining = self.state.max_time_minutes * 60 - self._elapsed_seconds()
            timeout = min(timeout, remaining) if timeout else remaining
        if timeout is None:
            return None
        return max(timeout, MIN_INVOCATION_TIMEOUT_SECONDS)

    async def run(self) -> ExecutionResult:
        """Run the session until it completes, exhausts its budget or fails.

        Raises SessionError when an agent turn fails; any other error is
        fatal too. Either way the session is deactivated and saved first.
        """
        self.session_dir.mkdir(parents=True, exist_ok=True)
        handler = SessionLogHandler(self.session_dir / SESSION_LOG_FILENAME)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        # Attach at the package namespace so git/provider helpers are captured too.
        pkg_logger = logging.getLogger("picklerick")
        pkg_logger.addHandler(handler)
        prev_level = pkg_logger.level
        if pkg_logger.level > logging.DEBUG or pkg_logger.level == logging.NOTSET:
            pkg_logger.setLevel(logging.DEBUG)
        try:
            return await self._run()
        finally:
            pkg_logger.removeHandler(handler)
            pkg_logger.setLevel(prev_level)

    async def _run(self) -> ExecutionResult:
        if not self.state.active:
            # Resuming a stopped session starts a fresh time budget.
            self.state.start_time_epoch = time.time()
        self.state.active = True
        self._save()

        result = ExecutionResult()
        task_source = PickleTaskSource(self.session_dir)
        model = self.model or get_configured_model()
        working_dir = self.state.working_dir
        base_branch: str | None = None
        session_name = self.state.session_name
        worktree: WorktreeInfo | None = None
        local_session_dir: Path | None = None

        try:
            while self.state.active:
                log.info("Iteration %d", self.state.iteration)
                self._emit_progress()

                if self._budget_exhausted():
                    self._deactivate()
                    break

                task = task_source.get_next_task()
                if task is None:
                    log.info("All tasks complete")
                    self._deactivate()
                    break
                self._reload_state()

                self._current_task_title = task.title
                log.info("Current task: %s", task.title)
                self._emit_progress()

                engine_work_dir = Path(working_dir)
                engine_session_dir = self.session_dir

                if not task.is_phase:
                    if worktree is None:
                        try:
                            base_branch = base_branch or get_current_branch(working_dir) or "main"
                            worktree = create_worktree(session_name, base_branch, working_dir)
                            log.info("Session worktree: %s", worktree.worktree_dir)
                            sync_files(working_dir, worktree.worktree_dir, WORKTREE_EXCLUDES)
                            # A conversation started outside the worktree cannot be resumed inside it.
                            self.state.provider_session_id = None
                            self._save()
                        except (RuntimeError, OSError) as e:
                            log.warning("Failed to initialize worktree, running in place: %s", e)

                    if worktree is not None:
                        engine_work_dir = Path(worktree.worktree_dir)
                        local_session_dir = engine_work_dir / ".pickle" / "sessions" / session_name
                        sync_files(self.session_dir, local_session_dir)
                        engine_session_dir = local_session_dir

                worktree = await self._run_iteration(
                    task, task_source, engine_work_dir, engine_session_dir, local_session_dir, worktree, model, result
                )
                if worktree is None:
                    local_session_dir = None

                self._reload_state()
                self.state.iteration += 1
                self._save()
        except Exception:
            log.exception("Fatal error in session %s", session_name)
            self.state.active = False
            with contextlib.suppress(OSError):
                self._save()
            raise

        return result

    async def _run_iteration(
        self,
        task: Task,
        task_source: PickleTaskSource,
        engine_work_dir: Path,
        engine_session_dir: Path,
        local_session_dir: Path | None,
        worktree: WorktreeInfo | None,
        model: str | None,
        result: ExecutionResult,
    ) -> WorktreeInfo | None:
        """One agent turn. Returns the worktree still in use, if any."""
        iteration = self.state.iteration
        prompt = build_prompt(
            self.state, task, session_dir=engine_session_dir, working_dir=engine_work_dir
        )

        debug_dir = self.session_dir / DEBUG_DIRNAME
        iteration_log = debug_dir / f"iteration_{iteration}_log.txt"
        with contextlib.suppress(OSError):
            debug_dir.mkdir(parents=True, exist_ok=True)
            (debug_dir / f"iteration_{iteration}_prompt.txt").write_text(prompt, encoding="utf-8")
            iteration_log.write_text(
                f"=== Iteration {iteration} Log ===\nTask: {task.title}\n"
                f"Started: {datetime.now(UTC).isoformat()}\n\n",
                encoding="utf-8",
            )

        session_log = self.session_dir / SESSION_LOG_FILENAME
        last_step: str | None = None

        def on_event(event: AgentEvent) -> None:
            nonlocal last_step
            match event:
                case TextEvent(text=text):
                    _append(session_log, text)
                    _append(iteration_log, text)
                    if self.verbose:
                        sys.stdout.write(text)
                        sys.stdout.flush()
                case StepEvent(label=label) if label != last_step:
                    last_step = label
                    log.info("Rick is %s...", label)
                    _append(iteration_log, f"[STEP] Rick is {label}...\n")
                    self._emit_progress(label)

        options = ProviderOptions(
            resume_session_id=self.state.provider_session_id,
            model_override=model,
            extra_include_paths=[str(engine_session_dir), str(engine_work_dir)],
            timeout_seconds=self._invocation_timeout(),
        )
        agent_result = await self.provider.execute_streaming(prompt, str(engine_work_dir), on_event, options)

        if agent_result.timed_out:
            _append(iteration_log, f"\n[TIMEOUT] {agent_result.error}\n")
        _append(iteration_log, f"\n\n=== Iteration {iteration} Completed: {datetime.now(UTC).isoformat()} ===\n")

        if not agent_result.success:
            message = compact_error(agent_result.error or "Engine error")
            log.error("Engine error: %s", message)
            _append(iteration_log, f"ERROR: {message}\n")
            self._deactivate()
            raise SessionError(message)

        log.info(
            "Turn finished (%d input / %d output tokens)",
            agent_result.input_tokens,
            agent_result.output_tokens,
        )
        if agent_result.session_id and not self.state.provider_session_id:
            self.state.provider_session_id = agent_result.session_id
            self._save()

        if local_session_dir is not None:
            log.debug("Syncing session artifacts back from %s", local_session_dir)
            sync_files(local_session_dir, self.session_dir, SESSION_SYNC_EXCLUDES)

        if is_task_complete(agent_result.response, self.state.completion_promise):
            log.info("Task completed: %s", task.title)
            task_source.mark_complete(task.id)
            if worktree is not None:
                result.worktree_info = worktree
                if task_source.count_remaining() == 0:
                    log.info("All project tasks complete")
                    if not self.host_managed and await self._finalize(worktree):
                        result.worktree_info = None
                        return None
        elif STOP_TURN_MARKER in agent_result.response:
            log.info("Turn ended without completing the phase, continuing")

        return worktree

    async def _finalize(self, worktree: WorktreeInfo) -> bool:
        """Ask what to do with the finished worktree. True if it was removed."""
        answer = await self.question_handler(
            f"What would you like to do with the changes in '{worktree.branch_name}'?\n"
            f"  [m] Merge into '{worktree.base_branch}' locally\n"
            "  [p] Create a Pull Request\n"
            "  [s] Skip (keep worktree for later)\n"
            "Your choice (m/p/s): "
        )
        choice = answer.strip().lower()

        if choice in ("m", "merge"):
            try:
                sync_worktree_to_original(worktree.worktree_dir, self.state.working_dir, worktree.branch_name)
            except RuntimeError as e:
                log.warning("Merge failed, worktree kept at %s: %s", worktree.worktree_dir, e)
                return False
            log.info("Merge successful")
        elif choice in ("p", "pr"):
            try:
                commit_pending(worktree.worktree_dir, PR_COMMIT_MESSAGE)
            except RuntimeError as e:
                log.warning("Commit failed, worktree kept at %s: %s", worktree.worktree_dir, e)
                return False
            self._open_pull_request(worktree)
        else:
            log.info("Skipping. Worktree preserved at %s", worktree.worktree_dir)
            return False

        cleanup_worktree(worktree.worktree_dir, self.state.working_dir)
        log.info("Worktree deleted")
        return True

    def _open_pull_request(self, worktree: WorktreeInfo) -> None:
        description = generate_pr_description(self.session_dir, worktree.branch_name, worktree.base_branch)
        if is_gh_available():
            url = create_pull_request(
                worktree.branch_name,
                worktree.base_branch,
                description.title,
                description.body,
                worktree.worktree_dir,
            )
            if url:
                log.info("Pull request created: %s", url)
                return
            log.warning("Failed to create PR, saving description instead")
        else:
            log.warning("GitHub CLI (gh) not installed or not authenticated")
        path = save_pr_description(self.session_dir, description)
        log.info(
            "PR description saved to %s. To open it manually: git push -u origin %s && "
            "gh pr create --base %s --head %s",
            path,
            worktree.branch_name,
            worktree.base_branch,
            worktree.branch_name,
        )
