from __future__ import annotations

import asyncio
import dataclasses
import difflib
import json
import logging
import sys
from pathlib import Path

import click

from picklerick import __version__
from picklerick.executor import ProgressReport, SequentialExecutor, SessionError
from picklerick.git_ops import (
    get_changed_files,
    get_default_base_branch,
    get_full_diff,
    session_branch,
    worktree_path,
)
from picklerick.paths import SETTINGS_PATH
from picklerick.providers import create_provider
from picklerick.settings import VALID_PROVIDERS, validate_settings
from picklerick.state import (
    SessionStateError,
    create_session,
    list_sessions,
    load_state,
    require_state,
    save_state,
)

MAX_PROMPT_LENGTH = 100_000


def _validate_prompt(ctx: click.Context, param: click.Parameter, value: str | None) -> str | None:
    if value is not None and len(value) > MAX_PROMPT_LENGTH:
        raise click.BadParameter(
            f"Prompt is {len(value):,} chars (max {MAX_PROMPT_LENGTH:,}).",
            ctx=ctx,
            param=param,
        )
    return value


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _fail(message: str, code: int, standalone_mode: bool) -> int:
    click.echo(json.dumps({"ok": False, "error": message}))
    if standalone_mode:
        raise SystemExit(code)
    return code


class _PickleGroup(click.Group):
    """Command group whose errors are JSON objects on stdout.

    Usage errors, ``ClickException``s and unreadable session state all end
    up as ``{"ok": false, "error": ...}``; a mistyped command name lists the
    closest known commands.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        if args and args[0] not in self.list_commands(ctx) and not args[0].startswith("-"):
            suggestions = difflib.get_close_matches(args[0], self.list_commands(ctx), n=2, cutoff=0.5)
            hint = f" Did you mean: {', '.join(suggestions)}?" if suggestions else ""
            raise click.UsageError(f"No such command '{args[0]}'.{hint}", ctx=ctx)
        return super().resolve_command(ctx, args)

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
        except click.ClickException as e:
            return _fail(e.format_message(), e.exit_code, standalone_mode)
        except SessionStateError as e:
            return _fail(str(e), 1, standalone_mode)
        except click.Abort:
            if not standalone_mode:
                raise
            click.echo("Aborted!", err=True)
            raise SystemExit(1) from None
        if standalone_mode:
            raise SystemExit(rv or 0)
        return rv


@click.group(cls=_PickleGroup)
@click.version_option(version=__version__)
def main():
    """Drive an AI coding agent from a prompt to merged code.

    \b
    Quick start:
      pickle run "Add dark mode"            PRD, tickets, then research/plan/implement
      pickle run --resume SESSION_DIR       Continue where a session stopped
      pickle sessions                       List sessions for this project
      pickle changes SESSION_DIR            Files changed in a session worktree

    \b
    Settings live in ~/.pickle/settings.toml; check them with
    `pickle validate-settings`.
    """


# -- run --


async def _ask(query: str) -> str:
    return await asyncio.to_thread(click.prompt, query, default="s", show_default=False, err=True)


def _echo_progress(report: ProgressReport) -> None:
    parts = [f"[iteration {report.iteration}]"]
    if report.task_title:
        parts.append(report.task_title)
    if report.step:
        parts.append(f"- {report.step}")
    click.echo(" ".join(parts), err=True)


@main.command()
@click.argument("prompt", required=False, callback=_validate_prompt)
@click.option(
    "--resume",
    "resume_dir",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Resume the session stored in SESSION_DIR.",
)
@click.option("--max-iterations", type=click.IntRange(min=0), default=None, help="0 means unlimited.")
@click.option("--completion-promise", default=None, help="Token the agent wraps in <promise> tags.")
@click.option("--provider", type=click.Choice(VALID_PROVIDERS), default=None, help="Agent CLI to drive.")
@click.option(
    "--prd", "is_prd_mode", is_flag=True, help="Label the session as PRD-driven (shown by `pickle sessions`)."
)
@click.option("--verbose", "-v", is_flag=True, help="Stream agent output and debug logs.")
def run(
    prompt: str | None,
    resume_dir: str | None,
    max_iterations: int | None,
    completion_promise: str | None,
    provider: str | None,
    is_prd_mode: bool,
    verbose: bool,
):
    """Start a new session from PROMPT, or resume one with --resume."""
    _configure_logging(verbose)

    if resume_dir:
        state = load_state(resume_dir)
        if state is None:
            raise click.ClickException(f"No valid session state in {resume_dir}")
    elif prompt:
        state = create_session(Path.cwd(), prompt, is_prd_mode=is_prd_mode)
    else:
        raise click.UsageError("Provide a PROMPT or --resume SESSION_DIR.")

    if max_iterations is not None:
        state.max_iterations = max_iterations
    if completion_promise is not None:
        state.completion_promise = completion_promise
    save_state(state.session_dir, state)

    try:
        agent = create_provider(provider)
    except ValueError as e:
        raise click.ClickException(str(e)) from None
    if not agent.is_available():
        raise click.ClickException(f"{agent.cli_command} not found on PATH")

    executor = SequentialExecutor(state, agent, _ask, verbose=verbose).on_progress(_echo_progress)
    try:
        result = asyncio.run(executor.run())
    except (SessionError, FileNotFoundError) as e:
        raise click.ClickException(
            f"{e}. Resume with: pickle run --resume {state.session_dir}"
        ) from None

    final = executor.state
    click.echo(
        json.dumps(
            {
                "ok": True,
                "session_dir": final.session_dir,
                "step": final.step,
                "iteration": final.iteration,
                "worktree": dataclasses.asdict(result.worktree_info) if result.worktree_info else None,
            }
        )
    )


# -- sessions --


@main.command()
def sessions():
    """List sessions of the current project, newest first."""
    payload = [dataclasses.asdict(s) for s in list_sessions(Path.cwd())]
    click.echo(json.dumps(payload, indent=2))


# -- validate-settings --


@main.command("validate-settings")
@click.pass_context
def validate_settings_cmd(ctx: click.Context):
    """Check ~/.pickle/settings.toml for errors."""
    result = validate_settings()
    click.echo(
        json.dumps(
            {
                "ok": result.valid,
                "path": str(SETTINGS_PATH),
                "errors": result.errors,
                "warnings": result.warnings,
            },
            indent=2,
        )
    )
    if not result.valid:
        ctx.exit(1)


# -- changes --


@main.command()
@click.argument("session_dir", type=click.Path(exists=True, file_okay=False))
@click.option("--base", "base_branch", default=None, help="Branch to compare against (default: main/master).")
@click.option("--diff", "show_diff", is_flag=True, help="Print the full diff instead of the file list.")
def changes(session_dir: str, base_branch: str | None, show_diff: bool):
    """List files changed in SESSION_DIR's worktree."""
    state = require_state(session_dir)

    worktree_dir = worktree_path(state.working_dir, state.session_name)
    if not worktree_dir.exists():
        raise click.ClickException(f"No worktree for this session at {worktree_dir}")
    base = base_branch or get_default_base_branch(state.working_dir) or "main"

    if show_diff:
        click.echo(get_full_diff(worktree_dir, base), nl=False)
        return
    files = get_changed_files(worktree_dir, base)
    click.echo(
        json.dumps(
            {
                "branch": session_branch(state.session_name),
                "base": base,
                "files": [dataclasses.asdict(f) for f in files],
            },
            indent=2,
        )
    )
