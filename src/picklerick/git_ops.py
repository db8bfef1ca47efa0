"""Git operations for session worktrees.

Functions raise RuntimeError on failure (not ClickException), so they can
be used from both cli.py and the executor. Housekeeping (prune, cleanup,
file sync) is best-effort: failures are logged and swallowed.
"""

from __future__ import annotations

import contextlib
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from picklerick.paths import worktrees_dir

log = logging.getLogger(__name__)

WORKTREE_EXCLUDES = (".git", ".pickle")
MERGE_COMMIT_MESSAGE = "Auto-commit: Final worktree changes before merge"
PR_COMMIT_MESSAGE = "Auto-commit: Final worktree changes for pull request"


@dataclass(frozen=True)
class WorktreeInfo:
    worktree_dir: str
    branch_name: str
    base_branch: str


@dataclass
class ChangedFile:
    path: str
    status: str  # added | modified | deleted | renamed
    additions: int = 0
    deletions: int = 0
    old_path: str | None = None


def _git(args: list[str], cwd: str | Path, *, check: bool = True) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=check,
        capture_output=True,
        text=True,
    )


def slugify(text: str, max_len: int = 50) -> str:
    """Turn a title into a branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def get_git_root(directory: str | Path) -> str:
    """Top level of the repository containing *directory*, or *directory* itself."""
    result = _git(["rev-parse", "--show-toplevel"], directory, check=False)
    if result.returncode != 0 or not result.stdout.strip():
        return str(directory)
    return result.stdout.strip()


def get_current_branch(directory: str | Path) -> str:
    """Current branch name, or "" when detached or not a repository."""
    result = _git(["branch", "--show-current"], directory, check=False)
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def get_default_base_branch(directory: str | Path) -> str:
    """Prefer ``main``, then ``master``, then whatever is checked out."""
    result = _git(["branch", "--format=%(refname:short)"], directory, check=False)
    branches = set(result.stdout.split()) if result.returncode == 0 else set()
    for candidate in ("main", "master"):
        if candidate in branches:
            return candidate
    return get_current_branch(directory)


def has_uncommitted_changes(directory: str | Path) -> bool:
    result = _git(["status", "--porcelain"], directory, check=False)
    return result.returncode == 0 and bool(result.stdout.strip())


def worktree_path(working_dir: str | Path, session_name: str) -> Path:
    return worktrees_dir(working_dir) / f"session-{session_name}"


def session_branch(session_name: str) -> str:
    return f"pickle/session-{session_name}"


def create_worktree(session_name: str, base_branch: str, working_dir: str | Path) -> WorktreeInfo:
    """Create (or reuse) the session worktree on its session branch.

    An existing worktree directory is returned as-is without touching git.
    Raises RuntimeError if git cannot add the worktree.
    """
    worktree_dir = worktree_path(working_dir, session_name)
    branch = session_branch(session_name)
    info = WorktreeInfo(worktree_dir=str(worktree_dir), branch_name=branch, base_branch=base_branch)

    if worktree_dir.exists():
        return info

    worktree_dir.parent.mkdir(parents=True, exist_ok=True)

    # Stale records left by manually deleted directories block `worktree add`
    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["worktree", "prune"], working_dir)

    try:
        _git(["worktree", "add", "-B", branch, str(worktree_dir), base_branch], working_dir)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to create worktree: {e.stderr.strip()}") from None

    log.info("Created worktree %s on %s", worktree_dir, branch)
    return info


def copy_files_recursively(src: str | Path, dest: str | Path, excludes: tuple[str, ...] | list[str] = ()) -> None:
    """Copy regular files from *src* into *dest*, skipping excluded names."""
    src, dest = Path(src), Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    for entry in src.iterdir():
        if entry.name in excludes:
            continue
        target = dest / entry.name
        if entry.is_dir() and not entry.is_symlink():
            copy_files_recursively(entry, target, excludes)
        elif entry.is_file():
            shutil.copy2(entry, target)


def sync_files(src: str | Path, dest: str | Path, excludes: tuple[str, ...] | list[str] = ()) -> None:
    """One-way mirror of *src* into *dest*. Best-effort: failures are logged.

    Uses rsync when available, falling back to a recursive copy.
    """
    Path(dest).mkdir(parents=True, exist_ok=True)
    if shutil.which("rsync"):
        try:
            subprocess.run(
                ["rsync", "-a", *(f"--exclude={e}" for e in excludes), f"{src}/", f"{dest}/"],
                check=True,
                capture_output=True,
                text=True,
            )
            return
        except subprocess.CalledProcessError as e:
            log.warning("rsync %s -> %s failed, copying instead: %s", src, dest, e.stderr.strip())
    try:
        copy_files_recursively(src, dest, excludes)
    except OSError as e:
        log.warning("Sync %s -> %s failed: %s", src, dest, e)


def commit_pending(worktree_dir: str | Path, message: str = MERGE_COMMIT_MESSAGE) -> bool:
    """Stage and commit everything pending in *worktree_dir*. True if a commit was made."""
    if not has_uncommitted_changes(worktree_dir):
        return False
    try:
        _git(["add", "-A"], worktree_dir)
        _git(["commit", "-m", message], worktree_dir)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to commit worktree changes: {e.stderr.strip()}") from None
    return True


def sync_worktree_to_original(worktree_dir: str | Path, original_dir: str | Path, branch_name: str) -> None:
    """Commit pending worktree changes and merge the session branch back.

    On a merge conflict the merge is aborted and the worktree's files are
    copied over the original checkout instead.
    """
    if not Path(worktree_dir).exists():
        return
    git_root = get_git_root(original_dir)
    commit_pending(worktree_dir)

    try:
        _git(
            ["merge", "--no-ff", branch_name, "-m", f"Merge branch '{branch_name}' (Pickle session)"],
            git_root,
        )
        log.info("Merged %s into %s", branch_name, git_root)
    except subprocess.CalledProcessError as e:
        log.warning("Merge of %s failed, falling back to file copy: %s", branch_name, e.stderr.strip())
        with contextlib.suppress(subprocess.CalledProcessError):
            _git(["merge", "--abort"], git_root)
        copy_files_recursively(worktree_dir, git_root, WORKTREE_EXCLUDES)


def cleanup_worktree(worktree_dir: str | Path, original_dir: str | Path) -> None:
    """Force-remove the worktree and prune. No-op if it is already gone."""
    if not Path(worktree_dir).exists():
        return
    git_root = get_git_root(original_dir)
    try:
        _git(["worktree", "remove", "-f", str(worktree_dir)], git_root)
    except subprocess.CalledProcessError as e:
        log.warning("Failed to remove worktree %s: %s", worktree_dir, e.stderr.strip())
    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["worktree", "prune"], git_root)


_NAME_STATUS = {"A": "added", "D": "deleted", "R": "renamed", "M": "modified"}


def _numstat(args: list[str], cwd: str | Path) -> list[tuple[int, int, str, str | None]]:
    """Parse ``git diff --numstat -M -z`` into (additions, deletions, path, old_path).

    With ``-z`` a rename leaves the path column empty and follows the record
    with the old and new paths as separate NUL-terminated fields.
    """
    result = _git(["diff", "--numstat", "-M", "-z", *args], cwd, check=False)
    if result.returncode != 0:
        return []
    fields = result.stdout.split("\0")
    rows = []
    i = 0
    while i < len(fields):
        parts = fields[i].split("\t")
        i += 1
        if len(parts) < 3:
            continue
        added = int(parts[0]) if parts[0].isdigit() else 0
        deleted = int(parts[1]) if parts[1].isdigit() else 0
        if parts[2]:
            rows.append((added, deleted, parts[2], None))
        elif i + 1 < len(fields):
            rows.append((added, deleted, fields[i + 1], fields[i]))
            i += 2
    return rows


def get_changed_files(worktree_dir: str | Path, base_branch: str) -> list[ChangedFile]:
    """Files changed on the worktree branch relative to *base_branch*.

    Covers committed, staged, unstaged and untracked changes.
    """
    files: dict[str, ChangedFile] = {}

    for added, deleted, path, old_path in _numstat([f"{base_branch}...HEAD"], worktree_dir):
        files[path] = ChangedFile(
            path=path,
            status="renamed" if old_path else "modified",
            additions=added,
            deletions=deleted,
            old_path=old_path,
        )

    name_status = _git(["diff", "--name-status", "-M", f"{base_branch}...HEAD"], worktree_dir, check=False)
    if name_status.returncode == 0:
        for line in name_status.stdout.splitlines():
            parts = line.split("\t")
            if len(parts) >= 2 and parts[-1] in files:
                files[parts[-1]].status = _NAME_STATUS.get(parts[0][:1], "modified")

    for args in ([], ["--staged"]):
        for added, deleted, path, _old in _numstat(args, worktree_dir):
            existing = files.get(path)
            if existing:
                existing.additions += added
                existing.deletions += deleted
            else:
                files[path] = ChangedFile(path=path, status="modified", additions=added, deletions=deleted)

    status = _git(["status", "--porcelain", "--untracked-files=all"], worktree_dir, check=False)
    if status.returncode == 0:
        for line in status.stdout.splitlines():
            code, path = line[:2], line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            if code == "??" or "A" in code:
                files.setdefault(path, ChangedFile(path=path, status="added")).status = "added"
            elif "D" in code:
                files.setdefault(path, ChangedFile(path=path, status="deleted")).status = "deleted"

    return list(files.values())


def get_file_diff(worktree_dir: str | Path, base_branch: str, file_path: str, file_status: str | None = None) -> str:
    """Unified diff of one file against *base_branch*, uncommitted changes included.

    Files that do not exist on the base branch are rendered as all-added.
    """
    result = _git(["diff", base_branch, "--", file_path], worktree_dir, check=False)
    diff = result.stdout if result.returncode == 0 else ""
    if diff or file_status not in (None, "added"):
        return diff

    in_base = _git(["cat-file", "-e", f"{base_branch}:{file_path}"], worktree_dir, check=False)
    if in_base.returncode == 0:
        return diff
    try:
        lines = (Path(worktree_dir) / file_path).read_text(encoding="utf-8").split("\n")
    except (OSError, UnicodeDecodeError) as e:
        log.warning("Cannot read new file %s: %s", file_path, e)
        return ""
    body = "\n".join(f"+{line}" for line in lines)
    return (
        f"diff --git a/{file_path} b/{file_path}\n"
        "new file mode 100644\n"
        "--- /dev/null\n"
        f"+++ b/{file_path}\n"
        f"@@ -0,0 +1,{len(lines)} @@\n"
        f"{body}"
    )


def get_full_diff(worktree_dir: str | Path, base_branch: str) -> str:
    result = _git(["diff", f"{base_branch}...HEAD"], worktree_dir, check=False)
    return result.stdout if result.returncode == 0 else ""
