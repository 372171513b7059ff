"""Async git plumbing used for worktree and branch isolation.

All commands run through ``asyncio.create_subprocess_exec`` with an explicit
``cwd``; nothing in this module changes the process working directory.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from agentfleet.core.result import Err, GitError, Ok, Result

_GIT_ENV = {**os.environ, "GIT_TERMINAL_PROMPT": "0", "GIT_EDITOR": "true"}


@dataclass
class WorktreeInfo:
    """Information about a git worktree."""

    path: Path
    branch: str
    commit: str
    is_locked: bool
    prunable: bool


async def _run_git(cwd: Path, *args: str) -> Result[str, GitError]:
    """Run git with asyncio and return stdout as text, wrapping failures."""
    if not cwd.exists():
        return Err(GitError("Repository path does not exist", context={"cwd": str(cwd)}))

    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
            env=_GIT_ENV,
        )
    except FileNotFoundError:
        return Err(GitError("git executable not found on PATH", context={"cwd": str(cwd)}))
    except OSError as exc:
        return Err(
            GitError(
                "Failed to start git",
                context={"cwd": str(cwd), "args": list(args), "error": str(exc)},
            )
        )

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        detail = message or stdout_text or f"git {' '.join(args)} failed"
        return Err(
            GitError(
                detail,
                context={"cwd": str(cwd), "args": list(args), "returncode": process.returncode},
            )
        )

    return Ok(stdout.decode("utf-8", errors="replace"))


def _parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain` output."""
    worktrees: list[WorktreeInfo] = []
    current: dict[str, str] = {}

    def _flush() -> None:
        if current:
            worktrees.append(
                WorktreeInfo(
                    path=Path(current.get("worktree", "")),
                    branch=current.get("branch", "").replace("refs/heads/", ""),
                    commit=current.get("HEAD", ""),
                    is_locked="locked" in current,
                    prunable="prunable" in current,
                )
            )
            current.clear()

    for line in output.splitlines():
        if not line.strip():
            _flush()
            continue
        key, _, value = line.partition(" ")
        if key in {"worktree", "HEAD", "branch"}:
            current[key] = value
        elif key in {"locked", "prunable"}:
            current[key] = "true"

    _flush()
    return worktrees


class AsyncRepo:
    """Async git wrapper bound to one working directory."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def path(self) -> Path:
        return self._root

    @classmethod
    async def open(cls, path: Path | str = ".") -> Result[AsyncRepo, GitError]:
        root = Path(path).expanduser()
        match await _run_git(root, "rev-parse", "--show-toplevel"):
            case Ok(raw):
                return Ok(cls(Path(raw.strip()).resolve()))
            case Err(err):
                return Err(err)

    async def run_git(self, *args: str) -> Result[str, GitError]:
        """Public wrapper around git subprocess execution."""
        return await _run_git(self._root, *args)

    async def head(self, short: bool = False) -> Result[str, GitError]:
        args = ["rev-parse", "--short", "HEAD"] if short else ["rev-parse", "HEAD"]
        return (await _run_git(self._root, *args)).map(str.strip)

    async def current_branch(self) -> Result[str, GitError]:
        """Return the checked-out branch name (``HEAD`` when detached)."""
        return (await _run_git(self._root, "rev-parse", "--abbrev-ref", "HEAD")).map(str.strip)

    async def branch_exists(self, branch: str) -> bool:
        result = await _run_git(self._root, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        return result.is_ok()

    async def has_changes(self) -> Result[bool, GitError]:
        """Whether the working tree has staged, unstaged or untracked changes."""
        return (await _run_git(self._root, "status", "--porcelain")).map(lambda out: bool(out.strip()))

    async def add_all(self) -> Result[None, GitError]:
        return (await _run_git(self._root, "add", "--all")).map(lambda _: None)

    async def commit(self, message: str) -> Result[str, GitError]:
        match await _run_git(self._root, "commit", "-m", message):
            case Err(err):
                return Err(err)
            case Ok(_):
                pass
        return await self.head()

    async def commit_all(self, message: str) -> Result[str | None, GitError]:
        """Stage and commit everything; returns ``None`` when there was nothing to commit."""
        match await self.has_changes():
            case Err(err):
                return Err(err)
            case Ok(False):
                return Ok(None)
            case Ok(True):
                pass
        match await self.add_all():
            case Err(err):
                return Err(err)
            case Ok(_):
                pass
        return await self.commit(message)

    async def changed_files(self, base: str, ref: str = "HEAD") -> Result[list[str], GitError]:
        """Paths changed between ``base`` and ``ref``."""
        match await _run_git(self._root, "diff", "--name-only", f"{base}...{ref}"):
            case Ok(output):
                return Ok([line.strip() for line in output.splitlines() if line.strip()])
            case Err(err):
                return Err(err)

    # -------------------------------------------------------------------------
    # Worktree operations
    # -------------------------------------------------------------------------

    async def worktree_add(
        self,
        path: Path,
        branch: str,
        *,
        new_branch: bool = True,
        start_point: str | None = None,
    ) -> Result[Path, GitError]:
        """Create a new worktree, optionally on a fresh branch.

        [invariant:async-io] Uses asyncio subprocess
        """
        args: list[str] = ["worktree", "add"]
        if new_branch:
            args.extend(["-b", branch])
        args.append(str(path))
        if not new_branch:
            args.append(branch)
        if start_point:
            args.append(start_point)

        match await _run_git(self._root, *args):
            case Ok(_):
                return Ok(path.resolve())
            case Err(err):
                return Err(err)

    async def worktree_remove(self, path: Path, *, force: bool = False) -> Result[None, GitError]:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        return (await _run_git(self._root, *args)).map(lambda _: None)

    async def worktree_list(self) -> Result[list[WorktreeInfo], GitError]:
        match await _run_git(self._root, "worktree", "list", "--porcelain"):
            case Ok(output):
                return Ok(_parse_worktree_list(output))
            case Err(err):
                return Err(err)

    async def worktree_prune(self) -> Result[None, GitError]:
        return (await _run_git(self._root, "worktree", "prune")).map(lambda _: None)

    # -------------------------------------------------------------------------
    # Branch and merge operations
    # -------------------------------------------------------------------------

    async def create_branch(self, branch: str, start_point: str = "HEAD") -> Result[None, GitError]:
        return (await _run_git(self._root, "branch", branch, start_point)).map(lambda _: None)

    async def checkout(self, branch: str) -> Result[None, GitError]:
        return (await _run_git(self._root, "checkout", branch)).map(lambda _: None)

    async def delete_branch(self, branch: str, *, force: bool = False) -> Result[None, GitError]:
        flag = "-D" if force else "-d"
        return (await _run_git(self._root, "branch", flag, branch)).map(lambda _: None)

    async def is_ancestor(self, commit: str, ref: str = "HEAD") -> bool:
        """Whether ``commit`` is already contained in ``ref``."""
        result = await _run_git(self._root, "merge-base", "--is-ancestor", commit, ref)
        return result.is_ok()

    async def merge(
        self,
        branch: str,
        *,
        no_ff: bool = True,
        message: str | None = None,
    ) -> Result[str, GitError]:
        """Merge a branch into the checked-out branch.

        Returns:
            Ok(commit_sha) on success, Err(GitError) on conflict/failure
        """
        args = ["merge", "--no-edit"]
        if no_ff:
            args.append("--no-ff")
        if message:
            args.extend(["-m", message])
        args.append(branch)

        match await _run_git(self._root, *args):
            case Ok(_):
                return await self.head()
            case Err(err):
                return Err(err)

    async def merge_abort(self) -> Result[None, GitError]:
        return (await _run_git(self._root, "merge", "--abort")).map(lambda _: None)

    async def conflict_files(self) -> Result[list[str], GitError]:
        """Paths with unresolved merge conflicts."""
        match await _run_git(self._root, "diff", "--name-only", "--diff-filter=U"):
            case Ok(output):
                return Ok([line.strip() for line in output.splitlines() if line.strip()])
            case Err(err):
                return Err(err)


__all__ = [
    "AsyncRepo",
    "WorktreeInfo",
]
