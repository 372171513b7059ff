"""Isolation backends behind the environment provider.

Each backend knows how to create, persist, park and remove one kind of
isolated workspace. The provider owns bookkeeping (quota, ownership,
release-exactly-once); backends only touch the filesystem and git.

[invariant:async-io] Blocking filesystem work runs in ``asyncio.to_thread``.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import shutil
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from agentfleet.core.console import get_logger
from agentfleet.core.models import Environment, IsolationKind
from agentfleet.core.result import EnvironmentError, Err, Ok, Result
from agentfleet.git import AsyncRepo

logger = get_logger(__name__)

BRANCH_PREFIX = "agent-"
WORKTREE_PREFIX = "worktree-"


def agent_branch(agent_id: str) -> str:
    return f"{BRANCH_PREFIX}{agent_id}"


def fingerprint_tree(root: Path, ignore_dirs: Iterable[str]) -> dict[str, str]:
    """Map every file under ``root`` (relative POSIX path) to a sha256 digest."""
    ignored = set(ignore_dirs)
    digests: dict[str, str] = {}
    if not root.exists():
        return digests
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in ignored)
        base = Path(dirpath)
        for name in sorted(filenames):
            path = base / name
            if path.is_symlink() or not path.is_file():
                continue
            hasher = hashlib.sha256()
            with path.open("rb") as fh:
                for chunk in iter(lambda: fh.read(65536), b""):
                    hasher.update(chunk)
            digests[path.relative_to(root).as_posix()] = hasher.hexdigest()
    return digests


def diff_fingerprints(before: dict[str, str], after: dict[str, str]) -> set[str]:
    """Paths added, removed or modified between two fingerprints."""
    return {path for path in before.keys() | after.keys() if before.get(path) != after.get(path)}


class IsolationBackend(Protocol):
    """Strategy for one isolation kind."""

    kind: IsolationKind

    async def create(self, agent_id: str, environment_id: str) -> Result[Environment, EnvironmentError]:
        ...

    async def persist(self, env: Environment) -> Result[None, EnvironmentError]:
        """Make the environment's work durable before it is removed."""
        ...

    async def remove(self, env: Environment) -> Result[None, EnvironmentError]:
        ...

    async def park(self, env: Environment) -> Result[None, EnvironmentError]:
        """Keep the environment for inspection but stop it holding shared resources."""
        ...

    def orphan_candidates(self) -> list[Path]:
        ...


async def _base_point(repo: AsyncRepo, base_ref: str | None) -> Result[tuple[str, str], EnvironmentError]:
    """Resolve (branch, commit) that new isolated lineages start from."""
    branch = base_ref
    if branch is None:
        match await repo.current_branch():
            case Ok(name):
                branch = name
            case Err(err):
                return Err(EnvironmentError.tool_failed(str(err), step="current-branch"))
    match await repo.run_git("rev-parse", branch):
        case Ok(sha):
            return Ok((branch, sha.strip()))
        case Err(err):
            return Err(EnvironmentError.tool_failed(str(err), step="rev-parse", ref=branch))


class WorktreeBackend:
    """Separate git working copy on a fresh branch per agent.

    Safe to mutate concurrently with siblings: each agent gets its own
    directory and its own index, so there is no index.lock contention.
    """

    kind = IsolationKind.WORKTREE

    def __init__(self, repo: AsyncRepo, worktree_root: Path, base_ref: str | None = None) -> None:
        self._repo = repo
        self._worktree_root = worktree_root
        self._base_ref = base_ref

    async def create(self, agent_id: str, environment_id: str) -> Result[Environment, EnvironmentError]:
        path = self._worktree_root / f"{WORKTREE_PREFIX}{agent_id}"
        branch = agent_branch(agent_id)
        if path.exists() or await self._repo.branch_exists(branch):
            return Err(EnvironmentError.already_exists(agent_id, path))

        match await _base_point(self._repo, self._base_ref):
            case Ok((base_ref, base_commit)):
                pass
            case Err(err):
                return Err(err)

        await asyncio.to_thread(self._worktree_root.mkdir, parents=True, exist_ok=True)
        match await self._repo.worktree_add(path, branch, new_branch=True, start_point=base_commit):
            case Ok(created):
                logger.debug("Created worktree %s on %s", created, branch)
            case Err(err):
                return Err(EnvironmentError.tool_failed(str(err), step="worktree-add", path=str(path)))

        return Ok(
            Environment(
                environment_id=environment_id,
                path=path.resolve(),
                isolation=self.kind,
                agent_id=agent_id,
                branch_name=branch,
                base_ref=base_ref,
                base_commit=base_commit,
            )
        )

    async def persist(self, env: Environment) -> Result[None, EnvironmentError]:
        worktree = AsyncRepo(env.path)
        match await worktree.commit_all(f"[{env.agent_id}] Persist workspace before removal"):
            case Ok(_):
                return Ok(None)
            case Err(err):
                return Err(EnvironmentError.tool_failed(str(err), step="persist", path=str(env.path)))

    async def remove(self, env: Environment) -> Result[None, EnvironmentError]:
        result = await self._repo.worktree_remove(env.path, force=True)
        if isinstance(result, Err):
            # Fall back to pruning a worktree whose directory is already gone.
            await self._repo.worktree_prune()
            if env.path.exists():
                return Err(
                    EnvironmentError.tool_failed(str(result.error), step="worktree-remove", path=str(env.path))
                )
        if env.branch_name:
            # -d only succeeds once the branch is merged; unmerged work stays reachable.
            await self._repo.delete_branch(env.branch_name)
        return Ok(None)

    async def park(self, env: Environment) -> Result[None, EnvironmentError]:
        return Ok(None)

    def orphan_candidates(self) -> list[Path]:
        if not self._worktree_root.exists():
            return []
        return [
            d for d in self._worktree_root.iterdir()
            if d.is_dir() and d.name.startswith(f"{WORKTREE_PREFIX}AGENT_")
        ]

    async def discard(self, path: Path) -> bool:
        result = await self._repo.worktree_remove(path, force=True)
        if isinstance(result, Err):
            try:
                await asyncio.to_thread(shutil.rmtree, path)
            except OSError as exc:
                logger.error("Failed to remove orphan %s: %s", path, exc)
                return False
        await self._repo.worktree_prune()
        return True


class BranchBackend:
    """Separate line of history sharing the project working directory.

    Only one branch environment can hold the working directory at a time;
    ``create`` waits for the lease, which serializes working-directory
    mutation across agents.
    """

    kind = IsolationKind.BRANCH

    def __init__(self, repo: AsyncRepo, base_ref: str | None = None, lease: asyncio.Lock | None = None) -> None:
        self._repo = repo
        self._base_ref = base_ref
        self._lease = lease or asyncio.Lock()
        self._holder: str | None = None

    @property
    def holder(self) -> str | None:
        return self._holder

    async def create(self, agent_id: str, environment_id: str) -> Result[Environment, EnvironmentError]:
        branch = agent_branch(agent_id)
        if await self._repo.branch_exists(branch):
            return Err(EnvironmentError.already_exists(agent_id, branch))

        await self._lease.acquire()
        self._holder = agent_id
        try:
            match await _base_point(self._repo, self._base_ref):
                case Ok((base_ref, base_commit)):
                    pass
                case Err(err):
                    self._free()
                    return Err(err)

            match await self._repo.create_branch(branch, base_commit):
                case Err(err):
                    self._free()
                    return Err(EnvironmentError.tool_failed(str(err), step="branch", branch=branch))
                case Ok(_):
                    pass
            match await self._repo.checkout(branch):
                case Err(err):
                    await self._repo.delete_branch(branch, force=True)
                    self._free()
                    return Err(EnvironmentError.tool_failed(str(err), step="checkout", branch=branch))
                case Ok(_):
                    pass
        except BaseException:
            self._free()
            raise

        return Ok(
            Environment(
                environment_id=environment_id,
                path=self._repo.path,
                isolation=self.kind,
                agent_id=agent_id,
                branch_name=branch,
                base_ref=base_ref,
                base_commit=base_commit,
            )
        )

    def _free(self) -> None:
        if self._holder is None:
            return
        self._holder = None
        self._lease.release()

    async def _return_to_base(self, env: Environment) -> Result[None, EnvironmentError]:
        if self._holder != env.agent_id:
            return Ok(None)
        try:
            if env.base_ref:
                match await self._repo.current_branch():
                    case Ok(current) if current != env.base_ref:
                        result = await self._repo.checkout(env.base_ref)
                        if isinstance(result, Err):
                            return Err(
                                EnvironmentError.tool_failed(str(result.error), step="checkout", branch=env.base_ref)
                            )
                    case _:
                        pass
            return Ok(None)
        finally:
            self._free()

    async def persist(self, env: Environment) -> Result[None, EnvironmentError]:
        if self._holder != env.agent_id:
            return Ok(None)
        match await self._repo.current_branch():
            case Ok(current) if current == env.branch_name:
                pass
            case _:
                return Ok(None)
        match await self._repo.commit_all(f"[{env.agent_id}] Persist workspace before removal"):
            case Ok(_):
                return Ok(None)
            case Err(err):
                return Err(EnvironmentError.tool_failed(str(err), step="persist", branch=env.branch_name))

    async def remove(self, env: Environment) -> Result[None, EnvironmentError]:
        result = await self._return_to_base(env)
        if env.branch_name:
            await self._repo.delete_branch(env.branch_name)
        return result

    async def park(self, env: Environment) -> Result[None, EnvironmentError]:
        persisted = await self.persist(env)
        returned = await self._return_to_base(env)
        return persisted if isinstance(persisted, Err) else returned

    def orphan_candidates(self) -> list[Path]:
        return []


def _ignore_factory(ignore_dirs: Iterable[str]):  # type: ignore[no-untyped-def]
    ignored = set(ignore_dirs)

    def _ignore(_directory: str, names: list[str]) -> set[str]:
        return {name for name in names if name in ignored}

    return _ignore


class DirectoryBackend:
    """Plain copy of the project tree per agent, without version history."""

    kind = IsolationKind.DIRECTORY

    def __init__(self, project_root: Path, work_root: Path, ignore_dirs: Iterable[str]) -> None:
        self._project_root = project_root
        self._work_root = work_root
        self._ignore_dirs = tuple(ignore_dirs)

    async def create(self, agent_id: str, environment_id: str) -> Result[Environment, EnvironmentError]:
        path = self._work_root / agent_id
        if path.exists():
            return Err(EnvironmentError.already_exists(agent_id, path))

        def _copy() -> dict[str, str]:
            self._work_root.mkdir(parents=True, exist_ok=True)
            shutil.copytree(
                self._project_root,
                path,
                symlinks=True,
                ignore=_ignore_factory(self._ignore_dirs),
            )
            return fingerprint_tree(path, self._ignore_dirs)

        try:
            baseline = await asyncio.to_thread(_copy)
        except (OSError, shutil.Error) as exc:
            await asyncio.to_thread(shutil.rmtree, path, True)
            return Err(EnvironmentError.tool_failed(str(exc), step="copy", path=str(path)))

        return Ok(
            Environment(
                environment_id=environment_id,
                path=path.resolve(),
                isolation=self.kind,
                agent_id=agent_id,
                baseline=baseline,
            )
        )

    async def persist(self, env: Environment) -> Result[None, EnvironmentError]:
        # Integration already copied the work into the project tree.
        return Ok(None)

    async def remove(self, env: Environment) -> Result[None, EnvironmentError]:
        try:
            await asyncio.to_thread(shutil.rmtree, env.path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            return Err(EnvironmentError.tool_failed(str(exc), step="remove", path=str(env.path)))
        return Ok(None)

    async def park(self, env: Environment) -> Result[None, EnvironmentError]:
        return Ok(None)

    def orphan_candidates(self) -> list[Path]:
        if not self._work_root.exists():
            return []
        return [d for d in self._work_root.iterdir() if d.is_dir() and d.name.startswith("AGENT_")]

    async def discard(self, path: Path) -> bool:
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError as exc:
            logger.error("Failed to remove orphan %s: %s", path, exc)
            return False
        return True


class ContainerBackend(DirectoryBackend):
    """Directory copy that the executor mounts into a container."""

    kind = IsolationKind.CONTAINER


__all__ = [
    "BRANCH_PREFIX",
    "BranchBackend",
    "ContainerBackend",
    "DirectoryBackend",
    "IsolationBackend",
    "WorktreeBackend",
    "agent_branch",
    "diff_fingerprints",
    "fingerprint_tree",
]
