"""Fold an agent's isolated work back into the main project lineage.

Strategies by isolation kind:

- worktree / branch: commit the agent's lineage, then ``git merge --no-ff``
  it into the base branch of the project checkout. A conflicting merge is
  aborted, never partially applied.
- directory / container: file-level copy of every path the agent changed.
  A path the main tree also changed since the agent started is a conflict
  and nothing is copied. A copy that fails midway is rolled back.

Integration is idempotent per agent: the first outcome is cached and
returned for every later call. ``resolve`` re-attempts a conflicted agent
after a human fixed things out of band.
"""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from contextlib import AbstractAsyncContextManager, nullcontext, suppress
from dataclasses import dataclass
from pathlib import Path

from agentfleet.core.config import AppConfig
from agentfleet.core.console import get_logger
from agentfleet.core.models import (
    Agent,
    Environment,
    IntegrationOutcome,
    IntegrationResult,
)
from agentfleet.core.result import Err, Ok, Result, ValidationError
from agentfleet.environments import EnvironmentProvider
from agentfleet.environments.backends import diff_fingerprints, fingerprint_tree
from agentfleet.git import AsyncRepo

logger = get_logger(__name__)


@dataclass
class _Conflicted:
    environment: Environment
    agent: Agent


class ResultIntegrator:
    """Merges agent results into the project, one agent at a time per checkout."""

    def __init__(self, provider: EnvironmentProvider, config: AppConfig) -> None:
        self._provider = provider
        self._config = config
        self._outcomes: dict[str, IntegrationOutcome] = {}
        self._agent_locks: dict[str, asyncio.Lock] = {}
        self._conflicted: dict[str, _Conflicted] = {}

    def outcome_for(self, agent_id: str) -> IntegrationOutcome | None:
        return self._outcomes.get(agent_id)

    def conflicted(self) -> list[str]:
        return list(self._conflicted)

    def _agent_lock(self, agent_id: str) -> asyncio.Lock:
        return self._agent_locks.setdefault(agent_id, asyncio.Lock())

    def _checkout_guard(self, env: Environment) -> AbstractAsyncContextManager[object]:
        # A branch environment that still holds the checkout lease must not wait on itself.
        if self._provider.holds_checkout(env):
            return nullcontext()
        return self._provider.checkout_lock

    async def integrate(self, env: Environment, agent: Agent) -> IntegrationOutcome:
        """Integrate once; later calls return the cached outcome unchanged."""
        async with self._agent_lock(agent.agent_id):
            cached = self._outcomes.get(agent.agent_id)
            if cached is not None:
                return cached
            outcome = await self._attempt(env, agent)
            self._outcomes[agent.agent_id] = outcome
            if outcome.result is IntegrationResult.CONFLICT_DETECTED:
                self._conflicted[agent.agent_id] = _Conflicted(env, agent)
            return outcome

    async def resolve(self, agent_id: str) -> Result[IntegrationOutcome, ValidationError]:
        """Re-attempt a conflicted integration and release its environment on success.

        Returns:
            Err(ValidationError) if ``agent_id`` has no conflicted integration.
        """
        async with self._agent_lock(agent_id):
            pending = self._conflicted.get(agent_id)
            if pending is None:
                return Err(ValidationError("No conflicted integration for agent", context={"agent_id": agent_id}))

            outcome = await self._attempt(pending.environment, pending.agent)
            self._outcomes[agent_id] = outcome
            if outcome.result is IntegrationResult.MERGED:
                del self._conflicted[agent_id]
                match await self._provider.release(pending.environment, failed=False):
                    case Err(err):
                        logger.warning("Release after resolving %s failed: %s", agent_id, err)
                    case Ok(_):
                        pass
            return Ok(outcome)

    async def _attempt(self, env: Environment, agent: Agent) -> IntegrationOutcome:
        if env.isolation.uses_version_control:
            return await self._merge_lineage(env, agent)
        return await self._copy_merge(env, agent)

    # -------------------------------------------------------------------------
    # Version-controlled lineages
    # -------------------------------------------------------------------------

    async def _merge_lineage(self, env: Environment, agent: Agent) -> IntegrationOutcome:
        repo = self._provider.repo
        if repo is None or not env.branch_name or not env.base_ref:
            return _rejected(agent, "environment has no lineage to merge")
        branch = env.branch_name
        message = f"[{agent.agent_id}] {agent.task.description}"

        async with self._checkout_guard(env):
            # Commit whatever the agent left in its own working copy.
            match await repo.current_branch():
                case Ok(current):
                    pass
                case Err(err):
                    return _rejected(agent, str(err))
            if env.path != repo.path or current == branch:
                match await AsyncRepo(env.path).commit_all(message):
                    case Err(err):
                        return _rejected(agent, f"commit failed: {err}")
                    case Ok(_):
                        pass
            if current != env.base_ref:
                match await repo.checkout(env.base_ref):
                    case Err(err):
                        return _rejected(agent, f"checkout of {env.base_ref} failed: {err}")
                    case Ok(_):
                        pass

            match await repo.run_git("rev-parse", branch):
                case Ok(raw):
                    tip = raw.strip()
                case Err(err):
                    return _rejected(agent, str(err))

            if tip == env.base_commit:
                return IntegrationOutcome(
                    agent_id=agent.agent_id, result=IntegrationResult.MERGED, details="no changes"
                )
            if await repo.is_ancestor(tip, env.base_ref):
                head = (await repo.head()).unwrap_or("")
                return IntegrationOutcome(
                    agent_id=agent.agent_id,
                    result=IntegrationResult.MERGED,
                    details=f"{branch} already merged",
                    commit=head or None,
                )

            match await repo.merge(branch, no_ff=True, message=f"Merge {branch}: {agent.task.description}"):
                case Ok(sha):
                    logger.info("Merged %s into %s at %s", branch, env.base_ref, sha[:8])
                    return IntegrationOutcome(
                        agent_id=agent.agent_id,
                        result=IntegrationResult.MERGED,
                        details=f"merged {branch} into {env.base_ref}",
                        commit=sha,
                    )
                case Err(merge_err):
                    pass

            conflicts = (await repo.conflict_files()).unwrap_or([])
            abort = await repo.merge_abort()
            if isinstance(abort, Err):
                logger.warning("merge --abort failed for %s: %s", branch, abort.error)
            if conflicts:
                logger.warning("Merge of %s conflicts on %s", branch, ", ".join(conflicts))
                return IntegrationOutcome(
                    agent_id=agent.agent_id,
                    result=IntegrationResult.CONFLICT_DETECTED,
                    details=f"merge of {branch} into {env.base_ref} conflicts",
                    conflicts=tuple(conflicts),
                )
            return _rejected(agent, f"merge failed: {merge_err}")

    # -------------------------------------------------------------------------
    # Plain directory copies
    # -------------------------------------------------------------------------

    async def _copy_merge(self, env: Environment, agent: Agent) -> IntegrationOutcome:
        root = self._config.project_root
        ignore = tuple(self._config.project.ignore_dirs)

        async with self._checkout_guard(env):
            current = await asyncio.to_thread(fingerprint_tree, env.path, ignore)
            changed = sorted(diff_fingerprints(env.baseline, current))
            if not changed:
                return IntegrationOutcome(
                    agent_id=agent.agent_id, result=IntegrationResult.MERGED, details="no changes"
                )

            main = await asyncio.to_thread(fingerprint_tree, root, ignore)
            collided = {
                path
                for path in changed
                if main.get(path) != env.baseline.get(path) and main.get(path) != current.get(path)
            }
            conflicts = tuple(sorted(collided.union(_shape_conflicts(changed, current, main))))
            if conflicts:
                logger.warning("Copy-merge of %s conflicts on %s", agent.agent_id, ", ".join(conflicts))
                return IntegrationOutcome(
                    agent_id=agent.agent_id,
                    result=IntegrationResult.CONFLICT_DETECTED,
                    details="main tree changed the same paths since the agent started",
                    conflicts=conflicts,
                )

            try:
                await asyncio.to_thread(
                    _apply_changes, env.path, root, changed, current, self._config.state_dir / "staging"
                )
            except OSError as exc:
                return _rejected(agent, f"copy failed: {exc}")

            commit = await self._commit_paths(changed, f"[{agent.agent_id}] {agent.task.description}")

        return IntegrationOutcome(
            agent_id=agent.agent_id,
            result=IntegrationResult.MERGED,
            details=f"copied {len(changed)} paths",
            commit=commit,
        )

    async def _commit_paths(self, paths: list[str], message: str) -> str | None:
        repo = self._provider.repo
        if repo is None:
            return None
        match await repo.run_git("add", "-A", "--", *paths):
            case Err(err):
                logger.warning("Could not stage integrated paths: %s", err)
                return None
            case Ok(_):
                pass
        match await repo.run_git("commit", "-m", message, "--", *paths):
            case Err(err):
                logger.warning("Could not commit integrated paths: %s", err)
                return None
            case Ok(_):
                pass
        return (await repo.head()).unwrap_or("") or None


def _shape_conflicts(changed: list[str], current: dict[str, str], main: dict[str, str]) -> list[str]:
    """Written paths whose file/directory shape collides with main-tree files the agent never saw.

    Every file that existed at the baseline and sits where the agent now
    wants the other shape was removed by the agent, so it is in ``changed``.
    A colliding main-tree file outside ``changed`` was added to main since.
    """
    touched = set(changed)
    conflicts: list[str] = []
    for path in changed:
        if path not in current:
            continue
        parts = path.split("/")
        ancestors = ("/".join(parts[:depth]) for depth in range(1, len(parts)))
        prefix = path + "/"
        if any(ancestor in main and ancestor not in touched for ancestor in ancestors) or any(
            other.startswith(prefix) and other not in touched for other in main
        ):
            conflicts.append(path)
    return conflicts


class _CopyTransaction:
    """File-level edits to ``target`` that are rolled back together on failure.

    Whatever a step would overwrite or delete is first moved into
    ``backup_root``; ``rollback`` undoes the steps in reverse order.
    """

    def __init__(self, target: Path, backup_root: Path) -> None:
        self._target = target
        self._backup_root = backup_root
        self._saved: list[tuple[Path, Path | None]] = []
        self._created_dirs: list[Path] = []

    def _stash(self, destination: Path) -> None:
        if destination.exists() or destination.is_symlink():
            backup = self._backup_root / str(len(self._saved))
            shutil.move(destination, backup)
            self._saved.append((destination, backup))
        else:
            self._saved.append((destination, None))

    def _make_parents(self, destination: Path) -> None:
        parent = destination.parent
        missing: list[Path] = []
        while parent != self._target and not parent.is_dir():
            # A file where a directory must go was removed by the agent.
            self._stash(parent)
            missing.append(parent)
            parent = parent.parent
        for directory in reversed(missing):
            directory.mkdir()
            self._created_dirs.append(directory)

    def remove(self, rel: str) -> None:
        destination = self._target / rel
        if destination.exists() or destination.is_symlink():
            self._stash(destination)

    def write(self, rel: str, source: Path) -> None:
        destination = self._target / rel
        self._make_parents(destination)
        # Moves aside an existing file, or a directory the agent turned into a file.
        self._stash(destination)
        shutil.copy2(source, destination)

    def rollback(self) -> None:
        for destination, backup in reversed(self._saved):
            if destination.is_dir() and not destination.is_symlink():
                shutil.rmtree(destination)
            elif destination.exists() or destination.is_symlink():
                destination.unlink()
            if backup is not None:
                shutil.move(backup, destination)
        for directory in reversed(self._created_dirs):
            with suppress(OSError):
                directory.rmdir()


def _apply_changes(
    source: Path,
    target: Path,
    paths: list[str],
    present: dict[str, str],
    staging: Path,
) -> None:
    """Copy the agent's changes into ``target`` completely or not at all.

    Removals run first, deepest paths first, so a directory the agent
    replaced with a file is gone before the file is written.
    """
    removals = sorted((rel for rel in paths if rel not in present), key=lambda rel: rel.count("/"), reverse=True)
    writes = sorted(rel for rel in paths if rel in present)
    staging.mkdir(parents=True, exist_ok=True)
    backup_root = Path(tempfile.mkdtemp(prefix="integrate-", dir=staging))
    transaction = _CopyTransaction(target, backup_root)
    try:
        for rel in removals:
            transaction.remove(rel)
        for rel in writes:
            transaction.write(rel, source / rel)
    except OSError:
        logger.warning("Copy into %s failed; rolling back", target)
        transaction.rollback()
        raise
    finally:
        shutil.rmtree(backup_root, ignore_errors=True)


def _rejected(agent: Agent, details: str) -> IntegrationOutcome:
    logger.error("Integration of %s rejected: %s", agent.agent_id, details)
    return IntegrationOutcome(agent_id=agent.agent_id, result=IntegrationResult.REJECTED, details=details)


__all__ = ["ResultIntegrator"]
