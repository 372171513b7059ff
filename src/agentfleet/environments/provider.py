"""Environment provider: hands out isolated workspaces and takes them back.

The provider guarantees that no two live environments share a mutable
path, that every environment is released at most once, and that the
number of live environments never exceeds the configured quota.

Release semantics:
    - success: the backend persists the work, then removes the workspace
    - failure: the workspace is preserved for inspection and reported
      through ``preserved()``; it still counts as released

Orphans left by crashed sessions are pruned by ``initialize``, except for
workspaces whose agent is known to have failed.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from agentfleet.core.config import AppConfig
from agentfleet.core.console import get_logger
from agentfleet.core.models import Environment, IsolationKind
from agentfleet.core.result import EnvironmentError, Err, Ok, Result, WorkspaceError
from agentfleet.environments.backends import (
    BranchBackend,
    ContainerBackend,
    DirectoryBackend,
    IsolationBackend,
    WorktreeBackend,
)
from agentfleet.git import AsyncRepo

logger = get_logger(__name__)


@dataclass
class _Slot:
    """Bookkeeping for one handed-out environment."""

    environment: Environment
    released: bool = False
    parked: bool = False


@dataclass
class ProviderStats:
    acquired: int = 0
    released: int = 0
    preserved: list[Path] = field(default_factory=list)


class EnvironmentProvider:
    """Creates and releases isolated environments for agents."""

    def __init__(
        self,
        config: AppConfig,
        *,
        repo: AsyncRepo | None = None,
        max_live: int | None = None,
    ) -> None:
        self._config = config
        self._repo = repo
        self._max_live = max_live or config.orchestration.max_live_environments
        self._lock = asyncio.Lock()
        self._checkout_lock = asyncio.Lock()
        self._slots: dict[str, _Slot] = {}
        self._by_agent: dict[str, str] = {}
        self._pending: set[str] = set()
        self._backends: dict[IsolationKind, IsolationBackend] = {}
        self.stats = ProviderStats()

    @property
    def repo(self) -> AsyncRepo | None:
        return self._repo

    @property
    def max_live(self) -> int:
        return self._max_live

    @property
    def checkout_lock(self) -> asyncio.Lock:
        """Guards the project working directory (branch isolation and merges into it)."""
        return self._checkout_lock

    def holds_checkout(self, env: Environment) -> bool:
        """Whether ``env`` currently owns the project working directory."""
        backend = self._backends.get(IsolationKind.BRANCH)
        return isinstance(backend, BranchBackend) and backend.holder == env.agent_id

    async def initialize(self, keep_agents: Iterable[str] = ()) -> Result[int, WorkspaceError]:
        """Prepare state directories, open the repository and prune orphans.

        Args:
            keep_agents: agent ids whose leftover workspaces must survive
                (typically agents recorded as Failed).

        Returns:
            Ok(number of orphans removed)
        """
        root = self._config.project_root
        if not root.is_dir():
            return Err(WorkspaceError("Project root not found", context={"root": str(root)}))

        if self._repo is None:
            match await AsyncRepo.open(root):
                case Ok(repo):
                    self._repo = repo
                case Err(err):
                    logger.info("Project is not a git repository; only directory isolation available: %s", err)

        def _create_dirs() -> None:
            for directory in (self._config.state_dir, self._config.worktree_root, self._config.work_root):
                directory.mkdir(parents=True, exist_ok=True)
            # Keep orchestration state out of the project's git status.
            marker = self._config.state_dir / ".gitignore"
            if not marker.exists():
                marker.write_text("*\n", encoding="utf-8")

        try:
            await asyncio.to_thread(_create_dirs)
        except OSError as exc:
            return Err(
                WorkspaceError(
                    "Failed to create state directories",
                    context={"state_dir": str(self._config.state_dir), "error": str(exc)},
                )
            )

        removed = await self.prune_orphans(keep_agents)
        if removed:
            logger.info("Pruned %d orphaned environments", removed)
        return Ok(removed)

    def _backend(self, isolation: IsolationKind) -> Result[IsolationBackend, EnvironmentError]:
        backend = self._backends.get(isolation)
        if backend is not None:
            return Ok(backend)

        base_ref = self._config.project.base_branch
        if isolation.uses_version_control:
            if self._repo is None:
                return Err(
                    EnvironmentError.tool_failed(
                        "Isolation requires a git repository",
                        isolation=isolation.value,
                        root=str(self._config.project_root),
                    )
                )
            if isolation is IsolationKind.WORKTREE:
                backend = WorktreeBackend(self._repo, self._config.worktree_root, base_ref)
            else:
                backend = BranchBackend(self._repo, base_ref, lease=self._checkout_lock)
        elif isolation is IsolationKind.CONTAINER:
            backend = ContainerBackend(
                self._config.project_root, self._config.work_root, self._config.project.ignore_dirs
            )
        else:
            backend = DirectoryBackend(
                self._config.project_root, self._config.work_root, self._config.project.ignore_dirs
            )
        self._backends[isolation] = backend
        return Ok(backend)

    def _live_count(self) -> int:
        return sum(1 for slot in self._slots.values() if not slot.released) + len(self._pending)

    async def acquire(
        self,
        agent_id: str,
        isolation: IsolationKind,
    ) -> Result[Environment, EnvironmentError]:
        """Create a fresh environment owned by ``agent_id``.

        Returns:
            Err(AlreadyExists) if the agent already owns a live environment
            or the target path is taken; Err(QuotaExceeded) when the live
            limit is reached; Err(UnderlyingToolFailed) when git or the
            filesystem fails.
        """
        async with self._lock:
            existing = self._by_agent.get(agent_id)
            if agent_id in self._pending or (existing and not self._slots[existing].released):
                return Err(EnvironmentError.already_exists(agent_id, existing or agent_id))
            if self._live_count() >= self._max_live:
                return Err(EnvironmentError.quota_exceeded(self._max_live))
            if isolation is IsolationKind.BRANCH:
                # A parked branch environment still claims the shared checkout path.
                parked = next(
                    (
                        slot.environment
                        for slot in self._slots.values()
                        if slot.parked and not slot.released and slot.environment.isolation is isolation
                    ),
                    None,
                )
                if parked is not None:
                    return Err(EnvironmentError.already_exists(agent_id, parked.path))
            match self._backend(isolation):
                case Ok(backend):
                    pass
                case Err(err):
                    return Err(err)
            self._pending.add(agent_id)

        environment_id = f"env-{uuid.uuid4().hex[:12]}"
        try:
            created = await backend.create(agent_id, environment_id)
        except BaseException:
            self._pending.discard(agent_id)
            raise

        async with self._lock:
            # The reservation turns into a slot without dropping the count in between.
            self._pending.discard(agent_id)
            match created:
                case Err(err):
                    logger.warning("Environment for %s unavailable: %s", agent_id, err)
                    return Err(err)
                case Ok(env):
                    pass
            clash = next(
                (
                    slot
                    for slot in self._slots.values()
                    if not slot.released and slot.environment.path == env.path
                ),
                None,
            )
            if clash is not None:
                await backend.remove(env)
                return Err(EnvironmentError.already_exists(agent_id, env.path))
            self._slots[env.environment_id] = _Slot(env)
            self._by_agent[agent_id] = env.environment_id
            self.stats.acquired += 1

        logger.debug("Acquired %s environment %s at %s", isolation.value, environment_id, env.path)
        return Ok(env)

    async def release(
        self,
        env: Environment,
        *,
        failed: bool = False,
    ) -> Result[None, EnvironmentError]:
        """Release ``env`` exactly once.

        On success the work is persisted and the workspace removed. On
        failure the workspace is preserved. A second release of the same
        environment returns Err(Busy).
        """
        async with self._lock:
            slot = self._slots.get(env.environment_id)
            if slot is None or slot.released:
                return Err(EnvironmentError.busy(env.environment_id))
            slot.released = True
            self.stats.released += 1

        backend = self._backends[env.isolation]
        if failed:
            result = await backend.park(env)
            self.stats.preserved.append(env.path)
            logger.info("Preserved environment of %s at %s", env.agent_id, env.path)
            return result

        match await backend.persist(env):
            case Err(err):
                # Unpersisted work must not be deleted.
                self.stats.preserved.append(env.path)
                logger.error("Failed to persist %s, preserving it: %s", env.path, err)
                await backend.park(env)
                return Err(err)
            case Ok(_):
                pass
        return await backend.remove(env)

    async def park(self, env: Environment) -> Result[None, EnvironmentError]:
        """Keep a live environment but free the shared resources it holds.

        Used when integration leaves the environment for manual resolution;
        it stays live (and counts against the quota) until released.
        """
        async with self._lock:
            slot = self._slots.get(env.environment_id)
            if slot is None or slot.released:
                return Err(EnvironmentError.busy(env.environment_id))
            slot.parked = True
        return await self._backends[env.isolation].park(env)

    def live(self) -> list[Environment]:
        return [slot.environment for slot in self._slots.values() if not slot.released]

    def environment_for(self, agent_id: str) -> Environment | None:
        environment_id = self._by_agent.get(agent_id)
        return self._slots[environment_id].environment if environment_id else None

    def preserved(self) -> list[Path]:
        return list(self.stats.preserved)

    def is_released(self, env: Environment) -> bool:
        slot = self._slots.get(env.environment_id)
        return slot is not None and slot.released

    async def prune_orphans(self, keep_agents: Iterable[str] = ()) -> int:
        """Remove workspaces left behind by crashed sessions.

        [invariant:cleanup] Preserved (failed) workspaces are never pruned.
        """
        keep = set(keep_agents)
        live_paths = {slot.environment.path for slot in self._slots.values() if not slot.released}
        removed = 0
        for isolation in (IsolationKind.WORKTREE, IsolationKind.DIRECTORY):
            if isolation.uses_version_control and self._repo is None:
                continue
            match self._backend(isolation):
                case Ok(backend):
                    pass
                case Err(_):
                    continue
            discard = getattr(backend, "discard", None)
            if discard is None:
                continue
            for path in backend.orphan_candidates():
                agent_id = path.name.removeprefix("worktree-")
                if agent_id in keep or path.resolve() in live_paths:
                    continue
                logger.warning("Removing orphaned environment %s", path)
                if await discard(path):
                    removed += 1
        return removed


__all__ = ["EnvironmentProvider", "ProviderStats"]
