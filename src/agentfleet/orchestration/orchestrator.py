"""Orchestrator: bounded worker pool over agent runners.

``deploy`` creates one runner per task, orders them so dependencies come
first, and lets ``max_concurrency`` worker coroutines drain the queue
inside an ``asyncio.TaskGroup``. A supervisor coroutine enforces the batch
deadline and honors cancel requests that other processes append to the
shared context log.

[invariant:isolation] One agent's failure never aborts its siblings. Only
``ContextStoreError`` (audit trail at risk) aborts the whole batch.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from agentfleet.agents.executor import CommandExecutor, TaskExecutor
from agentfleet.agents.kinds import AgentRegistry, AgentSelector
from agentfleet.agents.runner import AgentRunner, RunnerSettings
from agentfleet.agents.validation import ValidationRule
from agentfleet.coordination import ProgressTracker, SharedContextStore
from agentfleet.coordination.context_store import CANCEL_ACTION, CANCEL_ALL, cancel_targets
from agentfleet.coordination.progress import fold_statuses
from agentfleet.core.config import AppConfig
from agentfleet.core.console import get_logger
from agentfleet.core.models import (
    Agent,
    AgentOutcome,
    AgentStatus,
    ContextEntry,
    ContextKind,
    IsolationKind,
    ProgressSummary,
    Task,
    new_agent_id,
)
from agentfleet.core.result import ContextStoreError, Err, Ok, ValidationError, WorkspaceError
from agentfleet.environments import EnvironmentProvider
from agentfleet.orchestration.integrator import ResultIntegrator

logger = get_logger(__name__)

OutcomeCallback = Callable[[Task, AgentOutcome], None]

CLI_AGENT_ID = "fleet-cli"


def order_tasks(tasks: Sequence[Task]) -> list[Task]:
    """Stable topological order (Kahn's algorithm).

    Tasks without dependencies keep their submission order.

    Raises:
        ValidationError: duplicate ids, unknown dependency ids or cycles.
    """
    by_id: dict[str, Task] = {}
    for task in tasks:
        if task.id in by_id:
            raise ValidationError("Duplicate task id in batch", context={"task_id": task.id})
        by_id[task.id] = task

    position = {task.id: index for index, task in enumerate(tasks)}
    in_degree: dict[str, int] = {task.id: 0 for task in tasks}
    dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
    for task in tasks:
        for dep in dict.fromkeys(task.depends_on):
            if dep not in by_id:
                raise ValidationError(
                    "Unknown dependency", context={"task_id": task.id, "depends_on": dep}
                )
            dependents[dep].append(task.id)
            in_degree[task.id] += 1

    ready = sorted((tid for tid, degree in in_degree.items() if degree == 0), key=position.__getitem__)
    ordered: list[Task] = []
    while ready:
        current = ready.pop(0)
        ordered.append(by_id[current])
        for neighbor in dependents[current]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                ready.append(neighbor)
                ready.sort(key=position.__getitem__)

    if len(ordered) != len(tasks):
        stuck = sorted(tid for tid, degree in in_degree.items() if degree > 0)
        raise ValidationError("Dependency cycle between tasks", context={"tasks": stuck})
    return ordered


async def request_cancel(store: SharedContextStore, target: str | None = None) -> ContextEntry:
    """Append a cancel request any running deploy will pick up."""
    return await store.post(
        CLI_AGENT_ID, ContextKind.REQUEST, action=CANCEL_ACTION, target=target or CANCEL_ALL
    )


@dataclass
class _Batch:
    batch_id: str
    runners: list[AgentRunner]
    cancel_mark: int
    honored: set[str]


class Orchestrator:
    """Dispatches tasks to agents and collects one outcome per task."""

    def __init__(
        self,
        config: AppConfig,
        *,
        provider: EnvironmentProvider,
        context_store: SharedContextStore,
        tracker: ProgressTracker,
        executor: TaskExecutor | None = None,
        registry: AgentRegistry | None = None,
        integrator: ResultIntegrator | None = None,
        select_agent: AgentSelector | None = None,
        default_rules: Sequence[ValidationRule] = (),
    ) -> None:
        self.config = config
        self.provider = provider
        self.context_store = context_store
        self.tracker = tracker
        self.executor = executor or CommandExecutor(config.executor)
        self.registry = registry or AgentRegistry()
        self.integrator = integrator or ResultIntegrator(provider, config)
        self._select = select_agent or self.registry.select_agent
        self._default_rules = tuple(default_rules)
        self._runners: dict[str, AgentRunner] = {}

    @property
    def runners(self) -> dict[str, AgentRunner]:
        return dict(self._runners)

    def _make_runner(
        self,
        task: Task,
        batch_id: str,
        isolation: IsolationKind | None,
        rules: Sequence[ValidationRule],
    ) -> AgentRunner:
        kind = self._select(task)
        profile = self.registry.resolve(kind)
        agent = Agent(agent_id=new_agent_id(profile.name), kind=profile.name, task=task)
        return AgentRunner(
            agent,
            settings=RunnerSettings.resolve(self.config, profile, agent.agent_id, isolation),
            provider=self.provider,
            executor=self.executor,
            integrator=self.integrator,
            context_store=self.context_store,
            tracker=self.tracker,
            rules=[*self._default_rules, *profile.build_rules(), *rules],
            batch_id=batch_id,
        )

    async def deploy(
        self,
        tasks: Sequence[Task],
        max_concurrency: int | None = None,
        *,
        deadline: float | None = None,
        isolation: IsolationKind | None = None,
        rules: Mapping[str, Sequence[ValidationRule]] | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> list[tuple[Task, AgentOutcome]]:
        """Run every task to a terminal state.

        Args:
            tasks: Work items; ids must be unique within the batch.
            max_concurrency: Agents running at once (config default when ``None``).
            deadline: Seconds from now after which running agents are cancelled.
            isolation: Override the isolation kind for every agent.
            rules: Extra validation rules keyed by task id.
            on_outcome: Called as each task settles.

        Returns:
            ``(task, outcome)`` pairs in submission order.

        Raises:
            ValidationError: invalid batch (checked before any agent starts)
            ContextStoreError: a shared log write failed
        """
        limit = max_concurrency if max_concurrency is not None else self.config.orchestration.max_concurrency
        if limit < 1:
            raise ValidationError("max_concurrency must be positive", context={"max_concurrency": limit})
        ordered = order_tasks(tasks)
        if not ordered:
            return []

        batch_id = uuid.uuid4().hex[:12]
        per_task = rules or {}
        runners = [self._make_runner(task, batch_id, isolation, per_task.get(task.id, ())) for task in ordered]
        for runner in runners:
            self._runners[runner.agent_id] = runner
        batch = _Batch(batch_id, runners, len(self.context_store.snapshot()), set())

        queue: asyncio.Queue[AgentRunner] = asyncio.Queue()
        for runner in runners:
            queue.put_nowait(runner)
        outcomes: dict[str, AgentOutcome] = {}

        async def _worker() -> None:
            while True:
                try:
                    runner = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                outcome = await runner.run()
                outcomes[runner.agent.task.id] = outcome
                if on_outcome is not None:
                    on_outcome(runner.agent.task, outcome)

        logger.info(
            "Deploying %d tasks (batch %s, max_concurrency=%d)", len(ordered), batch_id, limit
        )
        try:
            async with asyncio.TaskGroup() as tg:
                workers = [tg.create_task(_worker()) for _ in range(min(limit, len(ordered)))]
                tg.create_task(self._supervise(batch, workers, deadline))
        except* ContextStoreError as group:
            raise group.exceptions[0] from None

        return [(task, outcomes[task.id]) for task in tasks]

    async def _supervise(
        self,
        batch: _Batch,
        workers: list[asyncio.Task[None]],
        deadline: float | None,
    ) -> None:
        """Enforce the deadline and poll for cancel requests until workers finish."""
        loop = asyncio.get_running_loop()
        expires = loop.time() + deadline if deadline is not None else None
        poll = self.config.orchestration.cancel_poll_interval
        expired = False

        while True:
            wait_for = poll
            if expires is not None and not expired:
                wait_for = max(0.0, min(poll, expires - loop.time()))
            _, pending = await asyncio.wait(workers, timeout=wait_for)
            if not pending:
                return

            if expires is not None and not expired and loop.time() >= expires:
                expired = True
                logger.warning("Batch %s deadline reached; cancelling running agents", batch.batch_id)
                for runner in batch.runners:
                    runner.cancel()

            await self.context_store.refresh()
            self._honor_cancel_requests(batch)

    def _honor_cancel_requests(self, batch: _Batch) -> None:
        entries = self.context_store.snapshot()[batch.cancel_mark :]
        targets = cancel_targets(entries) - batch.honored
        if not targets:
            return
        batch.honored |= targets
        for runner in batch.runners:
            if CANCEL_ALL in targets or runner.agent_id in targets:
                logger.info("Cancel requested for %s", runner.agent_id)
                runner.cancel()

    def cancel(self, agent_id: str | None = None) -> int:
        """Signal cancellation to one agent or (``None``) every unfinished agent.

        Returns the number of runners signalled.
        """
        signalled = 0
        for runner in self._runners.values():
            if runner.agent.status.is_terminal:
                continue
            if agent_id is None or runner.agent_id == agent_id:
                runner.cancel()
                signalled += 1
        return signalled

    def status(self, agent_ids: Sequence[str] | None = None) -> ProgressSummary:
        return self.tracker.aggregate(agent_ids)

    def status_of(self, agent_id: str) -> AgentStatus | None:
        return self.tracker.status_of(agent_id)


async def build_orchestrator(
    config: AppConfig,
    *,
    executor: TaskExecutor | None = None,
    registry: AgentRegistry | None = None,
    select_agent: AgentSelector | None = None,
) -> Orchestrator:
    """Open the durable logs, initialize the provider and wire everything up.

    Raises:
        WorkspaceError: the provider could not initialize
        ContextStoreError: a log could not be replayed
        ConfigurationError: the agent definitions file is invalid
    """
    lock_timeout = config.orchestration.lock_timeout
    context_store = SharedContextStore.open(config.context_log, lock_timeout=lock_timeout)
    tracker = ProgressTracker.open(config.progress_log, lock_timeout=lock_timeout)

    failed_agents = {
        agent_id
        for agent_id, status in fold_statuses(tracker.snapshot()).items()
        if status is AgentStatus.FAILED
    }
    provider = EnvironmentProvider(config)
    match await provider.initialize(keep_agents=failed_agents):
        case Err(err):
            raise WorkspaceError(f"Environment provider failed to initialize: {err.message}", context=err.context)
        case Ok(removed):
            logger.debug("Provider ready (%d orphans pruned)", removed)

    return Orchestrator(
        config,
        provider=provider,
        context_store=context_store,
        tracker=tracker,
        executor=executor,
        registry=registry or AgentRegistry.with_definitions(config.orchestration.agents_file),
        select_agent=select_agent,
    )


__all__ = [
    "CLI_AGENT_ID",
    "Orchestrator",
    "build_orchestrator",
    "order_tasks",
    "request_cancel",
]
