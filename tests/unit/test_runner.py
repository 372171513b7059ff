"""Tests for the single-agent lifecycle."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Sequence
from pathlib import Path

import pytest

from agentfleet.agents.kinds import AgentRegistry
from agentfleet.agents.runner import AgentRunner, RunnerSettings
from agentfleet.agents.validation import CallableRule, CommandRule, ValidationRule
from agentfleet.coordination import ProgressTracker, SharedContextStore
from agentfleet.core.config import AppConfig
from agentfleet.core.models import (
    Agent,
    AgentStatus,
    ContextKind,
    Environment,
    FailureCause,
    IntegrationOutcome,
    IsolationKind,
    OutcomeKind,
    Task,
    new_agent_id,
)
from agentfleet.environments import EnvironmentProvider
from agentfleet.orchestration.integrator import ResultIntegrator
from tests.mocks.fake_executor import Behavior, FakeExecutor
from tests.mocks.repo import make_config

FULL_LIFECYCLE = [
    AgentStatus.PENDING,
    AgentStatus.PROVISIONING,
    AgentStatus.RUNNING,
    AgentStatus.VALIDATING,
    AgentStatus.INTEGRATING,
    AgentStatus.COMPLETED,
]


@dataclasses.dataclass
class Harness:
    config: AppConfig
    provider: EnvironmentProvider
    context: SharedContextStore
    tracker: ProgressTracker
    integrator: ResultIntegrator
    executor: FakeExecutor

    def runner(
        self,
        task: Task,
        *,
        rules: Sequence[ValidationRule] = (),
        isolation: IsolationKind = IsolationKind.DIRECTORY,
        batch_id: str | None = "batch-1",
        **overrides: object,
    ) -> AgentRunner:
        agent_id = new_agent_id(task.kind)
        settings = RunnerSettings.resolve(self.config, AgentRegistry().resolve(task.kind), agent_id, isolation)
        if overrides:
            settings = dataclasses.replace(settings, **overrides)  # type: ignore[arg-type]
        return AgentRunner(
            Agent(agent_id=agent_id, kind=task.kind, task=task),
            settings=settings,
            provider=self.provider,
            executor=self.executor,
            integrator=self.integrator,
            context_store=self.context,
            tracker=self.tracker,
            rules=rules,
            batch_id=batch_id,
        )


async def _harness(root: Path, executor: FakeExecutor | None = None, **orchestration: object) -> Harness:
    config = make_config(root, **orchestration)
    provider = EnvironmentProvider(config)
    (await provider.initialize()).unwrap()
    return Harness(
        config=config,
        provider=provider,
        context=SharedContextStore(),
        tracker=ProgressTracker(),
        integrator=ResultIntegrator(provider, config),
        executor=executor or FakeExecutor(Behavior(files={"out.txt": "result\n"})),
    )


async def _wait_until_active(executor: FakeExecutor) -> None:
    for _ in range(200):
        if executor.active:
            return
        await asyncio.sleep(0.01)
    pytest.fail("executor never started")


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(id="t1", description="write output"))

        outcome = await runner.run()

        assert outcome.kind is OutcomeKind.COMPLETED
        assert runner.record.transitions == FULL_LIFECYCLE
        assert [r.status for r in h.tracker.history(runner.agent_id)] == FULL_LIFECYCLE
        assert runner.record.release_calls == 1
        assert (plain_project / "out.txt").read_text(encoding="utf-8") == "result\n"
        assert runner.record.environment is not None
        assert not runner.record.environment.path.exists()

        (entry,) = h.context.entries_for(runner.agent_id)
        assert entry.kind is ContextKind.COMPLETE
        assert entry.payload["task_id"] == "t1"
        assert entry.payload["batch_id"] == "batch-1"

    @pytest.mark.asyncio
    async def test_progress_timestamps_increase(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(description="x"))
        await runner.run()
        stamps = [r.timestamp for r in h.tracker.history(runner.agent_id)]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    @pytest.mark.asyncio
    async def test_executor_receives_profile_options(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(description="audit", kind="security-auditor"))
        await runner.run()

        (call,) = h.executor.calls
        assert call.options.permission_mode == "plan"
        assert call.options.log_path == h.config.logs_dir / f"{runner.agent_id}.log"
        assert call.options.container_image is None
        assert call.working_path == runner.record.environment.path  # type: ignore[union-attr]


class TestFailures:
    @pytest.mark.asyncio
    async def test_nonzero_exit(self, plain_project: Path) -> None:
        h = await _harness(plain_project, FakeExecutor(Behavior(exit_code=2, output="boom")))
        runner = h.runner(Task(description="x"))

        outcome = await runner.run()

        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.cause is FailureCause.EXECUTION_FAILED
        assert outcome.detail == "exit 2: boom"
        assert runner.record.release_calls == 1
        # Failed environments are preserved for inspection.
        assert outcome.environment_path is not None and outcome.environment_path.exists()
        assert h.provider.preserved() == [outcome.environment_path]
        assert h.tracker.status_of(runner.agent_id) is AgentStatus.FAILED
        assert h.context.entries_of_kind(ContextKind.BLOCKER)[0].payload["cause"] == "ExecutionFailed"

    @pytest.mark.asyncio
    async def test_executor_error(self, plain_project: Path) -> None:
        h = await _harness(plain_project, FakeExecutor(Behavior(error="binary missing")))
        outcome = await h.runner(Task(description="x")).run()
        assert outcome.cause is FailureCause.EXECUTION_FAILED
        assert "binary missing" in outcome.detail

    @pytest.mark.asyncio
    async def test_validation_failure_blocks_integration(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        rule = CallableRule("needs-tests", lambda artifact: False, "no tests written")
        runner = h.runner(Task(description="x"), rules=[rule])

        outcome = await runner.run()

        assert outcome.cause is FailureCause.VALIDATION_FAILED
        assert outcome.detail == "needs-tests: no tests written"
        assert AgentStatus.INTEGRATING not in runner.record.transitions
        assert not (plain_project / "out.txt").exists()
        assert runner.record.release_calls == 1

    @pytest.mark.asyncio
    async def test_execution_timeout(self, plain_project: Path) -> None:
        h = await _harness(plain_project, FakeExecutor(Behavior(delay=5)))
        runner = h.runner(Task(description="slow"), execution_timeout=0.1)

        outcome = await runner.run()

        assert outcome.cause is FailureCause.TIMEOUT
        assert h.executor.cancelled == ["slow"]
        assert runner.record.release_calls == 1

    @pytest.mark.asyncio
    async def test_environment_unavailable(self, plain_project: Path) -> None:
        h = await _harness(plain_project, max_live_environments=1)
        (await h.provider.acquire("AGENT_hog", IsolationKind.DIRECTORY)).unwrap()
        runner = h.runner(Task(description="x"))

        outcome = await runner.run()

        assert outcome.cause is FailureCause.ENVIRONMENT_UNAVAILABLE
        assert "QuotaExceeded" in outcome.detail
        assert runner.record.environment is None
        assert runner.record.release_calls == 0
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_conflict_parks_environment(self, plain_project: Path) -> None:
        h = await _harness(plain_project, FakeExecutor(Behavior(files={"README.md": "agent\n"}, delay=0.05)))
        runner = h.runner(Task(description="x"))

        task = asyncio.create_task(runner.run())
        await _wait_until_active(h.executor)
        (plain_project / "README.md").write_text("human\n", encoding="utf-8")
        outcome = await task

        assert outcome.cause is FailureCause.INTEGRATION_CONFLICT
        assert outcome.integration is not None
        assert outcome.integration.conflicts == ("README.md",)
        assert runner.record.parked
        assert runner.record.release_calls == 0
        env = runner.record.environment
        assert env is not None and env.path.exists()
        assert h.integrator.conflicted() == [runner.agent_id]

    @pytest.mark.asyncio
    async def test_unexpected_integrator_error_becomes_failure(self, plain_project: Path) -> None:
        h = await _harness(plain_project)

        class _Broken(ResultIntegrator):
            async def integrate(self, env: Environment, agent: Agent) -> IntegrationOutcome:
                raise RuntimeError("disk vanished")

        h = dataclasses.replace(h, integrator=_Broken(h.provider, h.config))
        runner = h.runner(Task(description="x"))

        outcome = await runner.run()

        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.cause is FailureCause.EXECUTION_FAILED
        assert outcome.detail == "RuntimeError: disk vanished"
        assert runner.record.release_calls == 1
        assert outcome.environment_path in h.provider.preserved()
        assert h.provider.live() == []
        assert h.tracker.status_of(runner.agent_id) is AgentStatus.FAILED


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(description="x"))
        runner.cancel()

        outcome = await runner.run()

        assert outcome.kind is OutcomeKind.CANCELLED
        assert runner.record.environment is None
        assert h.tracker.status_of(runner.agent_id) is AgentStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancel_while_running_releases(self, plain_project: Path) -> None:
        h = await _harness(plain_project, FakeExecutor(Behavior(delay=10)))
        runner = h.runner(Task(description="long"))

        task = asyncio.create_task(runner.run())
        await _wait_until_active(h.executor)
        runner.cancel()
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.kind is OutcomeKind.FAILED
        assert outcome.cause is FailureCause.CANCELLED
        assert h.executor.cancelled == ["long"]
        assert runner.record.release_calls == 1
        assert h.provider.live() == []

    @pytest.mark.asyncio
    async def test_cancel_during_validation_stops_command(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(description="write"), rules=[CommandRule("sleep 0.5 && touch LATE_WRITE")])

        task = asyncio.create_task(runner.run())
        for _ in range(200):
            if runner.agent.status is AgentStatus.VALIDATING:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.1)
        runner.cancel()
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.cause is FailureCause.CANCELLED
        env = runner.record.environment
        assert env is not None and env.path.exists()
        await asyncio.sleep(1.0)
        assert not (env.path / "LATE_WRITE").exists()

    @pytest.mark.asyncio
    async def test_task_cancellation_keeps_work_and_reports_failure(self, plain_project: Path) -> None:
        h = await _harness(plain_project, FakeExecutor(Behavior(delay=10)))
        runner = h.runner(Task(description="long"))

        task = asyncio.create_task(runner.run())
        await _wait_until_active(h.executor)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        env = runner.record.environment
        assert env is not None and env.path.exists()
        assert env.path in h.provider.preserved()
        assert runner.record.release_calls == 1
        assert h.tracker.status_of(runner.agent_id) is AgentStatus.FAILED
        (entry,) = h.context.entries_for(runner.agent_id)
        assert entry.kind is ContextKind.BLOCKER
        assert entry.payload["cause"] == FailureCause.CANCELLED.value


class TestDependencies:
    @pytest.mark.asyncio
    async def test_waits_for_completion(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(description="after", depends_on=("t0",)))

        task = asyncio.create_task(runner.run())
        await asyncio.sleep(0.05)
        assert runner.agent.status is AgentStatus.BLOCKED

        # Completion of the same task id in another batch does not count.
        await h.context.post("other", ContextKind.COMPLETE, task_id="t0", batch_id="batch-0")
        await asyncio.sleep(0.05)
        assert not task.done()

        await h.context.post("dep", ContextKind.COMPLETE, task_id="t0", batch_id="batch-1")
        outcome = await asyncio.wait_for(task, timeout=5)
        assert outcome.kind is OutcomeKind.COMPLETED
        assert runner.record.transitions[:2] == [AgentStatus.PENDING, AgentStatus.BLOCKED]

    @pytest.mark.asyncio
    async def test_failed_dependency(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        await h.context.post("dep", ContextKind.BLOCKER, task_id="t0", batch_id="batch-1")
        runner = h.runner(Task(description="after", depends_on=("t0",)))

        outcome = await runner.run()

        assert outcome.cause is FailureCause.DEPENDENCY_FAILED
        assert "t0" in outcome.detail
        assert runner.record.environment is None
        assert h.executor.calls == []

    @pytest.mark.asyncio
    async def test_dependency_timeout(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(description="after", depends_on=("never",)), dependency_timeout=0.1)
        outcome = await runner.run()
        assert outcome.cause is FailureCause.TIMEOUT

    @pytest.mark.asyncio
    async def test_cancel_while_blocked(self, plain_project: Path) -> None:
        h = await _harness(plain_project)
        runner = h.runner(Task(description="after", depends_on=("never",)))

        task = asyncio.create_task(runner.run())
        await asyncio.sleep(0.05)
        runner.cancel()
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.kind is OutcomeKind.CANCELLED
        assert runner.record.environment is None
