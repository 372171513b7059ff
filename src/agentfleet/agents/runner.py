"""Agent runner: drives one agent through its lifecycle.

    Pending -> [Blocked] -> Provisioning -> Running -> Validating
            -> Integrating -> Completed
    any step -> Failed(cause)

The runner is the only writer of progress records for its agent. Every
transition appends one record; the terminal transition also posts one
shared-context entry (Complete or Blocker). Agent-local failures, unexpected
exceptions included, become an ``AgentOutcome``; only ``ContextStoreError``
escapes ``run``.

The environment is released on every exit path, with one exception: an
integration conflict parks the environment for manual resolution.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, TypeVar

from agentfleet.agents.executor import ExecutionOptions, ExecutionResult, TaskExecutor, summarize_output
from agentfleet.agents.instructions import render_instructions
from agentfleet.agents.kinds import AgentProfile
from agentfleet.agents.validation import Artifact, ValidationRule, first_failure
from agentfleet.coordination import ProgressTracker, SharedContextStore
from agentfleet.coordination.context_store import task_settled
from agentfleet.core.config import AppConfig
from agentfleet.core.console import agent_logger
from agentfleet.core.models import (
    Agent,
    AgentOutcome,
    AgentStatus,
    ContextEntry,
    ContextKind,
    Environment,
    FailureCause,
    IntegrationOutcome,
    IntegrationResult,
    IsolationKind,
    OutcomeKind,
    ProgressRecord,
    utc_now,
)
from agentfleet.core.result import ConfigurationError, ContextStoreError, Err, ExecutionError, Ok, Result
from agentfleet.environments import EnvironmentProvider

if TYPE_CHECKING:
    from agentfleet.orchestration.integrator import ResultIntegrator

T = TypeVar("T")

_TICK = timedelta(microseconds=1)


def _printable(text: str) -> str:
    """Escape characters UTF-8 cannot encode (lone surrogates from raw argv)."""
    return text.encode("utf-8", "backslashreplace").decode("utf-8")


class _Cancelled(Exception):
    """Cancel signal observed at a suspension point."""


@dataclass
class _Failure(Exception):
    cause: FailureCause
    detail: str


@dataclass
class RunnerSettings:
    """Resolved per-agent settings (profile merged over app config)."""

    isolation: IsolationKind
    options: ExecutionOptions
    execution_timeout: float | None
    dependency_timeout: float
    project_name: str
    ignore_dirs: tuple[str, ...] = ()
    focus: str = ""
    instructions_template: str | None = None

    @classmethod
    def resolve(
        cls,
        config: AppConfig,
        profile: AgentProfile,
        agent_id: str,
        isolation: IsolationKind | None = None,
    ) -> RunnerSettings:
        chosen = isolation or profile.isolation or config.orchestration.default_isolation
        return cls(
            isolation=chosen,
            options=ExecutionOptions(
                permission_mode=profile.permission_mode or config.executor.permission_mode,
                max_steps=profile.max_steps or config.executor.max_steps,
                log_path=config.logs_dir / f"{agent_id}.log",
                container_image=config.executor.docker_image if chosen is IsolationKind.CONTAINER else None,
            ),
            execution_timeout=config.executor.execution_timeout,
            dependency_timeout=config.orchestration.dependency_timeout,
            project_name=config.project_name,
            ignore_dirs=tuple(config.project.ignore_dirs),
            focus=profile.focus,
            instructions_template=profile.instructions_template,
        )


@dataclass
class RunnerRecord:
    """What the runner did to its environment, for audits and tests."""

    environment: Environment | None = None
    release_calls: int = 0
    parked: bool = False
    transitions: list[AgentStatus] = field(default_factory=list)


class AgentRunner:
    """Runs one agent against one task."""

    def __init__(
        self,
        agent: Agent,
        *,
        settings: RunnerSettings,
        provider: EnvironmentProvider,
        executor: TaskExecutor,
        integrator: ResultIntegrator,
        context_store: SharedContextStore,
        tracker: ProgressTracker,
        rules: Sequence[ValidationRule] = (),
        batch_id: str | None = None,
    ) -> None:
        self.agent = agent
        self.settings = settings
        self._provider = provider
        self._executor = executor
        self._integrator = integrator
        self._context = context_store
        self._tracker = tracker
        self._rules = tuple(rules)
        self._batch_id = batch_id
        self._cancel = asyncio.Event()
        self._last_stamp: datetime | None = None
        self.record = RunnerRecord()
        self._log = agent_logger(agent.agent_id, __name__)

    @property
    def agent_id(self) -> str:
        return self.agent.agent_id

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Ask the runner to stop at its next suspension point."""
        self._cancel.set()

    # -------------------------------------------------------------------------
    # Log writes
    # -------------------------------------------------------------------------

    def _stamp(self) -> datetime:
        now = utc_now()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + _TICK
        self._last_stamp = now
        return now

    async def _transition(self, status: AgentStatus, message: str = "") -> None:
        self.agent.status = status
        self.record.transitions.append(status)
        record = ProgressRecord(
            agent_id=self.agent_id, timestamp=self._stamp(), status=status, message=_printable(message)
        )
        match await self._tracker.record(record):
            case Err(err):
                self._log.error("Progress record rejected: %s", err)
            case Ok(_):
                pass
        self._log.info("-> %s %s", status.value, message)

    async def _post(self, kind: ContextKind, **payload: object) -> None:
        await self._context.post(
            self.agent_id,
            kind,
            task_id=self.agent.task.id,
            batch_id=self._batch_id,
            **payload,
        )

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    async def _interruptible(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancel is requested first."""
        if self._cancel.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise _Cancelled
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.create_task(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            work.cancel()
            waiter.cancel()
            await asyncio.gather(work, waiter, return_exceptions=True)
            raise
        if work in done:
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise _Cancelled

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> AgentOutcome:
        """Drive the agent to a terminal state and return its outcome.

        Unexpected exceptions fail this agent alone with cause
        ``ExecutionFailed``.

        Raises:
            ContextStoreError: a shared log write failed (fatal for the batch)
        """
        try:
            return await self._run()
        except ContextStoreError:
            raise
        except Exception as exc:
            self._log.exception("Runner raised")
            return await self._finish_crashed(exc)

    async def _run(self) -> AgentOutcome:
        self.agent.started_at = utc_now()
        await self._transition(AgentStatus.PENDING, self.agent.task.description[:80])

        if self._cancel.is_set():
            return await self._finish_cancelled_before_start()

        try:
            await self._wait_for_dependencies()
        except _Cancelled:
            return await self._finish_cancelled_before_start()
        except _Failure as failure:
            return await self._finish_failed(failure, None)

        await self._transition(AgentStatus.PROVISIONING, self.settings.isolation.value)
        match await self._provider.acquire(self.agent_id, self.settings.isolation):
            case Err(err):
                return await self._finish_failed(
                    _Failure(FailureCause.ENVIRONMENT_UNAVAILABLE, f"{err.kind.value}: {err}"), None
                )
            case Ok(env):
                pass
        self.agent.environment = env
        self.record.environment = env

        outcome: AgentOutcome | None = None
        failure: _Failure | None = None
        try:
            integration = await self._work(env)
            if integration.result is IntegrationResult.MERGED:
                outcome = await self._finish_completed(integration)
            elif integration.result is IntegrationResult.CONFLICT_DETECTED:
                failure = _Failure(
                    FailureCause.INTEGRATION_CONFLICT,
                    f"{integration.details}: {', '.join(integration.conflicts)}",
                )
                outcome = await self._finish_failed(failure, env, integration=integration)
            else:
                failure = _Failure(FailureCause.EXECUTION_FAILED, f"integration rejected: {integration.details}")
                outcome = await self._finish_failed(failure, env, integration=integration)
        except _Cancelled:
            failure = _Failure(FailureCause.CANCELLED, "cancelled while running")
            outcome = await self._finish_failed(failure, env)
        except _Failure as exc:
            failure = exc
            outcome = await self._finish_failed(failure, env)
        except ContextStoreError:
            raise
        except asyncio.CancelledError:
            failure = _Failure(FailureCause.CANCELLED, "interrupted")
            await self._finish_failed(failure, env)
            raise
        except Exception as exc:
            self._log.exception("Raised while running")
            failure = _Failure(FailureCause.EXECUTION_FAILED, f"{type(exc).__name__}: {exc}")
            outcome = await self._finish_failed(failure, env)
        finally:
            if outcome is None and failure is None:
                # Interrupted before a terminal state: keep the work.
                failure = _Failure(FailureCause.CANCELLED, "interrupted")
            await self._settle_environment(env, failure)

        return outcome

    async def _wait_for_dependencies(self) -> None:
        depends_on = self.agent.task.depends_on
        if not depends_on:
            return
        await self._transition(AgentStatus.BLOCKED, "waiting for " + ", ".join(depends_on))

        def _settled(entries: tuple[ContextEntry, ...]) -> bool:
            states = [task_settled(dep, entries, self._batch_id) for dep in depends_on]
            return ContextKind.BLOCKER in states or all(state is ContextKind.COMPLETE for state in states)

        ready = await self._interruptible(
            self._context.wait_for_condition(_settled, self.settings.dependency_timeout)
        )
        if not ready:
            raise _Failure(
                FailureCause.TIMEOUT,
                f"dependencies not settled within {self.settings.dependency_timeout}s",
            )
        entries = self._context.snapshot()
        failed = [dep for dep in depends_on if task_settled(dep, entries, self._batch_id) is ContextKind.BLOCKER]
        if failed:
            raise _Failure(FailureCause.DEPENDENCY_FAILED, "dependency failed: " + ", ".join(failed))

    async def _work(self, env: Environment) -> IntegrationOutcome:
        await self._transition(AgentStatus.RUNNING, str(env.path))
        try:
            instruction = render_instructions(
                agent_id=self.agent_id,
                kind=self.agent.kind,
                task=self.agent.task,
                project_name=self.settings.project_name,
                working_path=env.path,
                focus=self.settings.focus,
                template=self.settings.instructions_template,
            )
        except ConfigurationError as exc:
            raise _Failure(FailureCause.EXECUTION_FAILED, str(exc)) from exc
        result = await self._execute(instruction, env)

        await self._transition(AgentStatus.VALIDATING, f"exit {result.exit_code}")
        artifact = Artifact(
            agent_id=self.agent_id,
            task=self.agent.task,
            environment=env,
            exit_code=result.exit_code,
            output=result.output,
            ignore_dirs=self.settings.ignore_dirs,
        )
        failed_rule = await self._interruptible(first_failure(self._rules, artifact))
        if failed_rule is not None:
            raise _Failure(FailureCause.VALIDATION_FAILED, f"{failed_rule.rule_id}: {failed_rule.message}")

        if self._cancel.is_set():
            raise _Cancelled
        await self._transition(AgentStatus.INTEGRATING, env.branch_name or str(env.path))
        return await self._integrator.integrate(env, self.agent)

    async def _execute(self, instruction: str, env: Environment) -> ExecutionResult:
        async def _call() -> Result[ExecutionResult, ExecutionError]:
            async with asyncio.timeout(self.settings.execution_timeout):
                return await self._executor.run(instruction, env.path, self.settings.options)

        try:
            called = await self._interruptible(_call())
        except TimeoutError:
            raise _Failure(
                FailureCause.TIMEOUT, f"executor exceeded {self.settings.execution_timeout}s"
            ) from None
        except (_Cancelled, ContextStoreError, asyncio.CancelledError):
            raise
        except Exception as exc:
            self._log.exception("Executor raised")
            raise _Failure(FailureCause.EXECUTION_FAILED, f"{type(exc).__name__}: {exc}") from exc

        match called:
            case Err(err):
                raise _Failure(FailureCause.EXECUTION_FAILED, str(err))
            case Ok(result):
                pass
        if not result.ok:
            summary = summarize_output(result.output)
            raise _Failure(FailureCause.EXECUTION_FAILED, f"exit {result.exit_code}: {summary}".rstrip(": "))
        return result

    async def _settle_environment(self, env: Environment, failure: _Failure | None) -> None:
        """Release (or park, on conflict) the environment. Never skipped."""
        if failure is not None and failure.cause is FailureCause.INTEGRATION_CONFLICT:
            self.record.parked = True
            match await self._provider.park(env):
                case Err(err):
                    self._log.warning("Parking %s failed: %s", env.path, err)
                case Ok(_):
                    pass
            return

        self.record.release_calls += 1
        match await self._provider.release(env, failed=failure is not None):
            case Err(err):
                self._log.warning("Release of %s failed: %s", env.path, err)
            case Ok(_):
                pass

    # -------------------------------------------------------------------------
    # Terminal transitions
    # -------------------------------------------------------------------------

    async def _finish_completed(self, integration: IntegrationOutcome) -> AgentOutcome:
        await self._transition(AgentStatus.COMPLETED, integration.details)
        await self._post(
            ContextKind.COMPLETE,
            integration=integration.result.value,
            commit=integration.commit,
        )
        self.agent.finished_at = utc_now()
        return AgentOutcome(
            task_id=self.agent.task.id,
            agent_id=self.agent_id,
            kind=OutcomeKind.COMPLETED,
            detail=integration.details,
            integration=integration,
        )

    async def _finish_failed(
        self,
        failure: _Failure,
        env: Environment | None,
        *,
        integration: IntegrationOutcome | None = None,
    ) -> AgentOutcome:
        detail = _printable(failure.detail)
        await self._transition(AgentStatus.FAILED, f"{failure.cause.value}: {detail}")
        await self._post(ContextKind.BLOCKER, cause=failure.cause.value, detail=detail)
        return self._failed_outcome(failure.cause, detail, env, integration)

    def _failed_outcome(
        self,
        cause: FailureCause,
        detail: str,
        env: Environment | None,
        integration: IntegrationOutcome | None = None,
    ) -> AgentOutcome:
        self.agent.finished_at = utc_now()
        return AgentOutcome(
            task_id=self.agent.task.id,
            agent_id=self.agent_id,
            kind=OutcomeKind.FAILED,
            cause=cause,
            detail=detail,
            integration=integration,
            environment_path=env.path if env is not None else None,
        )

    async def _finish_crashed(self, exc: Exception) -> AgentOutcome:
        """Fail the agent after an unexpected exception, even if logging it fails too."""
        failure = _Failure(FailureCause.EXECUTION_FAILED, f"{type(exc).__name__}: {exc}")
        env = self.agent.environment
        try:
            return await self._finish_failed(failure, env)
        except ContextStoreError:
            raise
        except Exception:
            self._log.exception("Could not record failure")
        return self._failed_outcome(failure.cause, _printable(failure.detail), env)

    async def _finish_cancelled_before_start(self) -> AgentOutcome:
        await self._transition(AgentStatus.FAILED, "Cancelled: before start")
        await self._post(ContextKind.BLOCKER, cause=FailureCause.CANCELLED.value, detail="cancelled before start")
        self.agent.finished_at = utc_now()
        return AgentOutcome(
            task_id=self.agent.task.id,
            agent_id=self.agent_id,
            kind=OutcomeKind.CANCELLED,
            cause=FailureCause.CANCELLED,
            detail="cancelled before start",
        )


__all__ = ["AgentRunner", "RunnerRecord", "RunnerSettings"]
