"""Data model for agent orchestration.

This module defines the value types exchanged between the environment
provider, the shared logs, the agent runners and the orchestrator.

Key classes:
- Task: Immutable unit of work submitted by the caller
- Agent: Mutable lifecycle record owned by exactly one AgentRunner
- Environment: Exclusively owned isolated workspace
- ContextEntry / ProgressRecord: Append-only log records
- IntegrationOutcome / AgentOutcome: What came back from a run

[invariant:typing] All types are explicit; mypy --strict compliant.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_AGENT_KIND = "developer"

_KIND_SANITIZER = re.compile(r"[^A-Za-z0-9-]+")


def utc_now() -> datetime:
    return datetime.now(UTC)


class IsolationKind(str, Enum):
    """Mechanism used to keep an agent's workspace exclusive.

    Ordered from strongest to weakest: WORKTREE and CONTAINER give a fully
    separate working copy, BRANCH separates history but shares the project
    working directory, DIRECTORY is a plain copy without version history.
    """

    WORKTREE = "worktree"
    CONTAINER = "container"
    BRANCH = "branch"
    DIRECTORY = "directory"

    @property
    def uses_version_control(self) -> bool:
        return self in (IsolationKind.WORKTREE, IsolationKind.BRANCH)


class AgentStatus(str, Enum):
    """Lifecycle status of an agent."""

    PENDING = "Pending"
    BLOCKED = "Blocked"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    VALIDATING = "Validating"
    INTEGRATING = "Integrating"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED)


class ContextKind(str, Enum):
    """Kind of a shared-context entry."""

    INFO = "Info"
    REQUEST = "Request"
    BLOCKER = "Blocker"
    COMPLETE = "Complete"


class FailureCause(str, Enum):
    """Why an agent ended in the Failed state."""

    ENVIRONMENT_UNAVAILABLE = "EnvironmentUnavailable"
    EXECUTION_FAILED = "ExecutionFailed"
    VALIDATION_FAILED = "ValidationFailed"
    INTEGRATION_CONFLICT = "IntegrationConflict"
    CANCELLED = "Cancelled"
    TIMEOUT = "Timeout"
    DEPENDENCY_FAILED = "DependencyFailed"


class IntegrationResult(str, Enum):
    MERGED = "Merged"
    CONFLICT_DETECTED = "ConflictDetected"
    REJECTED = "Rejected"


class OutcomeKind(str, Enum):
    """Final disposition of a task in a deploy batch."""

    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class Task(BaseModel):
    """A unit of work handed to one agent.

    Attributes:
        id: Unique task identifier within a batch
        kind: Requested agent kind (resolved through the agent table)
        description: What the agent should accomplish
        created_at: When the caller created the task
        depends_on: Task ids whose agents must complete first
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: f"task-{uuid.uuid4().hex[:8]}")
    kind: str = Field(default=DEFAULT_AGENT_KIND)
    description: str
    created_at: datetime = Field(default_factory=utc_now)
    depends_on: tuple[str, ...] = Field(default_factory=tuple)


class Environment(BaseModel):
    """An isolated workspace owned by exactly one agent.

    Attributes:
        environment_id: Provider-assigned identifier
        path: Directory the agent works in
        isolation: Isolation mechanism backing the workspace
        agent_id: Owning agent
        branch_name: Isolated line of history (worktree/branch only)
        base_ref: Main-lineage branch the work is merged back into
        base_commit: Main-lineage commit at acquisition time
        baseline: Relative path -> content digest of the project tree at
            acquisition time (directory/container only)
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    environment_id: str
    path: Path
    isolation: IsolationKind
    agent_id: str
    branch_name: str | None = None
    base_ref: str | None = None
    base_commit: str | None = None
    baseline: dict[str, str] = Field(default_factory=dict, repr=False)
    created_at: datetime = Field(default_factory=utc_now)


@dataclass
class Agent:
    """Lifecycle record for one agent.

    Owned exclusively by its AgentRunner; everybody else only reads it.
    """

    agent_id: str
    kind: str
    task: Task
    status: AgentStatus = AgentStatus.PENDING
    environment: Environment | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ContextEntry(BaseModel):
    """One record of the shared, append-only context log."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    kind: ContextKind
    payload: dict[str, Any] = Field(default_factory=dict)


class ProgressRecord(BaseModel):
    """One lifecycle event in the append-only progress log."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_id: str
    timestamp: datetime = Field(default_factory=utc_now)
    status: AgentStatus
    message: str = ""


class ProgressSummary(BaseModel):
    """Aggregate view folded from the progress log.

    ``running`` counts every agent whose latest status is not terminal, so
    ``running + completed + failed == total`` always holds.
    """

    model_config = ConfigDict(frozen=True)

    total: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)


class IntegrationOutcome(BaseModel):
    """Result of folding an agent's work back into the main lineage."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    agent_id: str
    result: IntegrationResult
    details: str = ""
    conflicts: tuple[str, ...] = Field(default_factory=tuple)
    commit: str | None = None


class AgentOutcome(BaseModel):
    """What the orchestrator reports for one task of a batch."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_id: str
    agent_id: str | None = None
    kind: OutcomeKind
    cause: FailureCause | None = None
    detail: str = ""
    integration: IntegrationOutcome | None = None
    environment_path: Path | None = None
    finished_at: datetime = Field(default_factory=utc_now)

    @property
    def succeeded(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED


def new_agent_id(kind: str, now: datetime | None = None) -> str:
    """Build a unique agent id from its kind and start time.

    Format: ``AGENT_<kind>_<YYYYmmdd_HHMMSS>_<8 hex>``.
    """
    stamp = (now or utc_now()).strftime("%Y%m%d_%H%M%S")
    safe_kind = _KIND_SANITIZER.sub("-", kind).strip("-") or DEFAULT_AGENT_KIND
    return f"AGENT_{safe_kind}_{stamp}_{uuid.uuid4().hex[:8]}"


__all__ = [
    "DEFAULT_AGENT_KIND",
    "Agent",
    "AgentOutcome",
    "AgentStatus",
    "ContextEntry",
    "ContextKind",
    "Environment",
    "FailureCause",
    "IntegrationOutcome",
    "IntegrationResult",
    "IsolationKind",
    "OutcomeKind",
    "ProgressRecord",
    "ProgressSummary",
    "Task",
    "new_agent_id",
    "utc_now",
]
