"""
Unified Result types and error hierarchy for agentfleet.

This module provides:
1. Result[T, E] type for explicit error handling
2. Domain-specific exception hierarchy
3. Helper functions for Result operations

Usage:
    from agentfleet.core.result import Ok, Err, Result, EnvironmentError

    async def acquire(...) -> Result[Environment, EnvironmentError]:
        if too_many:
            return Err(EnvironmentError.quota_exceeded(limit))
        return Ok(environment)

    match await provider.acquire(agent_id, kind):
        case Ok(env):
            ...
        case Err(err):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E", bound=Exception)


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Represents a successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Return the contained value."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return the contained value (ignores default for Ok)."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply a function to the contained value."""
        return Ok(fn(self.value))


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Represents a failed result containing an error."""

    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        """Return the default value."""
        return default

    def map(self, fn: Callable[[T], U]) -> Err[E]:
        """No-op for Err - returns self unchanged."""
        return self


# Type alias for Result
Result = Ok[T] | Err[E]


# ---------------------------------------------------------------------------
# Domain-specific error hierarchy
# ---------------------------------------------------------------------------


class AgentFleetError(Exception):
    """Base exception for all agentfleet errors.

    All custom exceptions should inherit from this class to enable
    consistent error handling across the codebase.
    """

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{ctx_str}]"
        return self.message


class ConfigurationError(AgentFleetError):
    """Raised for configuration issues.

    Examples:
    - Invalid agent definitions file
    - Unknown isolation kind
    - Config file parse errors
    """

    pass


class ValidationError(AgentFleetError):
    """Raised for input validation failures.

    Examples:
    - Duplicate task ids in a batch
    - Dependency cycles between tasks
    - Progress records that violate per-agent ordering
    """

    pass


class WorkspaceError(AgentFleetError):
    """Raised for project-level issues that abort a whole batch.

    Examples:
    - Project root not found
    - Environment provider failed to initialize
    """

    pass


class GitError(AgentFleetError):
    """Raised when a git command fails or cannot be started."""

    pass


class EnvironmentErrorKind(Enum):
    """Why an environment could not be acquired or released."""

    ALREADY_EXISTS = "AlreadyExists"
    QUOTA_EXCEEDED = "QuotaExceeded"
    UNDERLYING_TOOL_FAILED = "UnderlyingToolFailed"
    BUSY = "Busy"


class EnvironmentError(AgentFleetError):  # noqa: A001 - domain name, shadows builtin alias
    """Raised by the environment provider.

    The ``kind`` attribute distinguishes the failure modes callers branch on.
    """

    def __init__(
        self,
        kind: EnvironmentErrorKind,
        message: str,
        *,
        context: dict | None = None,
    ) -> None:
        super().__init__(message, context=context)
        self.kind = kind

    @classmethod
    def already_exists(cls, agent_id: str, path: object) -> EnvironmentError:
        return cls(
            EnvironmentErrorKind.ALREADY_EXISTS,
            "Environment already exists",
            context={"agent_id": agent_id, "path": str(path)},
        )

    @classmethod
    def quota_exceeded(cls, limit: int) -> EnvironmentError:
        return cls(
            EnvironmentErrorKind.QUOTA_EXCEEDED,
            "Too many live environments",
            context={"limit": limit},
        )

    @classmethod
    def tool_failed(cls, message: str, **context: object) -> EnvironmentError:
        return cls(EnvironmentErrorKind.UNDERLYING_TOOL_FAILED, message, context=dict(context))

    @classmethod
    def busy(cls, environment_id: str) -> EnvironmentError:
        return cls(
            EnvironmentErrorKind.BUSY,
            "Environment already released",
            context={"environment_id": environment_id},
        )


class ExecutionError(AgentFleetError):
    """Raised when the task-execution collaborator cannot be started."""

    pass


class ContextStoreError(AgentFleetError):
    """Raised when a shared log write cannot be committed.

    This is fatal for the whole batch: the audit trail can no longer be
    trusted once a write is lost or times out waiting for the writer lock.
    """

    pass


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def try_result(fn: Callable[[], T], error_type: type[E] = AgentFleetError) -> Result[T, E]:
    """Execute a function and wrap the result in Ok/Err.

    Args:
        fn: Function to execute
        error_type: Exception type to catch (default: AgentFleetError)

    Returns:
        Ok(value) on success, Err(exception) on failure
    """
    try:
        return Ok(fn())
    except error_type as exc:
        return Err(exc)


__all__ = [
    # Result types
    "Ok",
    "Err",
    "Result",
    # Error hierarchy
    "AgentFleetError",
    "ConfigurationError",
    "ContextStoreError",
    "EnvironmentError",
    "EnvironmentErrorKind",
    "ExecutionError",
    "GitError",
    "ValidationError",
    "WorkspaceError",
    # Helpers
    "try_result",
]
