"""Validation rules applied to an agent's artifact before integration.

A rule passes or fails; the first failing rule decides the outcome and
its ``rule_id`` is reported as the failure detail. Rules can be passed in
directly or declared by string in agent definitions:

    command:<shell command>   exit status 0 in the environment
    output:<substring>        executor output contains the substring
    changed-files             the agent changed at least one file
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from agentfleet.agents.executor import terminate_process_group
from agentfleet.core.console import get_logger
from agentfleet.core.models import Environment, Task
from agentfleet.core.result import ConfigurationError, Err, Ok
from agentfleet.environments.backends import diff_fingerprints, fingerprint_tree
from agentfleet.git import AsyncRepo

logger = get_logger(__name__)

DEFAULT_COMMAND_TIMEOUT = 600.0


@dataclass
class Artifact:
    """What an agent produced: its workspace plus the executor's output."""

    agent_id: str
    task: Task
    environment: Environment
    exit_code: int
    output: str
    ignore_dirs: tuple[str, ...] = field(default_factory=tuple)

    async def changed_files(self) -> list[str]:
        """Paths the agent touched relative to where its environment started."""
        env = self.environment
        if env.isolation.uses_version_control:
            repo = AsyncRepo(env.path)
            changed: set[str] = set()
            if env.base_commit:
                match await repo.changed_files(env.base_commit):
                    case Ok(paths):
                        changed.update(paths)
                    case Err(err):
                        logger.debug("Could not diff %s: %s", env.path, err)
            match await repo.run_git("status", "--porcelain"):
                case Ok(output):
                    for line in output.splitlines():
                        if len(line) > 3:
                            changed.add(line[3:].split(" -> ")[-1].strip())
                case Err(err):
                    logger.debug("Could not read status of %s: %s", env.path, err)
            return sorted(changed)

        current = await asyncio.to_thread(fingerprint_tree, env.path, self.ignore_dirs)
        return sorted(diff_fingerprints(env.baseline, current))


@dataclass(frozen=True, slots=True)
class RuleResult:
    passed: bool
    message: str = ""


@runtime_checkable
class ValidationRule(Protocol):
    """A named predicate over an ``Artifact``."""

    rule_id: str

    async def check(self, artifact: Artifact) -> RuleResult: ...


@dataclass(frozen=True, slots=True)
class RuleFailure:
    rule_id: str
    message: str


class CommandRule:
    """Run a build, test or lint command inside the environment."""

    def __init__(self, command: str, *, timeout: float = DEFAULT_COMMAND_TIMEOUT, rule_id: str | None = None) -> None:
        self.command = command
        self.timeout = timeout
        self.rule_id = rule_id or f"command:{command}"

    async def check(self, artifact: Artifact) -> RuleResult:
        try:
            proc = await asyncio.create_subprocess_shell(
                self.command,
                cwd=artifact.environment.path,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            return RuleResult(False, f"failed to start: {exc}")

        # The shell and anything it started die with the check.
        try:
            async with asyncio.timeout(self.timeout):
                stdout, _ = await proc.communicate()
        except TimeoutError:
            await terminate_process_group(proc, 0)
            return RuleResult(False, f"timed out after {self.timeout}s")
        except BaseException:
            await terminate_process_group(proc, 0)
            raise

        if proc.returncode != 0:
            tail = stdout.decode("utf-8", errors="replace").strip().splitlines()[-5:]
            return RuleResult(False, f"exit {proc.returncode}: " + " | ".join(tail))
        return RuleResult(True)


class OutputContainsRule:
    def __init__(self, needle: str, *, rule_id: str | None = None) -> None:
        self.needle = needle
        self.rule_id = rule_id or f"output:{needle}"

    async def check(self, artifact: Artifact) -> RuleResult:
        if self.needle in artifact.output:
            return RuleResult(True)
        return RuleResult(False, f"output does not contain {self.needle!r}")


class FilesChangedRule:
    rule_id = "changed-files"

    async def check(self, artifact: Artifact) -> RuleResult:
        changed = await artifact.changed_files()
        if changed:
            return RuleResult(True, f"{len(changed)} files changed")
        return RuleResult(False, "no files changed")


ArtifactPredicate = Callable[[Artifact], bool | Awaitable[bool]]


class CallableRule:
    """Wrap a caller-supplied predicate (sync or async)."""

    def __init__(self, rule_id: str, predicate: ArtifactPredicate, message: str = "") -> None:
        self.rule_id = rule_id
        self._predicate = predicate
        self._message = message

    async def check(self, artifact: Artifact) -> RuleResult:
        verdict = self._predicate(artifact)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        return RuleResult(bool(verdict), "" if verdict else self._message or "predicate returned false")


def rule_from_spec(spec: str) -> ValidationRule:
    """Build a rule from its declarative form.

    Raises:
        ConfigurationError: the spec names no known rule.
    """
    name, sep, argument = spec.partition(":")
    name = name.strip()
    if name == "changed-files" and not sep:
        return FilesChangedRule()
    if name == "command" and argument.strip():
        return CommandRule(argument.strip())
    if name == "output" and argument:
        return OutputContainsRule(argument)
    raise ConfigurationError("Unknown validation rule", context={"rule": spec})


def rules_from_specs(specs: Iterable[str]) -> list[ValidationRule]:
    return [rule_from_spec(spec) for spec in specs]


async def first_failure(rules: Sequence[ValidationRule], artifact: Artifact) -> RuleFailure | None:
    """Apply ``rules`` in order; return the first failure, if any.

    A rule that raises counts as failed.
    """
    for rule in rules:
        try:
            result = await rule.check(artifact)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Validation rule %s raised", rule.rule_id)
            return RuleFailure(rule.rule_id, f"rule raised {type(exc).__name__}: {exc}")
        if not result.passed:
            return RuleFailure(rule.rule_id, result.message)
    return None


__all__ = [
    "Artifact",
    "CallableRule",
    "CommandRule",
    "FilesChangedRule",
    "OutputContainsRule",
    "RuleFailure",
    "RuleResult",
    "ValidationRule",
    "first_failure",
    "rule_from_spec",
    "rules_from_specs",
]
