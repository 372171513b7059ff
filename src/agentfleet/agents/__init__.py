"""Agent kinds, the execution collaborator and the per-agent runner."""

from agentfleet.agents.executor import CommandExecutor, ExecutionOptions, ExecutionResult, TaskExecutor
from agentfleet.agents.kinds import AgentProfile, AgentRegistry
from agentfleet.agents.runner import AgentRunner, RunnerSettings
from agentfleet.agents.validation import Artifact, CallableRule, CommandRule, ValidationRule

__all__ = [
    "AgentProfile",
    "AgentRegistry",
    "AgentRunner",
    "Artifact",
    "CallableRule",
    "CommandExecutor",
    "CommandRule",
    "ExecutionOptions",
    "ExecutionResult",
    "RunnerSettings",
    "TaskExecutor",
    "ValidationRule",
]
