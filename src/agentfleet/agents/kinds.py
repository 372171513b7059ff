"""Agent kinds: the strategy table resolved once per task at dispatch.

Each ``AgentProfile`` says how an agent of that kind runs: which isolation
it wants, how the executor is configured, which validation rules gate
integration and which instruction template it receives. Extra kinds load
from a YAML definitions file:

    agents:
      - name: api-designer
        isolation: worktree
        max_steps: 30
        focus: OpenAPI contracts and versioning
        validators:
          - "command:make lint"
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML, YAMLError

from agentfleet.agents.validation import ValidationRule, rules_from_specs
from agentfleet.core.config import PermissionMode
from agentfleet.core.console import get_logger
from agentfleet.core.models import DEFAULT_AGENT_KIND, IsolationKind, Task
from agentfleet.core.result import ConfigurationError

logger = get_logger(__name__)

AgentSelector = Callable[[Task], str]


class AgentProfile(BaseModel):
    """Behavior of one agent kind. ``None`` fields defer to the app config."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    description: str = ""
    focus: str = ""
    isolation: IsolationKind | None = None
    permission_mode: PermissionMode | None = None
    max_steps: int | None = Field(default=None, ge=1)
    validators: tuple[str, ...] = ()
    instructions_template: str | None = None

    def build_rules(self) -> list[ValidationRule]:
        return rules_from_specs(self.validators)


class _DefinitionsFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agents: list[AgentProfile] = Field(default_factory=list)


BUILTIN_PROFILES: tuple[AgentProfile, ...] = (
    AgentProfile(name=DEFAULT_AGENT_KIND, description="General-purpose developer"),
    AgentProfile(
        name="frontend-developer",
        description="UI components and client-side state",
        focus="user interface, accessibility and client-side state",
    ),
    AgentProfile(
        name="backend-developer",
        description="Server-side logic and APIs",
        focus="APIs, business logic and service integration",
    ),
    AgentProfile(
        name="database-architect",
        description="Schemas, migrations and queries",
        focus="schema design, migrations and query performance",
    ),
    AgentProfile(
        name="test-engineer",
        description="Test suites and coverage",
        focus="unit, integration and regression tests",
        validators=("changed-files",),
    ),
    AgentProfile(
        name="devops-engineer",
        description="Build, CI and deployment",
        focus="build pipelines, CI configuration and deployment scripts",
    ),
    AgentProfile(
        name="security-auditor",
        description="Read-only security review",
        focus="vulnerabilities, secrets handling and dependency risk",
        permission_mode="plan",
    ),
    AgentProfile(
        name="documentation-writer",
        description="Docs and guides",
        focus="README, API docs and usage guides",
        isolation=IsolationKind.DIRECTORY,
    ),
)


class AgentRegistry:
    """Name -> profile table with a guaranteed generic default."""

    def __init__(self, profiles: Iterable[AgentProfile] = BUILTIN_PROFILES) -> None:
        self._profiles: dict[str, AgentProfile] = {}
        for profile in profiles:
            self.register(profile)
        if DEFAULT_AGENT_KIND not in self._profiles:
            self.register(AgentProfile(name=DEFAULT_AGENT_KIND))

    def register(self, profile: AgentProfile) -> None:
        """Add or replace a profile. Validator specs are checked eagerly."""
        profile.build_rules()
        self._profiles[profile.name] = profile

    def get(self, name: str) -> AgentProfile | None:
        return self._profiles.get(name)

    def resolve(self, name: str) -> AgentProfile:
        return self._profiles.get(name) or self._profiles[DEFAULT_AGENT_KIND]

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[AgentProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    def select_agent(self, task: Task) -> str:
        """Default selector: the task's own kind if registered, else the generic kind."""
        return task.kind if task.kind in self._profiles else DEFAULT_AGENT_KIND

    @classmethod
    def with_definitions(cls, path: Path | None) -> AgentRegistry:
        registry = cls()
        if path is not None:
            for profile in load_definitions(path):
                registry.register(profile)
        return registry


def load_definitions(path: Path) -> list[AgentProfile]:
    """Parse a YAML agent definitions file.

    Raises:
        ConfigurationError: unreadable file, bad YAML or invalid profile.
    """
    yaml_loader = YAML(typ="safe")
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml_loader.load(handle)
    except (OSError, YAMLError) as exc:
        raise ConfigurationError(
            "Failed to read agent definitions", context={"path": str(path), "error": str(exc)}
        ) from exc

    if loaded is None:
        logger.debug("Agent definitions at %s are empty", path)
        return []
    if isinstance(loaded, list):
        loaded = {"agents": loaded}
    if not isinstance(loaded, dict):
        raise ConfigurationError("Agent definitions must be a mapping", context={"path": str(path)})

    try:
        definitions = _DefinitionsFile.model_validate(loaded)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            "Invalid agent definitions", context={"path": str(path), "error": str(exc)}
        ) from exc

    for profile in definitions.agents:
        profile.build_rules()
    return definitions.agents


__all__ = [
    "BUILTIN_PROFILES",
    "AgentProfile",
    "AgentRegistry",
    "AgentSelector",
    "load_definitions",
]
