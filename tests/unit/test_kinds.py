"""Tests for agent profiles and the registry."""

from __future__ import annotations

from pathlib import Path

import pytest

from agentfleet.agents.kinds import AgentProfile, AgentRegistry, load_definitions
from agentfleet.agents.validation import CommandRule, FilesChangedRule
from agentfleet.core.models import DEFAULT_AGENT_KIND, IsolationKind, Task
from agentfleet.core.result import ConfigurationError


class TestRegistry:
    def test_builtins_present(self) -> None:
        registry = AgentRegistry()
        for name in ("developer", "frontend-developer", "backend-developer", "test-engineer"):
            assert name in registry
        assert registry.resolve("security-auditor").permission_mode == "plan"
        assert registry.resolve("documentation-writer").isolation is IsolationKind.DIRECTORY

    def test_unknown_kind_resolves_to_generic(self) -> None:
        registry = AgentRegistry()
        assert registry.get("astronaut") is None
        assert registry.resolve("astronaut").name == DEFAULT_AGENT_KIND
        assert registry.select_agent(Task(description="x", kind="astronaut")) == DEFAULT_AGENT_KIND
        assert registry.select_agent(Task(description="x", kind="test-engineer")) == "test-engineer"

    def test_generic_kind_always_exists(self) -> None:
        registry = AgentRegistry([AgentProfile(name="solo")])
        assert DEFAULT_AGENT_KIND in registry
        assert len(registry) == 2

    def test_register_rejects_bad_validator(self) -> None:
        registry = AgentRegistry()
        with pytest.raises(ConfigurationError):
            registry.register(AgentProfile(name="broken", validators=("telepathy",)))
        assert "broken" not in registry

    def test_profile_builds_rules(self) -> None:
        rules = AgentRegistry().resolve("test-engineer").build_rules()
        assert len(rules) == 1
        assert isinstance(rules[0], FilesChangedRule)


class TestDefinitions:
    def test_mapping_form(self, tmp_path: Path) -> None:
        path = tmp_path / "agents.yaml"
        path.write_text(
            "agents:\n"
            "  - name: api-designer\n"
            "    isolation: branch\n"
            "    max_steps: 30\n"
            "    validators:\n"
            "      - 'command:make lint'\n",
            encoding="utf-8",
        )
        (profile,) = load_definitions(path)
        assert profile.name == "api-designer"
        assert profile.isolation is IsolationKind.BRANCH
        assert profile.max_steps == 30
        (rule,) = profile.build_rules()
        assert isinstance(rule, CommandRule)
        assert rule.command == "make lint"

    def test_list_form_and_override(self, tmp_path: Path) -> None:
        path = tmp_path / "agents.yaml"
        path.write_text("- name: developer\n  focus: small diffs\n", encoding="utf-8")
        registry = AgentRegistry.with_definitions(path)
        assert registry.resolve("developer").focus == "small diffs"

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "agents.yaml"
        path.write_text("", encoding="utf-8")
        assert load_definitions(path) == []

    @pytest.mark.parametrize(
        "content",
        [
            "agents: [\n",
            "just a string\n",
            "agents:\n  - name: x\n    unknown_field: 1\n",
            "agents:\n  - name: x\n    max_steps: 0\n",
        ],
    )
    def test_invalid_definitions(self, tmp_path: Path, content: str) -> None:
        path = tmp_path / "agents.yaml"
        path.write_text(content, encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_definitions(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_definitions(tmp_path / "missing.yaml")

    def test_no_definitions_path(self) -> None:
        assert len(AgentRegistry.with_definitions(None)) == len(AgentRegistry())
