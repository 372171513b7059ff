"""Tests for instruction rendering."""

from __future__ import annotations

from pathlib import Path

import pytest

from agentfleet.agents.instructions import render_instructions, resolve_template_root
from agentfleet.core.models import Task
from agentfleet.core.result import ConfigurationError
from tests.mocks.fake_executor import task_description


def _render(**overrides: object) -> str:
    params: dict[str, object] = {
        "agent_id": "AGENT_developer_20240101_000000_abcd1234",
        "kind": "developer",
        "task": Task(id="t1", description="Add a login form"),
        "project_name": "demo",
        "working_path": Path("/tmp/work"),
    }
    params.update(overrides)
    return render_instructions(**params)  # type: ignore[arg-type]


def test_default_template_fields() -> None:
    text = _render(focus="forms")
    assert text.startswith("You are a developer agent")
    assert "Task: Add a login form" in text
    assert "Project: demo" in text
    assert "Working Directory: /tmp/work" in text
    assert "Agent: AGENT_developer_20240101_000000_abcd1234" in text
    assert "Focus: forms" in text
    assert "Baby Steps" in text
    assert task_description(text) == "Add a login form"


def test_optional_sections_omitted() -> None:
    text = _render()
    assert "Focus:" not in text
    assert "builds on work" not in text


def test_dependencies_listed() -> None:
    text = _render(task=Task(id="t2", description="Wire API", depends_on=("t0", "t1")))
    assert "already merged for: t0, t1" in text


def test_inline_template() -> None:
    assert _render(template="{{ kind }}:{{ task.id }}") == "developer:t1"


def test_undefined_variable_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        _render(template="{{ nonexistent }}")


def test_missing_named_template(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        _render(template_root=tmp_path)


def test_template_root_resolution(tmp_path: Path) -> None:
    assert resolve_template_root(tmp_path) == tmp_path.resolve()
    packaged = resolve_template_root(None)
    assert (packaged / "instructions.md.j2").is_file()
    assert resolve_template_root(tmp_path / "missing") == packaged
