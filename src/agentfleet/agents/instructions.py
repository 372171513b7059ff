"""Jinja2 rendering of the instruction payload handed to the executor.

The packaged ``instructions.md.j2`` is the default; an agent profile can
carry its own inline template instead.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, TemplateNotFound

from agentfleet.core.models import Task
from agentfleet.core.result import ConfigurationError

DEFAULT_TEMPLATE = "instructions.md.j2"


def resolve_template_root(custom_root: Path | None = None) -> Path:
    """Return ``custom_root`` when it is a directory, else the packaged templates."""
    if custom_root is not None and custom_root.is_dir():
        return custom_root.resolve()
    package_templates = Path(__file__).parent.parent / "templates"
    if package_templates.is_dir():
        return package_templates.resolve()
    raise FileNotFoundError("No templates directory found")


@lru_cache(maxsize=4)
def get_template_environment(template_root: Path) -> Environment:
    return Environment(
        loader=FileSystemLoader(str(template_root)),
        autoescape=False,
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )


def render_instructions(
    *,
    agent_id: str,
    kind: str,
    task: Task,
    project_name: str,
    working_path: Path,
    focus: str = "",
    template: str | None = None,
    template_root: Path | None = None,
) -> str:
    """Render the instruction text for one agent.

    Args:
        template: Inline Jinja2 source; the packaged default is used when ``None``.

    Raises:
        ConfigurationError: the template is missing or fails to render.
    """
    env = get_template_environment(resolve_template_root(template_root))
    context: dict[str, object] = {
        "agent_id": agent_id,
        "kind": kind,
        "task": task,
        "project_name": project_name,
        "working_path": str(working_path),
        "focus": focus,
        "dependencies": list(task.depends_on),
    }
    try:
        compiled = env.from_string(template) if template is not None else env.get_template(DEFAULT_TEMPLATE)
        return compiled.render(**context)
    except TemplateNotFound as exc:
        raise ConfigurationError("Instruction template not found", context={"name": str(exc)}) from exc
    except TemplateError as exc:
        raise ConfigurationError(
            "Instruction template failed to render", context={"kind": kind, "error": str(exc)}
        ) from exc


__all__ = ["DEFAULT_TEMPLATE", "render_instructions", "resolve_template_root"]
