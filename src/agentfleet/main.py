from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from pathlib import Path

import typer
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from rich import box
from rich.panel import Panel
from rich.table import Table
from ruamel.yaml import YAML, YAMLError

from . import __version__
from .agents.executor import TaskExecutor
from .agents.kinds import AgentRegistry
from .coordination import ProgressTracker, SharedContextStore
from .core.config import AppConfig, ConfigLoadResult, load_config
from .core.console import attach_log_file, console, detach_log_file, setup_logging
from .core.models import DEFAULT_AGENT_KIND, AgentOutcome, IsolationKind, OutcomeKind, Task
from .core.result import AgentFleetError
from .orchestration import build_orchestrator, request_cancel

app = typer.Typer(help="fleet: run coding agents concurrently in isolated workspaces.")
logger = logging.getLogger(__name__)

_OUTCOME_STYLE = {
    OutcomeKind.COMPLETED: "green",
    OutcomeKind.FAILED: "red",
    OutcomeKind.CANCELLED: "yellow",
}


@dataclass
class AppState:
    config: AppConfig
    config_meta: ConfigLoadResult
    logger: logging.Logger
    executor: TaskExecutor | None = None


class _TaskSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    kind: str = DEFAULT_AGENT_KIND
    description: str = Field(min_length=1)
    depends_on: list[str] = Field(default_factory=list)

    def to_task(self) -> Task:
        fields: dict[str, object] = {
            "kind": self.kind,
            "description": self.description,
            "depends_on": tuple(self.depends_on),
        }
        if self.id:
            fields["id"] = self.id
        return Task.model_validate(fields)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to a fleet config file (TOML or JSON)."
    ),
    project: Path | None = typer.Option(
        None, "--project", "-p", help="Project root (default: current directory)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    loaded_config, meta = load_config(config_path=config, project_root=project)
    logger = setup_logging(level=loaded_config.project.log_level, verbose=verbose)

    ctx.obj = AppState(config=loaded_config, config_meta=meta, logger=logger)

    if meta.error:
        console.print(
            Panel(
                f"[bold red]Configuration Error - Safe Mode Active[/bold red]\n\n"
                f"Failed to load {meta.path}:\n{meta.error}\n\n"
                f"[yellow]Using default settings.[/yellow]",
                border_style="red",
            )
        )
    else:
        logger.debug(
            "Loaded configuration from %s (env overrides: %s)",
            meta.path,
            sorted(meta.env_overrides),
        )


def _fail(message: str) -> typer.Exit:
    console.print(f"[bold red]{message}[/bold red]")
    return typer.Exit(code=1)


def _print_outcome(task: Task, outcome: AgentOutcome) -> None:
    style = _OUTCOME_STYLE[outcome.kind]
    cause = f" ({outcome.cause.value})" if outcome.cause else ""
    console.print(f"[{style}]{outcome.kind.value}{cause}[/{style}] {task.id} {outcome.agent_id or ''}")


def _render_outcomes(results: list[tuple[Task, AgentOutcome]]) -> Table:
    table = Table(title="Outcomes", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Agent", style="white", no_wrap=True)
    table.add_column("Outcome", no_wrap=True)
    table.add_column("Detail", style="white")
    for task, outcome in results:
        style = _OUTCOME_STYLE[outcome.kind]
        label = outcome.kind.value + (f" ({outcome.cause.value})" if outcome.cause else "")
        detail = outcome.detail
        if outcome.environment_path and not outcome.succeeded:
            detail = f"{detail}\npreserved: {outcome.environment_path}".strip()
        table.add_row(task.id, outcome.agent_id or "-", f"[{style}]{label}[/{style}]", detail)
    return table


async def _deploy(
    state: AppState,
    tasks: list[Task],
    concurrency: int | None,
    isolation: IsolationKind | None,
    timeout: float | None,
) -> list[tuple[Task, AgentOutcome]]:
    orchestrator = await build_orchestrator(state.config, executor=state.executor)
    log_handler = attach_log_file(state.config.state_dir / "fleet.log", state.config.project.log_level)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, orchestrator.cancel)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for signal %s", signum)
    try:
        return await orchestrator.deploy(
            tasks,
            concurrency,
            deadline=timeout,
            isolation=isolation,
            on_outcome=_print_outcome,
        )
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass
        detach_log_file(log_handler)


def _run_batch(
    state: AppState,
    tasks: list[Task],
    concurrency: int | None,
    isolation: IsolationKind | None,
    timeout: float | None,
) -> None:
    try:
        results = asyncio.run(_deploy(state, tasks, concurrency, isolation, timeout))
    except AgentFleetError as exc:
        raise _fail(str(exc)) from exc

    console.print(_render_outcomes(results))
    if not all(outcome.succeeded for _, outcome in results):
        raise typer.Exit(code=1)


@app.command("deploy")
def deploy(
    ctx: typer.Context,
    description: str = typer.Argument(..., help="What the agent should do."),
    kind: str = typer.Option(DEFAULT_AGENT_KIND, "--kind", "-k", help="Agent kind."),
    isolation: IsolationKind | None = typer.Option(
        None, "--isolation", "-i", help="Override the isolation kind."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Cancel the agent after this many seconds."
    ),
) -> None:
    """Run one agent on one task."""
    state: AppState = ctx.obj
    _run_batch(state, [Task(kind=kind, description=description)], 1, isolation, timeout)


def _load_task_file(path: Path) -> list[Task]:
    yaml_loader = YAML(typ="safe")
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml_loader.load(handle)
    except (OSError, YAMLError) as exc:
        raise _fail(f"Cannot read task file {path}: {exc}") from exc

    if isinstance(loaded, dict):
        loaded = loaded.get("tasks", [])
    if not isinstance(loaded, list):
        raise _fail(f"Task file {path} must contain a list of tasks.")

    tasks: list[Task] = []
    for item in loaded:
        spec_data = {"description": item} if isinstance(item, str) else item
        try:
            tasks.append(_TaskSpec.model_validate(spec_data).to_task())
        except PydanticValidationError as exc:
            raise _fail(f"Invalid task in {path}: {exc}") from exc
    return tasks


@app.command("deploy-many")
def deploy_many(
    ctx: typer.Context,
    descriptions: list[str] | None = typer.Argument(None, help="One task per argument."),
    file: Path | None = typer.Option(None, "--file", "-f", help="YAML file listing tasks."),
    kind: str = typer.Option(DEFAULT_AGENT_KIND, "--kind", "-k", help="Agent kind for positional tasks."),
    concurrency: int | None = typer.Option(
        None, "--concurrency", "-n", min=1, help="Agents running at once."
    ),
    isolation: IsolationKind | None = typer.Option(
        None, "--isolation", "-i", help="Override the isolation kind."
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Cancel running agents after this many seconds."
    ),
) -> None:
    """Run several agents concurrently."""
    state: AppState = ctx.obj
    tasks = [Task(kind=kind, description=text) for text in descriptions or []]
    if file is not None:
        tasks.extend(_load_task_file(file))
    if not tasks:
        raise _fail("No tasks given.")
    _run_batch(state, tasks, concurrency, isolation, timeout)


@app.command("status")
def status(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-l", help="Recent records to show."),
) -> None:
    """Show aggregate progress rebuilt from the progress log."""
    state: AppState = ctx.obj
    try:
        tracker = ProgressTracker.open(state.config.progress_log)
    except AgentFleetError as exc:
        raise _fail(str(exc)) from exc

    summary = tracker.aggregate()
    console.print(
        Panel(
            f"Total: {summary.total}  Running: {summary.running}  "
            f"[green]Completed: {summary.completed}[/green]  [red]Failed: {summary.failed}[/red]",
            title=f"Agents ({state.config.project_name})",
            box=box.SIMPLE,
        )
    )

    table = Table(title="Recent activity", box=box.SIMPLE, expand=True)
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Agent", style="cyan", no_wrap=True)
    table.add_column("Status", style="white", no_wrap=True)
    table.add_column("Message", style="white")
    for record in tracker.recent(limit):
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.agent_id,
            record.status.value,
            record.message,
        )
    console.print(table)


@app.command("cancel")
def cancel(
    ctx: typer.Context,
    target: str = typer.Argument("all", help="Agent id, or 'all'."),
) -> None:
    """Ask a running deploy to cancel one agent or all of them."""
    state: AppState = ctx.obj

    async def _request() -> None:
        store = SharedContextStore.open(
            state.config.context_log, lock_timeout=state.config.orchestration.lock_timeout
        )
        await request_cancel(store, target)

    try:
        asyncio.run(_request())
    except AgentFleetError as exc:
        raise _fail(str(exc)) from exc
    console.print(f"[yellow]Cancel requested for {target}[/yellow]")


@app.command("logs")
def logs(
    ctx: typer.Context,
    agent_id: str = typer.Argument(..., help="Agent id."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep printing until the agent finishes."),
) -> None:
    """Print an agent's executor log."""
    state: AppState = ctx.obj
    log_path = state.config.logs_dir / f"{agent_id}.log"
    if not log_path.exists() and not follow:
        raise _fail(f"No log for {agent_id} at {log_path}")

    offset = 0
    tracker = ProgressTracker.open(state.config.progress_log) if follow else None
    while True:
        if log_path.exists():
            with log_path.open("r", encoding="utf-8", errors="replace") as handle:
                handle.seek(offset)
                chunk = handle.read()
                offset = handle.tell()
            if chunk:
                console.print(chunk, end="", markup=False, highlight=False)
        if tracker is None:
            return
        tracker.load()
        current = tracker.status_of(agent_id)
        if current is not None and current.is_terminal:
            console.print(f"\n[dim]{agent_id} finished: {current.value}[/dim]")
            return
        time.sleep(state.config.orchestration.cancel_poll_interval)


@app.command("agents")
def list_agents(ctx: typer.Context) -> None:
    """List the agent kinds deploy can select."""
    state: AppState = ctx.obj
    try:
        registry = AgentRegistry.with_definitions(state.config.orchestration.agents_file)
    except AgentFleetError as exc:
        raise _fail(str(exc)) from exc

    table = Table(title="Agent kinds", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Kind", style="cyan", no_wrap=True)
    table.add_column("Isolation", style="white", no_wrap=True)
    table.add_column("Validators", style="white")
    table.add_column("Description", style="white")
    default_isolation = state.config.orchestration.default_isolation.value
    for profile in registry:
        table.add_row(
            profile.name,
            profile.isolation.value if profile.isolation else f"{default_isolation} (default)",
            ", ".join(profile.validators) or "-",
            profile.description,
        )
    console.print(table)


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the active configuration and where it came from."""
    state: AppState = ctx.obj
    config = state.config
    meta = state.config_meta

    table = Table(title="Config", box=box.SIMPLE, expand=True)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    for group, values in config.model_dump().items():
        for key, value in values.items():
            table.add_row(f"{group}.{key}", str(value))

    console.print(table)

    meta_lines = [
        f"Path: {meta.path}",
        "File loaded: yes" if meta.file_loaded else "File loaded: no (using defaults + env)",
        f"State dir: {config.state_dir}",
    ]

    if meta.env_overrides:
        meta_lines.append("Env overrides: " + ", ".join(sorted(meta.env_overrides)))

    console.print(Panel("\n".join(meta_lines), title="Config source", box=box.SIMPLE))


@app.command("version")
def show_version() -> None:
    """Print the agentfleet version."""
    console.print(__version__)


def cli() -> None:
    app()


if __name__ == "__main__":
    cli()
