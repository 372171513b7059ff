"""Task-execution collaborator.

The runner only knows the ``TaskExecutor`` protocol:
``run(instruction, working_path, options) -> ExecutionResult``. The
default implementation shells out to an agent CLI (``claude`` unless
configured otherwise), streams its combined output to a per-agent log
file, and optionally wraps the call in ``docker run`` for container
isolation.

Cancellation: when the awaiting task is cancelled (orchestrator deadline,
explicit cancel, execution timeout), the child's process group receives
SIGTERM and, after ``cancel_grace_seconds``, SIGKILL. The ``CancelledError``
is re-raised.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from agentfleet.core.config import ExecutorConfig, PermissionMode
from agentfleet.core.console import get_logger
from agentfleet.core.result import Err, ExecutionError, Ok, Result

logger = get_logger(__name__)

CONTAINER_WORKDIR = "/workspace"


@dataclass(slots=True, frozen=True)
class ExecutionOptions:
    """Per-call options handed to the collaborator."""

    permission_mode: PermissionMode = "acceptEdits"
    max_steps: int = 20
    log_path: Path | None = None
    container_image: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Exit status and combined output of one collaborator call."""

    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class TaskExecutor(Protocol):
    """Anything that can carry out an instruction inside a directory."""

    async def run(
        self,
        instruction: str,
        working_path: Path,
        options: ExecutionOptions,
    ) -> Result[ExecutionResult, ExecutionError]: ...


def summarize_output(output: str, limit: int = 200) -> str:
    """Pull a short summary out of collaborator output.

    JSON output (``--output-format json``) exposes a ``result`` field;
    anything else falls back to the last non-empty line.
    """
    text = output.strip()
    if not text:
        return ""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("result"), str):
        summary = data["result"].strip()
    else:
        summary = text.splitlines()[-1].strip()
    return summary if len(summary) <= limit else summary[: limit - 3] + "..."


class CommandExecutor:
    """Run the configured agent CLI as a subprocess."""

    def __init__(self, config: ExecutorConfig | None = None) -> None:
        self._config = config or ExecutorConfig()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def build_argv(self, instruction: str, options: ExecutionOptions) -> list[str]:
        return [
            self._config.command,
            "-p",
            instruction,
            "--permission-mode",
            options.permission_mode,
            "--max-turns",
            str(options.max_steps),
            "--output-format",
            "json",
            *self._config.extra_args,
        ]

    def wrap_container(self, argv: list[str], working_path: Path, image: str) -> list[str]:
        """Wrap ``argv`` so it runs inside a throwaway container."""
        docker_binary = shutil.which("docker") or "docker"
        return [
            docker_binary,
            "run",
            "--rm",
            "-v",
            f"{working_path.resolve()}:{CONTAINER_WORKDIR}",
            "-w",
            CONTAINER_WORKDIR,
            "-u",
            f"{os.getuid()}:{os.getgid()}",
            image,
            *argv,
        ]

    async def run(
        self,
        instruction: str,
        working_path: Path,
        options: ExecutionOptions,
    ) -> Result[ExecutionResult, ExecutionError]:
        argv = self.build_argv(instruction, options)
        if options.container_image:
            argv = self.wrap_container(argv, working_path, options.container_image)

        log_file = None
        if options.log_path is not None:
            try:
                options.log_path.parent.mkdir(parents=True, exist_ok=True)
                log_file = options.log_path.open("ab")
            except OSError as exc:
                return Err(
                    ExecutionError(
                        "Failed to open executor log",
                        context={"path": str(options.log_path), "error": str(exc)},
                    )
                )

        chunks: list[bytes] = []
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=working_path,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                return Err(ExecutionError("Executor command not found", context={"cmd": argv[0], "error": str(exc)}))
            except OSError as exc:
                return Err(
                    ExecutionError("Failed to start executor", context={"cmd": argv[0], "error": str(exc)})
                )

            try:
                assert proc.stdout is not None
                while True:
                    chunk = await proc.stdout.read(65536)
                    if not chunk:
                        break
                    chunks.append(chunk)
                    if log_file is not None:
                        log_file.write(chunk)
                        log_file.flush()
                exit_code = await proc.wait()
            except BaseException:
                await terminate_process_group(proc, self._config.cancel_grace_seconds)
                raise
        finally:
            if log_file is not None:
                log_file.close()

        output = b"".join(chunks).decode("utf-8", errors="replace")
        logger.debug("Executor exited with %s in %s", exit_code, working_path)
        return Ok(ExecutionResult(exit_code=exit_code, output=output))


def _signal_group(proc: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        return False
    return True


async def terminate_process_group(proc: asyncio.subprocess.Process, grace: float) -> None:
    """Stop ``proc`` and everything it spawned.

    ``proc`` must have been started with ``start_new_session=True`` so its
    pid is also its process group id. The group gets SIGTERM; if the leader
    is still alive after ``grace`` seconds the group gets SIGKILL. Any
    stragglers left in the group are killed either way.
    """
    if proc.returncode is None and _signal_group(proc, signal.SIGTERM) and grace > 0:
        try:
            await asyncio.wait_for(asyncio.shield(proc.wait()), timeout=grace)
        except TimeoutError:
            logger.warning("pid %s ignored SIGTERM; killing its process group", proc.pid)
    _signal_group(proc, signal.SIGKILL)
    await proc.wait()


__all__ = [
    "CommandExecutor",
    "ExecutionOptions",
    "ExecutionResult",
    "TaskExecutor",
    "summarize_output",
    "terminate_process_group",
]
