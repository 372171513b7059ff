"""Console output and logging configuration.

Provides Rich-based console output and logging setup:
    - console: Main Rich console for stdout
    - stderr_console: Rich console for stderr (log records)
    - setup_logging(): Configure the Rich handler for the ``agentfleet`` tree
    - attach_log_file(): Mirror logging into the durable ``fleet.log``
    - get_logger(): Get a named logger instance
    - agent_logger(): Logger that tags every message with an agent id
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

APP_LOGGER = "agentfleet"
LOG_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

console = Console()
stderr_console = Console(stderr=True)


def _normalize_level(level: str | int) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def setup_logging(level: str | int = logging.INFO, verbose: bool = False) -> logging.Logger:
    """Route ``agentfleet`` log records to stderr through Rich.

    Agent output can contain square brackets, so Rich markup is disabled.
    Other libraries keep their own configuration.
    """
    numeric_level = logging.DEBUG if verbose else _normalize_level(level)

    handler = RichHandler(
        console=stderr_console,
        markup=False,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(numeric_level)

    logger = logging.getLogger(APP_LOGGER)
    logger.handlers.clear()
    logger.setLevel(numeric_level)
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def attach_log_file(path: Path, level: str | int = logging.INFO) -> logging.Handler:
    """Append ``agentfleet`` records to ``path`` until ``detach_log_file``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8", errors="backslashreplace")
    handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT))
    handler.setLevel(_normalize_level(level))
    logging.getLogger(APP_LOGGER).addHandler(handler)
    return handler


def detach_log_file(handler: logging.Handler) -> None:
    logging.getLogger(APP_LOGGER).removeHandler(handler)
    handler.close()


class AgentLogAdapter(logging.LoggerAdapter[logging.Logger]):
    """Prefixes messages with ``[agent_id]`` and exposes it as ``record.agent_id``."""

    def __init__(self, logger: logging.Logger, agent_id: str) -> None:
        super().__init__(logger, {"agent_id": agent_id})
        self.agent_id = agent_id

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        msg, kwargs = super().process(msg, kwargs)
        return f"[{self.agent_id}] {msg}", kwargs


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or APP_LOGGER)


def agent_logger(agent_id: str, name: str | None = None) -> AgentLogAdapter:
    return AgentLogAdapter(get_logger(name), agent_id)
