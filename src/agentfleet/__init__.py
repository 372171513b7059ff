"""agentfleet - concurrent coding-agent orchestration over a shared project tree.

This package provides the coordination engine behind the `fleet` command-line
tool: bounded agent dispatch, per-agent workspace isolation, a lock-guarded
shared context log, progress tracking and merge-or-reject integration.

Exports:
    __version__: Package version string.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
