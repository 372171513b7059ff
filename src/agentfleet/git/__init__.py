"""Git operations used by version-control isolation.

This package provides async git operations:
    - AsyncRepo: Non-blocking git commands bound to an explicit path
    - Worktree management
    - Branch, commit and merge operations
"""

from __future__ import annotations

from .client import AsyncRepo, WorktreeInfo

__all__ = [
    "AsyncRepo",
    "WorktreeInfo",
]
