"""Shared, lock-guarded state that more than one agent writes.

Key classes:
- SharedContextStore: Cross-agent messages, blockers and completions
- ProgressTracker: Per-agent lifecycle records with folded status views
- JsonlJournal: Durable JSONL backing shared by both
"""

from agentfleet.coordination.context_store import SharedContextStore
from agentfleet.coordination.journal import AppendOnlyLog, JsonlJournal
from agentfleet.coordination.progress import ProgressTracker

__all__ = [
    "AppendOnlyLog",
    "JsonlJournal",
    "ProgressTracker",
    "SharedContextStore",
]
