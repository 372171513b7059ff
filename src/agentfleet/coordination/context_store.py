"""Shared context store for cross-agent signaling.

The store is the ordered sequence of every ``ContextEntry`` any agent
posted. Its order is the only source of truth for "what happened when"
across agents; callers that need cross-agent ordering wait on a condition
instead of assuming log order reflects wall-clock time.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from agentfleet.coordination.journal import AppendOnlyLog, JsonlJournal
from agentfleet.core.models import ContextEntry, ContextKind

ContextPredicate = Callable[[tuple[ContextEntry, ...]], bool]

CANCEL_ACTION = "cancel"
CANCEL_ALL = "all"


class SharedContextStore(AppendOnlyLog[ContextEntry]):
    """Lock-protected, append-only record of cross-agent state."""

    @classmethod
    def open(cls, path: Path, *, lock_timeout: float = 30.0) -> SharedContextStore:
        """Open a durable store and replay its existing entries."""
        store = cls(JsonlJournal(path, ContextEntry), lock_timeout=lock_timeout)
        store.load()
        return store

    async def append(self, entry: ContextEntry) -> None:
        """Commit one entry after everything already in the log.

        Raises:
            ValidationError: the entry cannot be serialized; the log is unchanged
            ContextStoreError: the writer lock timed out or the write failed
        """
        await self._acquire()
        try:
            await self._write([entry])
        finally:
            self._lock.release()

    async def post(
        self,
        agent_id: str,
        kind: ContextKind,
        **payload: Any,
    ) -> ContextEntry:
        """Build, append and return an entry."""
        entry = ContextEntry(agent_id=agent_id, kind=kind, payload=payload)
        await self.append(entry)
        return entry

    async def wait_for_condition(
        self,
        predicate: ContextPredicate,
        timeout: float | None,
    ) -> bool:
        """Wait until ``predicate`` holds for the committed entries.

        Returns ``False`` if ``timeout`` seconds pass first.
        """
        return await self.wait_until(predicate, timeout)

    def entries_for(self, agent_id: str) -> list[ContextEntry]:
        return [entry for entry in self.snapshot() if entry.agent_id == agent_id]

    def entries_of_kind(self, kind: ContextKind) -> list[ContextEntry]:
        return [entry for entry in self.snapshot() if entry.kind is kind]


def task_settled(
    task_id: str,
    entries: Iterable[ContextEntry],
    batch_id: str | None = None,
) -> ContextKind | None:
    """Return COMPLETE/BLOCKER if an agent already settled ``task_id``.

    Entries from other deploy batches are ignored when ``batch_id`` is given;
    task ids are only unique within a batch.
    """
    for entry in entries:
        if entry.payload.get("task_id") != task_id:
            continue
        if batch_id is not None and entry.payload.get("batch_id") != batch_id:
            continue
        if entry.kind in (ContextKind.COMPLETE, ContextKind.BLOCKER):
            return entry.kind
    return None


def cancel_targets(entries: Iterable[ContextEntry]) -> set[str]:
    """Collect agent ids (or ``"all"``) named by cancel requests."""
    targets: set[str] = set()
    for entry in entries:
        if entry.kind is ContextKind.REQUEST and entry.payload.get("action") == CANCEL_ACTION:
            target = entry.payload.get("target")
            if isinstance(target, str) and target:
                targets.add(target)
    return targets


__all__ = [
    "CANCEL_ACTION",
    "CANCEL_ALL",
    "ContextPredicate",
    "SharedContextStore",
    "cancel_targets",
    "task_settled",
]
