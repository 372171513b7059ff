"""Structured progress tracking for agent lifecycles.

``record`` only ever appends. ``status_of`` and ``aggregate`` fold the log
on every call, so they can never drift from it. The per-agent index kept
here exists only to reject out-of-order writes and is read under the
writer lock.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from pathlib import Path

from agentfleet.coordination.journal import AppendOnlyLog, JsonlJournal
from agentfleet.core.models import AgentStatus, ProgressRecord, ProgressSummary
from agentfleet.core.result import Err, Ok, Result, ValidationError


def fold_statuses(records: Iterable[ProgressRecord]) -> dict[str, AgentStatus]:
    """Latest status per agent, respecting terminal sinks."""
    latest: dict[str, AgentStatus] = {}
    for record in records:
        current = latest.get(record.agent_id)
        if current is not None and current.is_terminal:
            continue
        latest[record.agent_id] = record.status
    return latest


def summarize(records: Iterable[ProgressRecord]) -> ProgressSummary:
    """Fold records into aggregate counts."""
    latest = fold_statuses(records)
    by_status = Counter(status.value for status in latest.values())
    completed = by_status.get(AgentStatus.COMPLETED.value, 0)
    failed = by_status.get(AgentStatus.FAILED.value, 0)
    return ProgressSummary(
        total=len(latest),
        running=len(latest) - completed - failed,
        completed=completed,
        failed=failed,
        by_status=dict(by_status),
    )


class ProgressTracker(AppendOnlyLog[ProgressRecord]):
    """Append-only agent lifecycle log with derived status views."""

    def __init__(
        self,
        journal: JsonlJournal[ProgressRecord] | None = None,
        *,
        lock_timeout: float = 30.0,
    ) -> None:
        super().__init__(journal, lock_timeout=lock_timeout)
        self._last: dict[str, ProgressRecord] = {}

    @classmethod
    def open(cls, path: Path, *, lock_timeout: float = 30.0) -> ProgressTracker:
        """Open a durable tracker and rehydrate it by replay."""
        tracker = cls(JsonlJournal(path, ProgressRecord), lock_timeout=lock_timeout)
        tracker.load()
        return tracker

    def _on_replay(self, records: Sequence[ProgressRecord]) -> None:
        for record in records:
            previous = self._last.get(record.agent_id)
            if previous is None or not previous.status.is_terminal:
                self._last[record.agent_id] = record

    def _check(self, record: ProgressRecord) -> Result[None, ValidationError]:
        previous = self._last.get(record.agent_id)
        if previous is None:
            return Ok(None)
        if previous.status.is_terminal:
            return Err(
                ValidationError(
                    "Agent already reached a terminal status",
                    context={
                        "agent_id": record.agent_id,
                        "terminal": previous.status.value,
                        "attempted": record.status.value,
                    },
                )
            )
        if record.timestamp <= previous.timestamp:
            return Err(
                ValidationError(
                    "Progress timestamps must increase per agent",
                    context={
                        "agent_id": record.agent_id,
                        "previous": previous.timestamp.isoformat(),
                        "attempted": record.timestamp.isoformat(),
                    },
                )
            )
        return Ok(None)

    async def record(self, record: ProgressRecord) -> Result[None, ValidationError]:
        """Append one lifecycle record.

        Returns:
            Err(ValidationError) when the record would regress the agent's
            history or cannot be serialized; the log is left untouched in
            that case.

        Raises:
            ContextStoreError: the writer lock timed out or the write failed
        """
        await self._acquire()
        try:
            match self._check(record):
                case Err(err):
                    return Err(err)
                case Ok(_):
                    pass
            try:
                await self._write([record])
            except ValidationError as err:
                return Err(err)
            self._last[record.agent_id] = record
            return Ok(None)
        finally:
            self._lock.release()

    def status_of(self, agent_id: str) -> AgentStatus | None:
        """Latest status for ``agent_id``; ``None`` if it never reported."""
        return fold_statuses(
            record for record in self.snapshot() if record.agent_id == agent_id
        ).get(agent_id)

    def aggregate(self, agent_ids: Iterable[str] | None = None) -> ProgressSummary:
        """Aggregate counts, optionally restricted to ``agent_ids``."""
        records = self.snapshot()
        if agent_ids is not None:
            wanted = set(agent_ids)
            return summarize(record for record in records if record.agent_id in wanted)
        return summarize(records)

    def history(self, agent_id: str) -> list[ProgressRecord]:
        return [record for record in self.snapshot() if record.agent_id == agent_id]

    def recent(self, limit: int = 10) -> list[ProgressRecord]:
        records = self.snapshot()
        return list(records[-limit:]) if limit > 0 else []


__all__ = ["ProgressTracker", "fold_statuses", "summarize"]
