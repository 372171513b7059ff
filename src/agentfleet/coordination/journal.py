"""Durable append-only logs shared between agents.

Two layers live here:

- ``JsonlJournal``: one JSON record per line on disk. Every write holds an
  exclusive ``fcntl.flock`` on the file, and before writing it reads
  whatever other processes appended since this process last looked. The
  in-memory order therefore always equals the file order.
- ``AppendOnlyLog``: the in-process view. A single ``asyncio.Lock`` serializes
  writers; readers get the last committed immutable tuple without locking;
  an ``asyncio.Condition`` wakes waiters after every commit.

Platform Support:
    The journal requires POSIX ``fcntl`` (Linux, macOS).
"""

from __future__ import annotations

import asyncio
import fcntl
import os
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agentfleet.core.console import get_logger
from agentfleet.core.result import ContextStoreError, ValidationError

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class JsonlJournal(Generic[M]):
    """Append-only JSONL file of pydantic records."""

    def __init__(self, path: Path, model: type[M], *, fsync: bool = True) -> None:
        self._path = path
        self._model = model
        self._fsync = fsync

    @property
    def path(self) -> Path:
        return self._path

    def _parse(self, raw: bytes) -> list[M]:
        records: list[M] = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(self._model.model_validate_json(line))
            except PydanticValidationError as exc:
                logger.warning("Skipping malformed record in %s: %s", self._path, exc)
        return records

    @staticmethod
    def _complete_prefix(raw: bytes) -> bytes:
        """Drop a trailing partial line left by a crashed writer."""
        cut = raw.rfind(b"\n")
        return raw[: cut + 1] if cut >= 0 else b""

    def read_from(self, offset: int = 0) -> tuple[list[M], int]:
        """Read complete records starting at ``offset``.

        Returns the records and the offset just past the last complete line.
        """
        if not self._path.exists():
            return [], offset
        with self._path.open("rb") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_SH)
            try:
                fh.seek(offset)
                raw = self._complete_prefix(fh.read())
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        return self._parse(raw), offset + len(raw)

    def encode(self, records: Sequence[M]) -> bytes:
        """Serialize ``records`` as UTF-8 JSON lines.

        Raises:
            ValidationError: a record cannot be represented (e.g. lone surrogates)
        """
        try:
            return b"".join(record.model_dump_json().encode("utf-8") + b"\n" for record in records)
        except ValueError as exc:
            raise ValidationError(
                "Record cannot be serialized",
                context={"model": self._model.__name__, "error": str(exc)},
            ) from exc

    def append(self, records: Sequence[M], offset: int) -> tuple[list[M], int]:
        """Append ``records`` after ingesting foreign lines past ``offset``.

        Returns the foreign records (in file order) and the new end offset.
        Nothing is written when a record fails to serialize.
        """
        payload = self.encode(records)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a+b") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                fh.seek(offset)
                tail = fh.read()
                foreign_raw = self._complete_prefix(tail)
                if len(foreign_raw) != len(tail):
                    # Terminate a torn line so our record starts on its own line.
                    fh.write(b"\n")
                fh.write(payload)
                fh.flush()
                if self._fsync:
                    os.fsync(fh.fileno())
                end = fh.tell()
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        return self._parse(foreign_raw), end


class AppendOnlyLog(Generic[M]):
    """Lock-guarded ordered sequence of immutable records.

    Subclasses add domain checks by overriding ``_check`` and domain queries
    as pure folds over ``snapshot()``.
    """

    def __init__(
        self,
        journal: JsonlJournal[M] | None = None,
        *,
        lock_timeout: float = 30.0,
    ) -> None:
        self._journal = journal
        self._lock_timeout = lock_timeout
        self._lock = asyncio.Lock()
        self._changed = asyncio.Condition()
        self._records: tuple[M, ...] = ()
        self._offset = 0

    @property
    def journal_path(self) -> Path | None:
        return self._journal.path if self._journal else None

    def snapshot(self) -> tuple[M, ...]:
        """Return the last fully committed sequence without blocking writers."""
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def load(self) -> int:
        """Replay the durable journal into memory. Returns the record count."""
        if self._journal is None:
            return 0
        try:
            records, self._offset = self._journal.read_from(0)
        except OSError as exc:
            raise ContextStoreError(
                "Failed to replay log", context={"path": str(self._journal.path), "error": str(exc)}
            ) from exc
        self._records = tuple(records)
        self._on_replay(records)
        return len(records)

    async def _acquire(self) -> None:
        try:
            async with asyncio.timeout(self._lock_timeout):
                await self._lock.acquire()
        except TimeoutError as exc:
            raise ContextStoreError(
                "Timed out waiting for log writer lock",
                context={"timeout": self._lock_timeout, "log": type(self).__name__},
            ) from exc

    async def _write(self, records: Sequence[M]) -> None:
        """Persist and commit ``records`` atomically. Caller holds the lock.

        Raises:
            ValidationError: a record cannot be serialized; nothing is committed
            ContextStoreError: the durable write failed
        """
        foreign: list[M] = []
        if self._journal is not None:
            try:
                foreign, self._offset = await asyncio.to_thread(
                    self._journal.append, records, self._offset
                )
            except OSError as exc:
                raise ContextStoreError(
                    "Failed to persist log record",
                    context={"path": str(self._journal.path), "error": str(exc)},
                ) from exc
        if foreign:
            self._on_replay(foreign)
        await self._commit([*foreign, *records])

    async def _commit(self, records: Iterable[M]) -> None:
        self._records = self._records + tuple(records)
        async with self._changed:
            self._changed.notify_all()

    async def refresh(self) -> int:
        """Ingest records other processes appended. Returns how many arrived."""
        if self._journal is None:
            return 0
        await self._acquire()
        try:
            try:
                foreign, self._offset = await asyncio.to_thread(
                    self._journal.read_from, self._offset
                )
            except OSError as exc:
                raise ContextStoreError(
                    "Failed to read log", context={"path": str(self._journal.path), "error": str(exc)}
                ) from exc
            if foreign:
                self._on_replay(foreign)
                await self._commit(foreign)
            return len(foreign)
        finally:
            self._lock.release()

    async def wait_until(
        self,
        predicate: Callable[[tuple[M, ...]], bool],
        timeout: float | None,
    ) -> bool:
        """Block until ``predicate(snapshot)`` holds or ``timeout`` expires.

        The predicate is re-evaluated against the fresh snapshot after every
        commit. Returns ``False`` on timeout.
        """
        async with self._changed:
            try:
                async with asyncio.timeout(timeout):
                    await self._changed.wait_for(lambda: predicate(self._records))
            except TimeoutError:
                return predicate(self._records)
        return True

    def _on_replay(self, records: Sequence[M]) -> None:
        """Hook for subclasses that keep a validation index."""


__all__ = ["AppendOnlyLog", "JsonlJournal"]
