"""
Storage backends for the event store.

A backend only persists and reads already-sequenced events; sequencing,
deduplication and buffering are the event store's job. Backends signal an
outage by raising ``EventStoreUnavailable`` so the store can fall back to its
local buffer.

File Layout:
    ``FileEventBackend`` keeps one JSON-lines file per correlation id::

        .tamma/events/
            issue-101-3f2a9c1e.jsonl
            issue-102-8b0d44a7.jsonl

    Each line is one event with the columns
    ``(event_id, correlation_id, sequence, type, timestamp, actor, payload)``.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import quote, unquote

import aiofiles
import structlog
from pydantic import ValidationError

from tamma.exceptions import EventStoreError, EventStoreUnavailable
from tamma.models.events import Event

log = structlog.get_logger(__name__)


class EventBackend(ABC):
    """Abstract append-only storage for sequenced events."""

    @abstractmethod
    async def write(self, event: Event) -> None:
        """Persist one sequenced event.

        Raises:
            EventStoreUnavailable: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def read(self, correlation_id: str) -> list[Event]:
        """Return all persisted events for a correlation id, in sequence order."""
        pass

    @abstractmethod
    async def correlation_ids(self) -> list[str]:
        """Return every correlation id with at least one persisted event."""
        pass

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


class MemoryEventBackend(EventBackend):
    """In-process backend for tests and ephemeral runs.

    Setting ``available`` to False makes every call raise
    ``EventStoreUnavailable``, which simulates a backend outage.
    """

    def __init__(self) -> None:
        self._events: dict[str, list[Event]] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise EventStoreUnavailable("In-memory event backend is marked unavailable")

    async def write(self, event: Event) -> None:
        self._check()
        self._events.setdefault(event.correlation_id, []).append(event)

    async def read(self, correlation_id: str) -> list[Event]:
        self._check()
        return list(self._events.get(correlation_id, []))

    async def correlation_ids(self) -> list[str]:
        self._check()
        return list(self._events)


class FileEventBackend(EventBackend):
    """JSON-lines backend with one file per correlation id."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._write_locks: dict[str, asyncio.Lock] = {}

    def _path(self, correlation_id: str) -> Path:
        return self.directory / f"{quote(correlation_id, safe='')}.jsonl"

    async def write(self, event: Event) -> None:
        lock = self._write_locks.setdefault(event.correlation_id, asyncio.Lock())
        async with lock:
            try:
                async with aiofiles.open(self._path(event.correlation_id), "a") as f:
                    await f.write(event.to_json() + "\n")
            except OSError as e:
                raise EventStoreUnavailable(
                    f"Cannot write event {event.event_id} to {self.directory}: {e}"
                ) from e

    async def read(self, correlation_id: str) -> list[Event]:
        path = self._path(correlation_id)
        if not path.exists():
            return []

        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
        except OSError as e:
            raise EventStoreUnavailable(f"Cannot read events from {path}: {e}") from e

        lines = content.splitlines()
        events = []
        for line_number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                events.append(Event.from_json(line))
            except ValidationError as e:
                # A torn final line is what a crash mid-append leaves behind
                if line_number == len(lines):
                    log.warning("event_file_truncated_line", path=str(path), line=line_number)
                    continue
                raise EventStoreError(f"Corrupted event at {path}:{line_number}") from e

        events.sort(key=lambda event: event.sequence or 0)
        return events

    async def correlation_ids(self) -> list[str]:
        try:
            return sorted(unquote(path.stem) for path in self.directory.glob("*.jsonl"))
        except OSError as e:
            raise EventStoreUnavailable(f"Cannot list {self.directory}: {e}") from e
