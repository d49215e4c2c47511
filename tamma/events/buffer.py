"""
Local durable spool for events the backend could not accept.

Events land here only after they have been sequenced, so flushing them later
preserves their order. The spool is a JSON-lines file: adding appends one
line, discarding flushed events rewrites the file atomically through a
temporary file. On startup ``load()`` recovers anything a previous process
left behind.

An ``EventBuffer`` without a path keeps its spool in memory only, which is
what the tests use.
"""

from collections.abc import Iterable
from pathlib import Path

import aiofiles
import structlog
from pydantic import ValidationError

from tamma.models.events import Event

log = structlog.get_logger(__name__)


class EventBuffer:
    """Ordered, per-correlation spool of pending events."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._pending: dict[str, list[Event]] = {}

    @property
    def pending_count(self) -> int:
        return sum(len(events) for events in self._pending.values())

    def has_pending(self, correlation_id: str) -> bool:
        return bool(self._pending.get(correlation_id))

    def pending(self, correlation_id: str) -> list[Event]:
        """Buffered events for one correlation id, in sequence order."""
        return list(self._pending.get(correlation_id, []))

    def correlation_ids(self) -> list[str]:
        return [cid for cid, events in self._pending.items() if events]

    async def load(self) -> list[Event]:
        """Recover events spooled by a previous process.

        Returns:
            The recovered events, in file order.
        """
        if self.path is None or not self.path.exists():
            return []

        async with aiofiles.open(self.path) as f:
            content = await f.read()

        recovered = []
        for line in content.splitlines():
            if not line.strip():
                continue
            try:
                event = Event.from_json(line)
            except ValidationError:
                log.warning("event_buffer_unreadable_line", path=str(self.path))
                continue
            self._pending.setdefault(event.correlation_id, []).append(event)
            recovered.append(event)

        if recovered:
            log.info("event_buffer_recovered", path=str(self.path), count=len(recovered))
        return recovered

    async def add(self, event: Event) -> None:
        """Spool one sequenced event.

        Raises:
            OSError: If the spool file cannot be written
        """
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, "a") as f:
                await f.write(event.to_json() + "\n")
                await f.flush()

        self._pending.setdefault(event.correlation_id, []).append(event)

    async def discard(self, events: Iterable[Event]) -> None:
        """Drop events that were flushed to the backend."""
        flushed = {event.event_id for event in events}
        for correlation_id in list(self._pending):
            remaining = [e for e in self._pending[correlation_id] if e.event_id not in flushed]
            if remaining:
                self._pending[correlation_id] = remaining
            else:
                del self._pending[correlation_id]

        if self.path is not None:
            await self._rewrite()

    async def _rewrite(self) -> None:
        assert self.path is not None
        if not self._pending:
            self.path.unlink(missing_ok=True)
            return

        lines = [event.to_json() for events in self._pending.values() for event in events]
        tmp_path = self.path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write("".join(line + "\n" for line in lines))

        tmp_path.replace(self.path)
