"""
Append-only event store with per-correlation sequencing and replay.

The event store is the one resource shared by every workflow instance. It
serializes sequence assignment per correlation id while unrelated
correlation ids append concurrently, and it never drops an event: when the
backend is unreachable, sequenced events are spooled to a local buffer and
flushed in the background with exponential backoff.

Sequencing:
    Sequence numbers start at 0 for each correlation id and increase by one
    with no gaps. Appending an event whose ``event_id`` was already stored
    is a no-op that returns the originally assigned sequence.

Failure Handling:
    1. Backend raises ``EventStoreUnavailable``: the event is buffered and a
       flusher task retries with delays of ``flush_base_delay`` doubling up to
       ``flush_max_delay``. While a correlation id has buffered events, newer
       events for it are buffered too, so the backend sees them in order.
    2. The buffer cannot be written: the fatal handler alerts an operator
       directly and ``EventStoreWriteFailure`` is raised.

Example:
    >>> store = EventStore(FileEventBackend(".tamma/events"), EventBuffer(".tamma/buffer.jsonl"))
    >>> await store.start()
    >>> seq = await store.append(Event(correlation_id="issue-101-3f2a", type="WorkflowStarted", ...))
    >>> snapshot = await store.replay("issue-101-3f2a")
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from tamma.events.backends import EventBackend
from tamma.events.buffer import EventBuffer
from tamma.events.projection import WorkflowSnapshot, replay
from tamma.exceptions import EventStoreUnavailable, EventStoreWriteFailure, WorkflowNotFoundError
from tamma.models.events import Event, EventFilter, EventPage

log = structlog.get_logger(__name__)

EventListener = Callable[[Event], None]
FatalHandler = Callable[[Event, Exception], Awaitable[None]]


class EventStore:
    """Ordered, durable, append-only log keyed by correlation id."""

    def __init__(
        self,
        backend: EventBackend,
        buffer: EventBuffer | None = None,
        *,
        flush_base_delay: float = 1.0,
        flush_max_delay: float = 60.0,
        fatal_handler: FatalHandler | None = None,
    ) -> None:
        self.backend = backend
        self.buffer = buffer or EventBuffer()
        self.flush_base_delay = flush_base_delay
        self.flush_max_delay = flush_max_delay
        self.fatal_handler = fatal_handler

        self._next_sequence: dict[str, int] = {}
        self._stored_ids: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()
        self._listeners: list[EventListener] = []
        self._flusher: asyncio.Task[None] | None = None
        self._started = False
        self._backend_indexed = False

    async def start(self) -> None:
        """Index persisted and buffered events so sequencing continues after a restart.

        Raises:
            EventStoreUnavailable: If the backend cannot be read
        """
        if self._backend_indexed:
            return

        await self._index_backend()
        if not self._started:
            await self._start_buffer()

    async def _index_backend(self) -> None:
        for correlation_id in await self.backend.correlation_ids():
            for event in await self.backend.read(correlation_id):
                self._index(event)
        self._backend_indexed = True

    async def _start_buffer(self) -> None:
        for event in await self.buffer.load():
            self._index(event)

        self._started = True
        if self.buffer.pending_count:
            self._ensure_flusher()

        log.info(
            "event_store_started",
            correlation_ids=len(self._next_sequence),
            buffered=self.buffer.pending_count,
        )

    def subscribe(self, listener: EventListener) -> None:
        """Register a callback invoked with every newly stored event.

        Listeners run inside the per-correlation critical section, so they
        observe each correlation id's events in sequence order. They must
        not block or raise.
        """
        self._listeners.append(listener)

    def _index(self, event: Event) -> None:
        sequence = event.sequence if event.sequence is not None else 0
        self._stored_ids[event.event_id] = sequence
        current = self._next_sequence.get(event.correlation_id, 0)
        self._next_sequence[event.correlation_id] = max(current, sequence + 1)

    async def _get_lock(self, correlation_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if correlation_id not in self._locks:
                self._locks[correlation_id] = asyncio.Lock()
            return self._locks[correlation_id]

    async def append(self, event: Event) -> int:
        """Append an event and return its sequence number.

        The critical section is shielded from cancellation of the caller,
        so an append that has started always completes and never leaves a
        gap in the sequence.

        Raises:
            EventStoreWriteFailure: If the event could not be stored or buffered
        """
        if not self._started:
            await self._start_lazily()
        return await asyncio.shield(self._append(event))

    async def append_if(self, event: Event, precondition: Callable[[], bool]) -> int | None:
        """Append only if ``precondition`` still holds once the correlation id is locked.

        The precondition runs after every earlier append of the same
        correlation id (and its listeners) has completed.

        Returns:
            The sequence number, or None if the precondition failed
        """
        if not self._started:
            await self._start_lazily()
        return await asyncio.shield(self._append(event, precondition))

    async def _start_lazily(self) -> None:
        try:
            await self.start()
        except EventStoreUnavailable as e:
            # Buffer only; the flusher indexes the backend once it is reachable
            log.warning("event_store_started_without_backend", error=str(e))
            await self._start_buffer()

    async def _append(self, event: Event, precondition: Callable[[], bool] | None = None) -> int | None:
        lock = await self._get_lock(event.correlation_id)
        async with lock:
            existing = self._stored_ids.get(event.event_id)
            if existing is not None:
                log.debug(
                    "event_duplicate_ignored",
                    event_id=event.event_id,
                    correlation_id=event.correlation_id,
                    sequence=existing,
                )
                return existing

            if precondition is not None and not precondition():
                log.info(
                    "event_precondition_failed",
                    correlation_id=event.correlation_id,
                    event_type=event.type,
                )
                return None

            sequence = self._next_sequence.get(event.correlation_id, 0)
            stored = event.with_sequence(sequence)
            await self._persist(stored)

            self._next_sequence[event.correlation_id] = sequence + 1
            self._stored_ids[event.event_id] = sequence

            for listener in self._listeners:
                listener(stored)

            log.debug(
                "event_appended",
                correlation_id=stored.correlation_id,
                sequence=sequence,
                event_type=stored.type,
            )
            return sequence

    async def _persist(self, event: Event) -> None:
        """Write to the backend, falling back to the buffer. Caller holds the lock."""
        if not self.buffer.has_pending(event.correlation_id):
            try:
                await self.backend.write(event)
                return
            except EventStoreUnavailable as e:
                log.warning(
                    "event_store_unavailable",
                    correlation_id=event.correlation_id,
                    sequence=event.sequence,
                    error=str(e),
                )

        try:
            await self.buffer.add(event)
        except OSError as e:
            log.critical(
                "event_buffer_write_failed",
                correlation_id=event.correlation_id,
                sequence=event.sequence,
                event_type=event.type,
                error=str(e),
            )
            await self._alert_fatal(event, e)
            raise EventStoreWriteFailure(
                f"Event {event.event_id} for {event.correlation_id} could not be stored or buffered: {e}"
            ) from e

        log.info(
            "event_buffered",
            correlation_id=event.correlation_id,
            sequence=event.sequence,
            pending=self.buffer.pending_count,
        )
        self._ensure_flusher()

    async def _alert_fatal(self, event: Event, error: Exception) -> None:
        if self.fatal_handler is None:
            return
        try:
            await self.fatal_handler(event, error)
        except Exception as alert_error:
            log.error("event_store_fatal_alert_failed", error=str(alert_error))

    def _ensure_flusher(self) -> None:
        if self._flusher is None or self._flusher.done():
            self._flusher = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        failures = 0
        while self.buffer.pending_count:
            if await self._flush_once():
                failures = 0
                continue

            delay = min(self.flush_base_delay * 2**failures, self.flush_max_delay)
            failures += 1
            log.info(
                "event_buffer_flush_retry",
                pending=self.buffer.pending_count,
                delay=delay,
                failures=failures,
            )
            await asyncio.sleep(delay)

        log.info("event_buffer_drained")

    async def _flush_once(self) -> bool:
        """Push buffered events to the backend in sequence order.

        Returns:
            True if every buffered event was written.
        """
        if not self._backend_indexed:
            try:
                await self._index_backend()
            except EventStoreUnavailable:
                return False
        for correlation_id in self.buffer.correlation_ids():
            lock = await self._get_lock(correlation_id)
            async with lock:
                written = []
                try:
                    for event in self.buffer.pending(correlation_id):
                        await self.backend.write(event)
                        written.append(event)
                except EventStoreUnavailable:
                    await self.buffer.discard(written)
                    return False
                await self.buffer.discard(written)
        return True

    async def flush(self) -> int:
        """Try to drain the buffer once.

        Returns:
            Number of events still buffered.
        """
        if self.buffer.pending_count:
            await self._flush_once()
        return self.buffer.pending_count

    async def close(self) -> None:
        """Stop the flusher after a final flush attempt and close the backend."""
        if self._flusher is not None and not self._flusher.done():
            self._flusher.cancel()
            try:
                await self._flusher
            except asyncio.CancelledError:
                pass
        remaining = await self.flush()
        if remaining:
            log.warning("event_buffer_not_drained", pending=remaining)
        await self.backend.close()

    async def events_for(self, correlation_id: str) -> list[Event]:
        """All events of one correlation id, stored and buffered, in sequence order."""
        stored = await self.backend.read(correlation_id)
        seen = {event.event_id for event in stored}
        merged = stored + [e for e in self.buffer.pending(correlation_id) if e.event_id not in seen]
        merged.sort(key=lambda event: event.sequence or 0)
        return merged

    async def correlation_ids(self) -> list[str]:
        """Every known correlation id, including ones that exist only in the buffer."""
        known = set(await self.backend.correlation_ids())
        known.update(self.buffer.correlation_ids())
        return sorted(known)

    async def query(self, event_filter: EventFilter) -> EventPage:
        """Read-only, paginated query.

        Events of one correlation id are ordered by sequence. Across
        correlation ids the order is (timestamp, correlation id, sequence),
        which carries no causal meaning.
        """
        if event_filter.correlation_id is not None:
            candidates = await self.events_for(event_filter.correlation_id)
        else:
            candidates = []
            for correlation_id in await self.correlation_ids():
                candidates.extend(await self.events_for(correlation_id))
            candidates.sort(key=lambda e: (e.timestamp, e.correlation_id, e.sequence or 0))

        matching = [event for event in candidates if event_filter.matches(event)]
        start = event_filter.offset
        page = matching[start : start + event_filter.limit]
        return EventPage(
            events=page,
            total=len(matching),
            offset=event_filter.offset,
            limit=event_filter.limit,
        )

    async def replay(self, correlation_id: str, upto_sequence: int | None = None) -> WorkflowSnapshot:
        """Rebuild a workflow snapshot by folding events 0..upto_sequence.

        Raises:
            WorkflowNotFoundError: If the correlation id has no events
        """
        snapshot = replay(await self.events_for(correlation_id), upto_sequence)
        if snapshot is None:
            raise WorkflowNotFoundError(f"No events recorded for correlation id {correlation_id}")
        return snapshot
