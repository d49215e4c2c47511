"""Tests for tamma/events: store, backends and buffer."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from tamma.enums import Actor
from tamma.events.backends import FileEventBackend, MemoryEventBackend
from tamma.events.buffer import EventBuffer
from tamma.events.store import EventStore
from tamma.exceptions import EventStoreError, EventStoreWriteFailure, WorkflowNotFoundError
from tamma.models.events import Event, EventFilter, EventType


def started(cid: str, issue_ref: str = "101") -> Event:
    return Event(
        correlation_id=cid,
        type=EventType.WORKFLOW_STARTED,
        payload={"instance_id": f"inst-{cid}", "issue_ref": issue_ref, "state": "Selected"},
    )


def note(cid: str, text: str = "hello", event_type: str = "BuildRetry") -> Event:
    return Event(correlation_id=cid, type=event_type, payload={"action_type": "build", "attempt": 1, "text": text})


class TestSequencing:
    """Per-correlation sequence assignment."""

    @pytest.mark.asyncio
    async def test_sequence_starts_at_zero_and_increments(self, event_store):
        sequences = [await event_store.append(note("cid-a")) for _ in range(4)]

        assert sequences == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_sequences_are_independent_per_correlation(self, event_store):
        await event_store.append(note("cid-a"))
        await event_store.append(note("cid-a"))

        assert await event_store.append(note("cid-b")) == 0
        assert await event_store.append(note("cid-a")) == 2

    @pytest.mark.asyncio
    async def test_duplicate_event_id_returns_original_sequence(self, event_store, backend):
        event = note("cid-a")
        first = await event_store.append(event)
        await event_store.append(note("cid-a"))

        again = await event_store.append(event)

        assert again == first == 0
        assert len(await backend.read("cid-a")) == 2

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_gap_free(self, event_store):
        await asyncio.gather(*(event_store.append(note(cid)) for cid in ["x", "y"] * 25))

        for cid in ("x", "y"):
            sequences = [event.sequence for event in await event_store.events_for(cid)]
            assert sequences == list(range(25))

    @pytest.mark.asyncio
    async def test_listeners_see_stored_event(self, event_store):
        seen = []
        event_store.subscribe(seen.append)

        await event_store.append(note("cid-a"))

        assert len(seen) == 1
        assert seen[0].sequence == 0

    @pytest.mark.asyncio
    async def test_restart_continues_sequence(self, tmp_path):
        store = EventStore(FileEventBackend(tmp_path / "events"))
        await store.append(note("cid-a"))
        await store.append(note("cid-a"))

        reopened = EventStore(FileEventBackend(tmp_path / "events"))
        await reopened.start()

        assert await reopened.append(note("cid-a")) == 2

    @pytest.mark.asyncio
    async def test_append_if_checks_precondition_under_lock(self, event_store):
        seen = []
        event_store.subscribe(seen.append)
        await event_store.start()

        first, rejected = await asyncio.gather(
            event_store.append(note("cid-a")),
            event_store.append_if(note("cid-a"), lambda: not seen),
        )

        assert first == 0
        assert rejected is None
        assert [e.sequence for e in await event_store.events_for("cid-a")] == [0]
        assert await event_store.append_if(note("cid-a"), lambda: True) == 1


class TestBuffering:
    """Backend outages fall back to the local buffer."""

    @pytest.mark.asyncio
    async def test_backend_down_at_first_use(self, event_store, backend):
        await backend.write(note("cid-old").with_sequence(0))
        backend.available = False

        sequence = await event_store.append(note("cid-new"))

        assert sequence == 0
        assert event_store.buffer.pending_count == 1
        backend.available = True
        assert await event_store.flush() == 0
        assert await event_store.append(note("cid-old")) == 1

    @pytest.mark.asyncio
    async def test_unavailable_backend_buffers_event(self, event_store, backend):
        backend.available = False

        sequence = await event_store.append(note("cid-a"))

        assert sequence == 0
        assert event_store.buffer.pending_count == 1
        backend.available = True
        assert [e.sequence for e in await event_store.events_for("cid-a")] == [0]

    @pytest.mark.asyncio
    async def test_flush_drains_buffer_in_order(self, event_store, backend):
        backend.available = False
        for _ in range(3):
            await event_store.append(note("cid-a"))

        backend.available = True
        remaining = await event_store.flush()

        assert remaining == 0
        assert [e.sequence for e in await backend.read("cid-a")] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_newer_events_queue_behind_buffered_ones(self, event_store, backend):
        backend.available = False
        await event_store.append(note("cid-a"))
        backend.available = True

        await event_store.append(note("cid-a"))

        # Second event must not overtake the first
        assert len(await backend.read("cid-a")) == 0
        await event_store.flush()
        assert [e.sequence for e in await backend.read("cid-a")] == [0, 1]

    @pytest.mark.asyncio
    async def test_background_flusher_recovers(self, event_store, backend):
        backend.available = False
        await event_store.append(note("cid-a"))
        backend.available = True

        for _ in range(100):
            if not event_store.buffer.pending_count:
                break
            await asyncio.sleep(0.01)

        assert event_store.buffer.pending_count == 0
        assert len(await backend.read("cid-a")) == 1
        await event_store.close()

    @pytest.mark.asyncio
    async def test_buffer_failure_alerts_and_raises(self, backend):
        backend.available = False
        buffer = EventBuffer()
        fatal = AsyncMock()
        store = EventStore(backend, buffer, fatal_handler=fatal)

        with patch.object(buffer, "add", AsyncMock(side_effect=OSError("disk full"))):
            with pytest.raises(EventStoreWriteFailure):
                await store.append(note("cid-a"))

        fatal.assert_awaited_once()
        # Nothing was stored, so the sequence is not consumed
        backend.available = True
        assert await store.append(note("cid-a")) == 0

    @pytest.mark.asyncio
    async def test_buffer_file_survives_restart(self, tmp_path, backend):
        buffer_path = tmp_path / "buffer.jsonl"
        backend.available = False
        store = EventStore(backend, EventBuffer(buffer_path))
        await store.append(note("cid-a"))
        await store.append(note("cid-a"))

        recovered = EventBuffer(buffer_path)
        events = await recovered.load()

        assert [e.sequence for e in events] == [0, 1]
        await recovered.discard(events)
        assert not buffer_path.exists()


class TestFileBackend:
    """JSON-lines persistence."""

    @pytest.mark.asyncio
    async def test_write_and_read(self, tmp_path):
        backend = FileEventBackend(tmp_path)
        await backend.write(note("issue/101").with_sequence(0))

        events = await backend.read("issue/101")

        assert len(events) == 1
        assert await backend.correlation_ids() == ["issue/101"]

    @pytest.mark.asyncio
    async def test_torn_final_line_is_skipped(self, tmp_path):
        backend = FileEventBackend(tmp_path)
        await backend.write(note("cid").with_sequence(0))
        with open(tmp_path / "cid.jsonl", "a") as f:
            f.write('{"event_id": "trunc')

        assert len(await backend.read("cid")) == 1

    @pytest.mark.asyncio
    async def test_corrupted_middle_line_raises(self, tmp_path):
        backend = FileEventBackend(tmp_path)
        (tmp_path / "cid.jsonl").write_text("not json\n" + note("cid").with_sequence(0).to_json() + "\n")

        with pytest.raises(EventStoreError):
            await backend.read("cid")


class TestQuery:
    """Paginated, filtered reads."""

    @pytest.mark.asyncio
    async def test_filter_by_correlation_and_type(self, event_store):
        await event_store.append(started("cid-a"))
        await event_store.append(note("cid-a"))
        await event_store.append(note("cid-b"))

        page = await event_store.query(EventFilter(correlation_id="cid-a", type="BuildRetry"))

        assert page.total == 1
        assert page.events[0].correlation_id == "cid-a"

    @pytest.mark.asyncio
    async def test_full_text_search_in_payload(self, event_store):
        await event_store.append(note("cid-a", text="dependency not found"))
        await event_store.append(note("cid-a", text="all good"))

        page = await event_store.query(EventFilter(full_text="DEPENDENCY"))

        assert page.total == 1

    @pytest.mark.asyncio
    async def test_time_window(self, event_store):
        event = note("cid-a")
        await event_store.append(event)

        before = await event_store.query(EventFilter(before=event.timestamp - timedelta(seconds=1)))
        after = await event_store.query(EventFilter(after=event.timestamp - timedelta(seconds=1)))

        assert before.total == 0
        assert after.total == 1

    @pytest.mark.asyncio
    async def test_pagination(self, event_store):
        for _ in range(5):
            await event_store.append(note("cid-a"))

        first = await event_store.query(EventFilter(correlation_id="cid-a", limit=2))
        last = await event_store.query(EventFilter(correlation_id="cid-a", limit=2, offset=4))

        assert [e.sequence for e in first.events] == [0, 1]
        assert first.next_offset == 2
        assert [e.sequence for e in last.events] == [4]
        assert last.next_offset is None

    def test_limit_is_bounded(self):
        with pytest.raises(ValueError):
            EventFilter(limit=0)
        with pytest.raises(ValueError):
            EventFilter(limit=1001)


class TestReplay:
    """Snapshot reconstruction from the store."""

    @pytest.mark.asyncio
    async def test_replay_unknown_correlation_raises(self, event_store):
        with pytest.raises(WorkflowNotFoundError):
            await event_store.replay("missing")

    @pytest.mark.asyncio
    async def test_replay_includes_buffered_events(self, event_store, backend):
        await event_store.append(started("cid-a"))
        backend.available = False
        await event_store.append(
            Event(
                correlation_id="cid-a",
                type=EventType.STATE_CHANGED,
                actor=Actor.SYSTEM,
                payload={"from": "Selected", "to": "Analyzing", "trigger": "pickup"},
            )
        )
        backend.available = True

        snapshot = await event_store.replay("cid-a")

        assert snapshot.state.value == "Analyzing"
        assert snapshot.last_sequence == 1


class TestMemoryBackend:
    @pytest.mark.asyncio
    async def test_unavailable_flag(self):
        backend = MemoryEventBackend()
        backend.available = False

        with pytest.raises(Exception, match="unavailable"):
            await backend.read("cid")
