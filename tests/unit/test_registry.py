"""Tests for tamma/engine/registry.py."""

import asyncio

import pytest

from tamma.engine.registry import InstanceHandle, InstanceRegistry
from tamma.enums import WorkflowState
from tamma.events.projection import WorkflowSnapshot
from tamma.exceptions import WorkflowAlreadyActiveError, WorkflowNotFoundError
from tamma.models.domain import WorkflowInstance, utc_now


def handle(instance_id: str, issue_ref: str = "101") -> InstanceHandle:
    now = utc_now()
    return InstanceHandle(
        instance=WorkflowInstance(
            instance_id=instance_id,
            issue_ref=issue_ref,
            correlation_id=f"issue-{issue_ref}-{instance_id}",
            current_state=WorkflowState.SELECTED,
            created_at=now,
            updated_at=now,
        )
    )


def snapshot_for(h: InstanceHandle, state: WorkflowState) -> WorkflowSnapshot:
    now = utc_now()
    return WorkflowSnapshot(
        instance_id=h.instance_id,
        issue_ref=h.instance.issue_ref,
        correlation_id=h.correlation_id,
        state=state,
        created_at=now,
        updated_at=now,
    )


class TestInstanceRegistry:
    @pytest.mark.asyncio
    async def test_one_active_instance_per_issue(self):
        registry = InstanceRegistry()
        await registry.register(handle("a"))

        with pytest.raises(WorkflowAlreadyActiveError):
            await registry.register(handle("b"))

    @pytest.mark.asyncio
    async def test_concurrent_registration_admits_one(self):
        registry = InstanceRegistry()

        results = await asyncio.gather(
            *(registry.register(handle(f"i{n}")) for n in range(5)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r is None) == 1

    @pytest.mark.asyncio
    async def test_release_unlocks_issue_but_keeps_handle(self):
        registry = InstanceRegistry()
        first = handle("a")
        await registry.register(first)

        await registry.release(first)
        await registry.register(handle("b"))

        assert registry.get("a") is first
        assert registry.active_instance("101") == "b"

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        registry = InstanceRegistry()
        first = handle("a")
        await registry.register(first)
        await registry.release(first)
        await registry.register(handle("b"))

        await registry.release(first)

        assert registry.active_instance("101") == "b"

    @pytest.mark.asyncio
    async def test_unregister(self):
        registry = InstanceRegistry()
        h = handle("a")
        await registry.register(h)

        await registry.unregister(h)

        with pytest.raises(WorkflowNotFoundError):
            registry.get("a")
        assert registry.by_correlation(h.correlation_id) is None


class TestInstanceHandle:
    @pytest.mark.asyncio
    async def test_wait_for_wakes_on_update(self):
        h = handle("a")
        waiter = asyncio.create_task(h.wait_for(lambda s: s.state == WorkflowState.ANALYZING, 1))
        await asyncio.sleep(0)

        h.update(snapshot_for(h, WorkflowState.ANALYZING))

        assert (await waiter).state == WorkflowState.ANALYZING
        assert h.instance.current_state == WorkflowState.ANALYZING

    @pytest.mark.asyncio
    async def test_wait_for_returns_immediately_when_satisfied(self):
        h = handle("a")
        h.update(snapshot_for(h, WorkflowState.BLOCKED))

        snapshot = await h.wait_for(lambda s: s.state == WorkflowState.BLOCKED, 0.01)

        assert snapshot.state == WorkflowState.BLOCKED

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self):
        h = handle("a")

        with pytest.raises(TimeoutError):
            await h.wait_for(lambda s: False, 0.01)
