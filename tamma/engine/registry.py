"""
Registry of workflow instances and per-issue mutual exclusion.

Every instance runs as its own asyncio task and is addressed only by its
instance id through this registry. The registry also holds the per-issue
lock: an issue is locked when its instance is registered in Selected and
unlocked when the instance reaches a terminal state.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from tamma.enums import WorkflowState
from tamma.events.projection import WorkflowSnapshot
from tamma.exceptions import WorkflowAlreadyActiveError, WorkflowNotFoundError
from tamma.models.domain import WorkflowInstance

log = structlog.get_logger(__name__)

SnapshotPredicate = Callable[[WorkflowSnapshot], bool]


@dataclass
class InstanceHandle:
    """Everything the orchestrator keeps for one instance."""

    instance: WorkflowInstance
    snapshot: WorkflowSnapshot | None = None
    task: asyncio.Task[None] | None = None
    plan_approved: asyncio.Event = field(default_factory=asyncio.Event)
    merge_approved: asyncio.Event = field(default_factory=asyncio.Event)
    artifacts: dict[str, Any] = field(default_factory=dict)
    """In-memory collaborator results (Analysis, Plan, CodeChanges, PullRequest)."""
    released: bool = False
    _waiters: list[tuple[SnapshotPredicate, asyncio.Future[WorkflowSnapshot]]] = field(default_factory=list)

    @property
    def instance_id(self) -> str:
        return self.instance.instance_id

    @property
    def correlation_id(self) -> str:
        return self.instance.correlation_id

    @property
    def state(self) -> WorkflowState:
        return self.snapshot.state if self.snapshot is not None else self.instance.current_state

    def update(self, snapshot: WorkflowSnapshot) -> None:
        """Install a new snapshot and wake waiters whose condition now holds."""
        self.snapshot = snapshot
        self.instance.current_state = snapshot.state
        self.instance.updated_at = snapshot.updated_at

        pending = []
        for predicate, future in self._waiters:
            if future.done():
                continue
            if predicate(snapshot):
                future.set_result(snapshot)
            else:
                pending.append((predicate, future))
        self._waiters = pending

    async def wait_for(self, predicate: SnapshotPredicate, timeout: float | None = None) -> WorkflowSnapshot:
        """Wait until the snapshot satisfies ``predicate``."""
        if self.snapshot is not None and predicate(self.snapshot):
            return self.snapshot
        future: asyncio.Future[WorkflowSnapshot] = asyncio.get_running_loop().create_future()
        self._waiters.append((predicate, future))
        return await asyncio.wait_for(future, timeout=timeout)


class InstanceRegistry:
    """Concurrency-safe map of instances plus the per-issue lock table."""

    def __init__(self) -> None:
        self._instances: dict[str, InstanceHandle] = {}
        self._by_correlation: dict[str, InstanceHandle] = {}
        self._active_issues: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def register(self, handle: InstanceHandle) -> None:
        """Register an instance and lock its issue.

        Raises:
            WorkflowAlreadyActiveError: If the issue already has an active instance
        """
        issue_ref = handle.instance.issue_ref
        async with self._lock:
            active = self._active_issues.get(issue_ref)
            if active is not None:
                raise WorkflowAlreadyActiveError(issue_ref, active)
            self._active_issues[issue_ref] = handle.instance_id
            self._instances[handle.instance_id] = handle
            self._by_correlation[handle.correlation_id] = handle
        log.debug("issue_locked", issue_ref=issue_ref, instance_id=handle.instance_id)

    async def release(self, handle: InstanceHandle) -> None:
        """Unlock the instance's issue. The handle stays queryable."""
        issue_ref = handle.instance.issue_ref
        async with self._lock:
            if handle.released:
                return
            if self._active_issues.get(issue_ref) == handle.instance_id:
                del self._active_issues[issue_ref]
            handle.released = True
        log.debug("issue_unlocked", issue_ref=issue_ref, instance_id=handle.instance_id)

    async def unregister(self, handle: InstanceHandle) -> None:
        """Forget an instance entirely, unlocking its issue."""
        await self.release(handle)
        async with self._lock:
            self._instances.pop(handle.instance_id, None)
            self._by_correlation.pop(handle.correlation_id, None)

    def get(self, instance_id: str) -> InstanceHandle:
        handle = self._instances.get(instance_id)
        if handle is None:
            raise WorkflowNotFoundError(f"Workflow instance not found: {instance_id}")
        return handle

    def by_correlation(self, correlation_id: str) -> InstanceHandle | None:
        return self._by_correlation.get(correlation_id)

    def active_instance(self, issue_ref: str) -> str | None:
        return self._active_issues.get(issue_ref)

    def handles(self) -> list[InstanceHandle]:
        return list(self._instances.values())
