"""
Workflow orchestrator: one state machine per issue.

The orchestrator is the only component that advances a workflow instance's
lifecycle. Each instance runs as its own asyncio task, addressed by instance
id through the ``InstanceRegistry``; within an instance execution is a
sequential pipeline, while distinct issues run concurrently up to
``max_concurrent_workflows`` instances doing work at once.

Lifecycle:
    Selected -> Analyzing -> AwaitingPlanApproval -> Implementing
    -> QualityGates -> AwaitingMergeApproval -> Merged

    Any action that ends in ``GateEscalation`` creates an escalation and moves
    the instance to Blocked. The only ways out of Blocked are a resolved
    escalation, which resumes the state the instance was blocked from at the
    failed action, or cancellation.

State:
    The orchestrator never mutates state directly. It computes transitions
    with the pure ``transition`` function and records them as events; its
    live view of every instance is the fold of those events through
    ``apply_event``, the same projection ``EventStore.replay`` uses.

Example:
    >>> orchestrator = WorkflowOrchestrator.from_settings(settings, ai, git)
    >>> await orchestrator.start()
    >>> instance = await orchestrator.start_workflow("101")
    >>> await orchestrator.approve_plan(instance.instance_id)
"""

import asyncio
import re
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import Any

import structlog

from tamma.config.settings import TammaSettings
from tamma.engine.analyzers import Analyzer, probe_analyzers
from tamma.engine.classifier import OutcomeClassifier
from tamma.engine.escalation import EscalationManager, Resolved
from tamma.engine.escalation_store import EscalationRepository
from tamma.engine.gates import GateContext, QualityGate, build_gates
from tamma.engine.quality_gate import GateEscalation, GateSuccess, QualityGateExecutor
from tamma.engine.rate_limit import NotificationRateLimiter
from tamma.engine.registry import InstanceHandle, InstanceRegistry, SnapshotPredicate
from tamma.engine.retry_policy import RetryPolicy, build_budget
from tamma.engine.state_machine import Trigger, transition
from tamma.enums import Actor, EscalationStatus, Severity, WorkflowState
from tamma.events.backends import EventBackend, FileEventBackend, MemoryEventBackend
from tamma.events.buffer import EventBuffer
from tamma.events.projection import WorkflowSnapshot, apply_event, replay, retry_history
from tamma.events.store import EventStore
from tamma.exceptions import InvalidTransitionError, UnresolvedEscalationError
from tamma.models.domain import (
    Analysis,
    CodeChanges,
    EscalationRecord,
    Plan,
    PullRequest,
    WorkflowInstance,
    utc_now,
)
from tamma.models.events import Event, EventType
from tamma.notifications.base import Alert, NotificationChannel
from tamma.notifications.channels import build_channels
from tamma.providers.base import AIProvider, GitPlatform
from tamma.utils.logging_config import bind_workflow_context

log = structlog.get_logger(__name__)

StepHandler = Callable[[InstanceHandle], Awaitable[None]]


def correlation_id_for(issue_ref: str, instance_id: str) -> str:
    """Correlation id shared by every event of one instance."""
    slug = re.sub(r"[^A-Za-z0-9]+", "-", issue_ref).strip("-") or "issue"
    return f"issue-{slug}-{instance_id[:8]}"


class WorkflowOrchestrator:
    """Drive workflow instances and expose the control API.

    Attributes:
        event_store: Shared append-only log
        executor: Quality Gate Executor used for every action
        escalations: Escalation Manager
        ai: AI provider collaborator
        git: Git platform collaborator
        gates: Quality gates keyed by name, in execution order
        registry: Instance registry and per-issue lock table
    """

    def __init__(
        self,
        *,
        event_store: EventStore,
        executor: QualityGateExecutor,
        escalations: EscalationManager,
        ai: AIProvider,
        git: GitPlatform,
        gates: dict[str, QualityGate],
        registry: InstanceRegistry | None = None,
        max_concurrent_workflows: int = 4,
        plan_approval_timeout: float | None = None,
        merge_approval_timeout: float | None = None,
        escalation_on_timeout: str = "remain_blocked",
        branch_prefix: str = "tamma/issue-",
    ) -> None:
        self.event_store = event_store
        self.executor = executor
        self.escalations = escalations
        self.ai = ai
        self.git = git
        self.gates = gates
        self.registry = registry or InstanceRegistry()
        self.plan_approval_timeout = plan_approval_timeout
        self.merge_approval_timeout = merge_approval_timeout
        self.escalation_on_timeout = escalation_on_timeout
        self.branch_prefix = branch_prefix
        self._slots = asyncio.Semaphore(max_concurrent_workflows)
        self._owned_channels: list[NotificationChannel] = []

        self.event_store.subscribe(self._on_event)
        if self.event_store.fatal_handler is None:
            self.event_store.fatal_handler = self._alert_event_store_failure

        self._steps: dict[WorkflowState, StepHandler] = {
            WorkflowState.SELECTED: self._step_selected,
            WorkflowState.ANALYZING: self._step_analyzing,
            WorkflowState.AWAITING_PLAN_APPROVAL: self._step_awaiting_plan_approval,
            WorkflowState.IMPLEMENTING: self._step_implementing,
            WorkflowState.QUALITY_GATES: self._step_quality_gates,
            WorkflowState.AWAITING_MERGE_APPROVAL: self._step_awaiting_merge_approval,
            WorkflowState.BLOCKED: self._step_blocked,
        }

    @classmethod
    def from_settings(
        cls,
        settings: TammaSettings,
        ai: AIProvider,
        git: GitPlatform,
        *,
        backend: EventBackend | None = None,
        channels: dict[Any, NotificationChannel] | None = None,
        analyzers: list[Analyzer] | None = None,
    ) -> "WorkflowOrchestrator":
        """Wire an orchestrator and its components from settings.

        Settings are read here once; components receive plain values.
        """
        store_config = settings.event_store
        if backend is None:
            backend = (
                FileEventBackend(store_config.directory)
                if store_config.backend == "file"
                else MemoryEventBackend()
            )
        buffer = EventBuffer(store_config.buffer_path if store_config.backend == "file" else None)
        event_store = EventStore(
            backend,
            buffer,
            flush_base_delay=store_config.flush_base_delay,
            flush_max_delay=store_config.flush_max_delay,
        )

        policy = RetryPolicy.from_config(settings.retry)
        executor = QualityGateExecutor(
            event_store,
            policy,
            budget=build_budget(settings.retry.budget_scope, policy),
            classifier=OutcomeClassifier(settings.quality_gates.security_cvss_threshold),
            diagnostic_limit=store_config.diagnostic_limit_bytes,
            call_timeout=settings.workflow.call_timeout,
        )

        owned_channels = channels is None
        if channels is None:
            channels = build_channels(settings.notifications)
        escalation_config = settings.escalation
        escalations = EscalationManager(
            event_store,
            EscalationRepository(escalation_config.state_directory),
            channels,
            default_channels=list(escalation_config.channels),
            operator_channels=list(escalation_config.operator_channels),
            rate_limiter=NotificationRateLimiter(escalation_config.rate_limit_per_minute),
            notification_attempts=escalation_config.notification_attempts,
            notification_backoff_factor=escalation_config.notification_backoff_factor,
            resolution_timeout=escalation_config.resolution_timeout,
        )

        gates_config = settings.quality_gates
        if analyzers is None:
            analyzers = probe_analyzers(gates_config.workspace, gates_config.analyzers)

        orchestrator = cls(
            event_store=event_store,
            executor=executor,
            escalations=escalations,
            ai=ai,
            git=git,
            gates=build_gates(git, gates_config, analyzers),
            max_concurrent_workflows=settings.workflow.max_concurrent_workflows,
            plan_approval_timeout=settings.workflow.plan_approval_timeout,
            merge_approval_timeout=settings.workflow.merge_approval_timeout,
            escalation_on_timeout=escalation_config.on_timeout,
            branch_prefix=settings.workflow.branch_prefix,
        )
        if owned_channels:
            orchestrator._owned_channels = list(channels.values())
        return orchestrator

    async def start(self) -> None:
        """Load the event store index and persisted escalations."""
        await self.event_store.start()
        await self.escalations.start()

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------

    def _on_event(self, event: Event) -> None:
        handle = self.registry.by_correlation(event.correlation_id)
        if handle is None:
            return
        handle.update(apply_event(handle.snapshot, event))

    async def _append(
        self,
        handle: InstanceHandle,
        event_type: str,
        payload: dict[str, Any],
        actor: Actor = Actor.SYSTEM,
        precondition: Callable[[], bool] | None = None,
    ) -> bool:
        """Record an event for the instance.

        Returns:
            False if ``precondition`` no longer held when the event was due
        """
        event = Event(correlation_id=handle.correlation_id, type=event_type, actor=actor, payload=payload)
        if precondition is None:
            await self.event_store.append(event)
            return True
        return await self.event_store.append_if(event, precondition) is not None

    async def _transition(
        self,
        handle: InstanceHandle,
        trigger: Trigger,
        resume_to: WorkflowState | None = None,
    ) -> WorkflowState:
        current = handle.state
        if current == WorkflowState.BLOCKED and trigger not in (Trigger.RESOLVED, Trigger.CANCEL):
            raise UnresolvedEscalationError(handle.instance_id, self._open_escalation_id(handle))
        if trigger == Trigger.RESOLVED:
            self._ensure_resolved(handle)

        new_state = transition(current, trigger, resume_to)
        recorded = await self._append(
            handle,
            EventType.STATE_CHANGED,
            {"from": current.value, "to": new_state.value, "trigger": trigger.value},
            precondition=lambda: handle.state == current,
        )
        if not recorded:
            log.info(
                "workflow_transition_superseded",
                instance_id=handle.instance_id,
                from_state=current.value,
                to_state=new_state.value,
                actual_state=handle.state.value,
            )
            return handle.state
        log.info(
            "workflow_state_changed",
            instance_id=handle.instance_id,
            from_state=current.value,
            to_state=new_state.value,
            trigger=trigger.value,
        )
        return new_state

    @staticmethod
    def _open_escalation_id(handle: InstanceHandle) -> str | None:
        return handle.snapshot.open_escalation_id if handle.snapshot else None

    def _ensure_resolved(self, handle: InstanceHandle) -> None:
        """Refuse to leave Blocked unless every escalation of the instance is resolved."""
        assert handle.snapshot is not None
        for escalation_id in handle.snapshot.escalation_ids:
            record = self.escalations.get(escalation_id)
            if record.status != EscalationStatus.RESOLVED:
                raise UnresolvedEscalationError(handle.instance_id, escalation_id)

    # ------------------------------------------------------------------
    # Control API
    # ------------------------------------------------------------------

    async def start_workflow(self, issue_ref: str) -> WorkflowInstance:
        """Select an issue and start its workflow.

        Raises:
            WorkflowAlreadyActiveError: If the issue already has an active instance
        """
        instance_id = uuid.uuid4().hex
        now = utc_now()
        handle = InstanceHandle(
            instance=WorkflowInstance(
                instance_id=instance_id,
                issue_ref=issue_ref,
                correlation_id=correlation_id_for(issue_ref, instance_id),
                current_state=WorkflowState.SELECTED,
                created_at=now,
                updated_at=now,
            )
        )
        await self.registry.register(handle)
        try:
            await self._append(
                handle,
                EventType.WORKFLOW_STARTED,
                {"instance_id": instance_id, "issue_ref": issue_ref, "state": WorkflowState.SELECTED.value},
            )
        except Exception:
            await self.registry.unregister(handle)
            raise

        self._launch(handle)
        log.info(
            "workflow_started",
            instance_id=instance_id,
            issue_ref=issue_ref,
            correlation_id=handle.correlation_id,
        )
        return handle.instance

    def _launch(self, handle: InstanceHandle) -> None:
        handle.task = asyncio.create_task(self._run(handle), name=f"workflow-{handle.instance_id}")

    async def cancel_workflow(self, instance_id: str, reason: str = "cancelled by operator") -> WorkflowSnapshot:
        """Cancel an instance.

        Stops further retries and gate invocations, cancels in-flight
        collaborator calls best-effort, records ``WorkflowCancelled`` and
        unlocks the issue. Cancelling a terminal instance is a no-op.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        handle = self.registry.get(instance_id)
        if handle.state.is_terminal:
            return self._snapshot(handle)

        task = handle.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if not handle.state.is_terminal:
            await self._record_cancelled(handle, reason, actor=Actor.HUMAN)
        await self._finish(handle)
        return self._snapshot(handle)

    async def resolve_escalation(self, escalation_id: str, notes: str) -> EscalationRecord:
        """Resolve an escalation on behalf of a human.

        Raises:
            EscalationNotFoundError: If the escalation does not exist
            InvalidTransitionError: If it is not awaiting resolution
        """
        return await self.escalations.resolve(escalation_id, notes)

    async def approve_plan(self, instance_id: str, approver: str | None = None) -> WorkflowSnapshot:
        """Approve the proposed plan of an instance awaiting plan approval.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            InvalidTransitionError: If the instance is not awaiting plan approval
        """
        handle = self.registry.get(instance_id)
        if handle.state != WorkflowState.AWAITING_PLAN_APPROVAL:
            raise InvalidTransitionError(handle.state.value, "approve_plan")
        assert handle.snapshot is not None
        if not handle.snapshot.plan_approved:
            await self._append(handle, EventType.PLAN_APPROVED, {"approver": approver}, actor=Actor.HUMAN)
        handle.plan_approved.set()
        return self._snapshot(handle)

    async def approve_merge(self, instance_id: str, approver: str | None = None) -> WorkflowSnapshot:
        """Approve merging the pull request of an instance awaiting merge approval.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            InvalidTransitionError: If the instance is not awaiting merge approval
        """
        handle = self.registry.get(instance_id)
        if handle.state != WorkflowState.AWAITING_MERGE_APPROVAL:
            raise InvalidTransitionError(handle.state.value, "approve_merge")
        assert handle.snapshot is not None
        if not handle.snapshot.merge_approved:
            await self._append(handle, EventType.MERGE_APPROVED, {"approver": approver}, actor=Actor.HUMAN)
        handle.merge_approved.set()
        return self._snapshot(handle)

    def get_snapshot(self, instance_id: str) -> WorkflowSnapshot:
        """Live state of an instance.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        return self._snapshot(self.registry.get(instance_id))

    @staticmethod
    def _snapshot(handle: InstanceHandle) -> WorkflowSnapshot:
        assert handle.snapshot is not None
        return handle.snapshot.model_copy(deep=True)

    def list_snapshots(self) -> list[WorkflowSnapshot]:
        return [self._snapshot(handle) for handle in self.registry.handles() if handle.snapshot is not None]

    async def wait_for(
        self,
        instance_id: str,
        predicate: SnapshotPredicate,
        timeout: float | None = None,
    ) -> WorkflowSnapshot:
        """Wait until an instance's live state satisfies ``predicate``."""
        return await self.registry.get(instance_id).wait_for(predicate, timeout)

    async def wait_for_state(
        self,
        instance_id: str,
        state: WorkflowState,
        timeout: float | None = None,
    ) -> WorkflowSnapshot:
        return await self.wait_for(instance_id, lambda snapshot: snapshot.state == state, timeout)

    async def recover(self) -> list[str]:
        """Restart every non-terminal instance found in the event store.

        Returns:
            Instance ids that were resumed
        """
        resumed = []
        for correlation_id in await self.event_store.correlation_ids():
            if self.registry.by_correlation(correlation_id) is not None:
                continue
            events = await self.event_store.events_for(correlation_id)
            snapshot = replay(events)
            if snapshot is None or snapshot.is_terminal:
                continue

            handle = InstanceHandle(
                instance=WorkflowInstance(
                    instance_id=snapshot.instance_id,
                    issue_ref=snapshot.issue_ref,
                    correlation_id=correlation_id,
                    current_state=snapshot.state,
                    created_at=snapshot.created_at,
                    updated_at=snapshot.updated_at,
                ),
                snapshot=snapshot,
            )
            self._restore_artifacts(handle, snapshot)
            try:
                await self.registry.register(handle)
            except Exception as e:
                log.error("workflow_recovery_skipped", correlation_id=correlation_id, error=str(e))
                continue

            self._restore_retry_counters(snapshot, events)
            self._launch(handle)
            resumed.append(snapshot.instance_id)
            log.info(
                "workflow_recovered",
                instance_id=snapshot.instance_id,
                state=snapshot.state.value,
                correlation_id=correlation_id,
            )
        return resumed

    def _restore_retry_counters(self, snapshot: WorkflowSnapshot, events: list[Event]) -> None:
        history = retry_history(events)
        for action_type, counter in snapshot.retry_counters.items():
            if counter:
                self.executor.restore(snapshot.instance_id, action_type, counter, history.get(action_type, []))

    @staticmethod
    def _restore_artifacts(handle: InstanceHandle, snapshot: WorkflowSnapshot) -> None:
        artifacts = snapshot.artifacts
        if artifacts.get("analysis"):
            handle.artifacts["analysis"] = Analysis(**artifacts["analysis"])
        if artifacts.get("plan"):
            handle.artifacts["plan"] = Plan(**artifacts["plan"])
        if artifacts.get("branch"):
            handle.artifacts["branch"] = artifacts["branch"]
        if artifacts.get("pr_number") is not None:
            handle.artifacts["pr"] = PullRequest(
                number=artifacts["pr_number"],
                url=artifacts.get("pr_url") or "",
                branch=artifacts.get("branch") or "",
            )
        if snapshot.plan_approved:
            handle.plan_approved.set()
        if snapshot.merge_approved:
            handle.merge_approved.set()

    async def shutdown(self) -> None:
        """Stop all running instances without cancelling them, then close resources.

        Instances are left in their current state and resume on ``recover()``.
        """
        tasks = [h.task for h in self.registry.handles() if h.task is not None and not h.task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.event_store.close()
        for channel in self._owned_channels:
            await channel.close()
        log.info("orchestrator_shutdown", stopped=len(tasks))

    # ------------------------------------------------------------------
    # Instance task
    # ------------------------------------------------------------------

    async def _run(self, handle: InstanceHandle) -> None:
        bind_workflow_context(handle.instance_id, handle.correlation_id)
        try:
            while not handle.state.is_terminal:
                if handle.state != WorkflowState.BLOCKED and self._has_open_escalation(handle):
                    # Escalation recorded before the Blocked transition (crash in between)
                    await self._transition(handle, Trigger.ESCALATE)
                    continue
                await self._steps[handle.state](handle)
        except asyncio.CancelledError:
            log.info("workflow_task_cancelled", instance_id=handle.instance_id, state=handle.state.value)
            raise
        except UnresolvedEscalationError:
            log.critical(
                "workflow_progress_past_unresolved_escalation",
                instance_id=handle.instance_id,
                state=handle.state.value,
            )
            raise
        except Exception as e:
            log.exception(
                "workflow_task_failed",
                instance_id=handle.instance_id,
                state=handle.state.value,
                error=str(e),
            )
            raise
        finally:
            if handle.state.is_terminal:
                await self._finish(handle)

    def _has_open_escalation(self, handle: InstanceHandle) -> bool:
        return handle.snapshot is not None and handle.snapshot.open_escalation_id is not None

    async def _finish(self, handle: InstanceHandle) -> None:
        if handle.released:
            return
        await self.registry.release(handle)
        self.executor.discard(handle.instance_id)
        log.info("workflow_finished", instance_id=handle.instance_id, state=handle.state.value)

    async def _record_cancelled(self, handle: InstanceHandle, reason: str, actor: Actor = Actor.SYSTEM) -> bool:
        """Append ``WorkflowCancelled`` unless the instance reached a terminal state first.

        Returns:
            True if the cancellation was recorded
        """
        transition(handle.state, Trigger.CANCEL)
        recorded = await self._append(
            handle,
            EventType.WORKFLOW_CANCELLED,
            {"reason": reason, "from": handle.state.value},
            actor=actor,
            precondition=lambda: not handle.state.is_terminal,
        )
        if not recorded:
            log.info("workflow_cancel_too_late", instance_id=handle.instance_id, state=handle.state.value)
            return False

        await self.escalations.withdraw_for_instance(handle.instance_id, f"workflow cancelled: {reason}")
        log.info("workflow_cancelled", instance_id=handle.instance_id, reason=reason)
        return True

    async def _action(
        self,
        handle: InstanceHandle,
        action_type: str,
        invoker: Callable[[], Awaitable[Any]],
    ) -> GateSuccess | None:
        """Run one action through the executor.

        Returns:
            GateSuccess, or None when the action escalated. In that case the
            instance went through Blocked and either resumed the state it was
            blocked from or was cancelled; the caller re-enters its step.
        """
        async with self._slots:
            result = await self.executor.execute(
                handle.instance_id,
                action_type,
                invoker,
                correlation_id=handle.correlation_id,
            )
        if isinstance(result, GateSuccess):
            return result
        await self._block(handle, result)
        return None

    async def _block(self, handle: InstanceHandle, escalation: GateEscalation) -> None:
        await self.escalations.create_escalation(
            correlation_id=handle.correlation_id,
            instance_id=handle.instance_id,
            action_type=escalation.action_type,
            trigger_reason=escalation.reason,
            reason_type=escalation.reason_type,
            retry_history=escalation.retry_history,
        )
        await self._transition(handle, Trigger.ESCALATE)
        await self._step_blocked(handle)

    async def _step_blocked(self, handle: InstanceHandle) -> None:
        escalation_id = self._open_escalation_id(handle)
        if escalation_id is None:
            # Resolved before the resume transition was recorded (crash in between)
            escalation_id = self._last_resolved_escalation(handle)

        record = self.escalations.get(escalation_id)
        if record.status == EscalationStatus.TRIGGERED:
            await self.escalations.notify(escalation_id)

        while True:
            outcome = await self.escalations.await_resolution(escalation_id)
            if isinstance(outcome, Resolved):
                break
            if self.escalation_on_timeout == "abort":
                await self._record_cancelled(handle, f"escalation {escalation_id} timed out")
                return
            log.warning("workflow_remains_blocked", instance_id=handle.instance_id, escalation_id=escalation_id)

        self.executor.reset(handle.instance_id, record.action_type)
        assert handle.snapshot is not None
        resume_to = handle.snapshot.previous_state
        await self._transition(handle, Trigger.RESOLVED, resume_to=resume_to)

    def _last_resolved_escalation(self, handle: InstanceHandle) -> str:
        assert handle.snapshot is not None
        escalation_ids = handle.snapshot.escalation_ids
        if not escalation_ids:
            raise UnresolvedEscalationError(handle.instance_id, None)
        escalation_id = escalation_ids[-1]
        if self.escalations.get(escalation_id).status != EscalationStatus.RESOLVED:
            raise UnresolvedEscalationError(handle.instance_id, escalation_id)
        return escalation_id

    async def _wait_approval(self, handle: InstanceHandle, approval: asyncio.Event, timeout: float | None) -> bool:
        try:
            await asyncio.wait_for(approval.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _step_selected(self, handle: InstanceHandle) -> None:
        await self._transition(handle, Trigger.PICKUP)

    async def _step_analyzing(self, handle: InstanceHandle) -> None:
        if "analysis" not in handle.artifacts:

            async def analyze() -> Analysis:
                issue = await self.git.get_issue(handle.instance.issue_ref)
                handle.artifacts["issue"] = issue
                return await self.ai.analyze(issue.content)

            result = await self._action(handle, "analyze", analyze)
            if result is None:
                return
            handle.artifacts["analysis"] = result.value

        if "plan" not in handle.artifacts:
            analysis = handle.artifacts["analysis"]
            result = await self._action(handle, "plan", lambda: self.ai.generate_plan(analysis))
            if result is None:
                return
            handle.artifacts["plan"] = result.value
            await self._append(
                handle,
                EventType.PLAN_PROPOSED,
                {"analysis": asdict(analysis), "plan": asdict(result.value)},
                actor=Actor.AI,
            )

        await self._transition(handle, Trigger.ANALYSIS_COMPLETE)

    async def _step_awaiting_plan_approval(self, handle: InstanceHandle) -> None:
        if not await self._wait_approval(handle, handle.plan_approved, self.plan_approval_timeout):
            await self._record_cancelled(handle, "plan approval timed out")
            return
        await self._transition(handle, Trigger.PLAN_APPROVED)

    async def _step_implementing(self, handle: InstanceHandle) -> None:
        if "changes" not in handle.artifacts:
            plan = handle.artifacts["plan"]
            result = await self._action(handle, "implement", lambda: self.ai.generate_code(plan))
            if result is None:
                return
            handle.artifacts["changes"] = result.value

        changes: CodeChanges = handle.artifacts["changes"]
        branch_name = re.sub(r"[^A-Za-z0-9/._-]+", "-", f"{self.branch_prefix}{handle.instance.issue_ref}")

        async def publish() -> tuple[str, str]:
            branch = await self.git.create_branch(branch_name)
            sha = await self.git.push_commit(branch, changes)
            return branch, sha

        result = await self._action(handle, "publish", publish)
        if result is None:
            return
        branch, sha = result.value
        handle.artifacts["branch"] = branch
        await self._append(
            handle,
            EventType.CODE_CHANGES_PRODUCED,
            {
                "branch": branch,
                "commit_sha": sha,
                "files": sorted(changes.files),
                "commit_message": changes.commit_message,
            },
            actor=Actor.AI,
        )
        await self._transition(handle, Trigger.CHANGES_PRODUCED)

    async def _step_quality_gates(self, handle: InstanceHandle) -> None:
        assert handle.snapshot is not None
        context = GateContext(
            instance_id=handle.instance_id,
            issue_ref=handle.instance.issue_ref,
            branch=handle.artifacts["branch"],
        )

        for name, gate in self.gates.items():
            if name in handle.snapshot.completed_actions:
                continue
            result = await self._action(handle, name, lambda gate=gate: gate.run(context))
            if result is None:
                return

        if "create-pr" not in handle.snapshot.completed_actions:
            plan: Plan | None = handle.artifacts.get("plan")
            title = f"Resolve issue {handle.instance.issue_ref}"
            body = plan.summary if plan else ""
            result = await self._action(
                handle,
                "create-pr",
                lambda: self.git.create_pr(context.branch, title, body),
            )
            if result is None:
                return
            pr: PullRequest = result.value
            handle.artifacts["pr"] = pr
            await self._append(
                handle,
                EventType.PULL_REQUEST_CREATED,
                {"pr_number": pr.number, "pr_url": pr.url, "branch": pr.branch},
            )

        await self._transition(handle, Trigger.GATES_PASSED)

    async def _step_awaiting_merge_approval(self, handle: InstanceHandle) -> None:
        if not await self._wait_approval(handle, handle.merge_approved, self.merge_approval_timeout):
            await self._record_cancelled(handle, "merge approval timed out")
            return

        pr: PullRequest = handle.artifacts["pr"]

        async def merge() -> None:
            await self.git.merge_pr(pr.number)
            await self.git.post_comment(
                handle.instance.issue_ref,
                f"Merged pull request #{pr.number} ({pr.url}).",
            )

        result = await self._action(handle, "merge", merge)
        if result is None:
            return
        await self._transition(handle, Trigger.MERGED)

    async def _alert_event_store_failure(self, event: Event, error: Exception) -> None:
        await self.escalations.alert_operator(
            Alert(
                severity=Severity.CRITICAL,
                title="Event store write failure",
                description=(
                    f"Event {event.type} (sequence {event.sequence}) could neither be stored "
                    f"nor buffered locally: {error}"
                ),
                correlation_id=event.correlation_id,
                suggested_action="Free disk space or restore the event backend, then restart the engine",
            )
        )
