"""
Pure projection of workflow events into a snapshot.

``apply_event`` is the only place where events are interpreted as state.
The orchestrator folds every event it observes through it to maintain its
live view of an instance, and ``EventStore.replay`` folds the stored log
through it, so a replayed snapshot equals the live snapshot after the same
event by construction.

Example:
    >>> snapshot = replay(events[: n + 1])
    >>> snapshot.state
    <WorkflowState.QUALITY_GATES: 'QualityGates'>
"""

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from tamma.enums import EscalationStatus, OutcomeKind, WorkflowState
from tamma.models.domain import GateAttempt
from tamma.models.events import Event, EventType, action_event_type


class WorkflowSnapshot(BaseModel):
    """State of one workflow instance reconstructed from its events."""

    instance_id: str
    issue_ref: str
    correlation_id: str
    state: WorkflowState = WorkflowState.SELECTED
    previous_state: WorkflowState | None = None
    created_at: datetime
    updated_at: datetime
    last_sequence: int = -1

    current_action: str | None = None
    completed_actions: list[str] = Field(default_factory=list)
    retry_counters: dict[str, int] = Field(default_factory=dict)

    open_escalation_id: str | None = None
    escalation_status: EscalationStatus | None = None
    blocked_action: str | None = None
    escalation_ids: list[str] = Field(default_factory=list)

    plan_approved: bool = False
    merge_approved: bool = False
    cancelled_reason: str | None = None
    artifacts: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def retry_counter(self, action_type: str) -> int:
        return self.retry_counters.get(action_type, 0)


def _action_suffix(event: Event) -> str | None:
    """Return "Retry" or "Completed" when the event is a per-action gate event."""
    action_type = event.payload.get("action_type")
    if not action_type:
        return None
    for suffix in ("Retry", "Completed"):
        if event.type == action_event_type(action_type, suffix):
            return suffix
    return None


def apply_event(snapshot: WorkflowSnapshot | None, event: Event) -> WorkflowSnapshot:
    """Fold one event into a snapshot, returning a new snapshot.

    The input snapshot is never modified.

    Raises:
        ValueError: If the first event of an aggregate is not WorkflowStarted
    """
    if snapshot is None:
        if event.type != EventType.WORKFLOW_STARTED:
            raise ValueError(
                f"Aggregate {event.correlation_id} must start with WorkflowStarted, got {event.type}"
            )
        return WorkflowSnapshot(
            instance_id=event.payload["instance_id"],
            issue_ref=event.payload["issue_ref"],
            correlation_id=event.correlation_id,
            created_at=event.timestamp,
            updated_at=event.timestamp,
            last_sequence=event.sequence if event.sequence is not None else 0,
        )

    new = snapshot.model_copy(deep=True)
    new.updated_at = event.timestamp
    if event.sequence is not None:
        new.last_sequence = event.sequence
    payload = event.payload

    if event.type == EventType.STATE_CHANGED:
        new.previous_state = WorkflowState(payload["from"])
        new.state = WorkflowState(payload["to"])
    elif event.type == EventType.WORKFLOW_CANCELLED:
        new.previous_state = snapshot.state
        new.state = WorkflowState.CANCELLED
        new.cancelled_reason = payload.get("reason")
        new.current_action = None
    elif event.type == EventType.PLAN_PROPOSED:
        new.artifacts["analysis"] = payload.get("analysis")
        new.artifacts["plan"] = payload.get("plan")
    elif event.type == EventType.PLAN_APPROVED:
        new.plan_approved = True
    elif event.type == EventType.CODE_CHANGES_PRODUCED:
        new.artifacts["branch"] = payload.get("branch")
        new.artifacts["commit_sha"] = payload.get("commit_sha")
        new.artifacts["files"] = payload.get("files", [])
    elif event.type == EventType.PULL_REQUEST_CREATED:
        new.artifacts["pr_number"] = payload.get("pr_number")
        new.artifacts["pr_url"] = payload.get("pr_url")
    elif event.type == EventType.MERGE_APPROVED:
        new.merge_approved = True
    elif event.type == EventType.ESCALATION_REQUIRED:
        new.retry_counters[payload["action_type"]] = payload.get("counter", payload.get("attempt", 0))
        new.current_action = payload["action_type"]
    elif event.type == EventType.ESCALATION_CREATED:
        new.open_escalation_id = payload["escalation_id"]
        new.escalation_status = EscalationStatus.TRIGGERED
        new.blocked_action = payload.get("action_type")
        if payload["escalation_id"] not in new.escalation_ids:
            new.escalation_ids.append(payload["escalation_id"])
    elif event.type == EventType.ESCALATION_NOTIFIED:
        if new.open_escalation_id == payload.get("escalation_id"):
            new.escalation_status = EscalationStatus.NOTIFIED
    elif event.type == EventType.ESCALATION_AWAITING:
        if new.open_escalation_id == payload.get("escalation_id"):
            new.escalation_status = EscalationStatus.AWAITING_RESOLUTION
    elif event.type == EventType.ESCALATION_RESOLVED:
        if new.open_escalation_id == payload.get("escalation_id"):
            new.open_escalation_id = None
            new.escalation_status = EscalationStatus.RESOLVED
        action_type = payload.get("action_type")
        if action_type:
            new.retry_counters[action_type] = 0
        new.artifacts["last_resolution_notes"] = payload.get("notes")
    elif event.type == EventType.ESCALATION_WITHDRAWN:
        if new.open_escalation_id == payload.get("escalation_id"):
            new.open_escalation_id = None
            new.escalation_status = EscalationStatus.WITHDRAWN
    else:
        suffix = _action_suffix(event)
        if suffix == "Retry":
            new.current_action = payload["action_type"]
            new.retry_counters[payload["action_type"]] = payload["attempt"]
        elif suffix == "Completed":
            action_type = payload["action_type"]
            new.retry_counters[action_type] = payload.get("counter", 0)
            if action_type not in new.completed_actions:
                new.completed_actions.append(action_type)
            new.current_action = None

    return new


def replay(events: Iterable[Event], upto_sequence: int | None = None) -> WorkflowSnapshot | None:
    """Fold events in order, stopping after ``upto_sequence`` when given.

    Returns:
        The resulting snapshot, or None if no events were folded.
    """
    snapshot: WorkflowSnapshot | None = None
    for event in events:
        if upto_sequence is not None and event.sequence is not None and event.sequence > upto_sequence:
            break
        snapshot = apply_event(snapshot, event)
    return snapshot


def retry_history(events: Iterable[Event]) -> dict[str, list[GateAttempt]]:
    """Transient failures of each action since its counter was last reset.

    Used to seed retry budgets when a workflow is recovered after a restart.
    """
    history: dict[str, list[GateAttempt]] = {}
    for event in events:
        action_type = event.payload.get("action_type")
        if not action_type:
            continue
        suffix = _action_suffix(event)
        if suffix == "Retry":
            history.setdefault(action_type, []).append(
                GateAttempt(
                    action_type=action_type,
                    attempt=event.payload["attempt"],
                    outcome=OutcomeKind(event.payload.get("failure_kind", OutcomeKind.TRANSIENT_FAILURE.value)),
                    summary=event.payload.get("summary", ""),
                    timestamp=event.timestamp,
                    diagnostic=event.payload.get("diagnostic", ""),
                )
            )
        elif suffix == "Completed" or event.type == EventType.ESCALATION_RESOLVED:
            history.pop(action_type, None)
    return history
