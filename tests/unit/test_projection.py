"""Tests for tamma/events/projection.py."""

import pytest

from tamma.enums import EscalationStatus, OutcomeKind, WorkflowState
from tamma.events.projection import apply_event, replay, retry_history
from tamma.models.events import Event, EventType

CID = "issue-101-abcd1234"


def make_events(*specs: tuple[str, dict]) -> list[Event]:
    events = [
        Event(
            correlation_id=CID,
            type=EventType.WORKFLOW_STARTED,
            payload={"instance_id": "abcd1234", "issue_ref": "101", "state": "Selected"},
        ).with_sequence(0)
    ]
    for sequence, (event_type, payload) in enumerate(specs, start=1):
        events.append(Event(correlation_id=CID, type=event_type, payload=payload).with_sequence(sequence))
    return events


def changed(source: WorkflowState, target: WorkflowState) -> tuple[str, dict]:
    return (EventType.STATE_CHANGED, {"from": source.value, "to": target.value, "trigger": "x"})


class TestApplyEvent:
    """Folding single events."""

    def test_first_event_must_be_workflow_started(self):
        with pytest.raises(ValueError, match="must start with WorkflowStarted"):
            apply_event(None, Event(correlation_id=CID, type="BuildRetry", payload={}))

    def test_started_creates_snapshot(self):
        snapshot = replay(make_events())

        assert snapshot.instance_id == "abcd1234"
        assert snapshot.issue_ref == "101"
        assert snapshot.state == WorkflowState.SELECTED
        assert snapshot.last_sequence == 0

    def test_input_snapshot_is_not_mutated(self):
        events = make_events(changed(WorkflowState.SELECTED, WorkflowState.ANALYZING))
        before = replay(events[:1])

        after = apply_event(before, events[1])

        assert before.state == WorkflowState.SELECTED
        assert after.state == WorkflowState.ANALYZING
        assert after.previous_state == WorkflowState.SELECTED

    def test_retry_then_completed_resets_counter(self):
        snapshot = replay(
            make_events(
                ("BuildRetry", {"action_type": "build", "attempt": 1}),
                ("BuildRetry", {"action_type": "build", "attempt": 2}),
            )
        )
        assert snapshot.retry_counter("build") == 2
        assert snapshot.current_action == "build"

        snapshot = replay(
            make_events(
                ("BuildRetry", {"action_type": "build", "attempt": 1}),
                ("BuildCompleted", {"action_type": "build", "status": "success", "counter": 0}),
            )
        )
        assert snapshot.retry_counter("build") == 0
        assert snapshot.completed_actions == ["build"]
        assert snapshot.current_action is None

    def test_multi_word_action_events(self):
        snapshot = replay(
            make_events(
                ("StaticAnalysisRetry", {"action_type": "static-analysis", "attempt": 1}),
            )
        )

        assert snapshot.retry_counter("static-analysis") == 1

    def test_escalation_lifecycle(self):
        events = make_events(
            changed(WorkflowState.SELECTED, WorkflowState.ANALYZING),
            (EventType.ESCALATION_REQUIRED, {"action_type": "analyze", "attempt": 0, "counter": 0}),
            (EventType.ESCALATION_CREATED, {"escalation_id": "esc-1", "action_type": "analyze"}),
            changed(WorkflowState.ANALYZING, WorkflowState.BLOCKED),
            (EventType.ESCALATION_NOTIFIED, {"escalation_id": "esc-1"}),
            (EventType.ESCALATION_AWAITING, {"escalation_id": "esc-1"}),
        )

        blocked = replay(events)
        assert blocked.state == WorkflowState.BLOCKED
        assert blocked.previous_state == WorkflowState.ANALYZING
        assert blocked.open_escalation_id == "esc-1"
        assert blocked.escalation_status == EscalationStatus.AWAITING_RESOLUTION
        assert blocked.blocked_action == "analyze"

        resolved = apply_event(
            blocked,
            Event(
                correlation_id=CID,
                type=EventType.ESCALATION_RESOLVED,
                payload={"escalation_id": "esc-1", "action_type": "analyze", "notes": "fixed token"},
            ),
        )
        assert resolved.open_escalation_id is None
        assert resolved.escalation_status == EscalationStatus.RESOLVED
        assert resolved.escalation_ids == ["esc-1"]
        assert resolved.artifacts["last_resolution_notes"] == "fixed token"

    def test_withdrawn_escalation_closes(self):
        events = make_events(
            (EventType.ESCALATION_CREATED, {"escalation_id": "esc-1", "action_type": "build"}),
            changed(WorkflowState.QUALITY_GATES, WorkflowState.BLOCKED),
            (EventType.WORKFLOW_CANCELLED, {"reason": "won't fix"}),
            (EventType.ESCALATION_WITHDRAWN, {"escalation_id": "esc-1", "action_type": "build"}),
        )

        snapshot = replay(events)

        assert snapshot.state == WorkflowState.CANCELLED
        assert snapshot.open_escalation_id is None
        assert snapshot.escalation_status == EscalationStatus.WITHDRAWN

    def test_cancelled(self):
        snapshot = replay(make_events((EventType.WORKFLOW_CANCELLED, {"reason": "operator"})))

        assert snapshot.state == WorkflowState.CANCELLED
        assert snapshot.is_terminal
        assert snapshot.cancelled_reason == "operator"

    def test_artifacts(self):
        snapshot = replay(
            make_events(
                (EventType.PLAN_PROPOSED, {"analysis": {"summary": "a"}, "plan": {"summary": "p"}}),
                (EventType.PLAN_APPROVED, {}),
                (EventType.CODE_CHANGES_PRODUCED, {"branch": "b", "commit_sha": "sha", "files": ["x"]}),
                (EventType.PULL_REQUEST_CREATED, {"pr_number": 3, "pr_url": "u"}),
                (EventType.MERGE_APPROVED, {}),
            )
        )

        assert snapshot.plan_approved and snapshot.merge_approved
        assert snapshot.artifacts["plan"] == {"summary": "p"}
        assert snapshot.artifacts["branch"] == "b"
        assert snapshot.artifacts["pr_number"] == 3


class TestReplay:
    def test_empty_returns_none(self):
        assert replay([]) is None

    def test_upto_sequence_stops_early(self):
        events = make_events(
            changed(WorkflowState.SELECTED, WorkflowState.ANALYZING),
            changed(WorkflowState.ANALYZING, WorkflowState.AWAITING_PLAN_APPROVAL),
        )

        assert replay(events, upto_sequence=1).state == WorkflowState.ANALYZING
        assert replay(events).state == WorkflowState.AWAITING_PLAN_APPROVAL

    def test_replay_is_deterministic(self):
        events = make_events(
            changed(WorkflowState.SELECTED, WorkflowState.ANALYZING),
            ("AnalyzeRetry", {"action_type": "analyze", "attempt": 1}),
        )

        assert replay(events) == replay(events)


class TestRetryHistory:
    def test_collects_retries_since_last_reset(self):
        events = make_events(
            ("BuildRetry", {"action_type": "build", "attempt": 1, "failure_kind": "transient-failure"}),
            ("BuildCompleted", {"action_type": "build", "counter": 0}),
            ("TestRetry", {"action_type": "test", "attempt": 1, "summary": "timeout"}),
            ("TestRetry", {"action_type": "test", "attempt": 2, "summary": "timeout"}),
        )

        history = retry_history(events)

        assert "build" not in history
        assert [a.attempt for a in history["test"]] == [1, 2]
        assert history["test"][0].outcome == OutcomeKind.TRANSIENT_FAILURE
        assert history["test"][0].timestamp == events[3].timestamp

    def test_resolution_clears_history(self):
        events = make_events(
            ("TestRetry", {"action_type": "test", "attempt": 1}),
            (EventType.ESCALATION_RESOLVED, {"escalation_id": "esc-1", "action_type": "test", "notes": "ok"}),
        )

        assert retry_history(events) == {}
