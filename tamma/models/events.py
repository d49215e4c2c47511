"""Event models for the append-only audit trail.

Events are immutable facts. Every component writes them as a side effect of a
state transition; the event store assigns each one a per-correlation sequence
number and never mutates or deletes it afterwards.

Example:
    Building an event for a completed build gate::

        event = Event(
            correlation_id="issue-101-3f2a9c1e",
            type=action_event_type("build", "Completed"),
            actor=Actor.SYSTEM,
            payload={"status": "success", "retries_used": 2},
        )
"""

import json
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tamma.enums import Actor


class EventType(str, Enum):
    """Fixed event types. Per-action gate events are built by ``action_event_type``."""

    WORKFLOW_STARTED = "WorkflowStarted"
    STATE_CHANGED = "WorkflowStateChanged"
    WORKFLOW_CANCELLED = "WorkflowCancelled"

    PLAN_PROPOSED = "PlanProposed"
    PLAN_APPROVED = "PlanApproved"
    CODE_CHANGES_PRODUCED = "CodeChangesProduced"
    PULL_REQUEST_CREATED = "PullRequestCreated"
    MERGE_APPROVED = "MergeApproved"

    ESCALATION_REQUIRED = "EscalationRequired"
    ESCALATION_CREATED = "EscalationCreated"
    ESCALATION_NOTIFIED = "EscalationNotified"
    ESCALATION_AWAITING = "EscalationAwaitingResolution"
    ESCALATION_RESOLVED = "EscalationResolved"
    ESCALATION_TIMED_OUT = "EscalationTimedOut"
    ESCALATION_WITHDRAWN = "EscalationWithdrawn"

    NOTIFICATION_DELIVERY_FAILED = "NotificationDeliveryFailed"
    NOTIFICATION_SUPPRESSED = "NotificationSuppressed"

    def __str__(self) -> str:
        return self.value


def action_prefix(action_type: str) -> str:
    """Convert an action name to its PascalCase event prefix.

    Example:
        >>> action_prefix("static-analysis")
        'StaticAnalysis'
    """
    parts = action_type.replace("_", "-").split("-")
    return "".join(part[:1].upper() + part[1:] for part in parts if part)


def action_event_type(action_type: str, suffix: str) -> str:
    """Build a per-action event type such as ``BuildRetry`` or ``TestCompleted``."""
    return f"{action_prefix(action_type)}{suffix}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _new_event_id() -> str:
    return uuid.uuid4().hex


class Event(BaseModel):
    """Immutable event in the audit trail.

    ``sequence`` is None until the event store assigns it on append.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=_new_event_id)
    correlation_id: str
    sequence: int | None = None
    type: str
    timestamp: datetime = Field(default_factory=_utc_now)
    actor: Actor = Actor.SYSTEM
    payload: dict[str, Any] = Field(default_factory=dict)

    def with_sequence(self, sequence: int) -> "Event":
        """Return a copy of this event carrying its assigned sequence."""
        return self.model_copy(update={"sequence": sequence})

    def matches_text(self, text: str) -> bool:
        """Case-insensitive full-text match against type and payload."""
        needle = text.lower()
        if needle in self.type.lower():
            return True
        return needle in json.dumps(self.payload, default=str).lower()

    def to_json(self) -> str:
        """Serialize to a single JSON line."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, line: str) -> "Event":
        """Parse an event from a JSON line written by ``to_json``."""
        return cls.model_validate_json(line)


class EventFilter(BaseModel):
    """Query filter for the event store and the Event Query API."""

    correlation_id: str | None = None
    type: str | None = None
    after: datetime | None = None
    before: datetime | None = None
    full_text: str | None = None
    limit: int = Field(default=100, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)

    @field_validator("after", "before")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        """Treat naive timestamps as UTC so they compare with stored events."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def matches(self, event: Event) -> bool:
        """Check every criterion except pagination."""
        if self.correlation_id is not None and event.correlation_id != self.correlation_id:
            return False
        if self.type is not None and event.type != self.type:
            return False
        if self.after is not None and event.timestamp <= self.after:
            return False
        if self.before is not None and event.timestamp >= self.before:
            return False
        if self.full_text and not event.matches_text(self.full_text):
            return False
        return True


class EventPage(BaseModel):
    """One page of query results."""

    events: list[Event]
    total: int
    offset: int
    limit: int

    @property
    def next_offset(self) -> int | None:
        """Offset of the next page, or None on the last page."""
        following = self.offset + len(self.events)
        return following if following < self.total else None
