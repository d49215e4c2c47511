"""Enumerations shared across the tamma engine."""

from enum import Enum


class WorkflowState(str, Enum):
    """Lifecycle states of a workflow instance.

    The happy path is:
    SELECTED -> ANALYZING -> AWAITING_PLAN_APPROVAL -> IMPLEMENTING
    -> QUALITY_GATES -> AWAITING_MERGE_APPROVAL -> MERGED

    BLOCKED is entered from any non-terminal state while an escalation is
    open; CANCELLED from any non-terminal state by operator action.
    """

    SELECTED = "Selected"
    ANALYZING = "Analyzing"
    AWAITING_PLAN_APPROVAL = "AwaitingPlanApproval"
    IMPLEMENTING = "Implementing"
    QUALITY_GATES = "QualityGates"
    AWAITING_MERGE_APPROVAL = "AwaitingMergeApproval"
    MERGED = "Merged"
    BLOCKED = "Blocked"
    CANCELLED = "Cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions are possible."""
        return self in (WorkflowState.MERGED, WorkflowState.CANCELLED)


class EscalationStatus(str, Enum):
    """Escalation lifecycle: TRIGGERED -> NOTIFIED -> AWAITING_RESOLUTION -> RESOLVED.

    WITHDRAWN closes an unresolved escalation whose workflow was cancelled.
    """

    TRIGGERED = "Triggered"
    NOTIFIED = "Notified"
    AWAITING_RESOLUTION = "AwaitingResolution"
    RESOLVED = "Resolved"
    WITHDRAWN = "Withdrawn"

    def __str__(self) -> str:
        return self.value


class OutcomeKind(str, Enum):
    """Classification of a single quality gate attempt."""

    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient-failure"
    STRUCTURAL_FAILURE = "structural-failure"
    CRITICAL_FAILURE = "critical-failure"

    def __str__(self) -> str:
        return self.value

    @property
    def is_retryable(self) -> bool:
        return self == OutcomeKind.TRANSIENT_FAILURE


class Actor(str, Enum):
    """Who caused an event."""

    SYSTEM = "system"
    HUMAN = "human"
    AI = "ai"

    def __str__(self) -> str:
        return self.value


class Severity(str, Enum):
    """Alert severity for notification channels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value


class ChannelType(str, Enum):
    """Supported notification channel variants."""

    CLI = "cli"
    WEBHOOK = "webhook"
    EMAIL = "email"

    def __str__(self) -> str:
        return self.value
