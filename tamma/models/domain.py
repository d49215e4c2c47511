"""
Domain models for the workflow engine.

This module contains the data classes exchanged between the orchestrator, the
quality gate executor, the escalation manager and the external collaborators.
Collaborator payloads (analysis, plan, code changes, CI status) are normalized
into these classes so the engine never depends on a provider's wire format.

Example:
    Describing a failed attempt for an escalation's retry history::

        attempt = GateAttempt(
            action_type="build",
            attempt=1,
            outcome=OutcomeKind.TRANSIENT_FAILURE,
            summary="dependency not found: left-pad@1.3.0",
        )
"""

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from tamma.enums import EscalationStatus, OutcomeKind, WorkflowState


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass
class Issue:
    """An issue fetched from the Git platform.

    ``ref`` is the platform's stable, human-facing reference (e.g. "101"
    or "owner/repo#101").
    """

    ref: str
    title: str
    body: str = ""
    labels: list[str] = field(default_factory=list)
    url: str | None = None

    @property
    def content(self) -> str:
        """Title and body combined, as handed to the AI provider."""
        return f"{self.title}\n\n{self.body}".strip()


@dataclass
class Analysis:
    """Result of ``AIProvider.analyze``."""

    summary: str
    affected_files: list[str] = field(default_factory=list)
    complexity: str | None = None


@dataclass
class Plan:
    """Implementation plan proposed by ``AIProvider.generate_plan``.

    The plan is posted for human approval before any code is produced.
    """

    summary: str
    steps: list[str] = field(default_factory=list)


@dataclass
class CodeChanges:
    """Code produced by ``AIProvider.generate_code``.

    ``files`` maps repository-relative paths to their new content.
    """

    files: dict[str, str]
    commit_message: str
    summary: str = ""


@dataclass
class PullRequest:
    """A pull request opened by the engine after all gates pass."""

    number: int
    url: str
    branch: str


@dataclass
class SecurityFinding:
    """One finding from a security scan."""

    id: str
    title: str
    cvss: float
    package: str | None = None


@dataclass
class CIStatus:
    """Status of a CI run as reported by ``GitPlatform.get_ci_status``.

    ``state`` is one of "pending", "running", "success", "failure" or "error".
    """

    run_id: str
    state: str
    logs: str = ""
    findings: list[SecurityFinding] = field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.state in ("success", "failure", "error")


@dataclass
class GateOutcome:
    """Raw outcome returned by a gate invoker.

    ``failure_kind`` lets the invoker classify its own failure; when it is
    None the executor's classifier decides from the summary, diagnostic
    and findings.
    """

    passed: bool
    summary: str = ""
    diagnostic: str = ""
    findings: list[SecurityFinding] = field(default_factory=list)
    failure_kind: OutcomeKind | None = None
    value: Any = None


@dataclass
class GateAttempt:
    """One recorded attempt at an action, used in escalation retry history."""

    action_type: str
    attempt: int
    outcome: OutcomeKind
    summary: str
    timestamp: datetime = field(default_factory=utc_now)
    diagnostic: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "action_type": self.action_type,
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "summary": self.summary,
            "timestamp": self.timestamp.isoformat(),
            "diagnostic": self.diagnostic,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GateAttempt":
        return cls(
            action_type=data["action_type"],
            attempt=data["attempt"],
            outcome=OutcomeKind(data["outcome"]),
            summary=data.get("summary", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            diagnostic=data.get("diagnostic", ""),
        )


@dataclass
class WorkflowInstance:
    """One workflow per issue being processed.

    At most one active instance exists per ``issue_ref``. The orchestrator
    owns it exclusively; other components only see copies.
    """

    instance_id: str
    issue_ref: str
    correlation_id: str
    current_state: WorkflowState
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["current_state"] = self.current_state.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass
class EscalationRecord:
    """A mandatory hand-off to a human.

    Created when an action exhausts its retries or hits a structural or
    critical failure. Its lifecycle is
    TRIGGERED -> NOTIFIED -> AWAITING_RESOLUTION -> RESOLVED, or WITHDRAWN
    when the workflow is cancelled first.
    """

    escalation_id: str
    correlation_id: str
    instance_id: str
    action_type: str
    trigger_reason: str
    reason_type: OutcomeKind
    retry_history: list[GateAttempt] = field(default_factory=list)
    suggested_next_steps: list[str] = field(default_factory=list)
    status: EscalationStatus = EscalationStatus.TRIGGERED
    resolution_notes: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_open(self) -> bool:
        return self.status not in (EscalationStatus.RESOLVED, EscalationStatus.WITHDRAWN)

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.instance_id, self.action_type)

    def summary(self) -> str:
        """Human-readable summary delivered with every notification."""
        lines = [
            f"Escalation {self.escalation_id} ({self.reason_type.value})",
            f"Action: {self.action_type}",
            f"Reason: {self.trigger_reason}",
        ]
        if self.retry_history:
            lines.append("Retry history:")
            for item in self.retry_history:
                lines.append(
                    f"  - attempt {item.attempt} at {item.timestamp.isoformat()}: "
                    f"{item.outcome.value}: {item.summary}"
                )
        else:
            lines.append("Retry history: none (not retryable)")
        if self.suggested_next_steps:
            lines.append("Suggested next steps:")
            lines.extend(f"  - {step}" for step in self.suggested_next_steps)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary (one escalations row)."""
        return {
            "escalation_id": self.escalation_id,
            "correlation_id": self.correlation_id,
            "instance_id": self.instance_id,
            "action_type": self.action_type,
            "trigger_reason": self.trigger_reason,
            "reason_type": self.reason_type.value,
            "retry_history": [item.to_dict() for item in self.retry_history],
            "suggested_next_steps": list(self.suggested_next_steps),
            "status": self.status.value,
            "resolution_notes": self.resolution_notes,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EscalationRecord":
        resolved_at = data.get("resolved_at")
        return cls(
            escalation_id=data["escalation_id"],
            correlation_id=data["correlation_id"],
            instance_id=data["instance_id"],
            action_type=data["action_type"],
            trigger_reason=data["trigger_reason"],
            reason_type=OutcomeKind(data["reason_type"]),
            retry_history=[GateAttempt.from_dict(item) for item in data.get("retry_history", [])],
            suggested_next_steps=list(data.get("suggested_next_steps", [])),
            status=EscalationStatus(data["status"]),
            resolution_notes=data.get("resolution_notes"),
            resolved_at=datetime.fromisoformat(resolved_at) if resolved_at else None,
            created_at=datetime.fromisoformat(data["created_at"]),
        )
