"""
Notification channel contract.

A channel delivers one ``Alert`` per ``send`` call. It either returns a
``DeliveryResult`` confirming delivery or raises ``NotificationDeliveryError``;
retrying is the caller's concern, so each channel can be retried
independently.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tamma.enums import ChannelType, Severity
from tamma.models.domain import utc_now


@dataclass
class Alert:
    """A message for a human."""

    severity: Severity
    title: str
    description: str
    correlation_id: str | None = None
    suggested_action: str | None = None
    escalation_id: str | None = None
    reason_type: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "title": self.title,
            "description": self.description,
            "correlation_id": self.correlation_id,
            "suggested_action": self.suggested_action,
            "escalation_id": self.escalation_id,
            "reason_type": self.reason_type,
            "created_at": self.created_at.isoformat(),
        }

    def render_text(self) -> str:
        """Plain-text rendering shared by the CLI and email channels."""
        lines = [f"[{self.severity.value.upper()}] {self.title}", "", self.description]
        if self.suggested_action:
            lines.extend(["", f"Suggested action: {self.suggested_action}"])
        if self.correlation_id:
            lines.extend(["", f"Correlation ID: {self.correlation_id}"])
        return "\n".join(lines)


@dataclass
class DeliveryResult:
    """Outcome of delivering one alert on one channel."""

    channel: ChannelType
    delivered: bool
    attempts: int = 1
    error: str | None = None
    detail: str | None = None


class NotificationChannel(ABC):
    """Abstract notification channel."""

    channel_type: ChannelType

    @abstractmethod
    async def send(self, alert: Alert) -> DeliveryResult:
        """Deliver an alert once.

        Raises:
            NotificationDeliveryError: If the alert was not delivered
        """
        pass

    async def close(self) -> None:  # noqa: B027
        """Release channel resources."""
