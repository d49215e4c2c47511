"""
Escalation Manager: the "stop and ask a human" protocol.

An escalation moves strictly through
``Triggered -> Notified -> AwaitingResolution -> Resolved``; any other
transition raises ``InvalidTransitionError``. An escalation whose workflow
is cancelled before resolution is closed as Withdrawn and can no longer be
resolved. Every transition is persisted in the escalation repository and
recorded as an event under the owning instance's correlation id.

Notification Delivery:
    Each configured channel is tried independently, up to
    ``notification_attempts`` times with exponential backoff. The escalation
    becomes Notified once one channel confirms delivery or all of them have
    given up; failed deliveries are recorded as ``NotificationDeliveryFailed``
    events and never fail the workflow.

Rate Limiting:
    At most ``rate_limit_per_minute`` notifications per reason type are
    delivered per minute. Excess escalations are still recorded and move to
    Notified, but their alert is held in a digest delivered with the next
    permitted notification of the same reason type.

Example:
    >>> escalation_id = await manager.create_escalation(
    ...     correlation_id=cid,
    ...     instance_id=iid,
    ...     action_type="build",
    ...     trigger_reason="build failed 3 times: dependency not found",
    ...     reason_type=OutcomeKind.TRANSIENT_FAILURE,
    ...     retry_history=history,
    ... )
    >>> await manager.notify(escalation_id)
    >>> outcome = await manager.await_resolution(escalation_id)
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog

from tamma.engine.escalation_store import EscalationRepository
from tamma.engine.rate_limit import NotificationRateLimiter
from tamma.enums import Actor, ChannelType, EscalationStatus, OutcomeKind, Severity
from tamma.events.store import EventStore
from tamma.exceptions import EscalationNotFoundError, InvalidTransitionError, NotificationDeliveryError
from tamma.models.domain import EscalationRecord, GateAttempt, utc_now
from tamma.models.events import Event, EventType
from tamma.notifications.base import Alert, DeliveryResult, NotificationChannel
from tamma.utils.retry import async_retry

log = structlog.get_logger(__name__)

_NEXT_STATUS = {
    EscalationStatus.TRIGGERED: EscalationStatus.NOTIFIED,
    EscalationStatus.NOTIFIED: EscalationStatus.AWAITING_RESOLUTION,
    EscalationStatus.AWAITING_RESOLUTION: EscalationStatus.RESOLVED,
}

_SEVERITY = {
    OutcomeKind.TRANSIENT_FAILURE: Severity.WARNING,
    OutcomeKind.STRUCTURAL_FAILURE: Severity.ERROR,
    OutcomeKind.CRITICAL_FAILURE: Severity.CRITICAL,
}


@dataclass
class Resolved:
    """A human resolved the escalation."""

    escalation_id: str
    notes: str


@dataclass
class TimedOut:
    """The configured resolution timeout elapsed first."""

    escalation_id: str
    timeout: float


ResolutionOutcome = Resolved | TimedOut


@dataclass
class NotificationReport:
    """What happened when an escalation was announced."""

    escalation_id: str
    results: list[DeliveryResult] = field(default_factory=list)
    suppressed: bool = False
    digest_size: int = 0

    @property
    def delivered(self) -> bool:
        return any(result.delivered for result in self.results)


def suggested_next_steps(action_type: str, reason_type: OutcomeKind) -> list[str]:
    """Default guidance attached to an escalation."""
    if reason_type == OutcomeKind.CRITICAL_FAILURE:
        return [
            "Review the security findings listed in the trigger reason",
            "Upgrade, patch or replace the affected dependency on the workflow branch",
            f"Resolve the escalation to re-run the {action_type} gate",
        ]
    if reason_type == OutcomeKind.STRUCTURAL_FAILURE:
        return [
            f"Check credentials and configuration used by the {action_type} step",
            "Repair the environment (missing files, permissions, corrupted checkout)",
            f"Resolve the escalation to retry {action_type} with a fresh retry budget",
        ]
    return [
        "Inspect the retry history and the last diagnostic output",
        "Fix the underlying cause or confirm the failure was environmental",
        f"Resolve the escalation to retry {action_type} with a fresh retry budget",
    ]


class EscalationManager:
    """Create, announce and resolve escalations."""

    def __init__(
        self,
        event_store: EventStore,
        repository: EscalationRepository | None = None,
        channels: dict[ChannelType, NotificationChannel] | None = None,
        *,
        default_channels: list[ChannelType] | None = None,
        operator_channels: list[ChannelType] | None = None,
        rate_limiter: NotificationRateLimiter | None = None,
        notification_attempts: int = 3,
        notification_backoff_factor: float = 2.0,
        resolution_timeout: float | None = None,
    ) -> None:
        self.event_store = event_store
        self.repository = repository or EscalationRepository()
        self.channels = channels or {}
        self.default_channels = default_channels or list(self.channels)
        self.operator_channels = operator_channels or [ChannelType.CLI, ChannelType.WEBHOOK]
        self.rate_limiter = rate_limiter or NotificationRateLimiter()
        self.notification_attempts = notification_attempts
        self.notification_backoff_factor = notification_backoff_factor
        self.resolution_timeout = resolution_timeout
        self._resolved_signals: dict[str, asyncio.Event] = {}

    async def start(self) -> None:
        """Load persisted escalations."""
        await self.repository.load()

    def get(self, escalation_id: str) -> EscalationRecord:
        record = self.repository.get(escalation_id)
        if record is None:
            raise EscalationNotFoundError(f"Escalation not found: {escalation_id}")
        return record

    def list_open(self) -> list[EscalationRecord]:
        return self.repository.list_records(open_only=True)

    def _signal(self, escalation_id: str) -> asyncio.Event:
        if escalation_id not in self._resolved_signals:
            self._resolved_signals[escalation_id] = asyncio.Event()
        return self._resolved_signals[escalation_id]

    async def _advance(self, record: EscalationRecord, target: EscalationStatus) -> None:
        if _NEXT_STATUS.get(record.status) != target:
            raise InvalidTransitionError(record.status.value, target.value)
        record.status = target
        await self.repository.save(record)

    async def _record_event(
        self,
        record: EscalationRecord,
        event_type: str,
        payload: dict[str, Any],
        actor: Actor = Actor.SYSTEM,
    ) -> None:
        await self.event_store.append(
            Event(
                correlation_id=record.correlation_id,
                type=event_type,
                actor=actor,
                payload={"escalation_id": record.escalation_id, **payload},
            )
        )

    async def create_escalation(
        self,
        *,
        correlation_id: str,
        instance_id: str,
        action_type: str,
        trigger_reason: str,
        reason_type: OutcomeKind,
        retry_history: list[GateAttempt] | None = None,
        next_steps: list[str] | None = None,
    ) -> str:
        """Open an escalation in Triggered, or return the open one for the same action.

        Returns:
            The escalation id
        """
        existing = self.repository.find_open(instance_id, action_type)
        if existing is not None:
            log.info(
                "escalation_deduplicated",
                escalation_id=existing.escalation_id,
                instance_id=instance_id,
                action=action_type,
            )
            return existing.escalation_id

        record = EscalationRecord(
            escalation_id=f"esc-{uuid.uuid4().hex[:12]}",
            correlation_id=correlation_id,
            instance_id=instance_id,
            action_type=action_type,
            trigger_reason=trigger_reason,
            reason_type=reason_type,
            retry_history=list(retry_history or []),
            suggested_next_steps=next_steps or suggested_next_steps(action_type, reason_type),
        )
        await self.repository.save(record)
        await self._record_event(
            record,
            EventType.ESCALATION_CREATED,
            {
                "instance_id": instance_id,
                "action_type": action_type,
                "trigger_reason": trigger_reason,
                "reason_type": reason_type.value,
                "retry_history": [item.to_dict() for item in record.retry_history],
                "suggested_next_steps": record.suggested_next_steps,
                "summary": record.summary(),
            },
        )
        log.warning(
            "escalation_created",
            escalation_id=record.escalation_id,
            instance_id=instance_id,
            action=action_type,
            reason_type=reason_type.value,
        )
        return record.escalation_id

    def _alert_for(self, record: EscalationRecord, digest: list[str]) -> Alert:
        description = record.summary()
        if digest:
            description += f"\n\n{len(digest)} similar alert(s) were held back by rate limiting:\n"
            description += "\n".join(f"  - {line}" for line in digest)
        return Alert(
            severity=_SEVERITY.get(record.reason_type, Severity.ERROR),
            title=f"Workflow blocked at '{record.action_type}': human action required",
            description=description,
            correlation_id=record.correlation_id,
            suggested_action=record.suggested_next_steps[0] if record.suggested_next_steps else None,
            escalation_id=record.escalation_id,
            reason_type=record.reason_type.value,
        )

    async def _deliver(self, channel: NotificationChannel, alert: Alert) -> DeliveryResult:
        attempts = 0

        @async_retry(
            max_attempts=self.notification_attempts,
            backoff_factor=self.notification_backoff_factor,
            exceptions=(NotificationDeliveryError,),
        )
        async def send_once() -> DeliveryResult:
            nonlocal attempts
            attempts += 1
            return await channel.send(alert)

        try:
            result = await send_once()
        except NotificationDeliveryError as e:
            return DeliveryResult(channel=channel.channel_type, delivered=False, attempts=attempts, error=str(e))
        result.attempts = attempts
        return result

    async def _broadcast(self, channel_types: list[ChannelType], alert: Alert) -> list[DeliveryResult]:
        results = []
        available = []
        for channel_type in channel_types:
            channel = self.channels.get(channel_type)
            if channel is None:
                results.append(
                    DeliveryResult(
                        channel=channel_type,
                        delivered=False,
                        attempts=0,
                        error="channel not configured",
                    )
                )
            else:
                available.append(channel)
        results.extend(await asyncio.gather(*(self._deliver(channel, alert) for channel in available)))
        return results

    async def notify(
        self,
        escalation_id: str,
        channels: list[ChannelType] | None = None,
    ) -> NotificationReport:
        """Announce a Triggered escalation and move it to Notified.

        Raises:
            EscalationNotFoundError: If the escalation does not exist
            InvalidTransitionError: If the escalation is not Triggered
        """
        record = self.get(escalation_id)
        if record.status != EscalationStatus.TRIGGERED:
            raise InvalidTransitionError(record.status.value, EscalationStatus.NOTIFIED.value)

        report = NotificationReport(escalation_id=escalation_id)
        reason_key = record.reason_type.value

        if self.rate_limiter.try_acquire(reason_key):
            digest = self.rate_limiter.take_digest(reason_key)
            report.digest_size = len(digest)
            report.results = await self._broadcast(
                channels or self.default_channels, self._alert_for(record, digest)
            )
            for result in report.results:
                if not result.delivered:
                    log.error(
                        "notification_delivery_failed",
                        escalation_id=escalation_id,
                        channel=result.channel.value,
                        attempts=result.attempts,
                        error=result.error,
                    )
                    await self._record_event(
                        record,
                        EventType.NOTIFICATION_DELIVERY_FAILED,
                        {
                            "channel": result.channel.value,
                            "attempts": result.attempts,
                            "error": result.error,
                        },
                    )
        else:
            report.suppressed = True
            report.digest_size = self.rate_limiter.suppress(
                reason_key,
                f"{record.escalation_id} ({record.action_type}): {record.trigger_reason}",
            )
            await self._record_event(
                record,
                EventType.NOTIFICATION_SUPPRESSED,
                {"reason_type": reason_key, "pending_digest": report.digest_size},
            )

        await self._advance(record, EscalationStatus.NOTIFIED)
        await self._record_event(
            record,
            EventType.ESCALATION_NOTIFIED,
            {
                "delivered": [r.channel.value for r in report.results if r.delivered],
                "failed": [r.channel.value for r in report.results if not r.delivered],
                "suppressed": report.suppressed,
                "digest_size": report.digest_size,
            },
        )
        log.info(
            "escalation_notified",
            escalation_id=escalation_id,
            delivered=report.delivered,
            suppressed=report.suppressed,
        )
        return report

    async def await_resolution(self, escalation_id: str, timeout: float | None = None) -> ResolutionOutcome:
        """Block until a human resolves the escalation.

        A Notified escalation moves to AwaitingResolution first. With no
        timeout (the default) this waits indefinitely.

        Raises:
            EscalationNotFoundError: If the escalation does not exist
            InvalidTransitionError: If the escalation was never notified
        """
        record = self.get(escalation_id)
        if record.status == EscalationStatus.RESOLVED:
            return Resolved(escalation_id, record.resolution_notes or "")

        if record.status == EscalationStatus.NOTIFIED:
            await self._advance(record, EscalationStatus.AWAITING_RESOLUTION)
            await self._record_event(record, EventType.ESCALATION_AWAITING, {})
        elif record.status != EscalationStatus.AWAITING_RESOLUTION:
            raise InvalidTransitionError(record.status.value, EscalationStatus.AWAITING_RESOLUTION.value)

        timeout = timeout if timeout is not None else self.resolution_timeout
        signal = self._signal(escalation_id)
        try:
            if timeout is None:
                await signal.wait()
            else:
                await asyncio.wait_for(signal.wait(), timeout=timeout)
        except TimeoutError:
            log.warning("escalation_timed_out", escalation_id=escalation_id, timeout=timeout)
            await self._record_event(record, EventType.ESCALATION_TIMED_OUT, {"timeout": timeout})
            return TimedOut(escalation_id, timeout)

        return Resolved(escalation_id, record.resolution_notes or "")

    async def resolve(self, escalation_id: str, notes: str) -> EscalationRecord:
        """Resolve an escalation awaiting a human.

        Calling it again with the same notes is a no-op.

        Raises:
            EscalationNotFoundError: If the escalation does not exist
            InvalidTransitionError: If the escalation is not awaiting resolution,
                or was already resolved with different notes
        """
        record = self.get(escalation_id)
        if record.status == EscalationStatus.RESOLVED:
            if record.resolution_notes == notes:
                log.debug("escalation_already_resolved", escalation_id=escalation_id)
                return record
            raise InvalidTransitionError(
                record.status.value,
                EscalationStatus.RESOLVED.value,
                f"Escalation {escalation_id} was already resolved with different notes",
            )

        await self._advance(record, EscalationStatus.RESOLVED)
        record.resolution_notes = notes
        record.resolved_at = utc_now()
        await self.repository.save(record)
        await self._record_event(
            record,
            EventType.ESCALATION_RESOLVED,
            {"action_type": record.action_type, "notes": notes},
            actor=Actor.HUMAN,
        )
        self._signal(escalation_id).set()
        log.info("escalation_resolved", escalation_id=escalation_id, action=record.action_type)
        return record

    async def withdraw_for_instance(self, instance_id: str, reason: str) -> list[EscalationRecord]:
        """Close every unresolved escalation of a cancelled instance.

        Returns:
            The withdrawn records
        """
        withdrawn = []
        for record in self.repository.list_records(open_only=True):
            if record.instance_id != instance_id:
                continue
            previous = record.status
            record.status = EscalationStatus.WITHDRAWN
            record.resolution_notes = reason
            record.resolved_at = utc_now()
            await self.repository.save(record)
            await self._record_event(
                record,
                EventType.ESCALATION_WITHDRAWN,
                {"action_type": record.action_type, "from": previous.value, "reason": reason},
            )
            log.info("escalation_withdrawn", escalation_id=record.escalation_id, instance_id=instance_id)
            withdrawn.append(record)
        return withdrawn

    async def alert_operator(self, alert: Alert) -> list[DeliveryResult]:
        """Alert an operator directly, outside any workflow escalation.

        Used when the event store can neither store nor buffer an event.
        Not rate limited, and never raises.
        """
        results = await self._broadcast(self.operator_channels, alert)
        if not any(result.delivered for result in results):
            log.critical("operator_alert_undelivered", title=alert.title)
        return results
