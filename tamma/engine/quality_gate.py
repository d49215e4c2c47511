"""
Quality Gate Executor: run one named action with classified, bounded retries.

The executor is the only component that mutates retry counters. For each
attempt it invokes the action, classifies the outcome and records exactly
one event:

=====================  ==============================================  ==================
Outcome                Counter                                         Event
=====================  ==============================================  ==================
success                reset to 0 (``reset_on_success``)               ``<Action>Completed``
transient, below max   incremented                                     ``<Action>Retry``
transient, at max      incremented                                     ``EscalationRequired``
structural / critical  unchanged                                       ``EscalationRequired``
=====================  ==============================================  ==================

Retries re-invoke the whole action after ``policy.delay_for(counter)``
seconds (2s, 4s, 8s with the default policy). The executor never calls the
escalation manager itself; ``GateEscalation`` is a signal for the
orchestrator.

Example:
    >>> executor = QualityGateExecutor(event_store, RetryPolicy())
    >>> result = await executor.execute(instance_id, "build", build_gate.run, correlation_id=cid)
    >>> if isinstance(result, GateEscalation):
    ...     await orchestrator.block(result)
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from tamma.engine.classifier import Classification, OutcomeClassifier
from tamma.engine.retry_policy import PerActionRetryBudget, RetryBudget, RetryPolicy
from tamma.enums import Actor, OutcomeKind
from tamma.events.store import EventStore
from tamma.models.domain import GateAttempt, GateOutcome
from tamma.models.events import Event, EventType, action_event_type

log = structlog.get_logger(__name__)

GateInvoker = Callable[[], Awaitable[Any]]

DEFAULT_DIAGNOSTIC_LIMIT = 4096


@dataclass
class GateSuccess:
    """The action succeeded."""

    action_type: str
    retries_used: int
    value: Any = None
    summary: str = ""


@dataclass
class GateRetrying:
    """A transient failure was recorded; the action should run again after ``delay``."""

    action_type: str
    attempt: int
    delay: float
    summary: str = ""


@dataclass
class GateEscalation:
    """The action needs a human: retries are exhausted or the failure is not retryable."""

    action_type: str
    reason: str
    reason_type: OutcomeKind
    attempt: int
    retry_history: list[GateAttempt] = field(default_factory=list)
    diagnostic: str = ""


GateResult = GateSuccess | GateRetrying | GateEscalation


def truncate_diagnostic(text: str, limit: int = DEFAULT_DIAGNOSTIC_LIMIT) -> str:
    """Keep the last ``limit`` bytes of a diagnostic, where build logs put the error."""
    encoded = text.encode("utf-8")
    if len(encoded) <= limit:
        return text
    marker = "...[truncated]\n"
    tail = encoded[-(limit - len(marker)) :].decode("utf-8", errors="ignore")
    return marker + tail


class QualityGateExecutor:
    """Execute named actions under a retry policy and record every attempt."""

    def __init__(
        self,
        event_store: EventStore,
        policy: RetryPolicy,
        *,
        budget: RetryBudget | None = None,
        classifier: OutcomeClassifier | None = None,
        diagnostic_limit: int = DEFAULT_DIAGNOSTIC_LIMIT,
        call_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.event_store = event_store
        self.policy = policy
        self.budget = budget or PerActionRetryBudget(policy)
        self.classifier = classifier or OutcomeClassifier()
        self.diagnostic_limit = diagnostic_limit
        self.call_timeout = call_timeout
        self._sleep = sleep

    def counter(self, instance_id: str, action_type: str) -> int:
        """Current retry counter for (instance, action)."""
        return self.budget.counter(instance_id, action_type)

    def reset(self, instance_id: str, action_type: str) -> None:
        """Reset the counter after the action's escalation was resolved."""
        self.budget.reset(instance_id, action_type)
        log.debug("retry_counter_reset", instance_id=instance_id, action=action_type)

    def restore(self, instance_id: str, action_type: str, counter: int, history: list[GateAttempt]) -> None:
        """Continue a recovered instance's counter instead of starting over."""
        self.budget.restore(instance_id, action_type, counter, history)
        log.info("retry_counter_restored", instance_id=instance_id, action=action_type, counter=counter)

    def discard(self, instance_id: str) -> None:
        self.budget.discard(instance_id)

    async def execute(
        self,
        instance_id: str,
        action_type: str,
        invoker: GateInvoker,
        *,
        correlation_id: str | None = None,
    ) -> GateSuccess | GateEscalation:
        """Run an action until it succeeds or needs escalation.

        Args:
            instance_id: Owning workflow instance
            action_type: Action name, e.g. "build" or "static-analysis"
            invoker: Zero-argument coroutine function performing one attempt
            correlation_id: Correlation id for recorded events (defaults to instance_id)

        Returns:
            GateSuccess or GateEscalation. Cancellation of the calling task
            stops retries immediately.
        """
        while True:
            result = await self.attempt(instance_id, action_type, invoker, correlation_id=correlation_id)
            if isinstance(result, GateRetrying):
                await self._sleep(result.delay)
                continue
            return result

    async def attempt(
        self,
        instance_id: str,
        action_type: str,
        invoker: GateInvoker,
        *,
        correlation_id: str | None = None,
    ) -> GateResult:
        """Invoke the action once, classify the outcome and record it."""
        correlation_id = correlation_id or instance_id
        classification, value = await self._invoke(action_type, invoker)
        classification.diagnostic = truncate_diagnostic(classification.diagnostic, self.diagnostic_limit)

        if classification.kind == OutcomeKind.SUCCESS:
            return await self._on_success(instance_id, correlation_id, action_type, classification, value)

        if classification.kind.is_retryable:
            return await self._on_transient(instance_id, correlation_id, action_type, classification)

        return await self._on_non_retryable(instance_id, correlation_id, action_type, classification)

    async def _invoke(self, action_type: str, invoker: GateInvoker) -> tuple[Classification, Any]:
        try:
            if self.call_timeout is not None:
                raw = await asyncio.wait_for(invoker(), timeout=self.call_timeout)
            else:
                raw = await invoker()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.debug("gate_invocation_raised", action=action_type, error=str(e), error_type=type(e).__name__)
            return self.classifier.classify_exception(e), None

        if isinstance(raw, GateOutcome):
            return self.classifier.classify_outcome(raw), raw.value
        return Classification(OutcomeKind.SUCCESS, ""), raw

    async def _record(self, correlation_id: str, event_type: str, payload: dict[str, Any]) -> None:
        await self.event_store.append(
            Event(correlation_id=correlation_id, type=event_type, actor=Actor.SYSTEM, payload=payload)
        )

    async def _on_success(
        self,
        instance_id: str,
        correlation_id: str,
        action_type: str,
        classification: Classification,
        value: Any,
    ) -> GateSuccess:
        retries_used = self.budget.counter(instance_id, action_type)
        counter = self.budget.record_success(instance_id, action_type)
        await self._record(
            correlation_id,
            action_event_type(action_type, "Completed"),
            {
                "action_type": action_type,
                "status": "success",
                "attempt": retries_used + 1,
                "retries_used": retries_used,
                "counter": counter,
                "summary": classification.summary,
            },
        )
        log.info(
            "gate_completed",
            instance_id=instance_id,
            action=action_type,
            retries_used=retries_used,
        )
        return GateSuccess(
            action_type=action_type,
            retries_used=retries_used,
            value=value,
            summary=classification.summary,
        )

    async def _on_transient(
        self,
        instance_id: str,
        correlation_id: str,
        action_type: str,
        classification: Classification,
    ) -> GateRetrying | GateEscalation:
        counter = self.budget.record_failure(
            instance_id,
            GateAttempt(
                action_type=action_type,
                attempt=self.budget.counter(instance_id, action_type) + 1,
                outcome=classification.kind,
                summary=classification.summary,
                diagnostic=classification.diagnostic,
            ),
        )

        if self.policy.is_exhausted(counter):
            history = self.budget.history(instance_id, action_type)
            reason = f"{action_type} failed {counter} times: {classification.summary}"
            await self._record_escalation(
                correlation_id, action_type, counter, counter, reason, classification, history
            )
            log.warning(
                "gate_retries_exhausted",
                instance_id=instance_id,
                action=action_type,
                attempts=counter,
            )
            return GateEscalation(
                action_type=action_type,
                reason=reason,
                reason_type=classification.kind,
                attempt=counter,
                retry_history=history,
                diagnostic=classification.diagnostic,
            )

        delay = self.policy.delay_for(counter)
        await self._record(
            correlation_id,
            action_event_type(action_type, "Retry"),
            {
                "action_type": action_type,
                "attempt": counter,
                "outcome": "failure",
                "failure_kind": classification.kind.value,
                "summary": classification.summary,
                "diagnostic": classification.diagnostic,
                "delay": delay,
            },
        )
        log.info(
            "gate_retry_scheduled",
            instance_id=instance_id,
            action=action_type,
            attempt=counter,
            delay=delay,
            error=classification.summary,
        )
        return GateRetrying(action_type=action_type, attempt=counter, delay=delay, summary=classification.summary)

    async def _on_non_retryable(
        self,
        instance_id: str,
        correlation_id: str,
        action_type: str,
        classification: Classification,
    ) -> GateEscalation:
        history = self.budget.history(instance_id, action_type)
        counter = self.budget.counter(instance_id, action_type)
        await self._record_escalation(
            correlation_id, action_type, 0, counter, classification.summary, classification, history
        )
        log.warning(
            "gate_failed_not_retryable",
            instance_id=instance_id,
            action=action_type,
            outcome=classification.kind.value,
            error=classification.summary,
        )
        return GateEscalation(
            action_type=action_type,
            reason=classification.summary,
            reason_type=classification.kind,
            attempt=0,
            retry_history=history,
            diagnostic=classification.diagnostic,
        )

    async def _record_escalation(
        self,
        correlation_id: str,
        action_type: str,
        attempt: int,
        counter: int,
        reason: str,
        classification: Classification,
        history: list[GateAttempt],
    ) -> None:
        await self._record(
            correlation_id,
            EventType.ESCALATION_REQUIRED,
            {
                "action_type": action_type,
                "attempt": attempt,
                "counter": counter,
                "reason": reason,
                "reason_type": classification.kind.value,
                "retry_history": [item.to_dict() for item in history],
                "diagnostic": classification.diagnostic,
            },
        )
