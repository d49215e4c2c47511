"""
Retry policy and retry budgets for the Quality Gate Executor.

``RetryPolicy`` is an immutable value built once from configuration and
handed to the executor at construction. Retry counters live in a
``RetryBudget``; the budget decides what a counter is keyed on:

- ``PerActionRetryBudget`` (default): one counter per (instance, action).
  Success on ``build`` never affects the ``test`` counter.
- ``CumulativeRetryBudget``: one counter per instance shared by all of its
  actions, so a workflow gets ``max_attempts`` retries in total.

Example:
    >>> policy = RetryPolicy(max_attempts=3, backoff_base=2.0, backoff_multiplier=2.0)
    >>> [policy.delay_for(n) for n in (1, 2, 3)]
    [2.0, 4.0, 8.0]
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from tamma.config.settings import RetryConfig
from tamma.enums import OutcomeKind
from tamma.models.domain import GateAttempt


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded, backed-off retry contract."""

    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_multiplier: float = 2.0
    reset_on_success: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")

    def delay_for(self, counter: int) -> float:
        """Backoff before re-invoking after the ``counter``-th transient failure."""
        return self.backoff_base * self.backoff_multiplier ** (counter - 1)

    def is_exhausted(self, counter: int) -> bool:
        return counter >= self.max_attempts

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_multiplier=config.backoff_multiplier,
            reset_on_success=config.reset_on_success,
        )


@dataclass
class RetryableAction:
    """Retry state of one action within one instance.

    Mutated only by the Quality Gate Executor running on the owning
    instance's task.
    """

    action_type: str
    policy: RetryPolicy
    attempt_number: int = 0
    last_outcome: OutcomeKind | None = None
    history: list[GateAttempt] = field(default_factory=list)
    """Transient failures since the counter was last reset."""

    def reset(self) -> None:
        self.attempt_number = 0
        self.history.clear()


class RetryBudget(ABC):
    """Where retry counters live and what they are keyed on."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self._actions: dict[tuple[str, str], RetryableAction] = {}

    def action(self, instance_id: str, action_type: str) -> RetryableAction:
        """Get or create the retry state for an action."""
        key = (instance_id, action_type)
        if key not in self._actions:
            self._actions[key] = RetryableAction(action_type=action_type, policy=self.policy)
        return self._actions[key]

    @abstractmethod
    def counter(self, instance_id: str, action_type: str) -> int:
        """Current retry counter observed for an action."""
        pass

    @abstractmethod
    def record_failure(self, instance_id: str, attempt: GateAttempt) -> int:
        """Count a transient failure and return the new counter."""
        pass

    @abstractmethod
    def record_success(self, instance_id: str, action_type: str) -> int:
        """Record a success and return the counter afterwards."""
        pass

    @abstractmethod
    def reset(self, instance_id: str, action_type: str) -> None:
        """Reset after a human resolved the action's escalation."""
        pass

    def history(self, instance_id: str, action_type: str) -> list[GateAttempt]:
        return list(self.action(instance_id, action_type).history)

    def restore(self, instance_id: str, action_type: str, counter: int, history: list[GateAttempt]) -> None:
        """Seed an action's counter and history replayed from the event log."""
        action = self.action(instance_id, action_type)
        action.attempt_number = counter
        action.history = list(history)
        if history:
            action.last_outcome = history[-1].outcome

    def discard(self, instance_id: str) -> None:
        """Forget every counter of a finished instance."""
        for key in [key for key in self._actions if key[0] == instance_id]:
            del self._actions[key]


class PerActionRetryBudget(RetryBudget):
    """One independent counter per (instance, action)."""

    def counter(self, instance_id: str, action_type: str) -> int:
        return self.action(instance_id, action_type).attempt_number

    def record_failure(self, instance_id: str, attempt: GateAttempt) -> int:
        action = self.action(instance_id, attempt.action_type)
        action.attempt_number += 1
        action.last_outcome = attempt.outcome
        action.history.append(attempt)
        return action.attempt_number

    def record_success(self, instance_id: str, action_type: str) -> int:
        action = self.action(instance_id, action_type)
        action.last_outcome = OutcomeKind.SUCCESS
        if self.policy.reset_on_success:
            action.reset()
        return action.attempt_number

    def reset(self, instance_id: str, action_type: str) -> None:
        self.action(instance_id, action_type).reset()


class CumulativeRetryBudget(RetryBudget):
    """One counter per instance, shared across all of its actions.

    Success on one action does not refill the budget; only a resolved
    escalation does.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        super().__init__(policy)
        self._totals: dict[str, int] = {}

    def counter(self, instance_id: str, action_type: str) -> int:
        return self._totals.get(instance_id, 0)

    def record_failure(self, instance_id: str, attempt: GateAttempt) -> int:
        action = self.action(instance_id, attempt.action_type)
        action.last_outcome = attempt.outcome
        action.history.append(attempt)
        total = self._totals.get(instance_id, 0) + 1
        self._totals[instance_id] = total
        action.attempt_number = total
        return total

    def record_success(self, instance_id: str, action_type: str) -> int:
        action = self.action(instance_id, action_type)
        action.last_outcome = OutcomeKind.SUCCESS
        action.history.clear()
        return self._totals.get(instance_id, 0)

    def history(self, instance_id: str, action_type: str) -> list[GateAttempt]:
        attempts = [
            attempt
            for (owner, _), action in self._actions.items()
            if owner == instance_id
            for attempt in action.history
        ]
        return sorted(attempts, key=lambda attempt: attempt.timestamp)

    def reset(self, instance_id: str, action_type: str) -> None:
        self._totals[instance_id] = 0
        for (owner, _), action in self._actions.items():
            if owner == instance_id:
                action.reset()

    def restore(self, instance_id: str, action_type: str, counter: int, history: list[GateAttempt]) -> None:
        super().restore(instance_id, action_type, counter, history)
        self._totals[instance_id] = max(self._totals.get(instance_id, 0), counter)

    def discard(self, instance_id: str) -> None:
        super().discard(instance_id)
        self._totals.pop(instance_id, None)


def build_budget(scope: str, policy: RetryPolicy) -> RetryBudget:
    """Create the budget selected by ``retry.budget_scope``."""
    if scope == "per_action":
        return PerActionRetryBudget(policy)
    if scope == "cumulative":
        return CumulativeRetryBudget(policy)
    raise ValueError(f"Unknown retry budget scope: {scope}")
