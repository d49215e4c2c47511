"""
Workflow state machine with pure transition functions.

The orchestrator never assigns a state directly: it asks ``transition`` for
the next state given the current one and a trigger, and records the result as
a ``WorkflowStateChanged`` event. Anything the table below does not define
raises ``InvalidTransitionError``.

Transition Table:
    Selected              --pickup-->            Analyzing
    Analyzing             --analysis_complete--> AwaitingPlanApproval
    AwaitingPlanApproval  --plan_approved-->     Implementing
    Implementing          --changes_produced-->  QualityGates
    QualityGates          --gates_passed-->      AwaitingMergeApproval
    AwaitingMergeApproval --merged-->            Merged
    any non-terminal      --escalate-->          Blocked
    Blocked               --resolved-->          <state it was blocked from>
    any non-terminal      --cancel-->            Cancelled
"""

from enum import Enum

from tamma.enums import WorkflowState
from tamma.exceptions import InvalidTransitionError


class Trigger(str, Enum):
    """Inputs that move a workflow instance between states."""

    PICKUP = "pickup"
    ANALYSIS_COMPLETE = "analysis_complete"
    PLAN_APPROVED = "plan_approved"
    CHANGES_PRODUCED = "changes_produced"
    GATES_PASSED = "gates_passed"
    MERGED = "merged"
    ESCALATE = "escalate"
    RESOLVED = "resolved"
    CANCEL = "cancel"

    def __str__(self) -> str:
        return self.value


_FORWARD: dict[tuple[WorkflowState, Trigger], WorkflowState] = {
    (WorkflowState.SELECTED, Trigger.PICKUP): WorkflowState.ANALYZING,
    (WorkflowState.ANALYZING, Trigger.ANALYSIS_COMPLETE): WorkflowState.AWAITING_PLAN_APPROVAL,
    (WorkflowState.AWAITING_PLAN_APPROVAL, Trigger.PLAN_APPROVED): WorkflowState.IMPLEMENTING,
    (WorkflowState.IMPLEMENTING, Trigger.CHANGES_PRODUCED): WorkflowState.QUALITY_GATES,
    (WorkflowState.QUALITY_GATES, Trigger.GATES_PASSED): WorkflowState.AWAITING_MERGE_APPROVAL,
    (WorkflowState.AWAITING_MERGE_APPROVAL, Trigger.MERGED): WorkflowState.MERGED,
}


def transition(
    state: WorkflowState,
    trigger: Trigger,
    resume_to: WorkflowState | None = None,
) -> WorkflowState:
    """Compute the next state.

    Args:
        state: Current state
        trigger: What happened
        resume_to: For ``Trigger.RESOLVED`` only, the state the instance was
            in when it was blocked

    Returns:
        The next state

    Raises:
        InvalidTransitionError: If the transition is not defined
    """
    if state.is_terminal:
        raise InvalidTransitionError(state.value, trigger.value, f"'{state}' is terminal")

    if trigger == Trigger.CANCEL:
        return WorkflowState.CANCELLED

    if trigger == Trigger.ESCALATE:
        if state == WorkflowState.BLOCKED:
            raise InvalidTransitionError(state.value, trigger.value, "Instance is already blocked")
        return WorkflowState.BLOCKED

    if trigger == Trigger.RESOLVED:
        if state != WorkflowState.BLOCKED:
            raise InvalidTransitionError(state.value, trigger.value)
        if resume_to is None or resume_to.is_terminal or resume_to == WorkflowState.BLOCKED:
            raise InvalidTransitionError(
                state.value,
                trigger.value,
                f"Cannot resume from Blocked to {resume_to}",
            )
        return resume_to

    next_state = _FORWARD.get((state, trigger))
    if next_state is None:
        raise InvalidTransitionError(state.value, trigger.value)
    return next_state


def allowed_triggers(state: WorkflowState) -> list[Trigger]:
    """List the triggers ``transition`` accepts from a state."""
    if state.is_terminal:
        return []
    triggers = [trigger for (source, trigger) in _FORWARD if source == state]
    if state == WorkflowState.BLOCKED:
        triggers.append(Trigger.RESOLVED)
    else:
        triggers.append(Trigger.ESCALATE)
    triggers.append(Trigger.CANCEL)
    return triggers
