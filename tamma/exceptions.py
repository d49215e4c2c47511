"""Custom exception hierarchy for the tamma workflow engine.

This module defines a structured exception hierarchy that enables precise
error handling throughout the engine. The gate failure classes double as the
failure taxonomy used by the Quality Gate Executor: a collaborator may raise
one of them to state its classification explicitly.

Exception Hierarchy:
    TammaError (base)
    ├── ConfigurationError
    ├── WorkflowError
    │   ├── InvalidTransitionError
    │   ├── WorkflowAlreadyActiveError
    │   ├── WorkflowNotFoundError
    │   └── UnresolvedEscalationError
    ├── GateFailure
    │   ├── TransientFailure
    │   ├── StructuralFailure
    │   └── CriticalFailure
    ├── EventStoreError
    │   ├── EventStoreUnavailable
    │   └── EventStoreWriteFailure
    ├── EscalationError
    │   └── EscalationNotFoundError
    ├── NotificationDeliveryError
    └── ExternalServiceError

Example Usage:
    >>> from tamma.exceptions import StructuralFailure
    >>> try:
    ...     token = read_token(path)
    ... except FileNotFoundError as e:
    ...     raise StructuralFailure(f"CI token file missing: {path}") from e
"""


class TammaError(Exception):
    """Base exception for all tamma errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(TammaError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.
    """

    pass


# =============================================================================
# Workflow Errors
# =============================================================================


class WorkflowError(TammaError):
    """Workflow execution errors raised by the orchestrator."""

    pass


class InvalidTransitionError(WorkflowError):
    """A state machine was asked to take a transition it does not define.

    Attributes:
        current: State the machine was in
        trigger: Trigger or target state that was rejected
    """

    def __init__(self, current: str, trigger: str, message: str | None = None) -> None:
        """Initialize exception.

        Args:
            current: State the machine was in
            trigger: Trigger or target state that was rejected
            message: Optional override for the default message
        """
        self.current = current
        self.trigger = trigger
        super().__init__(message or f"Invalid transition: '{trigger}' is not allowed from '{current}'")


class WorkflowAlreadyActiveError(WorkflowError):
    """An issue already has an active workflow instance.

    Attributes:
        issue_ref: The issue that is locked
        instance_id: The instance currently holding the lock
    """

    def __init__(self, issue_ref: str, instance_id: str) -> None:
        self.issue_ref = issue_ref
        self.instance_id = instance_id
        super().__init__(f"Issue {issue_ref} already has an active workflow (instance: {instance_id})")


class WorkflowNotFoundError(WorkflowError):
    """No workflow instance is registered under the given id."""

    pass


class UnresolvedEscalationError(WorkflowError):
    """Progress was attempted past an escalation that is not resolved.

    This is the one condition the engine treats as fatal to correctness.
    """

    def __init__(self, instance_id: str, escalation_id: str | None) -> None:
        self.instance_id = instance_id
        self.escalation_id = escalation_id
        super().__init__(
            f"Instance {instance_id} cannot advance: escalation {escalation_id} is not resolved"
        )


# =============================================================================
# Gate Failures
# =============================================================================


class GateFailure(TammaError):
    """Base class for classified quality gate failures.

    Attributes:
        diagnostic: Raw diagnostic output (logs) associated with the failure
    """

    def __init__(self, message: str, diagnostic: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Failure summary
            diagnostic: Raw logs or other diagnostic output
        """
        self.diagnostic = diagnostic
        super().__init__(message)


class TransientFailure(GateFailure):
    """Retryable failure: network timeout, rate limit, fixable code issue."""

    pass


class StructuralFailure(GateFailure):
    """Non-retryable failure: missing configuration, invalid credentials,
    corrupted environment. Retrying can never fix it."""

    pass


class CriticalFailure(GateFailure):
    """Non-retryable failure that always escalates and blocks the merge path.

    Example: a security finding above the configured CVSS threshold.
    """

    pass


# =============================================================================
# Event Store Errors
# =============================================================================


class EventStoreError(TammaError):
    """Base class for event store errors."""

    pass


class EventStoreUnavailable(EventStoreError):
    """The backing store cannot be reached. The caller buffers and retries."""

    pass


class EventStoreWriteFailure(EventStoreError):
    """An event could neither be stored nor buffered locally.

    Raised only after the operator has been alerted directly.
    """

    pass


# =============================================================================
# Escalation Errors
# =============================================================================


class EscalationError(TammaError):
    """Escalation protocol errors."""

    pass


class EscalationNotFoundError(EscalationError):
    """No escalation record exists with the given id."""

    pass


class NotificationDeliveryError(TammaError):
    """A notification channel failed to deliver an alert.

    Attributes:
        channel: Name of the channel that failed
    """

    def __init__(self, message: str, channel: str | None = None) -> None:
        self.channel = channel
        full_message = message if not channel else f"{message} (channel: {channel})"
        super().__init__(full_message)
        self.message = message


class ExternalServiceError(TammaError):
    """External service communication errors.

    Raised when communication with an AI provider or Git platform fails.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.message = message
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
