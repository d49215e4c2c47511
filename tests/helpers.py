"""Test doubles and async helpers shared by unit and integration tests."""

from collections import defaultdict

from tamma.engine.orchestrator import WorkflowOrchestrator
from tamma.enums import ChannelType, EscalationStatus, WorkflowState
from tamma.exceptions import NotificationDeliveryError
from tamma.models.domain import CIStatus, SecurityFinding
from tamma.notifications.base import Alert, DeliveryResult, NotificationChannel

WAIT = 5.0


class RecordingChannel(NotificationChannel):
    """Channel that keeps every alert it was asked to send.

    ``failures`` makes the next N sends raise ``NotificationDeliveryError``.
    """

    def __init__(self, channel_type: ChannelType = ChannelType.CLI, failures: int = 0) -> None:
        self.channel_type = channel_type
        self.failures = failures
        self.sent: list[Alert] = []
        self.calls = 0
        self.closed = False

    async def send(self, alert: Alert) -> DeliveryResult:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise NotificationDeliveryError("channel down", self.channel_type.value)
        self.sent.append(alert)
        return DeliveryResult(channel=self.channel_type, delivered=True)

    async def close(self) -> None:
        self.closed = True


class ScriptedCI:
    """Scripted CI results per job.

    Each queued item is a state string ("success", "failure", "error"), a
    ``CIStatus`` or an exception raised from ``trigger_ci``. Jobs with
    nothing queued succeed.
    """

    def __init__(self) -> None:
        self.script: dict[str, list] = defaultdict(list)
        self.runs: dict[str, int] = defaultdict(int)
        self._statuses: dict[str, CIStatus] = {}

    def queue(self, job: str, *results) -> None:
        self.script[job].extend(results)

    async def trigger_ci(self, branch_name: str, job: str) -> str:
        self.runs[job] += 1
        run_id = f"{job}-{self.runs[job]}"
        result = self.script[job].pop(0) if self.script[job] else "success"
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, str):
            status = CIStatus(run_id=run_id, state=result, logs=f"{job} log\n{result}")
        else:
            status = CIStatus(run_id=run_id, state=result.state, logs=result.logs, findings=result.findings)
        self._statuses[run_id] = status
        return run_id

    async def get_ci_status(self, run_id: str) -> CIStatus:
        return self._statuses[run_id]


def critical_finding() -> SecurityFinding:
    return SecurityFinding(id="CVE-2024-0001", title="Remote code execution", cvss=9.8, package="left-pad")


async def run_to_merge_approval(orchestrator: WorkflowOrchestrator, issue_ref: str) -> str:
    """Start a workflow, approve its plan and wait until it awaits merge approval."""
    instance = await orchestrator.start_workflow(issue_ref)
    await orchestrator.wait_for_state(instance.instance_id, WorkflowState.AWAITING_PLAN_APPROVAL, WAIT)
    await orchestrator.approve_plan(instance.instance_id)
    await orchestrator.wait_for_state(instance.instance_id, WorkflowState.AWAITING_MERGE_APPROVAL, WAIT)
    return instance.instance_id


async def wait_for_open_escalation(orchestrator: WorkflowOrchestrator, instance_id: str) -> str:
    """Wait until the instance's escalation awaits a human and return its id."""
    snapshot = await orchestrator.wait_for(
        instance_id,
        lambda s: s.escalation_status == EscalationStatus.AWAITING_RESOLUTION,
        WAIT,
    )
    assert snapshot.open_escalation_id is not None
    return snapshot.open_escalation_id
