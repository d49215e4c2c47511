"""Pytest configuration and shared fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from tamma.config.settings import QualityGatesConfig
from tamma.engine.classifier import OutcomeClassifier
from tamma.engine.escalation import EscalationManager
from tamma.engine.escalation_store import EscalationRepository
from tamma.engine.gates import build_gates
from tamma.engine.orchestrator import WorkflowOrchestrator
from tamma.engine.quality_gate import QualityGateExecutor
from tamma.engine.rate_limit import NotificationRateLimiter
from tamma.engine.retry_policy import RetryPolicy
from tamma.enums import ChannelType
from tamma.events.backends import MemoryEventBackend
from tamma.events.buffer import EventBuffer
from tamma.events.store import EventStore
from tamma.models.domain import Analysis, CodeChanges, Issue, Plan, PullRequest
from tamma.providers.base import AIProvider, GitPlatform
from tests.helpers import RecordingChannel, ScriptedCI


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def ci() -> ScriptedCI:
    return ScriptedCI()


@pytest.fixture
def ai() -> AsyncMock:
    """AI provider returning a fixed analysis, plan and change set."""
    provider = AsyncMock(spec=AIProvider)
    provider.analyze.return_value = Analysis(summary="Null check missing", affected_files=["app.py"])
    provider.generate_plan.return_value = Plan(summary="Add a null check", steps=["guard", "test"])
    provider.generate_code.return_value = CodeChanges(
        files={"app.py": "print('fixed')\n"},
        commit_message="Add null check",
    )
    return provider


@pytest.fixture
def git(ci: ScriptedCI) -> AsyncMock:
    """Git platform whose CI calls are driven by ``ci``."""
    platform = AsyncMock(spec=GitPlatform)

    async def get_issue(issue_ref: str) -> Issue:
        return Issue(ref=issue_ref, title=f"Issue {issue_ref}", body="It crashes")

    async def create_branch(branch_name: str, from_branch: str | None = None) -> str:
        return branch_name

    async def create_pr(branch_name: str, title: str, body: str) -> PullRequest:
        return PullRequest(number=7, url="https://git.example.com/acme/app/pulls/7", branch=branch_name)

    platform.get_issue.side_effect = get_issue
    platform.create_branch.side_effect = create_branch
    platform.push_commit.return_value = "abc123"
    platform.create_pr.side_effect = create_pr
    platform.trigger_ci.side_effect = ci.trigger_ci
    platform.get_ci_status.side_effect = ci.get_ci_status
    platform.post_comment.return_value = None
    platform.merge_pr.return_value = None
    return platform


@pytest.fixture
def backend() -> MemoryEventBackend:
    return MemoryEventBackend()


@pytest.fixture
def event_store(backend: MemoryEventBackend) -> EventStore:
    """Event store over the in-memory backend with an in-memory buffer."""
    return EventStore(backend, EventBuffer(), flush_base_delay=0.01, flush_max_delay=0.05)


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the executor, recorded instead of slept."""
    return []


@pytest.fixture
def executor(event_store: EventStore, sleeps: list[float]) -> QualityGateExecutor:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return QualityGateExecutor(event_store, RetryPolicy(), classifier=OutcomeClassifier(9.0), sleep=fake_sleep)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def escalations(event_store: EventStore, channel: RecordingChannel) -> EscalationManager:
    return EscalationManager(
        event_store,
        EscalationRepository(),
        {ChannelType.CLI: channel},
        default_channels=[ChannelType.CLI],
        operator_channels=[ChannelType.CLI],
        rate_limiter=NotificationRateLimiter(limit=5),
        notification_backoff_factor=0,
    )


@pytest.fixture
def orchestrator(
    event_store: EventStore,
    executor: QualityGateExecutor,
    escalations: EscalationManager,
    ai: AsyncMock,
    git: AsyncMock,
) -> WorkflowOrchestrator:
    """Orchestrator wired with in-memory components and instant CI polling."""
    return WorkflowOrchestrator(
        event_store=event_store,
        executor=executor,
        escalations=escalations,
        ai=ai,
        git=git,
        gates=build_gates(git, QualityGatesConfig(ci_poll_interval=0), []),
    )
