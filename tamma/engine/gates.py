"""
Quality gates: build, test, static analysis and security scan.

A gate performs one attempt and returns a ``GateOutcome``; it never retries
on its own. The orchestrator runs each gate through the Quality Gate
Executor, which classifies the outcome and owns retries.

CI-backed gates trigger a job on the workflow branch and poll its status at a
fixed interval up to an overall timeout. A poll timeout is a transient
failure, as is a CI infrastructure error.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from tamma.config.settings import QualityGatesConfig
from tamma.engine.analyzers import Analyzer
from tamma.enums import OutcomeKind
from tamma.exceptions import TransientFailure
from tamma.models.domain import CIStatus, GateOutcome
from tamma.providers.base import GitPlatform
from tamma.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)


@dataclass
class GateContext:
    """What a gate needs to know about the instance it runs for."""

    instance_id: str
    issue_ref: str
    branch: str


class QualityGate(ABC):
    """One named verification step."""

    name: str

    @abstractmethod
    async def run(self, context: GateContext) -> GateOutcome:
        """Perform a single attempt."""
        pass


class CIGate(QualityGate):
    """Gate backed by a CI job on the Git platform."""

    job: str

    def __init__(
        self,
        git: GitPlatform,
        poll_interval: float = 15.0,
        timeout: float = 3600.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.git = git
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep
        self._clock = clock

    async def run(self, context: GateContext) -> GateOutcome:
        run_id = await self.git.trigger_ci(context.branch, self.job)
        log.info("ci_triggered", gate=self.name, run_id=run_id, branch=context.branch)
        status = await self._poll(run_id)
        return self._outcome(status)

    async def _poll(self, run_id: str) -> CIStatus:
        deadline = self._clock() + self.timeout
        while True:
            status = await self.git.get_ci_status(run_id)
            if status.is_finished:
                return status
            if self._clock() >= deadline:
                raise TransientFailure(
                    f"CI run {run_id} for {self.name} did not finish within {self.timeout}s",
                    diagnostic=status.logs,
                )
            await self._sleep(self.poll_interval)

    def _outcome(self, status: CIStatus) -> GateOutcome:
        if status.state == "success":
            return GateOutcome(
                passed=True,
                summary=f"{self.name} passed (run {status.run_id})",
                diagnostic=status.logs,
                findings=status.findings,
            )
        if status.state == "error":
            return GateOutcome(
                passed=False,
                summary=f"CI infrastructure error in {self.name} run {status.run_id}",
                diagnostic=status.logs,
                findings=status.findings,
                failure_kind=OutcomeKind.TRANSIENT_FAILURE,
            )
        return GateOutcome(
            passed=False,
            summary=self._failure_summary(status),
            diagnostic=status.logs,
            findings=status.findings,
        )

    def _failure_summary(self, status: CIStatus) -> str:
        last_line = next((line for line in reversed(status.logs.splitlines()) if line.strip()), "")
        summary = f"{self.name} failed (run {status.run_id})"
        return f"{summary}: {last_line.strip()}" if last_line else summary


class BuildGate(CIGate):
    name = "build"
    job = "build"


class TestGate(CIGate):
    __test__ = False

    name = "test"
    job = "test"


class SecurityScanGate(CIGate):
    """Dependency and code scan whose CI status carries CVSS-scored findings.

    Findings at or above the threshold are classified as critical by the
    executor's classifier even when the scan job itself succeeded.
    """

    name = "security"
    job = "security"


class StaticAnalysisGate(QualityGate):
    """Run the analyzers probed at startup inside the workspace."""

    name = "static-analysis"

    def __init__(self, workspace: str | Path, analyzers: list[Analyzer], timeout: float = 600.0) -> None:
        self.workspace = Path(workspace)
        self.analyzers = analyzers
        self.timeout = timeout

    async def run(self, context: GateContext) -> GateOutcome:
        if not self.analyzers:
            return GateOutcome(passed=True, summary="no applicable analyzers")

        failures = []
        diagnostics = []
        for analyzer in self.analyzers:
            stdout, stderr, code = await run_command(
                *analyzer.command,
                cwd=self.workspace,
                check=False,
                timeout=self.timeout,
            )
            log.info("analyzer_finished", analyzer=analyzer.value, exit_code=code)
            if code != 0:
                failures.append(analyzer.value)
                diagnostics.append(f"$ {' '.join(analyzer.command)}\n{stdout}{stderr}")

        if failures:
            return GateOutcome(
                passed=False,
                summary=f"static analysis reported issues: {', '.join(failures)}",
                diagnostic="\n".join(diagnostics),
            )
        ran = ", ".join(analyzer.value for analyzer in self.analyzers)
        return GateOutcome(passed=True, summary=f"static analysis clean ({ran})")


def build_gates(
    git: GitPlatform,
    config: QualityGatesConfig,
    analyzers: list[Analyzer],
) -> dict[str, QualityGate]:
    """Instantiate the configured gates keyed by name, in configured order."""
    available: dict[str, QualityGate] = {
        "build": BuildGate(git, config.ci_poll_interval, config.ci_timeout),
        "test": TestGate(git, config.ci_poll_interval, config.ci_timeout),
        "static-analysis": StaticAnalysisGate(config.workspace, analyzers, config.analyzer_timeout),
        "security": SecurityScanGate(git, config.ci_poll_interval, config.ci_timeout),
    }
    return {name: available[name] for name in config.order}
