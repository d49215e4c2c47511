"""Tests for tamma/engine/gates.py and tamma/engine/analyzers.py."""

from unittest.mock import AsyncMock, patch

import pytest

from tamma.config.settings import QualityGatesConfig
from tamma.engine.analyzers import Analyzer, probe_analyzers
from tamma.engine.gates import (
    BuildGate,
    GateContext,
    SecurityScanGate,
    StaticAnalysisGate,
    TestGate,
    build_gates,
)
from tamma.enums import OutcomeKind
from tamma.exceptions import TransientFailure
from tamma.models.domain import CIStatus
from tests.helpers import critical_finding

CONTEXT = GateContext(instance_id="inst-1", issue_ref="101", branch="tamma/issue-101")


def installed(*binaries: str):
    return lambda name: f"/usr/bin/{name}" if name in binaries else None


class TestCIGates:
    @pytest.mark.asyncio
    async def test_success(self, git, ci):
        outcome = await BuildGate(git, poll_interval=0).run(CONTEXT)

        assert outcome.passed
        git.trigger_ci.assert_awaited_once_with("tamma/issue-101", "build")

    @pytest.mark.asyncio
    async def test_failure_summary_has_last_log_line(self, git, ci):
        ci.queue("test", CIStatus(run_id="", state="failure", logs="running\nFAILED test_login\n"))

        outcome = await TestGate(git, poll_interval=0).run(CONTEXT)

        assert not outcome.passed
        assert outcome.failure_kind is None
        assert outcome.summary.endswith("FAILED test_login")

    @pytest.mark.asyncio
    async def test_infrastructure_error_is_transient(self, git, ci):
        ci.queue("build", "error")

        outcome = await BuildGate(git, poll_interval=0).run(CONTEXT)

        assert outcome.failure_kind == OutcomeKind.TRANSIENT_FAILURE

    @pytest.mark.asyncio
    async def test_polls_until_finished(self):
        git = AsyncMock()
        git.trigger_ci.return_value = "run-1"
        git.get_ci_status.side_effect = [
            CIStatus(run_id="run-1", state="pending"),
            CIStatus(run_id="run-1", state="running"),
            CIStatus(run_id="run-1", state="success"),
        ]
        sleep = AsyncMock()

        outcome = await BuildGate(git, poll_interval=15, sleep=sleep).run(CONTEXT)

        assert outcome.passed
        assert sleep.await_count == 2
        sleep.assert_awaited_with(15)

    @pytest.mark.asyncio
    async def test_poll_timeout_is_transient(self):
        git = AsyncMock()
        git.trigger_ci.return_value = "run-1"
        git.get_ci_status.return_value = CIStatus(run_id="run-1", state="running")
        ticks = iter([0.0, 10.0, 20.0])

        gate = BuildGate(git, poll_interval=0, timeout=15, sleep=AsyncMock(), clock=lambda: next(ticks))

        with pytest.raises(TransientFailure, match="did not finish"):
            await gate.run(CONTEXT)

    @pytest.mark.asyncio
    async def test_security_findings_are_reported(self, git, ci):
        ci.queue("security", CIStatus(run_id="", state="success", findings=[critical_finding()]))

        outcome = await SecurityScanGate(git, poll_interval=0).run(CONTEXT)

        assert outcome.passed
        assert outcome.findings[0].cvss == 9.8


class TestStaticAnalysisGate:
    @pytest.mark.asyncio
    async def test_no_analyzers_passes(self, tmp_path):
        outcome = await StaticAnalysisGate(tmp_path, []).run(CONTEXT)

        assert outcome.passed

    @pytest.mark.asyncio
    async def test_runs_each_analyzer(self, tmp_path):
        with patch("tamma.engine.gates.run_command", AsyncMock(return_value=("", "", 0))) as run:
            outcome = await StaticAnalysisGate(tmp_path, [Analyzer.RUFF, Analyzer.PYLINT]).run(CONTEXT)

        assert outcome.passed
        assert run.await_count == 2
        assert run.await_args_list[0].args == Analyzer.RUFF.command

    @pytest.mark.asyncio
    async def test_reports_failing_analyzer(self, tmp_path):
        results = [("", "", 0), ("app.py:1: E999 syntax error\n", "", 1)]
        with patch("tamma.engine.gates.run_command", AsyncMock(side_effect=results)):
            outcome = await StaticAnalysisGate(tmp_path, [Analyzer.RUFF, Analyzer.PYLINT]).run(CONTEXT)

        assert not outcome.passed
        assert "pylint" in outcome.summary
        assert "E999" in outcome.diagnostic


class TestProbeAnalyzers:
    def test_requires_binary_and_marker(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project]\n")

        found = probe_analyzers(tmp_path, which=installed("ruff", "eslint"))

        assert found == [Analyzer.RUFF]

    def test_restrict_to_names(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text("[project]\n")

        found = probe_analyzers(tmp_path, only=["pylint"], which=installed("ruff", "pylint"))

        assert found == [Analyzer.PYLINT]

    def test_unknown_name(self, tmp_path):
        with pytest.raises(ValueError):
            probe_analyzers(tmp_path, only=["jslint"])

    def test_capabilities(self):
        assert "python" in Analyzer.RUFF.spec.capabilities
        assert "ruby" in Analyzer.RUBOCOP.spec.capabilities


class TestBuildGates:
    def test_configured_order(self, git):
        gates = build_gates(git, QualityGatesConfig(order=["security", "build"]), [])

        assert list(gates) == ["security", "build"]
        assert isinstance(gates["security"], SecurityScanGate)

    def test_default_order(self, git):
        assert list(build_gates(git, QualityGatesConfig(), [])) == [
            "build",
            "test",
            "static-analysis",
            "security",
        ]
