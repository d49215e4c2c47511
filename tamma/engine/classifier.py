"""
Outcome classification for quality gate attempts.

Every attempt ends as exactly one of success, transient failure, structural
failure or critical failure. The classifier looks, in order, at:

1. Explicit classification: ``TransientFailure`` / ``StructuralFailure`` /
   ``CriticalFailure`` raised by a collaborator, or ``GateOutcome.failure_kind``.
2. Security findings at or above the CVSS threshold (critical).
3. Exception types and HTTP status codes.
4. Known message patterns.

Anything still unknown is a transient failure: most gate failures are code
issues a retry of the whole action can fix.
"""

import subprocess
from dataclasses import dataclass

import httpx

from tamma.enums import OutcomeKind
from tamma.exceptions import (
    CriticalFailure,
    ExternalServiceError,
    GateFailure,
    StructuralFailure,
    TransientFailure,
)
from tamma.models.domain import GateOutcome, SecurityFinding

TRANSIENT_PATTERNS = (
    "connection timeout",
    "connection refused",
    "connection lost",
    "connection reset",
    "timeout expired",
    "timed out",
    "rate limit",
    "too many requests",
    "temporarily unavailable",
    "service unavailable",
    "dependency not found",
    "econnreset",
    "econnrefused",
    "etimedout",
    "enotfound",
    "ehostunreach",
    "enetunreach",
    "epipe",
    "eai_again",
)

STRUCTURAL_PATTERNS = (
    "invalid credentials",
    "bad credentials",
    "authentication failed",
    "unauthorized",
    "forbidden",
    "permission denied",
    "missing config",
    "missing configuration",
    "not configured",
    "corrupted",
    "command not found",
)

STRUCTURAL_STATUS_CODES = {401, 403}


@dataclass
class Classification:
    """Result of classifying one attempt."""

    kind: OutcomeKind
    summary: str
    diagnostic: str = ""


class OutcomeClassifier:
    """Map raw gate outcomes and exceptions onto ``OutcomeKind``."""

    def __init__(self, cvss_threshold: float = 9.0) -> None:
        self.cvss_threshold = cvss_threshold

    def critical_findings(self, findings: list[SecurityFinding]) -> list[SecurityFinding]:
        return [finding for finding in findings if finding.cvss >= self.cvss_threshold]

    def classify_outcome(self, outcome: GateOutcome) -> Classification:
        """Classify an outcome returned (not raised) by a gate invoker."""
        critical = self.critical_findings(outcome.findings)
        if critical:
            worst = max(critical, key=lambda finding: finding.cvss)
            return Classification(
                kind=OutcomeKind.CRITICAL_FAILURE,
                summary=(
                    f"{len(critical)} security finding(s) at or above CVSS {self.cvss_threshold}: "
                    f"{worst.id} ({worst.title}, CVSS {worst.cvss})"
                ),
                diagnostic=outcome.diagnostic,
            )

        if outcome.passed:
            return Classification(OutcomeKind.SUCCESS, outcome.summary, outcome.diagnostic)

        if outcome.failure_kind is not None:
            return Classification(outcome.failure_kind, outcome.summary, outcome.diagnostic)

        kind = self._classify_text(f"{outcome.summary}\n{outcome.diagnostic}")
        return Classification(kind, outcome.summary or "gate failed", outcome.diagnostic)

    def classify_exception(self, error: BaseException) -> Classification:
        """Classify an exception raised by a gate invoker."""
        summary = str(error) or type(error).__name__
        diagnostic = ""

        if isinstance(error, GateFailure):
            diagnostic = error.diagnostic or ""
            if isinstance(error, CriticalFailure):
                return Classification(OutcomeKind.CRITICAL_FAILURE, summary, diagnostic)
            if isinstance(error, StructuralFailure):
                return Classification(OutcomeKind.STRUCTURAL_FAILURE, summary, diagnostic)
            if isinstance(error, TransientFailure):
                return Classification(OutcomeKind.TRANSIENT_FAILURE, summary, diagnostic)

        if isinstance(error, (FileNotFoundError, PermissionError, NotADirectoryError)):
            return Classification(OutcomeKind.STRUCTURAL_FAILURE, summary)

        if isinstance(error, (TimeoutError, ConnectionError, httpx.TransportError)):
            return Classification(OutcomeKind.TRANSIENT_FAILURE, summary)

        status_code = self._status_code(error)
        if status_code is not None:
            if status_code == 429 or status_code >= 500:
                return Classification(OutcomeKind.TRANSIENT_FAILURE, summary)
            if status_code in STRUCTURAL_STATUS_CODES and "rate limit" not in summary.lower():
                return Classification(OutcomeKind.STRUCTURAL_FAILURE, summary)

        if isinstance(error, subprocess.CalledProcessError):
            diagnostic = f"{error.stdout or ''}\n{error.stderr or ''}".strip()

        return Classification(self._classify_text(f"{summary}\n{diagnostic}"), summary, diagnostic)

    @staticmethod
    def _status_code(error: BaseException) -> int | None:
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code
        if isinstance(error, ExternalServiceError):
            return error.status_code
        return None

    @staticmethod
    def _classify_text(text: str) -> OutcomeKind:
        lowered = text.lower()
        # Platforms answer rate limiting with 403 bodies
        if any(pattern in lowered for pattern in TRANSIENT_PATTERNS):
            return OutcomeKind.TRANSIENT_FAILURE
        if any(pattern in lowered for pattern in STRUCTURAL_PATTERNS):
            return OutcomeKind.STRUCTURAL_FAILURE
        return OutcomeKind.TRANSIENT_FAILURE
