"""
Abstract base classes for the engine's external collaborators.

This module defines the contracts the orchestrator and the quality gates
consume: an AI provider that analyzes issues and produces plans and code, and
a Git platform that hosts branches, pull requests and CI. Concrete clients
(REST/GraphQL APIs, AI SDKs) live outside the engine and normalize their wire
formats into the domain models of ``tamma.models.domain``.

Failure Contract:
    Implementations may raise ``TransientFailure`` / ``StructuralFailure``
    to state a classification explicitly. Otherwise the Quality Gate Executor
    classifies what they raise: timeouts, connection errors and HTTP 429/5xx
    are transient; HTTP 401/403 and invalid credentials are structural.
"""

from abc import ABC, abstractmethod

from tamma.models.domain import (
    Analysis,
    CIStatus,
    CodeChanges,
    Issue,
    Plan,
    PullRequest,
)


class AIProvider(ABC):
    """Abstract base class for AI provider implementations.

    All methods are async and are invoked under the engine's per-call
    timeout.
    """

    @abstractmethod
    async def analyze(self, issue_content: str) -> Analysis:
        """Analyze an issue.

        Args:
            issue_content: Issue title and body as plain text

        Returns:
            Analysis describing the problem and the files it affects
        """
        pass

    @abstractmethod
    async def generate_plan(self, analysis: Analysis) -> Plan:
        """Turn an analysis into an implementation plan for human approval."""
        pass

    @abstractmethod
    async def generate_code(self, plan: Plan) -> CodeChanges:
        """Produce code changes implementing an approved plan."""
        pass


class GitPlatform(ABC):
    """Abstract base class for Git platform implementations.

    Each call participates either in a quality gate or in the merge
    transition. Implementations handle provider-specific authentication,
    pagination and naming quirks.
    """

    @abstractmethod
    async def get_issue(self, issue_ref: str) -> Issue:
        """Fetch an issue by its platform reference.

        Raises:
            StructuralFailure: If the issue does not exist
        """
        pass

    @abstractmethod
    async def create_branch(self, branch_name: str, from_branch: str | None = None) -> str:
        """Create a branch.

        Args:
            branch_name: Name of the new branch
            from_branch: Base branch (None uses the repository default)

        Returns:
            Name of the created branch. Creating an existing branch must
            succeed, so a retried action stays idempotent.
        """
        pass

    @abstractmethod
    async def push_commit(self, branch_name: str, changes: CodeChanges) -> str:
        """Commit changes to a branch.

        Returns:
            The commit SHA
        """
        pass

    @abstractmethod
    async def create_pr(self, branch_name: str, title: str, body: str) -> PullRequest:
        """Open a pull request from ``branch_name`` into the default branch."""
        pass

    @abstractmethod
    async def trigger_ci(self, branch_name: str, job: str) -> str:
        """Start a CI job ("build", "test" or "security") on a branch.

        Returns:
            The CI run id
        """
        pass

    @abstractmethod
    async def get_ci_status(self, run_id: str) -> CIStatus:
        """Get the status of a CI run, including logs and security findings."""
        pass

    @abstractmethod
    async def post_comment(self, issue_ref: str, body: str) -> None:
        """Post a comment on an issue or pull request."""
        pass

    @abstractmethod
    async def merge_pr(self, pr_number: int) -> None:
        """Merge a pull request."""
        pass
