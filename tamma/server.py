"""HTTP control and query API for a running engine."""

from datetime import datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from tamma import __version__
from tamma.engine.orchestrator import WorkflowOrchestrator
from tamma.exceptions import (
    EscalationNotFoundError,
    EventStoreUnavailable,
    InvalidTransitionError,
    TammaError,
    WorkflowAlreadyActiveError,
    WorkflowNotFoundError,
)
from tamma.models.events import EventFilter

log = structlog.get_logger(__name__)


class StartWorkflowRequest(BaseModel):
    issue_ref: str = Field(..., min_length=1)


class CancelWorkflowRequest(BaseModel):
    reason: str = "cancelled by operator"


class ApprovalRequest(BaseModel):
    approver: str | None = None


class ResolveEscalationRequest(BaseModel):
    notes: str = Field(..., min_length=1)


def _http_error(error: TammaError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(error, (WorkflowNotFoundError, EscalationNotFoundError)):
        status = 404
    elif isinstance(error, (WorkflowAlreadyActiveError, InvalidTransitionError)):
        status = 409
    elif isinstance(error, EventStoreUnavailable):
        status = 503
    else:
        status = 422
    return HTTPException(status_code=status, detail=error.message)


def create_app(orchestrator: WorkflowOrchestrator) -> FastAPI:
    """Build the API around an orchestrator.

    The caller owns the orchestrator's lifecycle; ``main serve`` starts it
    before the server and shuts it down afterwards.
    """
    app = FastAPI(title="tamma workflow engine", version=__version__)
    app.state.orchestrator = orchestrator

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        """Health check endpoint."""
        snapshots = orchestrator.list_snapshots()
        return {
            "status": "healthy",
            "service": "tamma",
            "version": __version__,
            "active_workflows": sum(1 for s in snapshots if not s.is_terminal),
            "open_escalations": len(orchestrator.escalations.list_open()),
            "buffered_events": orchestrator.event_store.buffer.pending_count,
        }

    @app.get("/events")
    async def query_events(
        correlation_id: str | None = Query(default=None, alias="correlationId"),
        event_type: str | None = Query(default=None, alias="type"),
        after: datetime | None = None,
        before: datetime | None = None,
        q: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        """Read-only, paginated event query."""
        try:
            event_filter = EventFilter(
                correlation_id=correlation_id,
                type=event_type,
                after=after,
                before=before,
                full_text=q,
                limit=limit,
                offset=offset,
            )
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e)) from e

        try:
            page = await orchestrator.event_store.query(event_filter)
        except TammaError as e:
            log.error("event_query_failed", error=e.message)
            raise _http_error(e) from e

        return {
            "events": [event.model_dump(mode="json") for event in page.events],
            "total": page.total,
            "offset": page.offset,
            "limit": page.limit,
            "next_offset": page.next_offset,
        }

    @app.get("/replay/{correlation_id}")
    async def replay(correlation_id: str, upto: int | None = None) -> dict[str, Any]:
        """Reconstruct a workflow snapshot from its events."""
        try:
            snapshot = await orchestrator.event_store.replay(correlation_id, upto)
        except TammaError as e:
            raise _http_error(e) from e
        return snapshot.model_dump(mode="json")

    @app.get("/workflows")
    async def list_workflows() -> list[dict[str, Any]]:
        return [snapshot.model_dump(mode="json") for snapshot in orchestrator.list_snapshots()]

    @app.post("/workflows", status_code=201)
    async def start_workflow(request: StartWorkflowRequest) -> dict[str, Any]:
        try:
            instance = await orchestrator.start_workflow(request.issue_ref)
        except TammaError as e:
            log.warning("workflow_start_rejected", issue_ref=request.issue_ref, error=e.message)
            raise _http_error(e) from e
        return instance.to_dict()

    @app.get("/workflows/{instance_id}")
    async def get_workflow(instance_id: str) -> dict[str, Any]:
        try:
            snapshot = orchestrator.get_snapshot(instance_id)
        except TammaError as e:
            raise _http_error(e) from e
        return snapshot.model_dump(mode="json")

    @app.post("/workflows/{instance_id}/cancel")
    async def cancel_workflow(instance_id: str, request: CancelWorkflowRequest | None = None) -> dict[str, Any]:
        reason = request.reason if request is not None else CancelWorkflowRequest().reason
        try:
            snapshot = await orchestrator.cancel_workflow(instance_id, reason)
        except TammaError as e:
            raise _http_error(e) from e
        return snapshot.model_dump(mode="json")

    @app.post("/workflows/{instance_id}/approve-plan")
    async def approve_plan(instance_id: str, request: ApprovalRequest | None = None) -> dict[str, Any]:
        try:
            snapshot = await orchestrator.approve_plan(instance_id, request.approver if request else None)
        except TammaError as e:
            raise _http_error(e) from e
        return snapshot.model_dump(mode="json")

    @app.post("/workflows/{instance_id}/approve-merge")
    async def approve_merge(instance_id: str, request: ApprovalRequest | None = None) -> dict[str, Any]:
        try:
            snapshot = await orchestrator.approve_merge(instance_id, request.approver if request else None)
        except TammaError as e:
            raise _http_error(e) from e
        return snapshot.model_dump(mode="json")

    @app.get("/escalations")
    async def list_escalations(open_only: bool = True) -> list[dict[str, Any]]:
        records = orchestrator.escalations.repository.list_records(open_only=open_only)
        return [record.to_dict() for record in records]

    @app.get("/escalations/{escalation_id}")
    async def get_escalation(escalation_id: str) -> dict[str, Any]:
        try:
            record = orchestrator.escalations.get(escalation_id)
        except TammaError as e:
            raise _http_error(e) from e
        return record.to_dict()

    @app.post("/escalations/{escalation_id}/resolve")
    async def resolve_escalation(escalation_id: str, request: ResolveEscalationRequest) -> dict[str, Any]:
        try:
            record = await orchestrator.resolve_escalation(escalation_id, request.notes)
        except TammaError as e:
            log.warning("escalation_resolve_rejected", escalation_id=escalation_id, error=e.message)
            raise _http_error(e) from e
        return record.to_dict()

    return app
