"""Domain and event models for the workflow engine.

Key Models:
    - Event: Immutable audit-trail entry
    - EventFilter / EventPage: Query and pagination for the event store
    - WorkflowInstance: One workflow per issue
    - EscalationRecord: Mandatory human hand-off
    - GateOutcome / GateAttempt: Raw and recorded quality gate attempts
    - Issue, Analysis, Plan, CodeChanges, PullRequest, CIStatus: collaborator payloads
"""
