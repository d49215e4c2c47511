"""Workflow orchestration engine.

Key Components:
    - WorkflowOrchestrator: Per-issue state machine driver and control API
    - QualityGateExecutor: Classified, bounded retries for named actions
    - EscalationManager: Human hand-off protocol with rate-limited notifications
    - transition: Pure workflow state transition function
    - RetryPolicy / RetryBudget: Immutable retry contract and pluggable counters
"""
