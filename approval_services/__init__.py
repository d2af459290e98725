"""
approval_services -- Package init and public API.

Responsibility:
    Outer orchestration over the approval kernel: transaction ownership,
    optimistic retry, post-commit events, and deferred action replay over
    HTTP.  This is the only layer that commits or performs network I/O.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        approval_services/ -> approval_kernel/, approval_engines/, approval_config/
        approval_kernel/   -> approval_services/ (FORBIDDEN)
        approval_engines/  -> approval_services/ (FORBIDDEN)
"""

from approval_services.events import InMemoryEventSink, LoggingEventSink
from approval_services.orchestrator import (
    ApprovalOrchestrator,
    DecisionSubmission,
    UnitServices,
)
from approval_services.permissions import StaticPermissionChecker
from approval_services.replay_executor import ReplayExecutor

__all__ = [
    "ApprovalOrchestrator",
    "DecisionSubmission",
    "InMemoryEventSink",
    "LoggingEventSink",
    "ReplayExecutor",
    "StaticPermissionChecker",
    "UnitServices",
]
