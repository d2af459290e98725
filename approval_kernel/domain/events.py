"""
Domain events emitted by the approval kernel.

Events are collected while a unit of work runs and published by the
orchestrator only after the transaction commits, so consumers never
observe a decision that was rolled back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

SOLICITATION_CREATED = "solicitation.created"
DECISION_PROCESSED = "decision.processed"
SOLICITATION_APPROVED = "solicitation.approved"
SOLICITATION_REJECTED = "solicitation.rejected"
SOLICITATION_CANCELLED = "solicitation.cancelled"
SOLICITATION_EXPIRED = "solicitation.expired"
SOLICITATION_EXECUTED = "solicitation.executed"
SOLICITATION_EXECUTION_FAILED = "solicitation.execution_failed"
DELEGATION_CREATED = "delegation.created"
DELEGATION_REVOKED = "delegation.revoked"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    occurred_at: datetime
    subject_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)
