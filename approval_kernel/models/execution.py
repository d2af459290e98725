"""
Module: approval_kernel.models.execution
Responsibility: ORM persistence for replay attempts of approved solicitations.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - Append-only: one row per attempt, never updated or deleted.  A failed
      row is the execution-failure record an operator reconciles from.
    - Attempts are numbered 1, 2, ... per solicitation.

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.approval import ReplayExecution
from approval_kernel.exceptions import ImmutabilityViolationError


class ReplayExecutionModel(Base):
    """One replay attempt of a deferred request."""

    __tablename__ = "approval_replay_executions"

    __table_args__ = (
        UniqueConstraint("solicitation_id", "attempt_number"),
        Index("ix_approval_replay_executions_solicitation", "solicitation_id", "attempted_at"),
    )

    solicitation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_solicitations.id"),
        nullable=False,
    )
    attempt_number: Mapped[int] = mapped_column(nullable=False)
    success: Mapped[bool] = mapped_column(nullable=False)
    status_code: Mapped[int | None] = mapped_column(nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    triggered_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ReplayExecution {self.id} solicitation={self.solicitation_id} "
            f"success={self.success}>"
        )

    def to_dto(self) -> ReplayExecution:
        return ReplayExecution(
            id=self.id,
            solicitation_id=self.solicitation_id,
            success=self.success,
            attempted_at=self.attempted_at,
            attempt_number=self.attempt_number,
            triggered_by=self.triggered_by,
            status_code=self.status_code,
            error=self.error,
            details=dict(self.details or {}),
        )


@event.listens_for(ReplayExecutionModel, "before_update")
def prevent_execution_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ReplayExecution",
        entity_id=str(target.id),
        reason="Replay attempts are append-only -- cannot modify",
    )


@event.listens_for(ReplayExecutionModel, "before_delete")
def prevent_execution_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="ReplayExecution",
        entity_id=str(target.id),
        reason="Replay attempts are append-only -- cannot delete",
    )
