"""
Module: approval_kernel.models.solicitation
Responsibility: ORM persistence for solicitations and their append-only
    decision history.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - Status values limited by a check constraint; transition rules are
      enforced by the lifecycle service.
    - Optimistic concurrency: ``version`` is the version_id_col, so the
      decision critical section is a compare-and-swap on the row.
    - No double voting: partial unique indexes on (solicitation, principal)
      and (solicitation, seat) over APPROVE/REJECT history rows.
    - History rows are numbered 1, 2, ... per solicitation; ``sequence`` is
      the recorded order, independent of clock resolution.
    - One pending solicitation per (action_type, subject_key).
    - Decision history is append-only: UPDATE and DELETE raise
      ImmutabilityViolationError at the ORM level.

Failure modes:
    - StaleDataError when a concurrent decision already bumped the version.
    - IntegrityError on a duplicate counted decision or duplicate pending
      subject.
    - ImmutabilityViolationError on history UPDATE/DELETE.

Audit relevance:
    The decision history is the sole record of how a quorum was reached.
    Counters on the solicitation must always equal the counted history
    rows.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.approval import (
    DecisionAction,
    DecisionRecord,
    DeferredRequest,
    Solicitation,
    SolicitationStatus,
)
from approval_kernel.exceptions import ImmutabilityViolationError

_COUNTED = "action IN ('approve', 'reject')"


class SolicitationModel(Base):
    """Persistent solicitation.

    Contract:
        Creation fields are write-once.  Only the lifecycle service and the
        decision processor change status, counters and timestamps.
    """

    __tablename__ = "approval_solicitations"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'cancelled', 'expired')",
            name="ck_approval_solicitations_status",
        ),
        CheckConstraint(
            "approvals_received >= 0 AND rejections_received >= 0",
            name="ck_approval_solicitations_counters",
        ),
        Index("ix_approval_solicitations_status_expiry", "status", "expires_at"),
        Index("ix_approval_solicitations_requester", "requester_id", "created_at"),
        Index("ix_approval_solicitations_action_status", "action_type", "status"),
        Index(
            "uq_approval_solicitations_pending_subject",
            "action_type", "subject_key",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    code: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    configuration_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_configurations.id"),
        nullable=False,
    )
    requester_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    justification: Mapped[str] = mapped_column(Text, nullable=False)
    context_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    deferred_request: Mapped[dict] = mapped_column(JSON, nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    value_involved: Mapped[Decimal | None] = mapped_column(nullable=True)
    quorum_target: Mapped[Decimal] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    approvals_received: Mapped[int] = mapped_column(nullable=False, default=0)
    rejections_received: Mapped[int] = mapped_column(nullable=False, default=0)
    approval_weight: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    rejection_weight: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    first_approval_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    history: Mapped[list["DecisionHistoryModel"]] = relationship(
        "DecisionHistoryModel",
        back_populates="solicitation",
        order_by="DecisionHistoryModel.sequence",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Solicitation {self.code} {self.action_type} status={self.status} "
            f"approvals={self.approvals_received} rejections={self.rejections_received}>"
        )

    def to_dto(self) -> Solicitation:
        return Solicitation(
            id=self.id,
            code=self.code,
            action_type=self.action_type,
            configuration_id=self.configuration_id,
            requester_id=self.requester_id,
            justification=self.justification,
            deferred_request=DeferredRequest.from_dict(self.deferred_request),
            expires_at=self.expires_at,
            request_hash=self.request_hash,
            quorum_target=self.quorum_target,
            status=SolicitationStatus(self.status),
            context_data=dict(self.context_data or {}),
            value_involved=self.value_involved,
            approvals_received=self.approvals_received,
            rejections_received=self.rejections_received,
            approval_weight=self.approval_weight,
            rejection_weight=self.rejection_weight,
            first_approval_at=self.first_approval_at,
            completed_at=self.completed_at,
            internal_notes=self.internal_notes,
            cancelled_by=self.cancelled_by,
            cancellation_reason=self.cancellation_reason,
            created_at=self.created_at,
            version=self.version,
        )


class DecisionHistoryModel(Base):
    """Append-only decision history entry.

    Contract:
        Rows are immutable once inserted -- no UPDATE, no DELETE.
    """

    __tablename__ = "approval_decision_history"

    __table_args__ = (
        CheckConstraint(
            "action IN ('approve', 'reject', 'request_info')",
            name="ck_approval_decision_history_action",
        ),
        UniqueConstraint("solicitation_id", "sequence"),
        Index("ix_approval_decision_history_solicitation", "solicitation_id", "decided_at"),
        Index("ix_approval_decision_history_delegation", "delegation_id", "decided_at"),
        Index(
            "uq_approval_decision_history_principal",
            "solicitation_id", "principal_id",
            unique=True,
            sqlite_where=text(_COUNTED),
            postgresql_where=text(_COUNTED),
        ),
        Index(
            "uq_approval_decision_history_seat",
            "solicitation_id", "approver_id",
            unique=True,
            sqlite_where=text(_COUNTED),
            postgresql_where=text(_COUNTED),
        ),
    )

    solicitation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_solicitations.id"),
        nullable=False,
    )
    approver_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approvers.id"),
        nullable=False,
    )
    principal_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    delegation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("approval_delegations.id"),
        nullable=True,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    weight: Mapped[Decimal] = mapped_column(nullable=False)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)

    solicitation: Mapped[SolicitationModel] = relationship(
        SolicitationModel,
        back_populates="history",
    )

    def __repr__(self) -> str:
        return (
            f"<DecisionHistory {self.id} solicitation={self.solicitation_id} "
            f"action={self.action}>"
        )

    def to_dto(self) -> DecisionRecord:
        return DecisionRecord(
            id=self.id,
            solicitation_id=self.solicitation_id,
            approver_id=self.approver_id,
            principal_id=self.principal_id,
            action=DecisionAction(self.action),
            decided_at=self.decided_at,
            justification=self.justification,
            weight=self.weight,
            delegation_id=self.delegation_id,
            sequence=self.sequence,
        )


# =============================================================================
# ORM-level immutability for decision history (append-only)
# =============================================================================


@event.listens_for(DecisionHistoryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    """Prevent updates to decision history rows."""
    raise ImmutabilityViolationError(
        entity_type="DecisionHistory",
        entity_id=str(target.id),
        reason="Decision history is append-only -- cannot modify",
    )


@event.listens_for(DecisionHistoryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    """Prevent deletion of decision history rows."""
    raise ImmutabilityViolationError(
        entity_type="DecisionHistory",
        entity_id=str(target.id),
        reason="Decision history is append-only -- cannot delete",
    )
