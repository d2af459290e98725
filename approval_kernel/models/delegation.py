"""
Module: approval_kernel.models.delegation
Responsibility: ORM persistence for delegations of approval authority.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - end_date > start_date (check constraint).
    - A delegation row never touches the source approver's row; it is
      consulted at decision time, not merged.
    - Revocation fields are set once; the service refuses a second revoke.

Failure modes:
    - IntegrityError if the window constraint is violated.
    - StaleDataError on concurrent revocation.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.approval import (
    Delegation,
    DelegationConditions,
    DelegationScope,
)


class DelegationModel(Base):
    """Persistent delegation of one approver seat to another principal."""

    __tablename__ = "approval_delegations"

    __table_args__ = (
        CheckConstraint("end_date > start_date", name="ck_approval_delegations_window"),
        CheckConstraint(
            "scope IN ('global', 'unit', 'department')",
            name="ck_approval_delegations_scope",
        ),
        Index("ix_approval_delegations_source", "source_approver_id", "active"),
        Index("ix_approval_delegations_delegate", "delegate_id", "active"),
    )

    source_approver_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approvers.id"),
        nullable=False,
    )
    delegate_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    start_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime] = mapped_column(nullable=False)
    scope: Mapped[str] = mapped_column(String(20), nullable=False, default="global")
    allowed_action_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    max_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    revoked_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Delegation {self.id} {self.source_approver_id} -> {self.delegate_id} "
            f"revoked={self.revoked_at is not None}>"
        )

    def to_dto(self) -> Delegation:
        return Delegation(
            id=self.id,
            source_approver_id=self.source_approver_id,
            delegate_id=self.delegate_id,
            start_date=self.start_date,
            end_date=self.end_date,
            scope=DelegationScope(self.scope),
            allowed_action_types=tuple(self.allowed_action_types or ()),
            max_value=self.max_value,
            conditions=DelegationConditions.from_dict(self.conditions),
            active=self.active,
            reason=self.reason,
            created_by=self.created_by,
            created_at=self.created_at,
            revoked_at=self.revoked_at,
            revoked_by=self.revoked_by,
            revocation_reason=self.revocation_reason,
        )
