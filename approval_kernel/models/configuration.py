"""
Module: approval_kernel.models.configuration
Responsibility: ORM persistence for approval configurations and their
    approver seats.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value objects only.

Invariants enforced:
    - At most one active configuration per action type (partial unique
      index on action_type WHERE active).
    - Strategy values limited by a check constraint.
    - Approver reference is stored as (approver_type, reference) -- one
      discriminant plus one payload column, never four nullable columns.
    - Optimistic concurrency: both tables carry a version_id_col; a stale
      UPDATE raises StaleDataError.

Failure modes:
    - IntegrityError on a second active configuration for an action type.
    - StaleDataError on concurrent modification of the same row.

Audit relevance:
    Configurations and approvers are never deleted; deactivation keeps
    historical decisions attributable to the seat that made them.
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
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_kernel.db.base import Base, UUIDString
from approval_kernel.domain.approval import (
    ApprovalConfiguration,
    ApprovalStrategy,
    Approver,
    OperatingHours,
    make_reference,
    reference_type,
    reference_value,
)


class ApprovalConfigurationModel(Base):
    """Persistent per action-type approval policy.

    Contract:
        Soft-deactivated, never deleted.  ``version`` is bumped on every
        UPDATE and checked in its WHERE clause.
    """

    __tablename__ = "approval_configurations"

    __table_args__ = (
        CheckConstraint(
            "strategy IN ('simple', 'majority', 'unanimous', 'hierarchical', 'weighted')",
            name="ck_approval_configurations_strategy",
        ),
        CheckConstraint("min_approvals >= 1", name="ck_approval_configurations_min_approvals"),
        CheckConstraint("time_limit_hours >= 1", name="ck_approval_configurations_time_limit"),
        Index(
            "uq_approval_configurations_active_action_type",
            "action_type",
            unique=True,
            sqlite_where=text("active = 1"),
            postgresql_where=text("active"),
        ),
    )

    action_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    strategy: Mapped[str] = mapped_column(String(20), nullable=False)
    min_approvals: Mapped[int] = mapped_column(nullable=False, default=1)
    max_rejections: Mapped[int | None] = mapped_column(nullable=True)
    time_limit_hours: Mapped[int] = mapped_column(nullable=False, default=24)
    allows_parallel_approval: Mapped[bool] = mapped_column(nullable=False, default=True)
    allows_auto_approval: Mapped[bool] = mapped_column(nullable=False, default=False)
    auto_approval_profiles: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    min_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    operating_hours: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    updated_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    approvers: Mapped[list["ApproverModel"]] = relationship(
        "ApproverModel",
        back_populates="configuration",
        order_by="ApproverModel.order",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<ApprovalConfiguration {self.action_type} "
            f"strategy={self.strategy} active={self.active}>"
        )

    def to_dto(self) -> ApprovalConfiguration:
        return ApprovalConfiguration(
            id=self.id,
            action_type=self.action_type,
            description=self.description,
            strategy=ApprovalStrategy(self.strategy),
            min_approvals=self.min_approvals,
            max_rejections=self.max_rejections,
            time_limit_hours=self.time_limit_hours,
            allows_parallel_approval=self.allows_parallel_approval,
            allows_auto_approval=self.allows_auto_approval,
            auto_approval_profiles=tuple(self.auto_approval_profiles or ()),
            min_value=self.min_value,
            operating_hours=OperatingHours.from_dict(self.operating_hours),
            active=self.active,
            version=self.version,
            created_by=self.created_by,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class ApproverModel(Base):
    """Persistent approver seat.

    Contract:
        Belongs to exactly one configuration.  Soft-removed via ``active``.
        Statistics columns are only changed through server-side increment
        expressions.
    """

    __tablename__ = "approvers"

    __table_args__ = (
        CheckConstraint(
            "approver_type IN ('user', 'profile', 'unit', 'hierarchy_level')",
            name="ck_approvers_type",
        ),
        CheckConstraint("weight > 0", name="ck_approvers_weight_positive"),
        Index("ix_approvers_configuration_active", "configuration_id", "active"),
        Index(
            "uq_approvers_active_user",
            "configuration_id", "reference",
            unique=True,
            sqlite_where=text("approver_type = 'user' AND active = 1"),
            postgresql_where=text("approver_type = 'user' AND active"),
        ),
    )

    configuration_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("approval_configurations.id"),
        nullable=False,
    )
    approver_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str] = mapped_column(String(200), nullable=False)
    order: Mapped[int] = mapped_column("approval_order", nullable=False, default=1)
    weight: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("1"))
    mandatory: Mapped[bool] = mapped_column(nullable=False, default=False)
    can_delegate: Mapped[bool] = mapped_column(nullable=False, default=True)
    can_escalate: Mapped[bool] = mapped_column(nullable=False, default=False)
    min_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    max_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    operating_hours: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    total_approvals: Mapped[int] = mapped_column(nullable=False, default=0)
    total_rejections: Mapped[int] = mapped_column(nullable=False, default=0)
    average_response_seconds: Mapped[Decimal | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    configuration: Mapped[ApprovalConfigurationModel] = relationship(
        ApprovalConfigurationModel,
        back_populates="approvers",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Approver {self.id} {self.approver_type}={self.reference} "
            f"order={self.order} active={self.active}>"
        )

    def to_dto(self) -> Approver:
        return Approver(
            id=self.id,
            configuration_id=self.configuration_id,
            reference=make_reference(self.approver_type, self.reference),
            order=self.order,
            weight=self.weight,
            mandatory=self.mandatory,
            can_delegate=self.can_delegate,
            can_escalate=self.can_escalate,
            min_value=self.min_value,
            max_value=self.max_value,
            operating_hours=OperatingHours.from_dict(self.operating_hours),
            active=self.active,
            start_date=self.start_date,
            end_date=self.end_date,
            total_approvals=self.total_approvals,
            total_rejections=self.total_rejections,
            average_response_seconds=self.average_response_seconds,
        )

    @classmethod
    def from_dto(cls, dto: Approver, created_at: datetime) -> ApproverModel:
        return cls(
            id=dto.id,
            configuration_id=dto.configuration_id,
            approver_type=reference_type(dto.reference).value,
            reference=reference_value(dto.reference),
            order=dto.order,
            weight=dto.weight,
            mandatory=dto.mandatory,
            can_delegate=dto.can_delegate,
            can_escalate=dto.can_escalate,
            min_value=dto.min_value,
            max_value=dto.max_value,
            operating_hours=dto.operating_hours.to_dict() if dto.operating_hours else None,
            active=dto.active,
            start_date=dto.start_date,
            end_date=dto.end_date,
            created_at=created_at,
        )
