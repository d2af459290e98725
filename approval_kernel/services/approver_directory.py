"""
approval_kernel.services.approver_directory -- Approver Directory.

Responsibility:
    Manages the approver seats of a configuration and answers which seats
    are eligible in a given decision context.

Architecture position:
    Kernel > Services.  Eligibility arithmetic lives in
    ``approval_engines.eligibility``; this service loads and persists.

Invariants enforced:
    - A seat references exactly one user, profile, unit or hierarchy level.
    - A user holds at most one active seat per configuration.
    - weight > 0 and min_value <= max_value.
    - Seats are soft-removed so historical decisions stay attributable.
    - Decision statistics are updated with a server-side expression, never
      read-modify-write.

Failure modes:
    - ConfigurationNotFoundError / ConfigurationInactiveError on add.
    - InvalidApproverReferenceError, InvalidValueRangeError,
      InvalidConfigurationError on bad seat fields.
    - DuplicateApproverError for a second active seat of the same user.
    - ApproverNotFoundError on unknown seat id.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from approval_engines.eligibility import filter_eligible, order_seats
from approval_kernel.domain.approval import (
    Approver,
    ApproverReference,
    DecisionAction,
    HierarchyLevelReference,
    OperatingHours,
    ProfileReference,
    RequestContext,
    UnitReference,
    UserReference,
    reference_type,
    reference_value,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.exceptions import (
    ApproverNotFoundError,
    ConfigurationInactiveError,
    ConfigurationNotFoundError,
    DuplicateApproverError,
    InvalidApproverReferenceError,
    InvalidConfigurationError,
    InvalidValueRangeError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.configuration import ApprovalConfigurationModel, ApproverModel
from approval_kernel.services.base import BaseService

logger = get_logger("services.approver_directory")

_UPDATABLE_FIELDS = frozenset({
    "order",
    "weight",
    "mandatory",
    "can_delegate",
    "can_escalate",
    "min_value",
    "max_value",
    "operating_hours",
    "start_date",
    "end_date",
})


def validate_reference(reference: ApproverReference) -> None:
    match reference:
        case UserReference(user_id=user_id):
            if not isinstance(user_id, UUID):
                raise InvalidApproverReferenceError("user", "user_id must be a UUID")
        case ProfileReference(profile=profile):
            if not profile or not profile.strip():
                raise InvalidApproverReferenceError("profile", "profile must be non-empty")
        case UnitReference(unit=unit):
            if not unit or not unit.strip():
                raise InvalidApproverReferenceError("unit", "unit must be non-empty")
        case HierarchyLevelReference(level=level):
            if level < 1:
                raise InvalidApproverReferenceError("hierarchy_level", "level must be >= 1")
        case _:
            raise InvalidApproverReferenceError(type(reference).__name__, "unknown reference kind")


def _validate_seat_fields(
    weight: Decimal,
    order: int,
    min_value: Decimal | None,
    max_value: Decimal | None,
    start_date: datetime | None,
    end_date: datetime | None,
) -> None:
    if weight <= 0:
        raise InvalidConfigurationError("weight", "must be greater than zero")
    if order < 1:
        raise InvalidConfigurationError("order", "must be at least 1")
    if min_value is not None and max_value is not None and min_value > max_value:
        raise InvalidValueRangeError(min_value, max_value)
    if start_date is not None and end_date is not None and end_date <= start_date:
        raise InvalidConfigurationError("end_date", "must be after start_date")


class ApproverDirectory(BaseService):
    """Approver seats per configuration."""

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(
        self,
        configuration_id: UUID,
        reference: ApproverReference,
        *,
        order: int = 1,
        weight: Decimal = Decimal("1"),
        mandatory: bool = False,
        can_delegate: bool = True,
        can_escalate: bool = False,
        min_value: Decimal | None = None,
        max_value: Decimal | None = None,
        operating_hours: OperatingHours | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> Approver:
        """Add an active seat to an active configuration."""
        config = self.session.get(ApprovalConfigurationModel, configuration_id)
        if config is None:
            raise ConfigurationNotFoundError(configuration_id=str(configuration_id))
        if not config.active:
            raise ConfigurationInactiveError(str(configuration_id))

        validate_reference(reference)
        weight = Decimal(weight)
        _validate_seat_fields(weight, order, min_value, max_value, start_date, end_date)

        if isinstance(reference, UserReference):
            self._ensure_no_active_user_seat(configuration_id, reference.user_id)

        dto = Approver(
            id=uuid4(),
            configuration_id=configuration_id,
            reference=reference,
            order=order,
            weight=weight,
            mandatory=mandatory,
            can_delegate=can_delegate,
            can_escalate=can_escalate,
            min_value=min_value,
            max_value=max_value,
            operating_hours=operating_hours,
            start_date=start_date,
            end_date=end_date,
        )
        model = ApproverModel.from_dto(dto, created_at=self._clock.now())
        self.session.add(model)
        self._flush("Approver", model.id)

        logger.info(
            "approver_added",
            extra={
                "approver_id": str(model.id),
                "configuration_id": str(configuration_id),
                "approver_type": reference_type(reference).value,
                "order": order,
                "weight": str(weight),
            },
        )
        return model.to_dto()

    def update(self, approver_id: UUID, **changes: Any) -> Approver:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidConfigurationError(", ".join(sorted(unknown)), "not an editable field")

        model = self._load_model(approver_id)
        merged = {
            "weight": Decimal(changes.get("weight", model.weight)),
            "order": changes.get("order", model.order),
            "min_value": changes.get("min_value", model.min_value),
            "max_value": changes.get("max_value", model.max_value),
            "start_date": changes.get("start_date", model.start_date),
            "end_date": changes.get("end_date", model.end_date),
        }
        _validate_seat_fields(**merged)

        for name, value in changes.items():
            if name == "operating_hours":
                value = value.to_dict() if value else None
            elif name == "weight":
                value = Decimal(value)
            setattr(model, name, value)
        self._flush("Approver", approver_id)

        logger.info(
            "approver_updated",
            extra={"approver_id": str(approver_id), "fields": sorted(changes)},
        )
        return model.to_dto()

    def remove(self, approver_id: UUID) -> Approver:
        """Soft-remove a seat.  Removing an inactive seat is a no-op."""
        model = self._load_model(approver_id)
        if model.active:
            model.active = False
            self._flush("Approver", approver_id)
            logger.info("approver_removed", extra={"approver_id": str(approver_id)})
        return model.to_dto()

    def record_decision_statistics(
        self,
        approver_id: UUID,
        action: DecisionAction,
        response_seconds: Decimal,
    ) -> None:
        """Bump the seat counters and fold ``response_seconds`` into the mean.

        Every SET expression reads the pre-update row, so the decided count
        used for the mean is the count before this decision.
        """
        if action is DecisionAction.REQUEST_INFO:
            return
        decided = ApproverModel.total_approvals + ApproverModel.total_rejections
        previous_mean = func.coalesce(ApproverModel.average_response_seconds, 0)
        values: dict[Any, Any] = {
            ApproverModel.average_response_seconds: (
                (previous_mean * decided + response_seconds) / (decided + 1)
            ),
        }
        if action is DecisionAction.APPROVE:
            values[ApproverModel.total_approvals] = ApproverModel.total_approvals + 1
        else:
            values[ApproverModel.total_rejections] = ApproverModel.total_rejections + 1

        self.session.execute(
            update(ApproverModel)
            .where(ApproverModel.id == approver_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        cached = self.session.get(ApproverModel, approver_id)
        if cached is not None:
            self.session.expire(
                cached, ["total_approvals", "total_rejections", "average_response_seconds"]
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, approver_id: UUID) -> Approver:
        return self._load_model(approver_id).to_dto()

    def list_for_configuration(
        self,
        configuration_id: UUID,
        include_inactive: bool = False,
    ) -> list[Approver]:
        """Seats ordered by (order asc, weight desc)."""
        stmt = select(ApproverModel).where(ApproverModel.configuration_id == configuration_id)
        if not include_inactive:
            stmt = stmt.where(ApproverModel.active.is_(True))
        return order_seats(m.to_dto() for m in self.session.execute(stmt).scalars())

    def list_eligible(self, configuration_id: UUID, context: RequestContext) -> list[Approver]:
        config = self.session.get(ApprovalConfigurationModel, configuration_id)
        if config is None:
            raise ConfigurationNotFoundError(configuration_id=str(configuration_id))
        fallback = OperatingHours.from_dict(config.operating_hours)
        return filter_eligible(self.list_for_configuration(configuration_id), context, fallback)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _ensure_no_active_user_seat(self, configuration_id: UUID, user_id: UUID) -> None:
        existing = self.session.execute(
            select(ApproverModel.id).where(
                ApproverModel.configuration_id == configuration_id,
                ApproverModel.approver_type == "user",
                ApproverModel.reference == reference_value(UserReference(user_id)),
                ApproverModel.active.is_(True),
            )
        ).first()
        if existing is not None:
            raise DuplicateApproverError(str(configuration_id), str(user_id))

    def _load_model(self, approver_id: UUID) -> ApproverModel:
        model = self.session.get(ApproverModel, approver_id)
        if model is None:
            raise ApproverNotFoundError(str(approver_id))
        return model
