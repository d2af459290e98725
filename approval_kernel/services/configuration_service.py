"""
approval_kernel.services.configuration_service -- Approval Configuration Registry.

Responsibility:
    Owns per action-type approval policies: resolution, creation, update,
    soft deactivation and cloning (with approver seats).

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Exactly one active configuration per action type (service check +
      partial unique index).
    - MAJORITY requires min_approvals >= 2, on create, update and clone.
    - Configurations are never deleted; deactivation is refused while
      pending solicitations reference the configuration.
    - Clones go through ``create`` and cannot bypass its validation.

Failure modes:
    - ConfigurationNotFoundError on unknown id / no active action type.
    - DuplicateConfigurationError when an active config already exists.
    - MajorityQuorumError / InvalidConfigurationError on invalid fields.
    - ConfigurationInactiveError when updating a deactivated config.
    - ConfigurationInUseError when deactivating with pending work.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, replace
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_kernel.domain.approval import (
    ApprovalConfiguration,
    ApprovalStrategy,
    OperatingHours,
    SolicitationStatus,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.exceptions import (
    ConfigurationInactiveError,
    ConfigurationInUseError,
    ConfigurationNotFoundError,
    DuplicateConfigurationError,
    InvalidConfigurationError,
    MajorityQuorumError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.configuration import ApprovalConfigurationModel, ApproverModel
from approval_kernel.models.solicitation import SolicitationModel
from approval_kernel.services.base import BaseService

logger = get_logger("services.configuration")

# Fields callers may set on create/update/clone.
EDITABLE_FIELDS: tuple[str, ...] = (
    "action_type",
    "description",
    "strategy",
    "min_approvals",
    "max_rejections",
    "time_limit_hours",
    "allows_parallel_approval",
    "allows_auto_approval",
    "auto_approval_profiles",
    "min_value",
    "operating_hours",
)


def validate_policy(
    strategy: ApprovalStrategy,
    min_approvals: int,
    time_limit_hours: int,
    max_rejections: int | None = None,
) -> None:
    """Raise a PolicyViolationError subclass if the policy is unusable."""
    if min_approvals < 1:
        raise InvalidConfigurationError("min_approvals", "must be at least 1")
    if strategy is ApprovalStrategy.MAJORITY and min_approvals < 2:
        raise MajorityQuorumError(min_approvals)
    if time_limit_hours < 1:
        raise InvalidConfigurationError("time_limit_hours", "must be at least 1 hour")
    if max_rejections is not None and max_rejections < 1:
        raise InvalidConfigurationError("max_rejections", "must be at least 1 when set")


class ApprovalConfigurationService(BaseService):
    """Approval Configuration Registry.

    Contract:
        Reads return frozen ``ApprovalConfiguration`` DTOs.  Writes flush
        within the caller's transaction.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session, clock)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def resolve(self, action_type: str) -> ApprovalConfiguration:
        """Active configuration for an action type.

        Raises:
            ConfigurationNotFoundError: none is active.
        """
        found = self.find_active(action_type)
        if found is None:
            raise ConfigurationNotFoundError(action_type=action_type)
        return found

    def find_active(self, action_type: str) -> ApprovalConfiguration | None:
        model = self._find_active_model(action_type)
        return model.to_dto() if model is not None else None

    def get(self, configuration_id: UUID) -> ApprovalConfiguration:
        return self._load_model(configuration_id).to_dto()

    def list_configurations(self, active_only: bool = True) -> list[ApprovalConfiguration]:
        stmt = select(ApprovalConfigurationModel).order_by(
            ApprovalConfigurationModel.action_type,
            ApprovalConfigurationModel.created_at,
        )
        if active_only:
            stmt = stmt.where(ApprovalConfigurationModel.active.is_(True))
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        action_type: str,
        strategy: ApprovalStrategy | str,
        min_approvals: int = 1,
        time_limit_hours: int = 24,
        *,
        description: str | None = None,
        max_rejections: int | None = None,
        allows_parallel_approval: bool = True,
        allows_auto_approval: bool = False,
        auto_approval_profiles: Iterable[str] = (),
        min_value: Decimal | None = None,
        operating_hours: OperatingHours | None = None,
        actor_id: UUID | None = None,
    ) -> ApprovalConfiguration:
        """Create an active configuration for ``action_type``.

        Raises:
            DuplicateConfigurationError: an active configuration exists.
            MajorityQuorumError: MAJORITY with min_approvals < 2.
            InvalidConfigurationError: other out-of-range fields.
        """
        strategy = ApprovalStrategy(strategy)
        validate_policy(strategy, min_approvals, time_limit_hours, max_rejections)

        existing = self._find_active_model(action_type)
        if existing is not None:
            raise DuplicateConfigurationError(action_type, str(existing.id))

        now = self._clock.now()
        model = ApprovalConfigurationModel(
            id=uuid4(),
            action_type=action_type,
            description=description,
            strategy=strategy.value,
            min_approvals=min_approvals,
            max_rejections=max_rejections,
            time_limit_hours=time_limit_hours,
            allows_parallel_approval=allows_parallel_approval,
            allows_auto_approval=allows_auto_approval,
            auto_approval_profiles=list(auto_approval_profiles),
            min_value=min_value,
            operating_hours=operating_hours.to_dict() if operating_hours else None,
            active=True,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        self.session.add(model)
        self._flush("ApprovalConfiguration", model.id)

        logger.info(
            "configuration_created",
            extra={
                "configuration_id": str(model.id),
                "action_type": action_type,
                "strategy": strategy.value,
                "min_approvals": min_approvals,
            },
        )
        return model.to_dto()

    def update(
        self,
        configuration_id: UUID,
        actor_id: UUID | None = None,
        **changes: Any,
    ) -> ApprovalConfiguration:
        """Apply ``changes`` to an active configuration and re-validate.

        Raises:
            ConfigurationInactiveError: the configuration is deactivated.
            DuplicateConfigurationError: action_type moved onto an active one.
            MajorityQuorumError / InvalidConfigurationError.
            OptimisticLockError: concurrent modification.
        """
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidConfigurationError(", ".join(sorted(unknown)), "not an editable field")

        model = self._load_model(configuration_id)
        if not model.active:
            raise ConfigurationInactiveError(str(configuration_id))

        strategy = ApprovalStrategy(changes.get("strategy", model.strategy))
        validate_policy(
            strategy,
            changes.get("min_approvals", model.min_approvals),
            changes.get("time_limit_hours", model.time_limit_hours),
            changes.get("max_rejections", model.max_rejections),
        )

        new_action_type = changes.get("action_type", model.action_type)
        if new_action_type != model.action_type:
            clash = self._find_active_model(new_action_type)
            if clash is not None:
                raise DuplicateConfigurationError(new_action_type, str(clash.id))

        for name, value in changes.items():
            if name == "strategy":
                value = strategy.value
            elif name == "operating_hours":
                value = value.to_dict() if value else None
            elif name == "auto_approval_profiles":
                value = list(value)
            setattr(model, name, value)
        model.updated_by = actor_id
        model.updated_at = self._clock.now()
        self._flush("ApprovalConfiguration", configuration_id)

        logger.info(
            "configuration_updated",
            extra={
                "configuration_id": str(configuration_id),
                "fields": sorted(changes),
            },
        )
        return model.to_dto()

    def deactivate(
        self,
        configuration_id: UUID,
        actor_id: UUID | None = None,
    ) -> ApprovalConfiguration:
        """Soft-deactivate.  Idempotent for an already inactive configuration.

        Raises:
            ConfigurationInUseError: pending solicitations still reference it.
        """
        model = self._load_model(configuration_id)
        if not model.active:
            return model.to_dto()

        pending = self.session.execute(
            select(func.count())
            .select_from(SolicitationModel)
            .where(
                SolicitationModel.configuration_id == configuration_id,
                SolicitationModel.status == SolicitationStatus.PENDING.value,
            )
        ).scalar_one()
        if pending:
            raise ConfigurationInUseError(str(configuration_id), pending)

        model.active = False
        model.updated_by = actor_id
        model.updated_at = self._clock.now()
        self._flush("ApprovalConfiguration", configuration_id)

        logger.info(
            "configuration_deactivated",
            extra={"configuration_id": str(configuration_id), "action_type": model.action_type},
        )
        return model.to_dto()

    def clone(
        self,
        source_id: UUID,
        overrides: dict[str, Any] | None = None,
        include_approvers: bool = True,
        actor_id: UUID | None = None,
    ) -> ApprovalConfiguration:
        """Copy every editable field of ``source_id``, apply overrides, create.

        The copy runs through ``create`` so it is validated like any new
        configuration.  Cloning onto the source's own action type therefore
        requires the source to be deactivated first, or an ``action_type``
        override.  Active approver seats are copied unless
        ``include_approvers`` is False; statistics start from zero.
        """
        overrides = dict(overrides or {})
        unknown = set(overrides) - set(EDITABLE_FIELDS)
        if unknown:
            raise InvalidConfigurationError(", ".join(sorted(unknown)), "not an editable field")

        source_model = self._load_model(source_id)
        source = source_model.to_dto()
        fields = {name: value for name, value in asdict(source).items() if name in EDITABLE_FIELDS}
        # asdict() flattens nested dataclasses; keep the value object instead.
        fields["operating_hours"] = source.operating_hours
        fields.update(overrides)

        clone = self.create(actor_id=actor_id, **fields)

        copied = 0
        if include_approvers:
            now = self._clock.now()
            for seat in source_model.approvers:
                if not seat.active:
                    continue
                dto = replace(seat.to_dto(), id=uuid4(), configuration_id=clone.id)
                self.session.add(ApproverModel.from_dto(dto, created_at=now))
                copied += 1
            self._flush("ApprovalConfiguration", clone.id)

        logger.info(
            "configuration_cloned",
            extra={
                "source_id": str(source_id),
                "configuration_id": str(clone.id),
                "approvers_copied": copied,
            },
        )
        return clone

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _find_active_model(self, action_type: str) -> ApprovalConfigurationModel | None:
        return self.session.execute(
            select(ApprovalConfigurationModel).where(
                ApprovalConfigurationModel.action_type == action_type,
                ApprovalConfigurationModel.active.is_(True),
            )
        ).scalar_one_or_none()

    def _load_model(self, configuration_id: UUID) -> ApprovalConfigurationModel:
        model = self.session.get(ApprovalConfigurationModel, configuration_id)
        if model is None:
            raise ConfigurationNotFoundError(configuration_id=str(configuration_id))
        return model
