"""
Seed the registry from an approval set (``approval_config.seeding``).

Every configuration and seat is created through the kernel services, so
seeds are validated exactly like API-created rows.  Action types that
already have an active configuration are left untouched.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from approval_config.schema import ApprovalSet, ConfigurationDef
from approval_kernel.domain.approval import (
    ApprovalConfiguration,
    OperatingHours,
    make_reference,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.logging_config import get_logger
from approval_kernel.services.approver_directory import ApproverDirectory
from approval_kernel.services.configuration_service import ApprovalConfigurationService

logger = get_logger("config.seeding")


def seed_approval_set(
    session: Session,
    approval_set: ApprovalSet,
    actor_id: UUID | None = None,
    clock: Clock | None = None,
    default_time_limit_hours: int = 24,
) -> list[ApprovalConfiguration]:
    """Create the configurations of ``approval_set`` that do not exist yet.

    Flushes only; the caller commits.  Returns the created configurations.
    """
    configurations = ApprovalConfigurationService(session, clock)
    directory = ApproverDirectory(session, clock)

    created = []
    for definition in approval_set.configurations:
        if configurations.find_active(definition.action_type) is not None:
            logger.info(
                "seed_configuration_skipped",
                extra={"action_type": definition.action_type, "set": approval_set.name},
            )
            continue
        created.append(
            _seed_one(configurations, directory, definition, actor_id, default_time_limit_hours)
        )

    logger.info(
        "approval_set_seeded",
        extra={
            "set": approval_set.name,
            "version": approval_set.version,
            "checksum": approval_set.checksum,
            "configurations_created": len(created),
        },
    )
    return created


def _seed_one(
    configurations: ApprovalConfigurationService,
    directory: ApproverDirectory,
    definition: ConfigurationDef,
    actor_id: UUID | None,
    default_time_limit_hours: int,
) -> ApprovalConfiguration:
    config = configurations.create(
        definition.action_type,
        definition.strategy,
        definition.min_approvals,
        definition.time_limit_hours or default_time_limit_hours,
        description=definition.description,
        max_rejections=definition.max_rejections,
        allows_parallel_approval=definition.allows_parallel_approval,
        allows_auto_approval=definition.allows_auto_approval,
        auto_approval_profiles=definition.auto_approval_profiles,
        min_value=definition.min_value,
        operating_hours=OperatingHours.from_dict(definition.operating_hours),
        actor_id=actor_id,
    )
    for seat in definition.approvers:
        directory.add(
            config.id,
            make_reference(seat.approver_type, seat.reference),
            order=seat.order,
            weight=seat.weight,
            mandatory=seat.mandatory,
            can_delegate=seat.can_delegate,
            can_escalate=seat.can_escalate,
            min_value=seat.min_value,
            max_value=seat.max_value,
        )
    return config
