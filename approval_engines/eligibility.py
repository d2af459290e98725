"""
approval_engines.eligibility -- Pure approver and delegation predicates.

Responsibility:
    Decide whether an approver seat may take part in a decision context,
    whether a principal fills a seat, and whether a delegation currently
    admits a decision.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types.

Invariants enforced:
    - Eligibility is the conjunction of four independent predicates
      (active, validity window, operating hours, value range); a failing
      predicate excludes the seat from the current context only.
    - ``revoked_at`` short-circuits delegation effectiveness regardless
      of the window.
    - Purity: "now" is always an argument, never read from a clock.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import assert_never

from approval_kernel.domain.approval import (
    Approver,
    ApproverReference,
    Delegation,
    DelegationScope,
    HierarchyLevelReference,
    OperatingHours,
    Principal,
    ProfileReference,
    RequestContext,
    UnitReference,
    UserReference,
)


# =========================================================================
# Approver seat predicates
# =========================================================================


def is_active(approver: Approver) -> bool:
    return approver.active


def within_validity_window(approver: Approver, now: datetime) -> bool:
    if approver.start_date is not None and now < approver.start_date:
        return False
    if approver.end_date is not None and now > approver.end_date:
        return False
    return True


def within_operating_hours(
    approver: Approver,
    now: datetime,
    fallback: OperatingHours | None = None,
) -> bool:
    """Seat hours win; the configuration's hours apply when the seat has none."""
    hours = approver.operating_hours or fallback
    return hours is None or hours.contains(now)


def value_in_range(approver: Approver, value: Decimal | None) -> bool:
    if value is None:
        return True
    if approver.min_value is not None and value < approver.min_value:
        return False
    if approver.max_value is not None and value > approver.max_value:
        return False
    return True


def is_currently_eligible(
    approver: Approver,
    context: RequestContext,
    fallback_hours: OperatingHours | None = None,
) -> bool:
    return (
        is_active(approver)
        and within_validity_window(approver, context.now)
        and within_operating_hours(approver, context.now, fallback_hours)
        and value_in_range(approver, context.value)
    )


def order_seats(approvers: Iterable[Approver]) -> list[Approver]:
    """Lowest order first, heavier seats first within a level."""
    return sorted(approvers, key=lambda a: (a.order, -a.weight, str(a.id)))


def filter_eligible(
    approvers: Iterable[Approver],
    context: RequestContext,
    fallback_hours: OperatingHours | None = None,
) -> list[Approver]:
    return order_seats(
        a for a in approvers if is_currently_eligible(a, context, fallback_hours)
    )


def principal_matches(reference: ApproverReference, principal: Principal) -> bool:
    """Whether ``principal`` may fill a seat with this reference directly."""
    match reference:
        case UserReference(user_id=user_id):
            return principal.id == user_id
        case ProfileReference(profile=profile):
            return principal.profile is not None and principal.profile == profile
        case UnitReference(unit=unit):
            return principal.unit is not None and principal.unit == unit
        case HierarchyLevelReference(level=level):
            return principal.hierarchy_level is not None and principal.hierarchy_level >= level
        case _:
            assert_never(reference)


# =========================================================================
# Delegation predicates
# =========================================================================


def is_delegation_effective(delegation: Delegation, now: datetime) -> bool:
    if delegation.revoked_at is not None:
        return False
    if not delegation.active:
        return False
    return delegation.start_date <= now <= delegation.end_date


def _scope_admits(delegation: Delegation, context: RequestContext) -> bool:
    conditions = delegation.conditions
    if delegation.scope is DelegationScope.GLOBAL:
        return True
    if delegation.scope is DelegationScope.UNIT:
        return context.unit is not None and context.unit in conditions.allowed_units
    if delegation.scope is DelegationScope.DEPARTMENT:
        return (
            context.department is not None
            and context.department in conditions.allowed_departments
        )
    assert_never(delegation.scope)


def _conditions_admit(
    delegation: Delegation,
    context: RequestContext,
    approvals_today: int,
) -> bool:
    conditions = delegation.conditions
    now = context.now
    if conditions.days_of_week is not None and now.weekday() not in conditions.days_of_week:
        return False
    current = now.time()
    if conditions.start_time is not None and current < conditions.start_time:
        return False
    if conditions.end_time is not None and current > conditions.end_time:
        return False
    if conditions.allowed_units and delegation.scope is not DelegationScope.UNIT:
        if context.unit not in conditions.allowed_units:
            return False
    if conditions.allowed_departments and delegation.scope is not DelegationScope.DEPARTMENT:
        if context.department not in conditions.allowed_departments:
            return False
    if (
        conditions.max_approvals_per_day is not None
        and approvals_today >= conditions.max_approvals_per_day
    ):
        return False
    return True


def delegation_admits(
    delegation: Delegation,
    context: RequestContext,
    approvals_today: int = 0,
) -> bool:
    """Effective now, and scope/conditions accept this action type and value."""
    if not is_delegation_effective(delegation, context.now):
        return False
    if delegation.allowed_action_types and context.action_type not in delegation.allowed_action_types:
        return False
    if (
        delegation.max_value is not None
        and context.value is not None
        and context.value > delegation.max_value
    ):
        return False
    if not _scope_admits(delegation, context):
        return False
    return _conditions_admit(delegation, context, approvals_today)


def windows_overlap(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    return start_a <= end_b and start_b <= end_a


def first_admitting(
    delegations: Sequence[Delegation],
    context: RequestContext,
    approvals_today: dict | None = None,
) -> Delegation | None:
    """The earliest-starting delegation that admits the context, if any."""
    approvals_today = approvals_today or {}
    for delegation in sorted(delegations, key=lambda d: (d.start_date, str(d.id))):
        if delegation_admits(delegation, context, approvals_today.get(delegation.id, 0)):
            return delegation
    return None
