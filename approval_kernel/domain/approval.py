"""
Approval domain types (``approval_kernel.domain.approval``).

Responsibility
--------------
Pure value objects for approval orchestration: the solicitation
lifecycle state machine, strategy and decision enums, the approver
reference sum type, configuration / approver / delegation / solicitation
records, and the deferred request captured for replay.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``services/``, ``selectors/``, or outer layers.

Invariants enforced
-------------------
* ``SOLICITATION_TRANSITIONS`` defines the only valid status transitions.
  PENDING is the sole initial state; every other state is terminal.
* An approver reference is exactly one of user / profile / unit /
  hierarchy level, never a bag of nullable fields.
* Records are frozen; services produce new records instead of mutating.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, assert_never
from uuid import UUID


# =========================================================================
# Enums and the solicitation state machine
# =========================================================================


class ApprovalStrategy(str, Enum):
    """How decisions are aggregated into a final outcome."""

    SIMPLE = "simple"
    MAJORITY = "majority"
    UNANIMOUS = "unanimous"
    HIERARCHICAL = "hierarchical"
    WEIGHTED = "weighted"


class SolicitationStatus(str, Enum):
    """Solicitation lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


SOLICITATION_TRANSITIONS: dict[SolicitationStatus, frozenset[SolicitationStatus]] = {
    SolicitationStatus.PENDING: frozenset({
        SolicitationStatus.APPROVED,
        SolicitationStatus.REJECTED,
        SolicitationStatus.CANCELLED,
        SolicitationStatus.EXPIRED,
    }),
    SolicitationStatus.APPROVED: frozenset(),
    SolicitationStatus.REJECTED: frozenset(),
    SolicitationStatus.CANCELLED: frozenset(),
    SolicitationStatus.EXPIRED: frozenset(),
}

TERMINAL_SOLICITATION_STATUSES: frozenset[SolicitationStatus] = frozenset(
    status for status, targets in SOLICITATION_TRANSITIONS.items() if not targets
)


def can_transition(current: SolicitationStatus, target: SolicitationStatus) -> bool:
    """True when ``current -> target`` is an edge of the state machine."""
    return target in SOLICITATION_TRANSITIONS[current]


class DecisionAction(str, Enum):
    """Actions an approver can record against a solicitation."""

    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_INFO = "request_info"


# Actions that consume a seat and move the counters.
COUNTED_ACTIONS: frozenset[DecisionAction] = frozenset({
    DecisionAction.APPROVE,
    DecisionAction.REJECT,
})


class ApproverType(str, Enum):
    USER = "user"
    PROFILE = "profile"
    UNIT = "unit"
    HIERARCHY_LEVEL = "hierarchy_level"


class DelegationScope(str, Enum):
    GLOBAL = "global"
    UNIT = "unit"
    DEPARTMENT = "department"


# =========================================================================
# Approver reference (sum type)
# =========================================================================


@dataclass(frozen=True)
class UserReference:
    user_id: UUID


@dataclass(frozen=True)
class ProfileReference:
    profile: str


@dataclass(frozen=True)
class UnitReference:
    unit: str


@dataclass(frozen=True)
class HierarchyLevelReference:
    level: int


ApproverReference = UserReference | ProfileReference | UnitReference | HierarchyLevelReference


def reference_type(reference: ApproverReference) -> ApproverType:
    """Discriminant of an approver reference."""
    match reference:
        case UserReference():
            return ApproverType.USER
        case ProfileReference():
            return ApproverType.PROFILE
        case UnitReference():
            return ApproverType.UNIT
        case HierarchyLevelReference():
            return ApproverType.HIERARCHY_LEVEL
        case _:
            assert_never(reference)


def reference_value(reference: ApproverReference) -> str:
    """Single-column storage form of the reference payload."""
    match reference:
        case UserReference(user_id=user_id):
            return str(user_id)
        case ProfileReference(profile=profile):
            return profile
        case UnitReference(unit=unit):
            return unit
        case HierarchyLevelReference(level=level):
            return str(level)
        case _:
            assert_never(reference)


def make_reference(approver_type: ApproverType | str, value: str | int | UUID) -> ApproverReference:
    """Build a reference from its discriminant and stored payload.

    Raises:
        ValueError: payload cannot be parsed for the given type.
    """
    approver_type = ApproverType(approver_type)
    if approver_type is ApproverType.USER:
        return UserReference(user_id=value if isinstance(value, UUID) else UUID(str(value)))
    if approver_type is ApproverType.PROFILE:
        return ProfileReference(profile=str(value))
    if approver_type is ApproverType.UNIT:
        return UnitReference(unit=str(value))
    return HierarchyLevelReference(level=int(value))


def describe_reference(reference: ApproverReference) -> str:
    match reference:
        case UserReference(user_id=user_id):
            return f"user {user_id}"
        case ProfileReference(profile=profile):
            return f"profile '{profile}'"
        case UnitReference(unit=unit):
            return f"unit '{unit}'"
        case HierarchyLevelReference(level=level):
            return f"hierarchy level >= {level}"
        case _:
            assert_never(reference)


# =========================================================================
# Principals and operating hours
# =========================================================================


@dataclass(frozen=True)
class Principal:
    """An already-authenticated caller, as supplied by the host application."""

    id: UUID
    profile: str | None = None
    unit: str | None = None
    department: str | None = None
    hierarchy_level: int | None = None


@dataclass(frozen=True)
class OperatingHours:
    """Days-of-week plus a time range, evaluated in UTC.

    ``days`` uses ``datetime.weekday()`` numbering (Monday = 0).  A window
    whose ``end`` is before its ``start`` wraps past midnight.
    """

    days: frozenset[int] = frozenset(range(7))
    start: time = time(0, 0)
    end: time = time(23, 59, 59)

    def contains(self, moment: datetime) -> bool:
        moment = moment.astimezone(timezone.utc)
        if moment.weekday() not in self.days:
            return False
        current = moment.time()
        if self.start <= self.end:
            return self.start <= current <= self.end
        return current >= self.start or current <= self.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "days": sorted(self.days),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> OperatingHours | None:
        if not data:
            return None
        return cls(
            days=frozenset(int(d) for d in data.get("days", range(7))),
            start=time.fromisoformat(str(data.get("start", "00:00"))),
            end=time.fromisoformat(str(data.get("end", "23:59:59"))),
        )


# =========================================================================
# Configuration and approvers
# =========================================================================


@dataclass(frozen=True)
class ApprovalConfiguration:
    """Per action-type approval policy."""

    id: UUID
    action_type: str
    strategy: ApprovalStrategy
    min_approvals: int
    time_limit_hours: int
    description: str | None = None
    max_rejections: int | None = None
    allows_parallel_approval: bool = True
    allows_auto_approval: bool = False
    auto_approval_profiles: tuple[str, ...] = ()
    min_value: Decimal | None = None
    operating_hours: OperatingHours | None = None
    active: bool = True
    version: int = 1
    created_by: UUID | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Approver:
    """One approval seat on a configuration."""

    id: UUID
    configuration_id: UUID
    reference: ApproverReference
    order: int = 1
    weight: Decimal = Decimal("1")
    mandatory: bool = False
    can_delegate: bool = True
    can_escalate: bool = False
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    operating_hours: OperatingHours | None = None
    active: bool = True
    start_date: datetime | None = None
    end_date: datetime | None = None
    total_approvals: int = 0
    total_rejections: int = 0
    average_response_seconds: Decimal | None = None

    @property
    def approver_type(self) -> ApproverType:
        return reference_type(self.reference)


# =========================================================================
# Delegation
# =========================================================================


@dataclass(frozen=True)
class DelegationConditions:
    """Fine-grained limits on when a delegation admits a decision."""

    days_of_week: frozenset[int] | None = None
    start_time: time | None = None
    end_time: time | None = None
    allowed_units: tuple[str, ...] = ()
    allowed_departments: tuple[str, ...] = ()
    max_approvals_per_day: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "days_of_week": sorted(self.days_of_week) if self.days_of_week is not None else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "allowed_units": list(self.allowed_units),
            "allowed_departments": list(self.allowed_departments),
            "max_approvals_per_day": self.max_approvals_per_day,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DelegationConditions:
        if not data:
            return cls()
        days = data.get("days_of_week")
        start = data.get("start_time")
        end = data.get("end_time")
        return cls(
            days_of_week=frozenset(int(d) for d in days) if days is not None else None,
            start_time=time.fromisoformat(start) if start else None,
            end_time=time.fromisoformat(end) if end else None,
            allowed_units=tuple(data.get("allowed_units") or ()),
            allowed_departments=tuple(data.get("allowed_departments") or ()),
            max_approvals_per_day=data.get("max_approvals_per_day"),
        )


@dataclass(frozen=True)
class DelegationWindow:
    start_date: datetime
    end_date: datetime


@dataclass(frozen=True)
class Delegation:
    """Time-bounded transfer of one seat's authority to another principal."""

    id: UUID
    source_approver_id: UUID
    delegate_id: UUID
    start_date: datetime
    end_date: datetime
    scope: DelegationScope = DelegationScope.GLOBAL
    allowed_action_types: tuple[str, ...] = ()
    max_value: Decimal | None = None
    conditions: DelegationConditions = field(default_factory=DelegationConditions)
    active: bool = True
    reason: str | None = None
    created_by: UUID | None = None
    created_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_by: UUID | None = None
    revocation_reason: str | None = None


@dataclass(frozen=True)
class ResolvedApprover:
    """Who may act for a seat right now.

    ``acting_principal_id`` is None when the seat is not delegated and
    is filled by whichever principal matches its reference.
    """

    approver_id: UUID
    acting_principal_id: UUID | None
    delegation_id: UUID | None = None

    @property
    def is_delegated(self) -> bool:
        return self.delegation_id is not None


# =========================================================================
# Solicitation and decision history
# =========================================================================


@dataclass(frozen=True)
class DeferredRequest:
    """The side-effecting request captured at creation and replayed on approval."""

    method: str
    url: str
    params: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.upper(),
            "url": self.url,
            "params": dict(self.params),
            "body": self.body,
            "headers": dict(self.headers),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeferredRequest:
        return cls(
            method=str(data["method"]).upper(),
            url=data["url"],
            params=dict(data.get("params") or {}),
            body=data.get("body"),
            headers=dict(data.get("headers") or {}),
        )


@dataclass(frozen=True)
class RequestContext:
    """The decision context approver eligibility is evaluated against."""

    now: datetime
    value: Decimal | None = None
    action_type: str | None = None
    unit: str | None = None
    department: str | None = None


@dataclass(frozen=True)
class Solicitation:
    """Approval request tracking one deferred action's lifecycle."""

    id: UUID
    code: str
    action_type: str
    configuration_id: UUID
    requester_id: UUID
    justification: str
    deferred_request: DeferredRequest
    expires_at: datetime
    request_hash: str
    quorum_target: Decimal
    status: SolicitationStatus = SolicitationStatus.PENDING
    context_data: dict[str, Any] = field(default_factory=dict)
    value_involved: Decimal | None = None
    approvals_received: int = 0
    rejections_received: int = 0
    approval_weight: Decimal = Decimal("0")
    rejection_weight: Decimal = Decimal("0")
    first_approval_at: datetime | None = None
    completed_at: datetime | None = None
    internal_notes: str | None = None
    cancelled_by: UUID | None = None
    cancellation_reason: str | None = None
    created_at: datetime | None = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SOLICITATION_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return now > self.expires_at

    def request_context(self, now: datetime) -> RequestContext:
        return RequestContext(
            now=now,
            value=self.value_involved,
            action_type=self.action_type,
            unit=self.context_data.get("unit"),
            department=self.context_data.get("department"),
        )


@dataclass(frozen=True)
class DecisionRecord:
    """Immutable history entry for one action on a solicitation."""

    id: UUID
    solicitation_id: UUID
    approver_id: UUID
    principal_id: UUID
    action: DecisionAction
    decided_at: datetime
    justification: str | None = None
    weight: Decimal = Decimal("1")
    delegation_id: UUID | None = None
    sequence: int = 0


# =========================================================================
# Replay
# =========================================================================


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one replay of a deferred request."""

    success: bool
    response_data: Any = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    status_code: int | None = None


@dataclass(frozen=True)
class ReplayExecution:
    """Persisted record of one replay attempt."""

    id: UUID
    solicitation_id: UUID
    success: bool
    attempted_at: datetime
    attempt_number: int = 0
    triggered_by: UUID | None = None
    status_code: int | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
