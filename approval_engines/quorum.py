"""
approval_engines.quorum -- Pure quorum arithmetic and rejection policy.

Responsibility:
    Compute the quorum target a solicitation snapshots at creation, and
    the status a solicitation must hold after a decision, for every
    approval strategy.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ types and sibling engines.

Invariants enforced:
    - APPROVED iff the strategy's quorum predicate holds for the tally:
      counted approvals >= target, or approval weight >= target for
      WEIGHTED.
    - Rejection policy:
        SIMPLE, UNANIMOUS, HIERARCHICAL -- the first REJECT terminates.
        MAJORITY, WEIGHTED -- REJECTED only when the approvals (or weight)
        still obtainable from undecided seats cannot reach the target, or
        when ``max_rejections`` is configured and reached.
    - Mandatory seats: quorum is not reached while any active mandatory
      seat has not approved, and a REJECT from a mandatory seat terminates.
    - Capacity counts only serving seats: a seat whose value range excludes
      the solicitation, or whose validity window has closed, never becomes
      eligible and is left out of targets, open capacity and mandatory
      checks.
    - Approval is evaluated before rejection; a tally satisfying both
      cannot arise because each seat decides once.

Failure modes:
    - ValueError for a strategy without a quorum rule (unreachable while
      ApprovalStrategy and this module agree).
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from approval_kernel.domain.approval import (
    ApprovalStrategy,
    Approver,
    SolicitationStatus,
)
from approval_engines.eligibility import value_in_range
from approval_engines.tracer import traced_engine

_FIRST_REJECT_TERMINATES: frozenset[ApprovalStrategy] = frozenset({
    ApprovalStrategy.SIMPLE,
    ApprovalStrategy.UNANIMOUS,
    ApprovalStrategy.HIERARCHICAL,
})


@dataclass(frozen=True)
class Tally:
    """Counters after a decision plus the capacity still undecided."""

    approvals: int
    rejections: int
    approval_weight: Decimal
    rejection_weight: Decimal
    open_seats: int
    open_weight: Decimal
    mandatory_outstanding: int = 0
    mandatory_rejected: bool = False


def serving_seats(
    seats: Iterable[Approver],
    value: Decimal | None,
    now: datetime | None = None,
) -> list[Approver]:
    """Active seats that can still act on a solicitation of ``value``."""
    return [
        s
        for s in seats
        if s.active
        and value_in_range(s, value)
        and (now is None or s.end_date is None or now <= s.end_date)
    ]


def quorum_target(
    strategy: ApprovalStrategy,
    min_approvals: int,
    seats: Sequence[Approver],
) -> Decimal:
    """Quorum snapshot taken when a solicitation is created.

    SIMPLE needs one approval; MAJORITY ``min_approvals``; UNANIMOUS every
    active seat; HIERARCHICAL one approval per distinct order level;
    WEIGHTED treats ``min_approvals`` as a weight threshold.
    """
    active = [s for s in seats if s.active]
    if strategy is ApprovalStrategy.SIMPLE:
        return Decimal(1)
    if strategy is ApprovalStrategy.MAJORITY:
        return Decimal(min_approvals)
    if strategy is ApprovalStrategy.UNANIMOUS:
        return Decimal(max(len(active), 1))
    if strategy is ApprovalStrategy.HIERARCHICAL:
        return Decimal(max(len({s.order for s in active}), 1))
    if strategy is ApprovalStrategy.WEIGHTED:
        return Decimal(min_approvals)
    raise ValueError(f"No quorum rule for strategy {strategy!r}")


def quorum_reached(strategy: ApprovalStrategy, target: Decimal, tally: Tally) -> bool:
    if tally.mandatory_outstanding:
        return False
    if strategy is ApprovalStrategy.WEIGHTED:
        return tally.approval_weight >= target
    return Decimal(tally.approvals) >= target


def quorum_unreachable(strategy: ApprovalStrategy, target: Decimal, tally: Tally) -> bool:
    """True when even every undecided seat approving cannot reach the target."""
    if strategy is ApprovalStrategy.WEIGHTED:
        return tally.approval_weight + tally.open_weight < target
    return Decimal(tally.approvals + tally.open_seats) < target


@traced_engine("quorum", "1.0", fingerprint_fields=("strategy", "target", "tally", "max_rejections"))
def evaluate_status(
    strategy: ApprovalStrategy,
    target: Decimal,
    tally: Tally,
    max_rejections: int | None = None,
) -> SolicitationStatus:
    """Status a PENDING solicitation must move to for this tally."""
    if quorum_reached(strategy, target, tally):
        return SolicitationStatus.APPROVED
    if tally.rejections == 0:
        return SolicitationStatus.PENDING
    if tally.mandatory_rejected:
        return SolicitationStatus.REJECTED
    if strategy in _FIRST_REJECT_TERMINATES:
        return SolicitationStatus.REJECTED
    if max_rejections is not None and tally.rejections >= max_rejections:
        return SolicitationStatus.REJECTED
    if quorum_unreachable(strategy, target, tally):
        return SolicitationStatus.REJECTED
    return SolicitationStatus.PENDING


def build_tally(
    approvals: int,
    rejections: int,
    approval_weight: Decimal,
    rejection_weight: Decimal,
    seats: Iterable[Approver],
    approved_seat_ids: Iterable[UUID],
    rejected_seat_ids: Iterable[UUID] = (),
) -> Tally:
    approved = set(approved_seat_ids)
    rejected = set(rejected_seat_ids)
    active = [s for s in seats if s.active]
    open_seats = [s for s in active if s.id not in approved and s.id not in rejected]
    mandatory = [s for s in active if s.mandatory]
    return Tally(
        approvals=approvals,
        rejections=rejections,
        approval_weight=approval_weight,
        rejection_weight=rejection_weight,
        open_seats=len(open_seats),
        open_weight=sum((s.weight for s in open_seats), Decimal(0)),
        mandatory_outstanding=sum(1 for s in mandatory if s.id not in approved),
        mandatory_rejected=any(s.id in rejected for s in mandatory),
    )


def current_hierarchy_level(
    seats: Sequence[Approver],
    approved_seat_ids: Iterable[UUID],
) -> int | None:
    """Lowest order level that has not yet approved, or None when all have."""
    approved = set(approved_seat_ids)
    levels = sorted({s.order for s in seats if s.active})
    satisfied = {s.order for s in seats if s.id in approved}
    for level in levels:
        if level not in satisfied:
            return level
    return None
