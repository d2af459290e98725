"""
Module: approval_kernel.selectors.solicitation_selector
Responsibility: Read-only query surfaces over solicitations: work queues,
    requester views, decision history, aggregate statistics and replay
    reconciliation.
Architecture position: Kernel > Selectors.  Seat and delegation matching
    reuses ``approval_engines.eligibility`` so the queue agrees with what
    the decision processor would accept.

Invariants enforced:
    - Read-only: no mutation, no flush.
    - ``pending_for_principal`` never lists a solicitation the principal
      has already decided, requested (unless auto-approval is allowed) or
      could only reach through a seat already used.
    - Expired-but-unswept solicitations are excluded from work queues.

Failure modes:
    - Returns empty lists rather than raising when nothing matches.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import exists, func, select

from approval_engines.eligibility import filter_eligible, first_admitting, principal_matches
from approval_kernel.domain.approval import (
    COUNTED_ACTIONS,
    ApprovalConfiguration,
    Approver,
    DecisionRecord,
    Principal,
    ReplayExecution,
    RequestContext,
    Solicitation,
    SolicitationStatus,
)
from approval_kernel.models.configuration import ApprovalConfigurationModel, ApproverModel
from approval_kernel.models.delegation import DelegationModel
from approval_kernel.models.execution import ReplayExecutionModel
from approval_kernel.models.solicitation import DecisionHistoryModel, SolicitationModel
from approval_kernel.selectors.base import BaseSelector

_RATE_QUANTUM = Decimal("0.0001")
_COUNTED_VALUES = [a.value for a in COUNTED_ACTIONS]


@dataclass(frozen=True)
class SolicitationStatistics:
    """Aggregate counts plus average time from creation to decision."""

    total: int
    by_status: dict[str, int] = field(default_factory=dict)
    approval_rate: Decimal = Decimal("0")
    rejection_rate: Decimal = Decimal("0")
    average_decision_seconds: Decimal | None = None


class SolicitationSelector(BaseSelector[SolicitationModel]):
    """Query surfaces for solicitations and their history."""

    def get(self, solicitation_id: UUID) -> Solicitation | None:
        model = self.session.get(SolicitationModel, solicitation_id)
        return model.to_dto() if model is not None else None

    def by_code(self, code: str) -> Solicitation | None:
        return self._dto_or_none(select(SolicitationModel).where(SolicitationModel.code == code))

    def by_requester(
        self,
        requester_id: UUID,
        status: SolicitationStatus | None = None,
    ) -> list[Solicitation]:
        """Newest first."""
        stmt = select(SolicitationModel).where(SolicitationModel.requester_id == requester_id)
        if status is not None:
            stmt = stmt.where(SolicitationModel.status == SolicitationStatus(status).value)
        return self._dtos(stmt.order_by(SolicitationModel.created_at.desc()))

    def history(self, solicitation_id: UUID) -> list[DecisionRecord]:
        return self._dtos(
            select(DecisionHistoryModel)
            .where(DecisionHistoryModel.solicitation_id == solicitation_id)
            .order_by(DecisionHistoryModel.sequence)
        )

    def executions(self, solicitation_id: UUID) -> list[ReplayExecution]:
        return self._dtos(
            select(ReplayExecutionModel)
            .where(ReplayExecutionModel.solicitation_id == solicitation_id)
            .order_by(ReplayExecutionModel.attempt_number)
        )

    def list_unexecuted_approved(self) -> list[Solicitation]:
        """APPROVED solicitations with no successful replay on record."""
        succeeded = exists().where(
            ReplayExecutionModel.solicitation_id == SolicitationModel.id,
            ReplayExecutionModel.success.is_(True),
        )
        stmt = (
            select(SolicitationModel)
            .where(
                SolicitationModel.status == SolicitationStatus.APPROVED.value,
                ~succeeded,
            )
            .order_by(SolicitationModel.completed_at)
        )
        return self._dtos(stmt)

    # ------------------------------------------------------------------
    # Work queue
    # ------------------------------------------------------------------

    def pending_for_principal(self, principal: Principal, now: datetime) -> list[Solicitation]:
        """Open solicitations ``principal`` could decide right now, oldest first."""
        rows = self.session.execute(
            select(SolicitationModel)
            .where(
                SolicitationModel.status == SolicitationStatus.PENDING.value,
                SolicitationModel.expires_at >= now,
            )
            .order_by(SolicitationModel.created_at)
        ).scalars().all()

        configs: dict[UUID, tuple[ApprovalConfiguration, list[Approver]]] = {}
        result = []
        for model in rows:
            if model.configuration_id not in configs:
                configs[model.configuration_id] = self._configuration_with_seats(
                    model.configuration_id
                )
            config, seats = configs[model.configuration_id]

            if principal.id == model.requester_id and not config.allows_auto_approval:
                continue
            counted = [h for h in model.history if h.action in _COUNTED_VALUES]
            if any(h.principal_id == principal.id for h in counted):
                continue
            consumed = {h.approver_id for h in counted}

            solicitation = model.to_dto()
            context = solicitation.request_context(now)
            open_seats = [
                s for s in filter_eligible(seats, context, config.operating_hours)
                if s.id not in consumed
            ]
            if any(self._can_fill(seat, principal, context) for seat in open_seats):
                result.append(solicitation)
        return result

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def statistics(
        self,
        action_type: str | None = None,
        since: datetime | None = None,
    ) -> SolicitationStatistics:
        filters = []
        if action_type is not None:
            filters.append(SolicitationModel.action_type == action_type)
        if since is not None:
            filters.append(SolicitationModel.created_at >= since)

        counts = dict(
            self.session.execute(
                select(SolicitationModel.status, func.count())
                .where(*filters)
                .group_by(SolicitationModel.status)
            ).all()
        )
        by_status = {status.value: counts.get(status.value, 0) for status in SolicitationStatus}
        total = sum(by_status.values())

        decided = self.session.execute(
            select(SolicitationModel.created_at, SolicitationModel.completed_at).where(
                *filters,
                SolicitationModel.status.in_(
                    [SolicitationStatus.APPROVED.value, SolicitationStatus.REJECTED.value]
                ),
                SolicitationModel.completed_at.is_not(None),
            )
        ).all()
        average = None
        if decided:
            seconds = sum(
                ((completed - created).total_seconds() for created, completed in decided), 0.0
            )
            average = Decimal(str(seconds / len(decided))).quantize(Decimal("0.001"))

        return SolicitationStatistics(
            total=total,
            by_status=by_status,
            approval_rate=_rate(by_status[SolicitationStatus.APPROVED.value], total),
            rejection_rate=_rate(by_status[SolicitationStatus.REJECTED.value], total),
            average_decision_seconds=average,
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _configuration_with_seats(
        self, configuration_id: UUID
    ) -> tuple[ApprovalConfiguration, list[Approver]]:
        config = self.session.get(ApprovalConfigurationModel, configuration_id)
        seats = self._dtos(
            select(ApproverModel).where(
                ApproverModel.configuration_id == configuration_id,
                ApproverModel.active.is_(True),
            )
        )
        return config.to_dto(), seats

    def _can_fill(self, seat: Approver, principal: Principal, context: RequestContext) -> bool:
        delegations = self._dtos(
            select(DelegationModel).where(
                DelegationModel.source_approver_id == seat.id,
                DelegationModel.active.is_(True),
                DelegationModel.revoked_at.is_(None),
            )
        )
        delegation = first_admitting(
            delegations, context, self._approvals_today([d.id for d in delegations], context.now)
        )
        if delegation is not None:
            return delegation.delegate_id == principal.id
        return principal_matches(seat.reference, principal)

    def _approvals_today(self, delegation_ids: Sequence[UUID], now: datetime) -> dict[UUID, int]:
        if not delegation_ids:
            return {}
        now = now.astimezone(timezone.utc)
        day_start = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
        rows = self.session.execute(
            select(DecisionHistoryModel.delegation_id, func.count())
            .where(
                DecisionHistoryModel.delegation_id.in_(delegation_ids),
                DecisionHistoryModel.action.in_(_COUNTED_VALUES),
                DecisionHistoryModel.decided_at >= day_start,
                DecisionHistoryModel.decided_at < day_start + timedelta(days=1),
            )
            .group_by(DecisionHistoryModel.delegation_id)
        ).all()
        return dict(rows)


def _rate(part: int, total: int) -> Decimal:
    if not total:
        return Decimal("0")
    return (Decimal(part) / Decimal(total)).quantize(_RATE_QUANTUM, rounding=ROUND_HALF_UP)
