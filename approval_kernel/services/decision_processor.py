"""
approval_kernel.services.decision_processor -- Decision Processor.

Responsibility:
    Validates and records one approver decision against a solicitation,
    updates its counters, and applies the strategy's quorum outcome.

Architecture position:
    Kernel > Services.  Quorum arithmetic and eligibility are delegated to
    ``approval_engines``; seat authority to the Delegation Registry.

Invariants enforced:
    - Validation happens before any mutation: not found, not PENDING,
      expired, self-approval, no eligible seat, double vote, hierarchy
      order.  A failed validation leaves the solicitation untouched.
    - Each seat contributes at most one APPROVE/REJECT; each principal
      decides at most once per solicitation.  REQUEST_INFO consumes
      nothing.
    - The history row, the counters and the status transition are written
      in one flush.  The UPDATE carries ``WHERE version = :expected``, so a
      concurrent decision surfaces as OptimisticLockError and the whole unit
      is retried by the caller with fresh counters.
    - Counters always equal the counted history rows.

Failure modes:
    - SolicitationNotFoundError, TamperDetectedError.
    - InvalidSolicitationTransitionError: solicitation not PENDING.
    - SolicitationExpiredError: past ``expires_at``.  Nothing is written;
      the orchestrator performs the EXPIRED transition separately.
    - SelfApprovalError, ApproverNotEligibleError, HierarchyOrderError.
    - DuplicateDecisionError: principal already decided, or every seat the
      principal could fill has already been used.
    - OptimisticLockError: lost the compare-and-swap.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from approval_engines.eligibility import filter_eligible, principal_matches
from approval_engines.quorum import (
    build_tally,
    current_hierarchy_level,
    evaluate_status,
    serving_seats,
)
from approval_kernel.domain.approval import (
    COUNTED_ACTIONS,
    ApprovalConfiguration,
    ApprovalStrategy,
    Approver,
    DecisionAction,
    DecisionRecord,
    Principal,
    ResolvedApprover,
    Solicitation,
    SolicitationStatus,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.events import (
    DECISION_PROCESSED,
    SOLICITATION_APPROVED,
    SOLICITATION_REJECTED,
    DomainEvent,
)
from approval_kernel.exceptions import (
    ApproverNotEligibleError,
    DuplicateDecisionError,
    HierarchyOrderError,
    InvalidSolicitationTransitionError,
    SelfApprovalError,
    SolicitationExpiredError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.solicitation import DecisionHistoryModel, SolicitationModel
from approval_kernel.services.approver_directory import ApproverDirectory
from approval_kernel.services.base import BaseService
from approval_kernel.services.configuration_service import ApprovalConfigurationService
from approval_kernel.services.delegation_service import DelegationRegistry
from approval_kernel.services.solicitation_service import SolicitationLifecycle

logger = get_logger("services.decision_processor")

_ATTEMPTED_STATUS = {
    DecisionAction.APPROVE: SolicitationStatus.APPROVED,
    DecisionAction.REJECT: SolicitationStatus.REJECTED,
    DecisionAction.REQUEST_INFO: SolicitationStatus.PENDING,
}


@dataclass(frozen=True)
class DecisionOutcome:
    """Result of one processed decision.

    ``events`` are to be published once the enclosing transaction commits.
    """

    solicitation: Solicitation
    decision: DecisionRecord
    previous_status: SolicitationStatus
    events: tuple[DomainEvent, ...] = field(default_factory=tuple)

    @property
    def transitioned(self) -> bool:
        return self.solicitation.status is not self.previous_status

    @property
    def approved(self) -> bool:
        return self.transitioned and self.solicitation.status is SolicitationStatus.APPROVED


@dataclass(frozen=True)
class _SeatCandidate:
    seat: Approver
    resolved: ResolvedApprover


class DecisionProcessor(BaseService):
    """Processes approver decisions inside the caller's transaction."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        lifecycle: SolicitationLifecycle | None = None,
        configurations: ApprovalConfigurationService | None = None,
        directory: ApproverDirectory | None = None,
        delegations: DelegationRegistry | None = None,
    ):
        super().__init__(session, clock)
        self._configurations = configurations or ApprovalConfigurationService(session, self._clock)
        self._directory = directory or ApproverDirectory(session, self._clock)
        self._delegations = delegations or DelegationRegistry(session, self._clock)
        self._lifecycle = lifecycle or SolicitationLifecycle(
            session, self._clock, self._configurations, self._directory
        )

    def process(
        self,
        solicitation_id: UUID,
        principal: Principal,
        action: DecisionAction | str,
        justification: str | None = None,
    ) -> DecisionOutcome:
        action = DecisionAction(action)
        now = self._clock.now()

        # 1-3: existence, state, deadline.
        model = self._lifecycle.load_model(solicitation_id)
        current = SolicitationStatus(model.status)
        if current is not SolicitationStatus.PENDING:
            raise InvalidSolicitationTransitionError(
                str(solicitation_id), current.value, _ATTEMPTED_STATUS[action].value
            )
        if now > model.expires_at:
            raise SolicitationExpiredError(str(solicitation_id), model.expires_at, now)

        config = self._configurations.get(model.configuration_id)
        if principal.id == model.requester_id and not config.allows_auto_approval:
            raise SelfApprovalError(str(solicitation_id), str(principal.id))

        # 4-5: seat resolution and double-vote checks.
        seats = self._directory.list_for_configuration(config.id)
        serving = serving_seats(seats, model.value_involved, now)
        approved_ids, rejected_ids, decided_principals = _decided(model.history)
        candidates = self._candidate_seats(model, config, seats, principal, now)
        if not candidates:
            raise ApproverNotEligibleError(str(solicitation_id), str(principal.id))

        counted = action in COUNTED_ACTIONS
        if counted and principal.id in decided_principals:
            raise DuplicateDecisionError(str(solicitation_id), str(principal.id))

        consumed = approved_ids | rejected_ids
        open_candidates = [c for c in candidates if c.seat.id not in consumed]
        if counted and not open_candidates:
            raise DuplicateDecisionError(
                str(solicitation_id), str(principal.id), str(candidates[0].seat.id)
            )
        if action is DecisionAction.APPROVE and config.strategy is ApprovalStrategy.HIERARCHICAL:
            open_candidates = self._hierarchy_filter(
                solicitation_id, config, serving, approved_ids, open_candidates
            )
        chosen = (open_candidates or candidates)[0]
        seat = chosen.seat

        # 6: append history.
        record = DecisionHistoryModel(
            id=uuid4(),
            solicitation_id=model.id,
            approver_id=seat.id,
            principal_id=principal.id,
            delegation_id=chosen.resolved.delegation_id,
            action=action.value,
            justification=justification,
            weight=seat.weight,
            decided_at=now,
            sequence=len(model.history) + 1,
        )
        model.history.append(record)

        # 7: counters.
        if action is DecisionAction.APPROVE:
            model.approvals_received += 1
            model.approval_weight += seat.weight
            if model.first_approval_at is None:
                model.first_approval_at = now
            approved_ids = approved_ids | {seat.id}
        elif action is DecisionAction.REJECT:
            model.rejections_received += 1
            model.rejection_weight += seat.weight
            rejected_ids = rejected_ids | {seat.id}

        # 8: quorum.
        new_status = SolicitationStatus.PENDING
        if counted:
            tally = build_tally(
                model.approvals_received,
                model.rejections_received,
                model.approval_weight,
                model.rejection_weight,
                serving,
                approved_ids,
                rejected_ids,
            )
            new_status = evaluate_status(
                config.strategy, model.quorum_target, tally, config.max_rejections
            )
            if new_status is not SolicitationStatus.PENDING:
                self._lifecycle.transition(model, new_status)

        # 9: compare-and-swap on the solicitation version.
        try:
            self._flush("Solicitation", solicitation_id)
        except IntegrityError as exc:
            raise DuplicateDecisionError(
                str(solicitation_id), str(principal.id), str(seat.id)
            ) from exc

        if counted:
            response_seconds = Decimal(str((now - model.created_at).total_seconds()))
            self._directory.record_decision_statistics(seat.id, action, response_seconds)

        solicitation = model.to_dto()
        decision = record.to_dto()
        logger.info(
            "decision_recorded",
            extra={
                "solicitation_id": str(solicitation_id),
                "approver_id": str(seat.id),
                "principal_id": str(principal.id),
                "delegation_id": str(chosen.resolved.delegation_id)
                if chosen.resolved.delegation_id
                else None,
                "action": action.value,
                "approvals_received": solicitation.approvals_received,
                "rejections_received": solicitation.rejections_received,
                "quorum_target": str(solicitation.quorum_target),
                "status": solicitation.status.value,
            },
        )
        return DecisionOutcome(
            solicitation=solicitation,
            decision=decision,
            previous_status=current,
            events=_events_for(solicitation, decision, current, now),
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _candidate_seats(
        self,
        model: SolicitationModel,
        config: ApprovalConfiguration,
        seats: Sequence[Approver],
        principal: Principal,
        now: datetime,
    ) -> list[_SeatCandidate]:
        """Eligible seats ``principal`` may act for, best seat first."""
        context = model.to_dto().request_context(now)
        candidates = []
        for seat in filter_eligible(seats, context, config.operating_hours):
            resolved = self._delegations.resolve_effective_approver(
                seat.id,
                context.action_type,
                context.value,
                now,
                unit=context.unit,
                department=context.department,
            )
            if resolved.is_delegated:
                if resolved.acting_principal_id == principal.id:
                    candidates.append(_SeatCandidate(seat, resolved))
            elif principal_matches(seat.reference, principal):
                candidates.append(_SeatCandidate(seat, resolved))
        return candidates

    def _hierarchy_filter(
        self,
        solicitation_id: UUID,
        config: ApprovalConfiguration,
        seats: Sequence[Approver],
        approved_ids: set[UUID],
        candidates: list[_SeatCandidate],
    ) -> list[_SeatCandidate]:
        """One approval per level; lower levels first unless parallel."""
        satisfied = {s.order for s in seats if s.id in approved_ids}
        level = current_hierarchy_level(seats, approved_ids)
        allowed = [c for c in candidates if c.seat.order not in satisfied]
        if not config.allows_parallel_approval:
            allowed = [c for c in allowed if c.seat.order == level]
        if not allowed:
            first = candidates[0].seat.order
            raise HierarchyOrderError(str(solicitation_id), first, level if level is not None else first)
        return allowed


def _decided(history: Sequence[DecisionHistoryModel]) -> tuple[set[UUID], set[UUID], set[UUID]]:
    approved: set[UUID] = set()
    rejected: set[UUID] = set()
    principals: set[UUID] = set()
    for entry in history:
        if entry.action == DecisionAction.APPROVE.value:
            approved.add(entry.approver_id)
        elif entry.action == DecisionAction.REJECT.value:
            rejected.add(entry.approver_id)
        else:
            continue
        principals.add(entry.principal_id)
    return approved, rejected, principals


def _events_for(
    solicitation: Solicitation,
    decision: DecisionRecord,
    previous: SolicitationStatus,
    now: datetime,
) -> tuple[DomainEvent, ...]:
    payload = {
        "code": solicitation.code,
        "action_type": solicitation.action_type,
        "approver_id": str(decision.approver_id),
        "principal_id": str(decision.principal_id),
        "action": decision.action.value,
        "status": solicitation.status.value,
        "approvals_received": solicitation.approvals_received,
        "rejections_received": solicitation.rejections_received,
    }
    events = [DomainEvent(DECISION_PROCESSED, now, solicitation.id, payload)]
    if solicitation.status is not previous:
        if solicitation.status is SolicitationStatus.APPROVED:
            events.append(DomainEvent(SOLICITATION_APPROVED, now, solicitation.id, payload))
        elif solicitation.status is SolicitationStatus.REJECTED:
            events.append(DomainEvent(SOLICITATION_REJECTED, now, solicitation.id, payload))
    return tuple(events)
