"""
approval_kernel.services.delegation_service -- Delegation Registry.

Responsibility:
    Records time-bounded transfers of a seat's authority to another
    principal, revokes them, and resolves who may act for a seat right now.

Architecture position:
    Kernel > Services.  Window, scope and condition predicates live in
    ``approval_engines.eligibility``.

Invariants enforced:
    - Revocation is terminal: ``revoked_at`` short-circuits effectiveness
      even inside the window, and a revoked delegation cannot be revoked
      again.
    - At most one unrevoked delegation per source seat for any instant.
    - A delegation never rewrites the source seat.  It is consulted at
      decision time only.

Failure modes:
    - ApproverNotFoundError / DelegationNotFoundError.
    - InvalidDelegationWindowError, SelfDelegationError,
      DelegationNotAllowedError on create.
    - OverlappingDelegationError on an overlapping window.
    - RevocationNotAllowedError / DelegationAlreadyRevokedError on revoke.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_engines.eligibility import (
    first_admitting,
    is_delegation_effective,
    windows_overlap,
)
from approval_kernel.domain.approval import (
    COUNTED_ACTIONS,
    Delegation,
    DelegationConditions,
    DelegationScope,
    DelegationWindow,
    Principal,
    RequestContext,
    ResolvedApprover,
    UserReference,
    make_reference,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.collaborators import PERMISSION_REVOKE_DELEGATION, PermissionChecker
from approval_kernel.exceptions import (
    ApproverNotFoundError,
    DelegationAlreadyRevokedError,
    DelegationNotAllowedError,
    DelegationNotFoundError,
    InvalidDelegationWindowError,
    OverlappingDelegationError,
    RevocationNotAllowedError,
    SelfDelegationError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.configuration import ApproverModel
from approval_kernel.models.delegation import DelegationModel
from approval_kernel.models.solicitation import DecisionHistoryModel
from approval_kernel.services.base import BaseService

logger = get_logger("services.delegation")


def _seat_user(seat: ApproverModel) -> UUID | None:
    reference = make_reference(seat.approver_type, seat.reference)
    return reference.user_id if isinstance(reference, UserReference) else None


class DelegationRegistry(BaseService):
    """Delegation Registry.

    Contract:
        ``resolve_effective_approver`` returns the delegate when a currently
        effective delegation admits the context, else the seat unchanged.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        permission_checker: PermissionChecker | None = None,
    ):
        super().__init__(session, clock)
        self._permissions = permission_checker

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        source_approver_id: UUID,
        delegate_id: UUID,
        window: DelegationWindow,
        scope: DelegationScope | str = DelegationScope.GLOBAL,
        conditions: DelegationConditions | None = None,
        *,
        allowed_action_types: Iterable[str] = (),
        max_value: Decimal | None = None,
        reason: str | None = None,
        created_by: UUID | None = None,
    ) -> Delegation:
        if window.end_date <= window.start_date:
            raise InvalidDelegationWindowError(window.start_date, window.end_date)

        seat = self.session.get(ApproverModel, source_approver_id)
        if seat is None:
            raise ApproverNotFoundError(str(source_approver_id))
        if not seat.active:
            raise DelegationNotAllowedError(str(source_approver_id), "approver is inactive")
        if not seat.can_delegate:
            raise DelegationNotAllowedError(str(source_approver_id), "approver cannot delegate")
        if _seat_user(seat) == delegate_id:
            raise SelfDelegationError(str(source_approver_id), str(delegate_id))

        for existing in self._open_models(source_approver_id):
            if windows_overlap(
                existing.start_date, existing.end_date, window.start_date, window.end_date
            ):
                raise OverlappingDelegationError(str(source_approver_id), str(existing.id))

        conditions = conditions or DelegationConditions()
        model = DelegationModel(
            id=uuid4(),
            source_approver_id=source_approver_id,
            delegate_id=delegate_id,
            start_date=window.start_date,
            end_date=window.end_date,
            scope=DelegationScope(scope).value,
            allowed_action_types=list(allowed_action_types),
            max_value=max_value,
            conditions=conditions.to_dict(),
            active=True,
            reason=reason,
            created_by=created_by,
            created_at=self._clock.now(),
        )
        self.session.add(model)
        self._flush("Delegation", model.id)

        logger.info(
            "delegation_created",
            extra={
                "delegation_id": str(model.id),
                "source_approver_id": str(source_approver_id),
                "delegate_id": str(delegate_id),
                "scope": model.scope,
                "start_date": window.start_date.isoformat(),
                "end_date": window.end_date.isoformat(),
            },
        )
        return model.to_dto()

    def revoke(
        self,
        delegation_id: UUID,
        principal: Principal,
        reason: str | None = None,
    ) -> Delegation:
        """Terminally revoke a delegation.

        Allowed for the delegation's creator, the source seat's user, or a
        principal holding ``approval.delegation.revoke``.
        """
        model = self._load_model(delegation_id)
        if model.revoked_at is not None:
            raise DelegationAlreadyRevokedError(str(delegation_id), model.revoked_at)

        seat = self.session.get(ApproverModel, model.source_approver_id)
        allowed = (
            principal.id == model.created_by
            or (seat is not None and principal.id == _seat_user(seat))
            or (
                self._permissions is not None
                and self._permissions.has_permission(principal, PERMISSION_REVOKE_DELEGATION)
            )
        )
        if not allowed:
            raise RevocationNotAllowedError(str(delegation_id), str(principal.id))

        model.revoked_at = self._clock.now()
        model.revoked_by = principal.id
        model.revocation_reason = reason
        model.active = False
        self._flush("Delegation", delegation_id)

        logger.info(
            "delegation_revoked",
            extra={
                "delegation_id": str(delegation_id),
                "revoked_by": str(principal.id),
                "reason": reason,
            },
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_effective(self, delegation: Delegation, now: datetime | None = None) -> bool:
        return is_delegation_effective(delegation, now or self._clock.now())

    def resolve_effective_approver(
        self,
        approver_id: UUID,
        action_type: str | None = None,
        value: Decimal | None = None,
        now: datetime | None = None,
        *,
        unit: str | None = None,
        department: str | None = None,
    ) -> ResolvedApprover:
        """Who may act for seat ``approver_id`` in this context.

        The acting principal is the delegate when an effective delegation
        admits the action type, value, scope and conditions.  Otherwise it
        is the seat's own user, or None for profile, unit and hierarchy
        seats, which any matching principal may fill.
        """
        seat = self.session.get(ApproverModel, approver_id)
        if seat is None:
            raise ApproverNotFoundError(str(approver_id))

        context = RequestContext(
            now=now or self._clock.now(),
            value=value,
            action_type=action_type,
            unit=unit,
            department=department,
        )
        candidates = [m.to_dto() for m in self._open_models(approver_id)]
        counts = {d.id: self.approvals_today(d.id, context.now) for d in candidates}
        delegation = first_admitting(candidates, context, counts)
        if delegation is not None:
            return ResolvedApprover(
                approver_id=approver_id,
                acting_principal_id=delegation.delegate_id,
                delegation_id=delegation.id,
            )
        return ResolvedApprover(approver_id=approver_id, acting_principal_id=_seat_user(seat))

    def approvals_today(self, delegation_id: UUID, now: datetime | None = None) -> int:
        """Counted decisions recorded under a delegation on the current UTC day."""
        now = now or self._clock.now()
        now = now.astimezone(timezone.utc)
        day_start = datetime(now.year, now.month, now.day, tzinfo=timezone.utc)
        return self.session.execute(
            select(func.count())
            .select_from(DecisionHistoryModel)
            .where(
                DecisionHistoryModel.delegation_id == delegation_id,
                DecisionHistoryModel.action.in_([a.value for a in COUNTED_ACTIONS]),
                DecisionHistoryModel.decided_at >= day_start,
                DecisionHistoryModel.decided_at < day_start + timedelta(days=1),
            )
        ).scalar_one()

    def get(self, delegation_id: UUID) -> Delegation:
        return self._load_model(delegation_id).to_dto()

    def list_for_approver(
        self,
        approver_id: UUID,
        include_inactive: bool = False,
    ) -> list[Delegation]:
        stmt = select(DelegationModel).where(DelegationModel.source_approver_id == approver_id)
        if not include_inactive:
            stmt = stmt.where(
                DelegationModel.active.is_(True),
                DelegationModel.revoked_at.is_(None),
            )
        stmt = stmt.order_by(DelegationModel.start_date)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    def list_for_delegate(
        self,
        principal_id: UUID,
        include_inactive: bool = False,
    ) -> list[Delegation]:
        stmt = select(DelegationModel).where(DelegationModel.delegate_id == principal_id)
        if not include_inactive:
            stmt = stmt.where(
                DelegationModel.active.is_(True),
                DelegationModel.revoked_at.is_(None),
            )
        stmt = stmt.order_by(DelegationModel.start_date)
        return [m.to_dto() for m in self.session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _open_models(self, approver_id: UUID) -> list[DelegationModel]:
        return list(
            self.session.execute(
                select(DelegationModel).where(
                    DelegationModel.source_approver_id == approver_id,
                    DelegationModel.active.is_(True),
                    DelegationModel.revoked_at.is_(None),
                )
            ).scalars()
        )

    def _load_model(self, delegation_id: UUID) -> DelegationModel:
        model = self.session.get(DelegationModel, delegation_id)
        if model is None:
            raise DelegationNotFoundError(str(delegation_id))
        return model
