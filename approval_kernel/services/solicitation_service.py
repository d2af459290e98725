"""
approval_kernel.services.solicitation_service -- Solicitation lifecycle.

Responsibility:
    Creates solicitations, owns the PENDING -> terminal state machine for
    cancellation and expiry, and loads solicitations with tamper checks.

Architecture position:
    Kernel > Services.  Uses the configuration registry and approver
    directory; quorum targets come from ``approval_engines.quorum``.

Invariants enforced:
    - PENDING is the sole initial state; every transition is checked
      against ``SOLICITATION_TRANSITIONS`` before it is persisted.
    - The quorum target is snapshotted at creation, so later seat changes
      cannot move the goalposts of an open solicitation.
    - The deferred request is hashed at creation and re-verified on load.
    - One PENDING solicitation per (action type, subject).
    - Expiry is lazy: a PENDING solicitation past ``expires_at`` is only
      moved to EXPIRED when something touches it, or by the sweep.

Failure modes:
    - ConfigurationNotFoundError: no active configuration.
    - MissingApproversError: configuration has no active seats.
    - DuplicateSolicitationError: subject already has a pending request.
    - SolicitationNotFoundError, TamperDetectedError on load.
    - InvalidSolicitationTransitionError from a terminal state.
    - SolicitationExpiredError when cancelling past the deadline.
    - CancellationNotAllowedError for a non-requester without permission.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from approval_engines.quorum import quorum_target, serving_seats
from approval_kernel.domain.approval import (
    DeferredRequest,
    ExecutionResult,
    Principal,
    ReplayExecution,
    Solicitation,
    SolicitationStatus,
    can_transition,
)
from approval_kernel.domain.clock import Clock
from approval_kernel.domain.collaborators import PERMISSION_CANCEL_ANY, PermissionChecker
from approval_kernel.exceptions import (
    CancellationNotAllowedError,
    DuplicateSolicitationError,
    InvalidSolicitationTransitionError,
    MissingApproversError,
    SolicitationExpiredError,
    SolicitationNotFoundError,
    TamperDetectedError,
)
from approval_kernel.logging_config import get_logger
from approval_kernel.models.execution import ReplayExecutionModel
from approval_kernel.models.solicitation import SolicitationModel
from approval_kernel.services.approver_directory import ApproverDirectory
from approval_kernel.services.base import BaseService
from approval_kernel.services.configuration_service import ApprovalConfigurationService
from approval_kernel.utils.hashing import hash_payload

logger = get_logger("services.solicitation")

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(number: int) -> str:
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def generate_code(prefix: str, now: datetime) -> str:
    """Human-readable code: ``<prefix>-<base36 millis>-<random>``."""
    millis = int(now.timestamp() * 1000)
    return f"{prefix}-{_base36(millis)}-{secrets.token_hex(3).upper()}"


def _normalize_value_for_hash(value: Decimal | None) -> str | None:
    """Numeric(38,9) reads back with trailing zeros; normalize both sides."""
    if value is None:
        return None
    return str(Decimal(str(value)).normalize())


def compute_request_hash(
    *,
    solicitation_id: UUID,
    action_type: str,
    configuration_id: UUID,
    requester_id: UUID,
    justification: str,
    deferred_request: dict[str, Any],
    value_involved: Decimal | None,
) -> str:
    """Tamper-evidence hash over every write-once field a replay depends on."""
    return hash_payload({
        "solicitation_id": str(solicitation_id),
        "action_type": action_type,
        "configuration_id": str(configuration_id),
        "requester_id": str(requester_id),
        "justification": justification,
        "deferred_request": deferred_request,
        "value_involved": _normalize_value_for_hash(value_involved),
    })


def subject_key_for(deferred_request: DeferredRequest, context_data: dict[str, Any]) -> str | None:
    """The resource a solicitation acts on, when one can be identified."""
    subject = deferred_request.params.get("id") or context_data.get("subject_id")
    return str(subject) if subject is not None else None


class SolicitationLifecycle(BaseService):
    """Creation, loading and non-decision transitions of solicitations."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        configurations: ApprovalConfigurationService | None = None,
        directory: ApproverDirectory | None = None,
        code_prefix: str = "SOL",
    ):
        super().__init__(session, clock)
        self._configurations = configurations or ApprovalConfigurationService(session, self._clock)
        self._directory = directory or ApproverDirectory(session, self._clock)
        self._code_prefix = code_prefix

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        action_type: str,
        requester: Principal,
        deferred_request: DeferredRequest,
        justification: str,
        value: Decimal | None = None,
        context_data: dict[str, Any] | None = None,
    ) -> Solicitation:
        """Open a PENDING solicitation for a deferred request.

        ``context_data`` defaults ``unit`` and ``department`` from the
        requester so unit- and department-scoped delegations can match.
        The quorum target counts only seats able to act on ``value``; with
        none, creation fails with MissingApproversError.
        """
        config = self._configurations.resolve(action_type)
        now = self._clock.now()
        seats = serving_seats(self._directory.list_for_configuration(config.id), value, now)
        if not seats:
            raise MissingApproversError(str(config.id), action_type)

        context = dict(context_data or {})
        if requester.unit is not None:
            context.setdefault("unit", requester.unit)
        if requester.department is not None:
            context.setdefault("department", requester.department)

        subject_key = subject_key_for(deferred_request, context)
        if subject_key is not None:
            existing = self.session.execute(
                select(SolicitationModel.id).where(
                    SolicitationModel.action_type == action_type,
                    SolicitationModel.subject_key == subject_key,
                    SolicitationModel.status == SolicitationStatus.PENDING.value,
                )
            ).scalar_one_or_none()
            if existing is not None:
                raise DuplicateSolicitationError(action_type, subject_key, str(existing))

        solicitation_id = uuid4()
        request_payload = deferred_request.to_dict()
        target = quorum_target(config.strategy, config.min_approvals, seats)

        model = SolicitationModel(
            id=solicitation_id,
            code=generate_code(self._code_prefix, now),
            action_type=action_type,
            configuration_id=config.id,
            requester_id=requester.id,
            justification=justification,
            context_data=context,
            deferred_request=request_payload,
            request_hash=compute_request_hash(
                solicitation_id=solicitation_id,
                action_type=action_type,
                configuration_id=config.id,
                requester_id=requester.id,
                justification=justification,
                deferred_request=request_payload,
                value_involved=value,
            ),
            subject_key=subject_key,
            value_involved=value,
            quorum_target=target,
            expires_at=now + timedelta(hours=config.time_limit_hours),
            status=SolicitationStatus.PENDING.value,
            approvals_received=0,
            rejections_received=0,
            approval_weight=Decimal("0"),
            rejection_weight=Decimal("0"),
            created_at=now,
        )
        self.session.add(model)
        self._flush("Solicitation", solicitation_id)

        logger.info(
            "solicitation_created",
            extra={
                "solicitation_id": str(solicitation_id),
                "code": model.code,
                "action_type": action_type,
                "strategy": config.strategy.value,
                "quorum_target": str(target),
                "expires_at": model.expires_at.isoformat(),
            },
        )
        return model.to_dto()

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def get(self, solicitation_id: UUID) -> Solicitation:
        return self.load_model(solicitation_id).to_dto()

    def load_model(self, solicitation_id: UUID, verify: bool = True) -> SolicitationModel:
        """Load the ORM row, verifying its hash unless ``verify`` is False.

        Raises:
            SolicitationNotFoundError: unknown id.
            TamperDetectedError: stored fields no longer match the hash.
        """
        model = self.session.get(SolicitationModel, solicitation_id)
        if model is None:
            raise SolicitationNotFoundError(str(solicitation_id))
        if verify:
            self.verify_integrity(model)
        return model

    def verify_integrity(self, model: SolicitationModel) -> None:
        actual = compute_request_hash(
            solicitation_id=model.id,
            action_type=model.action_type,
            configuration_id=model.configuration_id,
            requester_id=model.requester_id,
            justification=model.justification,
            deferred_request=model.deferred_request,
            value_involved=model.value_involved,
        )
        if actual != model.request_hash:
            logger.error(
                "solicitation_tamper_detected",
                extra={"solicitation_id": str(model.id)},
            )
            raise TamperDetectedError(str(model.id), model.request_hash, actual)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        model: SolicitationModel,
        target: SolicitationStatus,
    ) -> SolicitationStatus:
        """Move ``model`` to ``target``, stamping ``completed_at``.

        Only changes the in-session row; the caller flushes.

        Raises:
            InvalidSolicitationTransitionError: not an edge of the machine.
        """
        current = SolicitationStatus(model.status)
        if not can_transition(current, target):
            raise InvalidSolicitationTransitionError(str(model.id), current.value, target.value)
        model.status = target.value
        model.completed_at = self._clock.now()
        logger.info(
            "solicitation_transition",
            extra={
                "solicitation_id": str(model.id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return current

    def cancel(
        self,
        solicitation_id: UUID,
        principal: Principal,
        reason: str | None = None,
        permission_checker: PermissionChecker | None = None,
    ) -> Solicitation:
        """Cancel a PENDING solicitation.

        Allowed for the requester, or a principal holding
        ``approval.solicitation.cancel`` for the action type.
        """
        model = self.load_model(solicitation_id)
        current = SolicitationStatus(model.status)
        if not can_transition(current, SolicitationStatus.CANCELLED):
            raise InvalidSolicitationTransitionError(
                str(solicitation_id), current.value, SolicitationStatus.CANCELLED.value
            )
        now = self._clock.now()
        if now > model.expires_at:
            raise SolicitationExpiredError(str(solicitation_id), model.expires_at, now)

        allowed = principal.id == model.requester_id or (
            permission_checker is not None
            and permission_checker.has_permission(
                principal, PERMISSION_CANCEL_ANY, scope=model.action_type
            )
        )
        if not allowed:
            raise CancellationNotAllowedError(str(solicitation_id), str(principal.id))

        self.transition(model, SolicitationStatus.CANCELLED)
        model.cancelled_by = principal.id
        model.cancellation_reason = reason
        self._flush("Solicitation", solicitation_id)
        return model.to_dto()

    def expire(self, solicitation_id: UUID) -> Solicitation:
        model = self.load_model(solicitation_id)
        self.transition(model, SolicitationStatus.EXPIRED)
        self._flush("Solicitation", solicitation_id)
        return model.to_dto()

    def expire_if_due(self, solicitation_id: UUID) -> Solicitation | None:
        """Expire a PENDING solicitation past its deadline.

        Returns the expired solicitation, or None when nothing changed.
        """
        model = self.load_model(solicitation_id)
        if model.status != SolicitationStatus.PENDING.value:
            return None
        if self._clock.now() <= model.expires_at:
            return None
        self.transition(model, SolicitationStatus.EXPIRED)
        self._flush("Solicitation", solicitation_id)
        return model.to_dto()

    def expire_overdue(self, limit: int | None = None) -> list[Solicitation]:
        """Sweep PENDING solicitations whose deadline has passed."""
        now = self._clock.now()
        stmt = (
            select(SolicitationModel)
            .where(
                SolicitationModel.status == SolicitationStatus.PENDING.value,
                SolicitationModel.expires_at < now,
            )
            .order_by(SolicitationModel.expires_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        expired = []
        for model in self.session.execute(stmt).scalars().all():
            self.transition(model, SolicitationStatus.EXPIRED)
            expired.append(model)
        self._flush("Solicitation", "sweep")

        if expired:
            logger.info("solicitations_expired", extra={"count": len(expired)})
        return [m.to_dto() for m in expired]

    def add_internal_note(self, solicitation_id: UUID, author_id: UUID, note: str) -> Solicitation:
        """Append a timestamped line to the solicitation's internal notes."""
        model = self.load_model(solicitation_id)
        line = f"[{self._clock.now().isoformat()}] {author_id}: {note}"
        model.internal_notes = f"{model.internal_notes}\n{line}" if model.internal_notes else line
        self._flush("Solicitation", solicitation_id)
        return model.to_dto()

    # ------------------------------------------------------------------
    # Replay bookkeeping
    # ------------------------------------------------------------------

    def record_execution(
        self,
        solicitation_id: UUID,
        result: ExecutionResult,
        triggered_by: UUID | None = None,
    ) -> ReplayExecution:
        """Append one replay attempt.  Failed rows are the operator's worklist."""
        previous = self.session.execute(
            select(func.count())
            .select_from(ReplayExecutionModel)
            .where(ReplayExecutionModel.solicitation_id == solicitation_id)
        ).scalar_one()
        model = ReplayExecutionModel(
            id=uuid4(),
            solicitation_id=solicitation_id,
            attempt_number=previous + 1,
            success=result.success,
            status_code=result.status_code,
            error=result.error,
            details=dict(result.details),
            triggered_by=triggered_by,
            attempted_at=self._clock.now(),
        )
        self.session.add(model)
        self._flush("ReplayExecution", model.id)
        return model.to_dto()

    def successful_execution(self, solicitation_id: UUID) -> ReplayExecution | None:
        model = self.session.execute(
            select(ReplayExecutionModel)
            .where(
                ReplayExecutionModel.solicitation_id == solicitation_id,
                ReplayExecutionModel.success.is_(True),
            )
            .order_by(ReplayExecutionModel.attempt_number)
            .limit(1)
        ).scalar_one_or_none()
        return model.to_dto() if model is not None else None
