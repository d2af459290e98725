"""
approval_services.orchestrator -- Transactional entry point of the approval core.

Responsibility:
    Wires the kernel services for each unit of work, owns the transaction
    boundary, retries lost optimistic-concurrency races, publishes domain
    events after commit, and runs the deferred action replay once a
    solicitation is APPROVED.

Architecture position:
    Services -- stateful orchestration over engines + kernel.  This is the
    only place that commits.  Kernel services receive a Session and only
    flush; selectors only read.

Invariants enforced:
    - One unit of work == one ``session_scope``.  An OptimisticLockError
      rolls the whole unit back and it is re-run with fresh state, up to
      ``max_optimistic_retries`` attempts.
    - Events are published only after the producing transaction commits.
    - Replay runs after the APPROVED transition has committed, at most once
      per transition, and never holds a transaction open while waiting on
      the network.  A failed replay is recorded, logged at ERROR and
      published as ``solicitation.execution_failed``; the approval stands.
    - Lazy expiry: a decision or cancel that finds the deadline passed
      expires the solicitation in its own unit of work, then re-raises
      SolicitationExpiredError.
    - The approval-requirement check fails closed.

Failure modes:
    - Every kernel error propagates unchanged, except OptimisticLockError
      which is retried before propagating.
    - ReplayNotAllowedError: manual replay without the replay permission
      (or with no permission checker wired).
    - SolicitationNotApprovedError, ReplayAlreadySucceededError on manual
      replay.

Usage:
    orchestrator = ApprovalOrchestrator(
        session_factory=get_session_factory(),
        settings=load_settings(),
        permission_checker=StaticPermissionChecker.from_approval_set(approval_set),
        event_sink=LoggingEventSink(),
    )
    solicitation = orchestrator.create_solicitation(
        "payment.release", requester, deferred_request, "monthly payroll", value,
    )
    submission = orchestrator.submit_decision(solicitation.id, approver, DecisionAction.APPROVE, credential=token)
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from approval_config.schema import ApprovalSet
from approval_config.seeding import seed_approval_set
from approval_config.settings import ApprovalSettings
from approval_kernel.db.engine import session_scope
from approval_kernel.domain.approval import (
    ApprovalConfiguration,
    DecisionAction,
    DecisionRecord,
    DeferredRequest,
    Delegation,
    DelegationConditions,
    DelegationScope,
    DelegationWindow,
    ExecutionResult,
    Principal,
    ReplayExecution,
    Solicitation,
    SolicitationStatus,
)
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.collaborators import (
    PERMISSION_AUTO_APPROVE,
    PERMISSION_MANUAL_REPLAY,
    EventSink,
    PermissionChecker,
)
from approval_kernel.domain.events import (
    DELEGATION_CREATED,
    DELEGATION_REVOKED,
    SOLICITATION_CANCELLED,
    SOLICITATION_CREATED,
    SOLICITATION_EXECUTED,
    SOLICITATION_EXECUTION_FAILED,
    SOLICITATION_EXPIRED,
    DomainEvent,
)
from approval_kernel.exceptions import (
    OptimisticLockError,
    ReplayAlreadySucceededError,
    ReplayExecutionError,
    ReplayNotAllowedError,
    SolicitationExpiredError,
    SolicitationNotApprovedError,
)
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.selectors.solicitation_selector import (
    SolicitationSelector,
    SolicitationStatistics,
)
from approval_kernel.services.approver_directory import ApproverDirectory
from approval_kernel.services.configuration_service import ApprovalConfigurationService
from approval_kernel.services.decision_processor import DecisionOutcome, DecisionProcessor
from approval_kernel.services.delegation_service import DelegationRegistry
from approval_kernel.services.solicitation_service import SolicitationLifecycle
from approval_services.events import LoggingEventSink
from approval_services.observability import (
    log_approval_check_failed_closed,
    log_decision_outcome,
    log_replay_outcome,
)
from approval_services.replay_executor import ReplayExecutor

logger = get_logger("services.orchestrator")

T = TypeVar("T")


@dataclass(frozen=True)
class UnitServices:
    """Kernel services bound to one session."""

    configurations: ApprovalConfigurationService
    directory: ApproverDirectory
    delegations: DelegationRegistry
    lifecycle: SolicitationLifecycle
    processor: DecisionProcessor


@dataclass(frozen=True)
class DecisionSubmission:
    """A committed decision, plus the replay it triggered (if any)."""

    outcome: DecisionOutcome
    execution: ReplayExecution | None = None
    attempts: int = 1

    @property
    def solicitation(self) -> Solicitation:
        return self.outcome.solicitation

    @property
    def decision(self) -> DecisionRecord:
        return self.outcome.decision


class ApprovalOrchestrator:
    """Owns transactions, retries, event publication and replay."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        settings: ApprovalSettings | None = None,
        clock: Clock | None = None,
        permission_checker: PermissionChecker | None = None,
        event_sink: EventSink | None = None,
        replay_executor: ReplayExecutor | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or ApprovalSettings()
        self._clock = clock or SystemClock()
        self._permissions = permission_checker
        self._events = event_sink or LoggingEventSink()
        self._owns_executor = replay_executor is None
        self._replay_executor = replay_executor or ReplayExecutor(
            self._settings.replay_base_url,
            timeout_seconds=self._settings.replay_timeout_seconds,
            reserved_keys=self._settings.reserved_metadata_keys,
        )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    def services(self, session: Session) -> UnitServices:
        configurations = ApprovalConfigurationService(session, self._clock)
        directory = ApproverDirectory(session, self._clock)
        delegations = DelegationRegistry(session, self._clock, self._permissions)
        lifecycle = SolicitationLifecycle(
            session,
            self._clock,
            configurations,
            directory,
            code_prefix=self._settings.solicitation_code_prefix,
        )
        processor = DecisionProcessor(
            session, self._clock, lifecycle, configurations, directory, delegations
        )
        return UnitServices(configurations, directory, delegations, lifecycle, processor)

    def _run(self, operation: str, unit: Callable[[UnitServices], T]) -> tuple[T, int]:
        """Run ``unit`` in its own transaction, retrying lost version races."""
        max_attempts = max(1, self._settings.max_optimistic_retries)
        attempt = 0
        while True:
            attempt += 1
            try:
                with session_scope(self._session_factory) as session:
                    result = unit(self.services(session))
                return result, attempt
            except (OptimisticLockError, StaleDataError) as exc:
                if attempt >= max_attempts:
                    logger.warning(
                        "optimistic_retries_exhausted",
                        extra={"operation": operation, "attempts": attempt},
                    )
                    if isinstance(exc, StaleDataError):
                        raise OptimisticLockError(operation, "commit") from exc
                    raise
                logger.info(
                    "optimistic_retry",
                    extra={"operation": operation, "attempt": attempt},
                )

    def _read(self, query: Callable[[SolicitationSelector], T]) -> T:
        with session_scope(self._session_factory) as session:
            return query(SolicitationSelector(session))

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self._events.publish(event)

    def _event(self, name: str, subject_id: UUID, **payload: Any) -> DomainEvent:
        return DomainEvent(name, self._clock.now(), subject_id, payload)

    def _expire_lazily(self, solicitation_id: UUID) -> None:
        expired, _ = self._run(
            "expire_if_due", lambda s: s.lifecycle.expire_if_due(solicitation_id)
        )
        if expired is not None:
            self._publish([self._expired_event(expired)])

    def _expired_event(self, solicitation: Solicitation) -> DomainEvent:
        return self._event(
            SOLICITATION_EXPIRED,
            solicitation.id,
            code=solicitation.code,
            action_type=solicitation.action_type,
            expires_at=solicitation.expires_at.isoformat(),
        )

    # ------------------------------------------------------------------
    # Approval requirement
    # ------------------------------------------------------------------

    def check_requires_approval(
        self,
        action_type: str,
        principal: Principal,
        value: Decimal | None = None,
    ) -> bool:
        """Whether ``principal`` needs approval to perform ``action_type``.

        False when no active configuration exists, when ``value`` is below
        the configuration's ``min_value``, or when auto-approval applies to
        the principal.  Any error answers True.
        """
        try:
            with session_scope(self._session_factory) as session:
                config = ApprovalConfigurationService(session, self._clock).find_active(
                    action_type
                )
            if config is None:
                return False
            if config.min_value is not None and value is not None and value < config.min_value:
                return False
            return not self._auto_approves(config, principal)
        except Exception as exc:
            log_approval_check_failed_closed(
                action_type=action_type,
                principal_id=str(principal.id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return True

    def _auto_approves(self, config: ApprovalConfiguration, principal: Principal) -> bool:
        if not config.allows_auto_approval:
            return False
        if principal.profile is not None and principal.profile in config.auto_approval_profiles:
            return True
        return self._permissions is not None and self._permissions.has_permission(
            principal, PERMISSION_AUTO_APPROVE, scope=config.action_type
        )

    # ------------------------------------------------------------------
    # Solicitations
    # ------------------------------------------------------------------

    def create_solicitation(
        self,
        action_type: str,
        requester: Principal,
        deferred_request: DeferredRequest,
        justification: str,
        value: Decimal | None = None,
        context_data: dict[str, Any] | None = None,
    ) -> Solicitation:
        with LogContext.bind(actor_id=requester.id, action_type=action_type):
            solicitation, _ = self._run(
                "create_solicitation",
                lambda s: s.lifecycle.create(
                    action_type, requester, deferred_request, justification, value, context_data
                ),
            )
            self._publish([
                self._event(
                    SOLICITATION_CREATED,
                    solicitation.id,
                    code=solicitation.code,
                    action_type=action_type,
                    requester_id=str(requester.id),
                    expires_at=solicitation.expires_at.isoformat(),
                ),
            ])
            logger.info(
                "solicitation_created",
                extra={
                    "solicitation_id": str(solicitation.id),
                    "code": solicitation.code,
                    "quorum_target": str(solicitation.quorum_target),
                },
            )
            return solicitation

    def submit_decision(
        self,
        solicitation_id: UUID,
        principal: Principal,
        action: DecisionAction | str,
        justification: str | None = None,
        credential: str | None = None,
    ) -> DecisionSubmission:
        """Record a decision; replay the deferred request if it approved the solicitation.

        ``credential`` is the approving caller's bearer token, forwarded to
        the replayed request.
        """
        action = DecisionAction(action)
        with LogContext.bind(solicitation_id=solicitation_id, actor_id=principal.id):
            try:
                outcome, attempts = self._run(
                    "submit_decision",
                    lambda s: s.processor.process(solicitation_id, principal, action, justification),
                )
            except SolicitationExpiredError:
                self._expire_lazily(solicitation_id)
                raise

            self._publish(outcome.events)
            log_decision_outcome(
                solicitation_id=str(solicitation_id),
                action=action.value,
                status=outcome.solicitation.status.value,
                transitioned=outcome.transitioned,
                attempts=attempts,
            )

            execution = None
            if outcome.approved:
                execution = self._execute(outcome.solicitation, credential, principal.id)
            return DecisionSubmission(outcome, execution, attempts)

    def cancel(
        self,
        solicitation_id: UUID,
        principal: Principal,
        reason: str | None = None,
    ) -> Solicitation:
        with LogContext.bind(solicitation_id=solicitation_id, actor_id=principal.id):
            try:
                solicitation, _ = self._run(
                    "cancel",
                    lambda s: s.lifecycle.cancel(
                        solicitation_id, principal, reason, self._permissions
                    ),
                )
            except SolicitationExpiredError:
                self._expire_lazily(solicitation_id)
                raise
            self._publish([
                self._event(
                    SOLICITATION_CANCELLED,
                    solicitation.id,
                    code=solicitation.code,
                    cancelled_by=str(principal.id),
                    reason=reason,
                ),
            ])
            return solicitation

    def get_solicitation(self, solicitation_id: UUID) -> Solicitation:
        """Load a solicitation, expiring it first when its deadline has passed."""

        def unit(s: UnitServices) -> tuple[Solicitation, bool]:
            expired = s.lifecycle.expire_if_due(solicitation_id)
            if expired is not None:
                return expired, True
            return s.lifecycle.get(solicitation_id), False

        (solicitation, expired), _ = self._run("get_solicitation", unit)
        if expired:
            self._publish([self._expired_event(solicitation)])
        return solicitation

    def add_internal_note(self, solicitation_id: UUID, author_id: UUID, note: str) -> Solicitation:
        solicitation, _ = self._run(
            "add_internal_note",
            lambda s: s.lifecycle.add_internal_note(solicitation_id, author_id, note),
        )
        return solicitation

    def expire_overdue(self, limit: int | None = None) -> list[Solicitation]:
        """Sweep overdue PENDING solicitations to EXPIRED."""
        expired, _ = self._run("expire_overdue", lambda s: s.lifecycle.expire_overdue(limit))
        self._publish(self._expired_event(solicitation) for solicitation in expired)
        return expired

    # ------------------------------------------------------------------
    # Delegations
    # ------------------------------------------------------------------

    def delegate(
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
        delegation, _ = self._run(
            "delegate",
            lambda s: s.delegations.create(
                source_approver_id,
                delegate_id,
                window,
                scope,
                conditions,
                allowed_action_types=tuple(allowed_action_types),
                max_value=max_value,
                reason=reason,
                created_by=created_by,
            ),
        )
        self._publish([
            self._event(
                DELEGATION_CREATED,
                delegation.id,
                source_approver_id=str(source_approver_id),
                delegate_id=str(delegate_id),
                scope=delegation.scope.value,
                start_date=delegation.start_date.isoformat(),
                end_date=delegation.end_date.isoformat(),
            ),
        ])
        return delegation

    def revoke_delegation(
        self,
        delegation_id: UUID,
        principal: Principal,
        reason: str | None = None,
    ) -> Delegation:
        delegation, _ = self._run(
            "revoke_delegation",
            lambda s: s.delegations.revoke(delegation_id, principal, reason),
        )
        self._publish([
            self._event(
                DELEGATION_REVOKED,
                delegation.id,
                revoked_by=str(principal.id),
                reason=reason,
            ),
        ])
        return delegation

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def replay(self, solicitation_id: UUID, credential: str | None, actor: Principal) -> ReplayExecution:
        """Manually re-issue an APPROVED solicitation's deferred request.

        This is the operator's remediation path after a failed replay.  It
        needs ``approval.solicitation.replay`` for the action type and is
        refused once a replay has succeeded.
        """
        with LogContext.bind(solicitation_id=solicitation_id, actor_id=actor.id):
            with session_scope(self._session_factory) as session:
                lifecycle = self.services(session).lifecycle
                solicitation = lifecycle.get(solicitation_id)
                prior = lifecycle.successful_execution(solicitation_id)

            if self._permissions is None or not self._permissions.has_permission(
                actor, PERMISSION_MANUAL_REPLAY, scope=solicitation.action_type
            ):
                raise ReplayNotAllowedError(str(solicitation_id), str(actor.id))
            if solicitation.status is not SolicitationStatus.APPROVED:
                raise SolicitationNotApprovedError(str(solicitation_id), solicitation.status.value)
            if prior is not None:
                raise ReplayAlreadySucceededError(str(solicitation_id), str(prior.id))
            if not credential:
                raise ReplayExecutionError(str(solicitation_id), "no bearer credential supplied")

            logger.info("manual_replay_requested", extra={"solicitation_id": str(solicitation_id)})
            return self._execute(solicitation, credential, actor.id)

    def _execute(
        self,
        solicitation: Solicitation,
        credential: str | None,
        triggered_by: UUID | None,
    ) -> ReplayExecution:
        try:
            result = self._replay_executor.replay(solicitation, credential)
        except ReplayExecutionError as exc:
            result = ExecutionResult(success=False, error=exc.message)

        execution, _ = self._run(
            "record_execution",
            lambda s: s.lifecycle.record_execution(solicitation.id, result, triggered_by),
        )
        log_replay_outcome(
            solicitation_id=str(solicitation.id),
            success=result.success,
            status_code=result.status_code,
            error=result.error,
            duration_ms=result.details.get("duration_ms"),
            triggered_by=str(triggered_by) if triggered_by else None,
            execution_id=str(execution.id),
        )
        self._publish([
            self._event(
                SOLICITATION_EXECUTED if result.success else SOLICITATION_EXECUTION_FAILED,
                solicitation.id,
                execution_id=str(execution.id),
                status_code=result.status_code,
                error=result.error,
            ),
        ])
        return execution

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def seed(self, approval_set: ApprovalSet, actor_id: UUID | None = None) -> list[ApprovalConfiguration]:
        created, _ = self._run(
            "seed",
            lambda s: seed_approval_set(
                s.configurations.session,
                approval_set,
                actor_id=actor_id,
                clock=self._clock,
                default_time_limit_hours=self._settings.default_time_limit_hours,
            ),
        )
        return created

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pending_for(self, principal: Principal, now: datetime | None = None) -> list[Solicitation]:
        now = now or self._clock.now()
        return self._read(lambda q: q.pending_for_principal(principal, now))

    def by_requester(
        self,
        requester_id: UUID,
        status: SolicitationStatus | str | None = None,
    ) -> list[Solicitation]:
        return self._read(lambda q: q.by_requester(requester_id, status))

    def history(self, solicitation_id: UUID) -> list[DecisionRecord]:
        return self._read(lambda q: q.history(solicitation_id))

    def executions(self, solicitation_id: UUID) -> list[ReplayExecution]:
        return self._read(lambda q: q.executions(solicitation_id))

    def list_unexecuted_approved(self) -> list[Solicitation]:
        return self._read(lambda q: q.list_unexecuted_approved())

    def statistics(
        self,
        action_type: str | None = None,
        since: datetime | None = None,
    ) -> SolicitationStatistics:
        return self._read(lambda q: q.statistics(action_type, since))

    def close(self) -> None:
        if self._owns_executor:
            self._replay_executor.close()
