"""
End-to-end tests for ApprovalOrchestrator.

These run against committing sessions: every call is its own unit of work,
events are observed only after commit, and replay goes through an
httpx.MockTransport upstream.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest

from approval_config import ApprovalSettings, load_approval_set
from approval_kernel.db.engine import session_scope
from approval_kernel.domain.approval import (
    DecisionAction,
    DelegationWindow,
    SolicitationStatus,
)
from approval_kernel.exceptions import (
    ApproverNotEligibleError,
    InvalidSolicitationTransitionError,
    OptimisticLockError,
    ReplayAlreadySucceededError,
    ReplayNotAllowedError,
    SolicitationExpiredError,
    SolicitationNotApprovedError,
    SolicitationNotFoundError,
)
from approval_services.events import InMemoryEventSink
from approval_services.orchestrator import ApprovalOrchestrator
from approval_services.permissions import StaticPermissionChecker
from approval_services.replay_executor import ReplayExecutor

BASE_URL = "https://host.example"

GRANTS = {
    "administrator": ["approval.solicitation.replay", "approval.solicitation.cancel"],
    "director": ["approval.auto_approve:benefit.grant"],
}


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def build_orchestrator(session_factory, deterministic_clock, events):
    def _build(client: httpx.Client, permissions=GRANTS, **settings):
        return ApprovalOrchestrator(
            session_factory=session_factory,
            settings=ApprovalSettings(replay_base_url=BASE_URL, **settings),
            clock=deterministic_clock,
            permission_checker=StaticPermissionChecker(permissions) if permissions is not None else None,
            event_sink=events,
            replay_executor=ReplayExecutor(BASE_URL, client=client),
        )

    return _build


@pytest.fixture
def orchestrator(build_orchestrator, http_client):
    return build_orchestrator(http_client)


@pytest.fixture
def configure(session_factory, user_seats, deterministic_clock):
    """Commit a configuration with ``n`` user seats; returns ``(config, seats, principals)``."""

    def _configure(n=1, strategy="simple", min_approvals=1, action_type="benefit.grant", **kwargs):
        principals, references = user_seats(n)
        with session_scope(session_factory) as session:
            services = ApprovalOrchestrator(session_factory, clock=deterministic_clock).services(session)
            config = services.configurations.create(action_type, strategy, min_approvals, **kwargs)
            seats = [services.directory.add(config.id, reference) for reference in references]
        return config, seats, principals

    return _configure


@pytest.fixture
def open_solicitation(orchestrator, requester, deferred_request):
    def _open(action_type="benefit.grant", **kwargs):
        return orchestrator.create_solicitation(
            action_type, requester, deferred_request, "monthly grant", **kwargs
        )

    return _open


class TestApproveAndReplay:
    def test_simple_approval_replays_once(
        self, orchestrator, configure, open_solicitation, events, http_transport
    ):
        _, _, (approver,) = configure()
        solicitation = open_solicitation()

        submission = orchestrator.submit_decision(
            solicitation.id, approver, DecisionAction.APPROVE, credential="approver-token"
        )

        assert submission.solicitation.status is SolicitationStatus.APPROVED
        assert submission.execution.success
        assert submission.execution.status_code == 200
        assert len(http_transport.requests) == 1
        assert http_transport.requests[0].headers["authorization"] == "Bearer approver-token"
        assert events.names() == [
            "solicitation.created",
            "decision.processed",
            "solicitation.approved",
            "solicitation.executed",
        ]
        assert orchestrator.get_solicitation(solicitation.id).status is SolicitationStatus.APPROVED
        assert [e.success for e in orchestrator.executions(solicitation.id)] == [True]
        assert orchestrator.list_unexecuted_approved() == []

    def test_majority_three_of_five(self, orchestrator, configure, open_solicitation, http_transport):
        _, _, principals = configure(5, "majority", 3)
        solicitation = open_solicitation()

        for principal in principals[:2]:
            submission = orchestrator.submit_decision(solicitation.id, principal, DecisionAction.APPROVE, credential="t")
            assert submission.solicitation.status is SolicitationStatus.PENDING
            assert submission.execution is None
        submission = orchestrator.submit_decision(solicitation.id, principals[2], DecisionAction.APPROVE, credential="t")

        assert submission.solicitation.status is SolicitationStatus.APPROVED
        assert submission.solicitation.approvals_received == 3
        assert len(http_transport.requests) == 1
        assert len(orchestrator.history(solicitation.id)) == 3

    def test_rejection_does_not_replay(self, orchestrator, configure, open_solicitation, events, http_transport):
        _, _, (approver,) = configure()
        solicitation = open_solicitation()
        submission = orchestrator.submit_decision(solicitation.id, approver, DecisionAction.REJECT, "incomplete")
        assert submission.solicitation.status is SolicitationStatus.REJECTED
        assert submission.execution is None
        assert http_transport.requests == []
        assert "solicitation.rejected" in events.names()


class TestReplayFailures:
    def test_failed_replay_is_recorded_and_approval_stands(
        self, build_orchestrator, configure, requester, deferred_request, events, captured_logs
    ):
        transport = httpx.MockTransport(lambda r: httpx.Response(502, json={"message": "bad gateway"}))
        with httpx.Client(transport=transport) as client:
            orchestrator = build_orchestrator(client)
            _, _, (approver,) = configure()
            solicitation = orchestrator.create_solicitation("benefit.grant", requester, deferred_request, "x")
            submission = orchestrator.submit_decision(solicitation.id, approver, DecisionAction.APPROVE, credential="t")

        assert not submission.execution.success
        assert submission.execution.status_code == 502
        assert submission.execution.error == "HTTP 502: bad gateway"
        assert orchestrator.get_solicitation(solicitation.id).status is SolicitationStatus.APPROVED
        assert [s.id for s in orchestrator.list_unexecuted_approved()] == [solicitation.id]
        assert events.names()[-1] == "solicitation.execution_failed"
        failures = [r for r in captured_logs() if r["message"] == "approval_replay_failed"]
        assert len(failures) == 1
        assert failures[0]["level"] == "ERROR"

    def test_missing_credential_records_failure(self, orchestrator, configure, open_solicitation, http_transport):
        _, _, (approver,) = configure()
        solicitation = open_solicitation()
        submission = orchestrator.submit_decision(solicitation.id, approver, DecisionAction.APPROVE)
        assert not submission.execution.success
        assert submission.execution.error == "no bearer credential supplied"
        assert http_transport.requests == []

    def test_manual_replay_after_failure(
        self, build_orchestrator, configure, requester, deferred_request, make_principal
    ):
        responses = iter([httpx.Response(503, text="maintenance"), httpx.Response(201, json={"id": 1})])
        with httpx.Client(transport=httpx.MockTransport(lambda r: next(responses))) as client:
            orchestrator = build_orchestrator(client)
            _, _, (approver,) = configure()
            solicitation = orchestrator.create_solicitation("benefit.grant", requester, deferred_request, "x")
            orchestrator.submit_decision(solicitation.id, approver, DecisionAction.APPROVE, credential="t")

            admin = make_principal(profile="administrator")
            execution = orchestrator.replay(solicitation.id, "operator-token", admin)
            assert execution.success
            assert execution.triggered_by == admin.id

            with pytest.raises(ReplayAlreadySucceededError):
                orchestrator.replay(solicitation.id, "operator-token", admin)

        history = orchestrator.executions(solicitation.id)
        assert [(e.attempt_number, e.success) for e in history] == [(1, False), (2, True)]
        assert orchestrator.list_unexecuted_approved() == []


class TestManualReplayChecks:
    def test_unknown_solicitation(self, orchestrator, make_principal):
        with pytest.raises(SolicitationNotFoundError):
            orchestrator.replay(uuid4(), "t", make_principal(profile="administrator"))

    def test_permission_required(self, orchestrator, configure, open_solicitation, make_principal):
        configure()
        solicitation = open_solicitation()
        with pytest.raises(ReplayNotAllowedError):
            orchestrator.replay(solicitation.id, "t", make_principal(profile="clerk"))

    def test_no_permission_checker_refuses(self, build_orchestrator, http_client, configure, requester, deferred_request, make_principal):
        orchestrator = build_orchestrator(http_client, permissions=None)
        configure()
        solicitation = orchestrator.create_solicitation("benefit.grant", requester, deferred_request, "x")
        with pytest.raises(ReplayNotAllowedError):
            orchestrator.replay(solicitation.id, "t", make_principal(profile="administrator"))

    def test_must_be_approved(self, orchestrator, configure, open_solicitation, make_principal):
        configure()
        solicitation = open_solicitation()
        with pytest.raises(SolicitationNotApprovedError):
            orchestrator.replay(solicitation.id, "t", make_principal(profile="administrator"))


class TestExpiryAndCancel:
    def test_lazy_expiry_on_decision(
        self, orchestrator, configure, open_solicitation, events, deterministic_clock
    ):
        _, _, (approver,) = configure(time_limit_hours=1)
        solicitation = open_solicitation()
        deterministic_clock.advance(hours=2)

        with pytest.raises(SolicitationExpiredError):
            orchestrator.submit_decision(solicitation.id, approver, DecisionAction.APPROVE, credential="t")

        assert orchestrator.get_solicitation(solicitation.id).status is SolicitationStatus.EXPIRED
        assert events.names().count("solicitation.expired") == 1
        assert orchestrator.history(solicitation.id) == []

    def test_lazy_expiry_on_cancel(self, orchestrator, configure, open_solicitation, requester, deterministic_clock):
        configure(time_limit_hours=1)
        solicitation = open_solicitation()
        deterministic_clock.advance(hours=2)
        with pytest.raises(SolicitationExpiredError):
            orchestrator.cancel(solicitation.id, requester)
        assert orchestrator.get_solicitation(solicitation.id).status is SolicitationStatus.EXPIRED

    def test_cancel_publishes_event(self, orchestrator, configure, open_solicitation, make_principal, events):
        configure()
        solicitation = open_solicitation()
        admin = make_principal(profile="administrator")
        cancelled = orchestrator.cancel(solicitation.id, admin, "duplicate")
        assert cancelled.status is SolicitationStatus.CANCELLED
        (event,) = events.of("solicitation.cancelled")
        assert event.payload["cancelled_by"] == str(admin.id)
        assert event.payload["reason"] == "duplicate"

    def test_cannot_cancel_approved(self, orchestrator, configure, open_solicitation, requester):
        _, _, (approver,) = configure()
        solicitation = open_solicitation()
        orchestrator.submit_decision(solicitation.id, approver, DecisionAction.APPROVE, credential="t")
        with pytest.raises(InvalidSolicitationTransitionError):
            orchestrator.cancel(solicitation.id, requester)

    def test_expire_overdue_sweep(self, orchestrator, configure, requester, deferred_request, events, deterministic_clock):
        configure(time_limit_hours=1)
        first = orchestrator.create_solicitation("benefit.grant", requester, deferred_request, "a")
        deterministic_clock.advance(hours=2)
        swept = orchestrator.expire_overdue()
        assert [s.id for s in swept] == [first.id]
        assert [e.subject_id for e in events.of("solicitation.expired")] == [first.id]
        assert orchestrator.expire_overdue() == []


class TestRequiresApproval:
    def test_no_configuration(self, orchestrator, make_principal):
        assert orchestrator.check_requires_approval("unconfigured", make_principal()) is False

    def test_configured_action(self, orchestrator, configure, make_principal):
        configure(min_value=Decimal("100"))
        clerk = make_principal(profile="clerk")
        assert orchestrator.check_requires_approval("benefit.grant", clerk, Decimal("500")) is True
        assert orchestrator.check_requires_approval("benefit.grant", clerk, Decimal("50")) is False

    def test_auto_approval(self, orchestrator, configure, make_principal):
        configure(allows_auto_approval=True, auto_approval_profiles=["administrator"])
        assert orchestrator.check_requires_approval("benefit.grant", make_principal(profile="administrator")) is False
        assert orchestrator.check_requires_approval("benefit.grant", make_principal(profile="director")) is False
        assert orchestrator.check_requires_approval("benefit.grant", make_principal(profile="clerk")) is True

    def test_fails_closed(self, deterministic_clock, make_principal, captured_logs):
        def broken_factory():
            raise RuntimeError("database unavailable")

        orchestrator = ApprovalOrchestrator(session_factory=broken_factory, clock=deterministic_clock)
        try:
            assert orchestrator.check_requires_approval("benefit.grant", make_principal()) is True
        finally:
            orchestrator.close()
        records = [r for r in captured_logs() if r["message"] == "approval_check_failed_closed"]
        assert records[0]["error_type"] == "RuntimeError"


class TestDelegations:
    def test_delegate_decides_then_revoked(
        self, orchestrator, configure, requester, deferred_request, make_principal, events, deterministic_clock
    ):
        _, seats, principals = configure(2, "unanimous")
        seat, owner = seats[0], principals[0]
        deputy = make_principal()
        now = deterministic_clock.now()
        delegation = orchestrator.delegate(
            seat.id, deputy.id, DelegationWindow(now, now + timedelta(days=3)), created_by=owner.id
        )
        assert events.of("delegation.created")[0].subject_id == delegation.id

        first = orchestrator.create_solicitation("benefit.grant", requester, deferred_request, "a")
        assert [s.id for s in orchestrator.pending_for(deputy)] == [first.id]
        submission = orchestrator.submit_decision(first.id, deputy, DecisionAction.APPROVE)
        assert submission.decision.delegation_id == delegation.id
        assert submission.decision.approver_id == seat.id

        revoked = orchestrator.revoke_delegation(delegation.id, owner, "back from leave")
        assert revoked.revoked_by == owner.id
        assert events.names()[-1] == "delegation.revoked"
        second = orchestrator.create_solicitation("benefit.grant", requester, deferred_request, "b")
        with pytest.raises(ApproverNotEligibleError):
            orchestrator.submit_decision(second.id, deputy, DecisionAction.APPROVE)
        assert orchestrator.submit_decision(second.id, owner, DecisionAction.APPROVE).decision.delegation_id is None


class TestVersionConflicts:
    def test_decision_from_stale_copy_loses(
        self, orchestrator, configure, open_solicitation, session_factory, http_transport
    ):
        _, _, principals = configure(3, "majority", 2)
        solicitation = open_solicitation()

        stale = session_factory()
        try:
            services = orchestrator.services(stale)
            held = services.lifecycle.load_model(solicitation.id)
            stale.commit()

            orchestrator.submit_decision(solicitation.id, principals[0], DecisionAction.APPROVE)

            assert held.version == 1
            with pytest.raises(OptimisticLockError):
                services.processor.process(solicitation.id, principals[1], DecisionAction.APPROVE)
        finally:
            stale.rollback()
            stale.close()

        current = orchestrator.get_solicitation(solicitation.id)
        assert current.status is SolicitationStatus.PENDING
        assert current.approvals_received == 1
        assert current.version == 2
        assert len(orchestrator.history(solicitation.id)) == 1
        assert http_transport.requests == []


class TestQueriesAndSeeding:
    def test_seed_and_statistics(self, orchestrator, requester, deferred_request, make_principal, test_actor_id):
        created = orchestrator.seed(load_approval_set(), actor_id=test_actor_id)
        assert len(created) == 5
        assert orchestrator.seed(load_approval_set()) == []

        manager = make_principal(profile="manager")
        solicitation = orchestrator.create_solicitation("benefit.grant", requester, deferred_request, "x")
        assert [s.id for s in orchestrator.pending_for(manager)] == [solicitation.id]
        assert [s.id for s in orchestrator.by_requester(requester.id, SolicitationStatus.PENDING)] == [solicitation.id]

        stats = orchestrator.statistics("benefit.grant")
        assert stats.total == 1
        assert stats.by_status["pending"] == 1

    def test_internal_note(self, orchestrator, configure, open_solicitation, test_actor_id):
        configure()
        solicitation = open_solicitation()
        noted = orchestrator.add_internal_note(solicitation.id, test_actor_id, "called the citizen")
        assert noted.internal_notes.endswith("called the citizen")
