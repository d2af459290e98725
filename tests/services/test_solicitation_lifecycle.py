"""
Tests for the solicitation lifecycle.

Covers:
- Creation snapshots the quorum target and hashes the deferred request
- Tamper detection on load
- One pending solicitation per subject
- Cancellation rules, lazy expiry and the expiry sweep
- Internal notes
"""

import re
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import text

from approval_kernel.domain.approval import (
    DeferredRequest,
    ProfileReference,
    SolicitationStatus,
)
from approval_kernel.exceptions import (
    CancellationNotAllowedError,
    ConfigurationNotFoundError,
    DuplicateSolicitationError,
    InvalidSolicitationTransitionError,
    MissingApproversError,
    SolicitationExpiredError,
    SolicitationNotFoundError,
    TamperDetectedError,
)
from approval_kernel.models.solicitation import SolicitationModel
from approval_kernel.services.solicitation_service import compute_request_hash, generate_code
from approval_services.permissions import StaticPermissionChecker


@pytest.fixture
def unanimous(make_configuration, user_seats):
    principals, references = user_seats(3)
    config, seats = make_configuration(strategy="unanimous", seats=references, time_limit_hours=24)
    return config, principals, seats


@pytest.fixture
def pending(unanimous, lifecycle, requester, deferred_request):
    return lifecycle.create("benefit.grant", requester, deferred_request, "Monthly grant")


class TestCreate:
    def test_created_pending_with_snapshot(self, unanimous, pending, requester, deterministic_clock):
        config, _, _ = unanimous
        assert pending.status is SolicitationStatus.PENDING
        assert pending.configuration_id == config.id
        assert pending.requester_id == requester.id
        assert pending.quorum_target == Decimal(3)
        assert pending.expires_at == deterministic_clock.now() + timedelta(hours=24)
        assert pending.approvals_received == 0
        assert re.fullmatch(r"SOL-[0-9A-Z]+-[0-9A-F]{6}", pending.code)

    def test_quorum_target_frozen_after_seat_changes(self, unanimous, pending, directory, lifecycle):
        config, _, _ = unanimous
        directory.add(config.id, ProfileReference("late-joiner"))
        assert lifecycle.get(pending.id).quorum_target == Decimal(3)

    def test_requester_unit_copied_into_context(self, pending):
        assert pending.context_data["unit"] == "benefits"
        assert pending.context_data["department"] == "social"

    def test_explicit_context_wins(self, unanimous, lifecycle, requester, deferred_request):
        solicitation = lifecycle.create(
            "benefit.grant", requester, deferred_request, "x", context_data={"unit": "treasury"}
        )
        assert solicitation.context_data["unit"] == "treasury"

    def test_no_configuration(self, lifecycle, requester, deferred_request):
        with pytest.raises(ConfigurationNotFoundError):
            lifecycle.create("unknown.action", requester, deferred_request, "x")

    def test_no_seats(self, configurations, lifecycle, requester, deferred_request):
        configurations.create("benefit.grant", "simple")
        with pytest.raises(MissingApproversError):
            lifecycle.create("benefit.grant", requester, deferred_request, "x")

    def test_no_seat_can_act_on_value(self, make_configuration, lifecycle, requester, deferred_request):
        make_configuration(seats=[(ProfileReference("manager"), {"max_value": Decimal("100")})])
        with pytest.raises(MissingApproversError):
            lifecycle.create("benefit.grant", requester, deferred_request, "x", value=Decimal("500"))
        assert lifecycle.create("benefit.grant", requester, deferred_request, "x", value=Decimal("50"))

    def test_one_pending_per_subject(self, unanimous, lifecycle, requester):
        request = DeferredRequest(method="PUT", url="/api/citizens/42", params={"id": "42"})
        lifecycle.create("benefit.grant", requester, request, "first")
        with pytest.raises(DuplicateSolicitationError):
            lifecycle.create("benefit.grant", requester, request, "second")

    def test_subject_freed_once_terminal(self, unanimous, lifecycle, requester):
        request = DeferredRequest(method="PUT", url="/api/citizens/42", params={"id": "42"})
        first = lifecycle.create("benefit.grant", requester, request, "first")
        lifecycle.cancel(first.id, requester)
        assert lifecycle.create("benefit.grant", requester, request, "second").id != first.id

    def test_code_is_time_prefixed(self, deterministic_clock):
        code = generate_code("SOL", deterministic_clock.now())
        assert code.startswith("SOL-")
        assert code.split("-")[1] == generate_code("SOL", deterministic_clock.now()).split("-")[1]


class TestIntegrity:
    def test_hash_covers_write_once_fields(self, session, pending):
        model = session.get(SolicitationModel, pending.id)
        assert model.request_hash == compute_request_hash(
            solicitation_id=model.id,
            action_type=model.action_type,
            configuration_id=model.configuration_id,
            requester_id=model.requester_id,
            justification=model.justification,
            deferred_request=model.deferred_request,
            value_involved=model.value_involved,
        )

    def test_tampered_request_detected(self, session, lifecycle, pending):
        session.execute(
            text("UPDATE approval_solicitations SET justification = 'changed' WHERE id = :id"),
            {"id": str(pending.id)},
        )
        session.expire_all()
        with pytest.raises(TamperDetectedError):
            lifecycle.get(pending.id)

    def test_unknown_solicitation(self, lifecycle):
        with pytest.raises(SolicitationNotFoundError):
            lifecycle.get(uuid4())


class TestCancel:
    def test_requester_cancels(self, lifecycle, pending, requester):
        cancelled = lifecycle.cancel(pending.id, requester, "no longer needed")
        assert cancelled.status is SolicitationStatus.CANCELLED
        assert cancelled.cancelled_by == requester.id
        assert cancelled.cancellation_reason == "no longer needed"
        assert cancelled.completed_at is not None

    def test_stranger_cannot_cancel(self, lifecycle, pending, make_principal):
        with pytest.raises(CancellationNotAllowedError):
            lifecycle.cancel(pending.id, make_principal(profile="clerk"))

    def test_permission_scoped_to_action_type(self, lifecycle, pending, make_principal):
        supervisor = make_principal(profile="supervisor")
        wrong_scope = StaticPermissionChecker({"supervisor": ["approval.solicitation.cancel:payment.release"]})
        with pytest.raises(CancellationNotAllowedError):
            lifecycle.cancel(pending.id, supervisor, permission_checker=wrong_scope)
        right_scope = StaticPermissionChecker({"supervisor": ["approval.solicitation.cancel:benefit.grant"]})
        assert lifecycle.cancel(pending.id, supervisor, permission_checker=right_scope).status is (
            SolicitationStatus.CANCELLED
        )

    def test_cannot_cancel_terminal(self, lifecycle, pending, requester):
        lifecycle.cancel(pending.id, requester)
        with pytest.raises(InvalidSolicitationTransitionError):
            lifecycle.cancel(pending.id, requester)

    def test_cannot_cancel_after_deadline(self, lifecycle, pending, requester, deterministic_clock):
        deterministic_clock.advance(hours=25)
        with pytest.raises(SolicitationExpiredError):
            lifecycle.cancel(pending.id, requester)
        assert lifecycle.get(pending.id).status is SolicitationStatus.PENDING


class TestExpiry:
    def test_expire_if_due(self, lifecycle, pending, deterministic_clock):
        assert lifecycle.expire_if_due(pending.id) is None
        deterministic_clock.advance(hours=24)
        assert lifecycle.expire_if_due(pending.id) is None
        deterministic_clock.advance(seconds=1)
        expired = lifecycle.expire_if_due(pending.id)
        assert expired.status is SolicitationStatus.EXPIRED
        assert lifecycle.expire_if_due(pending.id) is None

    def test_sweep(self, unanimous, lifecycle, requester, deterministic_clock):
        first = lifecycle.create("benefit.grant", requester, DeferredRequest("POST", "/a"), "a")
        deterministic_clock.advance(hours=2)
        second = lifecycle.create("benefit.grant", requester, DeferredRequest("POST", "/b"), "b")
        deterministic_clock.advance(hours=23)

        swept = lifecycle.expire_overdue()
        assert [s.id for s in swept] == [first.id]
        assert lifecycle.get(second.id).status is SolicitationStatus.PENDING

    def test_sweep_limit(self, unanimous, lifecycle, requester, deterministic_clock):
        for path in ("/a", "/b", "/c"):
            lifecycle.create("benefit.grant", requester, DeferredRequest("POST", path), path)
        deterministic_clock.advance(hours=48)
        assert len(lifecycle.expire_overdue(limit=2)) == 2
        assert len(lifecycle.expire_overdue()) == 1

    def test_expired_is_terminal(self, lifecycle, pending, deterministic_clock):
        deterministic_clock.advance(hours=30)
        lifecycle.expire_if_due(pending.id)
        with pytest.raises(InvalidSolicitationTransitionError):
            lifecycle.expire(pending.id)


def test_internal_notes_append(lifecycle, pending, test_actor_id, deterministic_clock):
    lifecycle.add_internal_note(pending.id, test_actor_id, "called the citizen")
    deterministic_clock.advance(hours=1)
    noted = lifecycle.add_internal_note(pending.id, test_actor_id, "documents received")
    lines = noted.internal_notes.split("\n")
    assert len(lines) == 2
    assert lines[0].endswith("called the citizen")
    assert str(test_actor_id) in lines[1]
