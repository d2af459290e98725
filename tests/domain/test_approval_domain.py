"""
Tests for approval domain value objects.

Covers:
- The solicitation state machine (PENDING is the only non-terminal state)
- The approver reference sum type (discriminant, payload, parsing)
- Operating hours, including windows that wrap past midnight
- Delegation conditions and deferred request serialization
- Canonical hashing used for request tamper detection
"""

from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from approval_kernel.domain.approval import (
    TERMINAL_SOLICITATION_STATUSES,
    ApproverType,
    DeferredRequest,
    DelegationConditions,
    HierarchyLevelReference,
    OperatingHours,
    ProfileReference,
    SolicitationStatus,
    UnitReference,
    UserReference,
    can_transition,
    describe_reference,
    make_reference,
    reference_type,
    reference_value,
)
from approval_kernel.utils.hashing import canonicalize_json, hash_payload

MONDAY_NOON = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestStateMachine:
    def test_pending_reaches_every_terminal_state(self):
        for target in TERMINAL_SOLICITATION_STATUSES:
            assert can_transition(SolicitationStatus.PENDING, target)

    def test_terminal_states_are_exactly_the_four_outcomes(self):
        assert TERMINAL_SOLICITATION_STATUSES == {
            SolicitationStatus.APPROVED,
            SolicitationStatus.REJECTED,
            SolicitationStatus.CANCELLED,
            SolicitationStatus.EXPIRED,
        }

    @pytest.mark.parametrize("current", sorted(TERMINAL_SOLICITATION_STATUSES, key=lambda s: s.value))
    def test_no_transition_leaves_a_terminal_state(self, current):
        for target in SolicitationStatus:
            assert not can_transition(current, target)

    def test_pending_cannot_reenter_pending(self):
        assert not can_transition(SolicitationStatus.PENDING, SolicitationStatus.PENDING)


class TestApproverReference:
    def test_discriminant_per_variant(self):
        assert reference_type(UserReference(uuid4())) is ApproverType.USER
        assert reference_type(ProfileReference("manager")) is ApproverType.PROFILE
        assert reference_type(UnitReference("treasury")) is ApproverType.UNIT
        assert reference_type(HierarchyLevelReference(3)) is ApproverType.HIERARCHY_LEVEL

    def test_make_reference_parses_stored_payload(self):
        user_id = uuid4()
        assert make_reference("user", str(user_id)) == UserReference(user_id)
        assert make_reference(ApproverType.HIERARCHY_LEVEL, "4") == HierarchyLevelReference(4)
        assert make_reference("unit", "records") == UnitReference("records")

    def test_reference_value_is_the_inverse_of_make_reference(self):
        for reference in (
            UserReference(uuid4()),
            ProfileReference("controller"),
            UnitReference("treasury"),
            HierarchyLevelReference(2),
        ):
            assert make_reference(reference_type(reference), reference_value(reference)) == reference

    def test_bad_user_payload_raises(self):
        with pytest.raises(ValueError):
            make_reference("user", "not-a-uuid")

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            make_reference("group", "x")

    def test_describe(self):
        assert describe_reference(HierarchyLevelReference(3)) == "hierarchy level >= 3"
        assert describe_reference(ProfileReference("manager")) == "profile 'manager'"


class TestOperatingHours:
    def test_inside_window(self):
        hours = OperatingHours(days=frozenset({0}), start=time(8), end=time(18))
        assert hours.contains(MONDAY_NOON)

    def test_wrong_day(self):
        hours = OperatingHours(days=frozenset({1, 2}), start=time(8), end=time(18))
        assert not hours.contains(MONDAY_NOON)

    def test_outside_time(self):
        hours = OperatingHours(start=time(13), end=time(18))
        assert not hours.contains(MONDAY_NOON)

    def test_window_wrapping_midnight(self):
        hours = OperatingHours(start=time(22), end=time(6))
        assert hours.contains(MONDAY_NOON.replace(hour=23))
        assert hours.contains(MONDAY_NOON.replace(hour=5))
        assert not hours.contains(MONDAY_NOON)

    def test_evaluated_in_utc(self):
        hours = OperatingHours(start=time(11), end=time(13))
        local = MONDAY_NOON.astimezone(timezone(timedelta(hours=-5)))
        assert hours.contains(local)

    def test_from_dict_none(self):
        assert OperatingHours.from_dict(None) is None
        assert OperatingHours.from_dict({}) is None

    def test_dict_form(self):
        hours = OperatingHours.from_dict({"days": [4, 0], "start": "08:00:00", "end": "18:00:00"})
        assert hours.to_dict() == {"days": [0, 4], "start": "08:00:00", "end": "18:00:00"}


class TestDelegationConditions:
    def test_empty_dict_means_no_conditions(self):
        assert DelegationConditions.from_dict(None) == DelegationConditions()

    def test_dict_form(self):
        conditions = DelegationConditions(
            days_of_week=frozenset({0, 1}),
            start_time=time(9),
            allowed_units=("treasury",),
            max_approvals_per_day=3,
        )
        assert DelegationConditions.from_dict(conditions.to_dict()) == conditions


class TestDeferredRequest:
    def test_method_normalized_to_upper_case(self):
        request = DeferredRequest(method="post", url="/x")
        assert request.to_dict()["method"] == "POST"
        assert DeferredRequest.from_dict({"method": "patch", "url": "/x"}).method == "PATCH"

    def test_missing_parts_default_empty(self):
        request = DeferredRequest.from_dict({"method": "GET", "url": "/x"})
        assert request.params == {}
        assert request.headers == {}
        assert request.body is None


class TestHashing:
    def test_key_order_does_not_matter(self):
        assert hash_payload({"a": 1, "b": [1, 2]}) == hash_payload({"b": [1, 2], "a": 1})

    def test_decimal_trailing_zeros_normalized(self):
        assert canonicalize_json({"v": Decimal("10.500")}) == canonicalize_json({"v": Decimal("10.5")})

    def test_any_change_changes_the_hash(self):
        assert hash_payload({"url": "/a"}) != hash_payload({"url": "/b"})

    def test_unsupported_type_rejected(self):
        with pytest.raises(TypeError):
            canonicalize_json({"x": object()})
