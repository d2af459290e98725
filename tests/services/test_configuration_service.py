"""
Tests for the Approval Configuration Registry.

Covers:
- One active configuration per action type
- Policy validation (MAJORITY needs at least two approvals) on every write
- Soft deactivation, refused while pending solicitations exist
- Cloning with seat copy, validated like a fresh create
"""

from datetime import time
from decimal import Decimal
from uuid import uuid4

import pytest

from approval_kernel.domain.approval import ApprovalStrategy, OperatingHours, ProfileReference
from approval_kernel.exceptions import (
    ConfigurationInactiveError,
    ConfigurationInUseError,
    ConfigurationNotFoundError,
    DuplicateConfigurationError,
    InvalidConfigurationError,
    MajorityQuorumError,
    PolicyViolationError,
)


class TestCreate:
    def test_create_and_resolve(self, configurations, test_actor_id):
        created = configurations.create(
            "payment.release",
            ApprovalStrategy.MAJORITY,
            3,
            48,
            description="Release of payment orders",
            actor_id=test_actor_id,
        )
        resolved = configurations.resolve("payment.release")
        assert resolved == created
        assert resolved.strategy is ApprovalStrategy.MAJORITY
        assert resolved.min_approvals == 3
        assert resolved.time_limit_hours == 48
        assert resolved.created_by == test_actor_id
        assert resolved.active

    def test_strategy_accepts_string(self, configurations):
        config = configurations.create("x.y", "weighted", 3)
        assert config.strategy is ApprovalStrategy.WEIGHTED

    def test_operating_hours_persisted(self, configurations):
        hours = OperatingHours(days=frozenset({0, 1, 2, 3, 4}), start=time(8), end=time(18))
        config = configurations.create("x.y", "simple", operating_hours=hours)
        assert configurations.get(config.id).operating_hours == hours

    def test_resolve_unknown_raises(self, configurations):
        with pytest.raises(ConfigurationNotFoundError):
            configurations.resolve("nothing.here")
        assert configurations.find_active("nothing.here") is None

    def test_duplicate_active_rejected(self, configurations):
        configurations.create("benefit.grant", "simple")
        with pytest.raises(DuplicateConfigurationError):
            configurations.create("benefit.grant", "unanimous")

    @pytest.mark.parametrize("min_approvals", [0, 1])
    def test_majority_requires_two(self, configurations, min_approvals):
        with pytest.raises(PolicyViolationError):
            configurations.create("benefit.grant", "majority", min_approvals)

    def test_majority_of_one_is_a_majority_error(self, configurations):
        with pytest.raises(MajorityQuorumError):
            configurations.create("benefit.grant", "majority", 1)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"time_limit_hours": 0},
            {"max_rejections": 0},
        ],
    )
    def test_out_of_range_fields(self, configurations, kwargs):
        with pytest.raises(InvalidConfigurationError):
            configurations.create("benefit.grant", "simple", **kwargs)


class TestUpdate:
    def test_update_fields(self, configurations, test_actor_id, deterministic_clock):
        config = configurations.create("benefit.grant", "simple")
        deterministic_clock.advance(hours=1)
        updated = configurations.update(
            config.id,
            actor_id=test_actor_id,
            strategy="majority",
            min_approvals=2,
            auto_approval_profiles=("director",),
        )
        assert updated.strategy is ApprovalStrategy.MAJORITY
        assert updated.auto_approval_profiles == ("director",)
        assert updated.updated_at > updated.created_at
        assert updated.version == config.version + 1

    def test_update_cannot_create_invalid_majority(self, configurations):
        config = configurations.create("benefit.grant", "simple")
        with pytest.raises(MajorityQuorumError):
            configurations.update(config.id, strategy="majority")

    def test_unknown_field_rejected(self, configurations):
        config = configurations.create("benefit.grant", "simple")
        with pytest.raises(InvalidConfigurationError):
            configurations.update(config.id, active=False)

    def test_update_inactive_rejected(self, configurations):
        config = configurations.create("benefit.grant", "simple")
        configurations.deactivate(config.id)
        with pytest.raises(ConfigurationInactiveError):
            configurations.update(config.id, description="late")

    def test_rename_onto_active_action_type_rejected(self, configurations):
        configurations.create("a.one", "simple")
        second = configurations.create("a.two", "simple")
        with pytest.raises(DuplicateConfigurationError):
            configurations.update(second.id, action_type="a.one")


class TestDeactivate:
    def test_deactivated_is_no_longer_resolved(self, configurations):
        config = configurations.create("benefit.grant", "simple")
        configurations.deactivate(config.id)
        assert configurations.find_active("benefit.grant") is None
        assert configurations.get(config.id).active is False
        assert config.id not in {c.id for c in configurations.list_configurations()}
        assert config.id in {c.id for c in configurations.list_configurations(active_only=False)}

    def test_deactivate_is_idempotent(self, configurations):
        config = configurations.create("benefit.grant", "simple")
        configurations.deactivate(config.id)
        assert configurations.deactivate(config.id).active is False

    def test_new_configuration_after_deactivation(self, configurations):
        old = configurations.create("benefit.grant", "simple")
        configurations.deactivate(old.id)
        new = configurations.create("benefit.grant", "unanimous")
        assert configurations.resolve("benefit.grant").id == new.id

    def test_refused_while_pending(
        self, configurations, make_configuration, lifecycle, requester, deferred_request, manager_reference
    ):
        config, _ = make_configuration(seats=[manager_reference])
        lifecycle.create("benefit.grant", requester, deferred_request, "grant")
        with pytest.raises(ConfigurationInUseError):
            configurations.deactivate(config.id)

    def test_unknown_id(self, configurations):
        with pytest.raises(ConfigurationNotFoundError):
            configurations.deactivate(uuid4())


class TestClone:
    def test_clone_copies_fields_and_active_seats(self, configurations, directory, make_configuration):
        source, seats = make_configuration(
            strategy="weighted",
            min_approvals=3,
            seats=[
                (ProfileReference("director"), {"weight": Decimal("2")}),
                ProfileReference("manager"),
                ProfileReference("retired"),
            ],
            time_limit_hours=72,
        )
        directory.remove(seats[2].id)

        clone = configurations.clone(source.id, {"action_type": "benefit.grant.large"})
        assert clone.id != source.id
        assert clone.strategy is ApprovalStrategy.WEIGHTED
        assert clone.min_approvals == 3
        assert clone.time_limit_hours == 72

        copied = directory.list_for_configuration(clone.id)
        assert [a.reference for a in copied] == [ProfileReference("director"), ProfileReference("manager")]
        assert copied[0].weight == Decimal("2")
        assert all(a.total_approvals == 0 for a in copied)

    def test_clone_without_seats(self, configurations, directory, make_configuration, manager_reference):
        source, _ = make_configuration(seats=[manager_reference])
        clone = configurations.clone(source.id, {"action_type": "other"}, include_approvers=False)
        assert directory.list_for_configuration(clone.id) == []

    def test_clone_onto_own_active_action_type_rejected(self, configurations):
        source = configurations.create("benefit.grant", "simple")
        with pytest.raises(DuplicateConfigurationError):
            configurations.clone(source.id)

    def test_clone_is_validated(self, configurations):
        source = configurations.create("benefit.grant", "simple")
        with pytest.raises(MajorityQuorumError):
            configurations.clone(source.id, {"action_type": "other", "strategy": "majority"})
