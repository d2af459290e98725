"""
Tests for approval_config: runtime settings, the YAML approval set loader,
seeding through the kernel services, and config-driven permissions.
"""

from decimal import Decimal

import pytest

from approval_config import (
    DEFAULT_SET_PATH,
    ApprovalSettings,
    load_approval_set,
    load_settings,
    seed_approval_set,
)
from approval_kernel.domain.approval import (
    ApprovalStrategy,
    HierarchyLevelReference,
    ProfileReference,
)
from approval_kernel.domain.collaborators import PermissionChecker
from approval_kernel.exceptions import ConfigurationLoadError, MajorityQuorumError
from approval_kernel.services.approver_directory import ApproverDirectory
from approval_services.permissions import StaticPermissionChecker


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings == ApprovalSettings()
        assert "approval_code" in settings.reserved_metadata_keys

    def test_yaml_then_environment(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            "database_url: sqlite:///from-file.db\n"
            "replay_base_url: http://file.example\n"
            "max_optimistic_retries: 3\n"
        )
        settings = load_settings(
            path,
            environ={
                "APPROVAL_DATABASE_URL": "postgresql+psycopg://u@h/db",
                "APPROVAL_REPLAY_TIMEOUT_SECONDS": "2.5",
            },
        )
        assert settings.database_url == "postgresql+psycopg://u@h/db"
        assert settings.replay_base_url == "http://file.example"
        assert settings.replay_timeout_seconds == 2.5
        assert settings.max_optimistic_retries == 3

    def test_base_url_from_host_application(self):
        settings = load_settings(environ={"APP_PROTOCOL": "https", "APP_HOST": "gov.example", "APP_PORT": "8443"})
        assert settings.replay_base_url == "https://gov.example:8443"

    def test_explicit_base_url_wins_over_host_application(self):
        settings = load_settings(
            environ={"APPROVAL_REPLAY_BASE_URL": "http://replay.example", "APP_HOST": "ignored"}
        )
        assert settings.replay_base_url == "http://replay.example"

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("replay_url: http://typo\n")
        with pytest.raises(ConfigurationLoadError):
            load_settings(path, environ={})

    @pytest.mark.parametrize(
        "environ",
        [
            {"APPROVAL_REPLAY_TIMEOUT_SECONDS": "soon"},
            {"APPROVAL_REPLAY_TIMEOUT_SECONDS": "0"},
        ],
    )
    def test_bad_timeout(self, environ):
        with pytest.raises(ConfigurationLoadError):
            load_settings(environ=environ)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationLoadError):
            load_settings(tmp_path / "absent.yaml", environ={})


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class TestLoader:
    def test_default_set(self):
        approval_set = load_approval_set()
        by_type = {c.action_type: c for c in approval_set.configurations}
        assert approval_set.name == "default"
        assert set(by_type) == {
            "benefit.grant",
            "payment.release",
            "user.permission.grant",
            "citizen.record.delete",
            "budget.transfer",
        }
        weighted = by_type["budget.transfer"]
        assert weighted.strategy == "weighted"
        assert weighted.approvers[0].weight == Decimal("2")
        assert by_type["payment.release"].min_value == Decimal("1000.00")
        assert len(approval_set.checksum) == 64

    def test_checksum_is_deterministic(self):
        assert load_approval_set(DEFAULT_SET_PATH).checksum == load_approval_set(DEFAULT_SET_PATH).checksum

    def test_missing_required_key(self, tmp_path):
        path = tmp_path / "set.yaml"
        path.write_text("configurations:\n  - action_type: x\n")
        with pytest.raises(ConfigurationLoadError, match="strategy"):
            load_approval_set(path)

    def test_bad_decimal(self, tmp_path):
        path = tmp_path / "set.yaml"
        path.write_text(
            "configurations:\n"
            "  - action_type: x\n"
            "    strategy: simple\n"
            "    approvers:\n"
            "      - {type: profile, reference: m, weight: heavy}\n"
        )
        with pytest.raises(ConfigurationLoadError):
            load_approval_set(path)

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "set.yaml"
        path.write_text("configurations: [\n")
        with pytest.raises(ConfigurationLoadError):
            load_approval_set(path)


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


class TestSeeding:
    def test_seed_default_set(self, session, configurations, deterministic_clock, test_actor_id):
        created = seed_approval_set(session, load_approval_set(), test_actor_id, deterministic_clock)
        assert len(created) == 5

        benefit = configurations.resolve("benefit.grant")
        assert benefit.time_limit_hours == 48
        assert benefit.auto_approval_profiles == ("administrator",)
        seats = ApproverDirectory(session).list_for_configuration(benefit.id)
        assert [s.reference for s in seats] == [ProfileReference("manager"), HierarchyLevelReference(3)]

        hours = configurations.resolve("user.permission.grant").operating_hours
        assert hours.days == frozenset({0, 1, 2, 3, 4})

    def test_seed_is_idempotent(self, session, deterministic_clock):
        approval_set = load_approval_set()
        seed_approval_set(session, approval_set, clock=deterministic_clock)
        assert seed_approval_set(session, approval_set, clock=deterministic_clock) == []

    def test_seeding_logged(self, session, deterministic_clock, captured_logs):
        approval_set = load_approval_set()
        seed_approval_set(session, approval_set, clock=deterministic_clock)
        seed_approval_set(session, approval_set, clock=deterministic_clock)

        records = [r for r in captured_logs() if r["message"] == "approval_set_seeded"]
        assert [r["configurations_created"] for r in records] == [5, 0]
        assert records[0]["checksum"] == approval_set.checksum

    def test_default_time_limit_applied(self, session, configurations, deterministic_clock):
        seed_approval_set(session, load_approval_set(), clock=deterministic_clock, default_time_limit_hours=12)
        assert configurations.resolve("budget.transfer").time_limit_hours == 12
        assert configurations.resolve("budget.transfer").strategy is ApprovalStrategy.WEIGHTED

    def test_seeds_are_validated(self, session, tmp_path, deterministic_clock):
        path = tmp_path / "set.yaml"
        path.write_text("configurations:\n  - {action_type: x, strategy: majority, min_approvals: 1}\n")
        with pytest.raises(MajorityQuorumError):
            seed_approval_set(session, load_approval_set(path), clock=deterministic_clock)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class TestStaticPermissions:
    @pytest.fixture
    def checker(self):
        return StaticPermissionChecker.from_approval_set(load_approval_set())

    def test_unscoped_grant_covers_every_scope(self, checker, make_principal):
        admin = make_principal(profile="administrator")
        assert checker.has_permission(admin, "approval.solicitation.cancel")
        assert checker.has_permission(admin, "approval.solicitation.cancel", scope="payment.release")

    def test_scoped_grant(self, checker, make_principal):
        director = make_principal(profile="director")
        assert checker.has_permission(director, "approval.auto_approve", scope="budget.transfer")
        assert not checker.has_permission(director, "approval.auto_approve", scope="payment.release")
        assert not checker.has_permission(director, "approval.auto_approve")

    def test_no_profile_no_permissions(self, checker, make_principal):
        assert not checker.has_permission(make_principal(), "approval.solicitation.replay")

    def test_satisfies_protocol(self, checker):
        assert isinstance(checker, PermissionChecker)
