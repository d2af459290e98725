"""
Tests for the approval kernel exception hierarchy.

Every concrete error sits under one category so callers can handle a whole
class of failure (not found, conflict, forbidden, ...) with one except
clause, and every class carries a machine-readable ``code``.
"""

import inspect

import pytest

from approval_kernel import exceptions
from approval_kernel.exceptions import (
    ApprovalKernelError,
    ApproverNotEligibleError,
    ApproverNotFoundError,
    AuditError,
    CancellationNotAllowedError,
    ConcurrencyError,
    ConfigurationInactiveError,
    ConfigurationInUseError,
    ConfigurationNotFoundError,
    ConflictError,
    DelegationAlreadyRevokedError,
    DelegationNotAllowedError,
    DelegationNotFoundError,
    DuplicateApproverError,
    DuplicateConfigurationError,
    DuplicateDecisionError,
    DuplicateSolicitationError,
    ExecutionFailureError,
    ForbiddenError,
    HierarchyOrderError,
    ImmutabilityError,
    ImmutabilityViolationError,
    InvalidSolicitationTransitionError,
    InvalidStateError,
    MajorityQuorumError,
    MissingApproversError,
    NotFoundError,
    OptimisticLockError,
    OverlappingDelegationError,
    PolicyViolationError,
    ReplayAlreadySucceededError,
    ReplayExecutionError,
    ReplayNotAllowedError,
    RevocationNotAllowedError,
    SelfApprovalError,
    SelfDelegationError,
    SolicitationExpiredError,
    SolicitationNotApprovedError,
    SolicitationNotFoundError,
    TamperDetectedError,
)

CATEGORIES = {
    NotFoundError: [
        ConfigurationNotFoundError,
        ApproverNotFoundError,
        DelegationNotFoundError,
        SolicitationNotFoundError,
    ],
    ConflictError: [
        DuplicateConfigurationError,
        DuplicateApproverError,
        DuplicateDecisionError,
        DuplicateSolicitationError,
        OverlappingDelegationError,
        ConfigurationInUseError,
        ReplayAlreadySucceededError,
    ],
    ForbiddenError: [
        ApproverNotEligibleError,
        SelfApprovalError,
        HierarchyOrderError,
        CancellationNotAllowedError,
        RevocationNotAllowedError,
        ReplayNotAllowedError,
    ],
    InvalidStateError: [
        InvalidSolicitationTransitionError,
        ConfigurationInactiveError,
        DelegationAlreadyRevokedError,
        SolicitationNotApprovedError,
    ],
    PolicyViolationError: [
        MajorityQuorumError,
        MissingApproversError,
        SelfDelegationError,
        DelegationNotAllowedError,
    ],
    ExecutionFailureError: [ReplayExecutionError],
    ConcurrencyError: [OptimisticLockError],
    ImmutabilityError: [ImmutabilityViolationError],
    AuditError: [TamperDetectedError],
}


# =============================================================================
# Hierarchy
# =============================================================================


class TestHierarchy:
    @pytest.mark.parametrize(
        "category, error",
        [(category, error) for category, errors in CATEGORIES.items() for error in errors],
        ids=lambda value: value.__name__,
    )
    def test_error_in_category(self, category, error):
        assert issubclass(error, category)

    @pytest.mark.parametrize("category", list(CATEGORIES), ids=lambda c: c.__name__)
    def test_category_is_kernel_error(self, category):
        assert issubclass(category, ApprovalKernelError)

    def test_categories_are_disjoint(self):
        for category, errors in CATEGORIES.items():
            others = [c for c in CATEGORIES if c is not category]
            for error in errors:
                assert not any(issubclass(error, other) for other in others), error

    def test_expired_is_its_own_failure(self):
        assert issubclass(SolicitationExpiredError, ApprovalKernelError)
        assert not issubclass(SolicitationExpiredError, InvalidStateError)

    def test_every_code_is_unique(self):
        classes = [
            cls
            for _, cls in inspect.getmembers(exceptions, inspect.isclass)
            if issubclass(cls, ApprovalKernelError)
        ]
        codes = [cls.code for cls in classes]
        assert len(codes) == len(set(codes))


# =============================================================================
# Construction
# =============================================================================


class TestDuplicateDecisionError:
    def test_construction(self):
        exc = DuplicateDecisionError("sol-1", "user-7", "seat-3")
        assert exc.solicitation_id == "sol-1"
        assert exc.principal_id == "user-7"
        assert exc.approver_id == "seat-3"
        assert "user-7" in str(exc)
        assert exc.code == "DUPLICATE_DECISION"

    def test_caught_as_conflict(self):
        with pytest.raises(ConflictError):
            raise DuplicateDecisionError("sol-1", "user-7")


class TestReplayExecutionError:
    def test_construction(self):
        exc = ReplayExecutionError("sol-2", "HTTP 502: bad gateway", status_code=502)
        assert exc.status_code == 502
        assert exc.details == {}
        assert "HTTP 502" in str(exc)
        assert exc.code == "REPLAY_EXECUTION_FAILED"

    def test_caught_as_execution_failure(self):
        with pytest.raises(ExecutionFailureError):
            raise ReplayExecutionError("sol-2", "no bearer credential supplied")
