"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval decisions gate side effects that cannot be undone. Callers must be
able to tell "you may not decide here" from "someone else decided first"
without parsing message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example - WRONG way to handle errors:
    try:
        orchestrator.submit_decision(...)
    except Exception as e:
        if "expired" in str(e):
            ...

Example - RIGHT way:
    try:
        orchestrator.submit_decision(...)
    except SolicitationExpiredError as e:
        api_response(code=e.code, expires_at=e.expires_at)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ApprovalKernelError:

    ApprovalKernelError (base)
    |
    +-- NotFoundError
    |   +-- ConfigurationNotFoundError
    |   +-- ApproverNotFoundError
    |   +-- DelegationNotFoundError
    |   +-- SolicitationNotFoundError
    |
    +-- ConflictError
    |   +-- DuplicateConfigurationError
    |   +-- DuplicateApproverError
    |   +-- DuplicateDecisionError
    |   +-- DuplicateSolicitationError
    |   +-- OverlappingDelegationError
    |   +-- ConfigurationInUseError
    |   +-- ReplayAlreadySucceededError
    |
    +-- ForbiddenError
    |   +-- ApproverNotEligibleError
    |   +-- SelfApprovalError
    |   +-- HierarchyOrderError
    |   +-- CancellationNotAllowedError
    |   +-- RevocationNotAllowedError
    |   +-- ReplayNotAllowedError
    |
    +-- InvalidStateError
    |   +-- InvalidSolicitationTransitionError
    |   +-- ConfigurationInactiveError
    |   +-- DelegationAlreadyRevokedError
    |   +-- SolicitationNotApprovedError
    |
    +-- SolicitationExpiredError
    |
    +-- PolicyViolationError
    |   +-- MajorityQuorumError
    |   +-- InvalidConfigurationError
    |   +-- InvalidApproverReferenceError
    |   +-- InvalidValueRangeError
    |   +-- MissingApproversError
    |   +-- InvalidDelegationWindowError
    |   +-- SelfDelegationError
    |   +-- DelegationNotAllowedError
    |
    +-- ExecutionFailureError
    |   +-- ReplayExecutionError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- AuditError
    |   +-- TamperDetectedError
    |
    +-- ConfigurationLoadError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                          | When Raised
----------------|-------------------------------|---------------------------------------
Not found       | CONFIGURATION_NOT_FOUND       | No (active) configuration
                | APPROVER_NOT_FOUND            | Approver ID doesn't exist
                | DELEGATION_NOT_FOUND          | Delegation ID doesn't exist
                | SOLICITATION_NOT_FOUND        | Solicitation ID doesn't exist
----------------|-------------------------------|---------------------------------------
Conflict        | DUPLICATE_CONFIGURATION       | Active config exists for action type
                | DUPLICATE_APPROVER            | USER approver already on config
                | DUPLICATE_DECISION            | Principal or seat already decided
                | DUPLICATE_SOLICITATION        | Pending solicitation for same subject
                | OVERLAPPING_DELEGATION        | Source already delegated in window
                | CONFIGURATION_IN_USE          | Deactivating with pending work
                | REPLAY_ALREADY_SUCCEEDED      | Manual replay after success
----------------|-------------------------------|---------------------------------------
Forbidden       | APPROVER_NOT_ELIGIBLE         | Principal fills no open seat
                | SELF_APPROVAL                 | Requester deciding own request
                | HIERARCHY_ORDER               | Level approving out of turn
                | CANCELLATION_NOT_ALLOWED      | Cancel by non-requester
                | REVOCATION_NOT_ALLOWED        | Revoke by unrelated principal
                | REPLAY_NOT_ALLOWED            | Manual replay without permission
----------------|-------------------------------|---------------------------------------
Invalid state   | INVALID_SOLICITATION_TRANSITION | Transition from terminal status
                | CONFIGURATION_INACTIVE        | Updating a deactivated config
                | DELEGATION_ALREADY_REVOKED    | Revoking twice
                | SOLICITATION_NOT_APPROVED     | Manual replay of unapproved request
----------------|-------------------------------|---------------------------------------
Expired         | SOLICITATION_EXPIRED          | Decision attempted past deadline
----------------|-------------------------------|---------------------------------------
Policy          | MAJORITY_QUORUM_TOO_SMALL     | MAJORITY with min_approvals < 2
                | INVALID_CONFIGURATION         | Field out of range
                | INVALID_APPROVER_REFERENCE    | Tagged union payload mismatch
                | INVALID_VALUE_RANGE           | min_value > max_value
                | MISSING_APPROVERS             | Config has no active approvers
                | INVALID_DELEGATION_WINDOW     | end <= start
                | SELF_DELEGATION               | Delegating to oneself
                | DELEGATION_NOT_ALLOWED        | Approver may not delegate
----------------|-------------------------------|---------------------------------------
Execution       | REPLAY_EXECUTION_FAILED       | Upstream call failed (no retry)
----------------|-------------------------------|---------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT      | Version check failed on UPDATE
----------------|-------------------------------|---------------------------------------
Immutability    | IMMUTABILITY_VIOLATION        | Modifying decision history
----------------|-------------------------------|---------------------------------------
Audit           | TAMPER_DETECTED               | Deferred request hash mismatch
----------------|-------------------------------|---------------------------------------
Config          | CONFIGURATION_LOAD_ERROR      | Malformed YAML approval set

===============================================================================
HANDLING PATTERNS
===============================================================================

1. VALIDATION ERRORS ARE RAISED BEFORE ANY MUTATION:

    NotFound, Conflict, Forbidden, InvalidState, Expired and PolicyViolation
    leave the database untouched and are safe to report to the caller.

2. CONCURRENCY ERRORS ARE RETRIED BY THE ORCHESTRATOR:

    except OptimisticLockError:
        # re-run the whole unit of work against fresh state

3. EXECUTION FAILURES NEED AN OPERATOR:

    except ReplayExecutionError as e:
        # the approval is already durable; record and surface, never loop
        alert_operator(e.solicitation_id, e.status_code, e.upstream_message)
"""

from datetime import datetime
from decimal import Decimal


class ApprovalKernelError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_KERNEL_ERROR"


# Not found


class NotFoundError(ApprovalKernelError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class ConfigurationNotFoundError(NotFoundError):
    """No configuration (or no active configuration) matched the lookup."""

    code: str = "CONFIGURATION_NOT_FOUND"

    def __init__(self, action_type: str | None = None, configuration_id: str | None = None):
        self.action_type = action_type
        self.configuration_id = configuration_id
        if configuration_id is not None:
            super().__init__(f"Approval configuration not found: {configuration_id}")
        else:
            super().__init__(
                f"No active approval configuration for action type: {action_type}"
            )


class ApproverNotFoundError(NotFoundError):
    """Approver with given ID was not found."""

    code: str = "APPROVER_NOT_FOUND"

    def __init__(self, approver_id: str):
        self.approver_id = approver_id
        super().__init__(f"Approver not found: {approver_id}")


class DelegationNotFoundError(NotFoundError):
    """Delegation with given ID was not found."""

    code: str = "DELEGATION_NOT_FOUND"

    def __init__(self, delegation_id: str):
        self.delegation_id = delegation_id
        super().__init__(f"Delegation not found: {delegation_id}")


class SolicitationNotFoundError(NotFoundError):
    """Solicitation with given ID was not found."""

    code: str = "SOLICITATION_NOT_FOUND"

    def __init__(self, solicitation_id: str):
        self.solicitation_id = solicitation_id
        super().__init__(f"Solicitation not found: {solicitation_id}")


# Conflict


class ConflictError(ApprovalKernelError):
    """Base exception for uniqueness and duplicate-work conflicts."""

    code: str = "CONFLICT"


class DuplicateConfigurationError(ConflictError):
    """An active configuration already exists for the action type."""

    code: str = "DUPLICATE_CONFIGURATION"

    def __init__(self, action_type: str, existing_id: str):
        self.action_type = action_type
        self.existing_id = existing_id
        super().__init__(
            f"Active approval configuration already exists for "
            f"{action_type}: {existing_id}"
        )


class DuplicateApproverError(ConflictError):
    """The user is already an approver on this configuration."""

    code: str = "DUPLICATE_APPROVER"

    def __init__(self, configuration_id: str, user_id: str):
        self.configuration_id = configuration_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} is already an approver on configuration {configuration_id}"
        )


class DuplicateDecisionError(ConflictError):
    """The principal, or the seat it would fill, has already decided."""

    code: str = "DUPLICATE_DECISION"

    def __init__(self, solicitation_id: str, principal_id: str, approver_id: str | None = None):
        self.solicitation_id = solicitation_id
        self.principal_id = principal_id
        self.approver_id = approver_id
        super().__init__(
            f"Principal {principal_id} has already decided on solicitation "
            f"{solicitation_id}"
        )


class DuplicateSolicitationError(ConflictError):
    """A pending solicitation already exists for the same subject."""

    code: str = "DUPLICATE_SOLICITATION"

    def __init__(self, action_type: str, subject_id: str, existing_id: str):
        self.action_type = action_type
        self.subject_id = subject_id
        self.existing_id = existing_id
        super().__init__(
            f"Pending solicitation {existing_id} already exists for "
            f"{action_type} on {subject_id}"
        )


class OverlappingDelegationError(ConflictError):
    """The source approver already has an active delegation covering the window."""

    code: str = "OVERLAPPING_DELEGATION"

    def __init__(self, source_approver_id: str, existing_delegation_id: str):
        self.source_approver_id = source_approver_id
        self.existing_delegation_id = existing_delegation_id
        super().__init__(
            f"Approver {source_approver_id} already has overlapping delegation "
            f"{existing_delegation_id}"
        )


class ConfigurationInUseError(ConflictError):
    """Configuration cannot be deactivated while solicitations are pending."""

    code: str = "CONFIGURATION_IN_USE"

    def __init__(self, configuration_id: str, pending_count: int):
        self.configuration_id = configuration_id
        self.pending_count = pending_count
        super().__init__(
            f"Configuration {configuration_id} has {pending_count} pending "
            "solicitation(s)"
        )


class ReplayAlreadySucceededError(ConflictError):
    """A successful replay is already recorded for this solicitation."""

    code: str = "REPLAY_ALREADY_SUCCEEDED"

    def __init__(self, solicitation_id: str, execution_id: str):
        self.solicitation_id = solicitation_id
        self.execution_id = execution_id
        super().__init__(
            f"Solicitation {solicitation_id} was already executed "
            f"successfully ({execution_id})"
        )


# Forbidden


class ForbiddenError(ApprovalKernelError):
    """Base exception for actions the principal is not allowed to take."""

    code: str = "FORBIDDEN"


class ApproverNotEligibleError(ForbiddenError):
    """Principal is not an eligible approver for this solicitation right now."""

    code: str = "APPROVER_NOT_ELIGIBLE"

    def __init__(self, solicitation_id: str, principal_id: str):
        self.solicitation_id = solicitation_id
        self.principal_id = principal_id
        super().__init__(
            f"Principal {principal_id} is not an eligible approver for "
            f"solicitation {solicitation_id}"
        )


class SelfApprovalError(ForbiddenError):
    """Requester attempted to decide on their own solicitation."""

    code: str = "SELF_APPROVAL"

    def __init__(self, solicitation_id: str, principal_id: str):
        self.solicitation_id = solicitation_id
        self.principal_id = principal_id
        super().__init__(
            f"Requester {principal_id} cannot decide on own solicitation "
            f"{solicitation_id}"
        )


class HierarchyOrderError(ForbiddenError):
    """A hierarchical level tried to approve before the levels below it."""

    code: str = "HIERARCHY_ORDER"

    def __init__(self, solicitation_id: str, approver_order: int, current_order: int):
        self.solicitation_id = solicitation_id
        self.approver_order = approver_order
        self.current_order = current_order
        super().__init__(
            f"Level {approver_order} cannot approve solicitation "
            f"{solicitation_id} before level {current_order}"
        )


class CancellationNotAllowedError(ForbiddenError):
    """Only the requester (or an authorized operator) may cancel."""

    code: str = "CANCELLATION_NOT_ALLOWED"

    def __init__(self, solicitation_id: str, principal_id: str):
        self.solicitation_id = solicitation_id
        self.principal_id = principal_id
        super().__init__(
            f"Principal {principal_id} may not cancel solicitation {solicitation_id}"
        )


class RevocationNotAllowedError(ForbiddenError):
    """Principal may not revoke this delegation."""

    code: str = "REVOCATION_NOT_ALLOWED"

    def __init__(self, delegation_id: str, principal_id: str):
        self.delegation_id = delegation_id
        self.principal_id = principal_id
        super().__init__(
            f"Principal {principal_id} may not revoke delegation {delegation_id}"
        )


class ReplayNotAllowedError(ForbiddenError):
    """Manual replay requires the replay permission."""

    code: str = "REPLAY_NOT_ALLOWED"

    def __init__(self, solicitation_id: str, principal_id: str):
        self.solicitation_id = solicitation_id
        self.principal_id = principal_id
        super().__init__(
            f"Principal {principal_id} may not replay solicitation {solicitation_id}"
        )


# Invalid state


class InvalidStateError(ApprovalKernelError):
    """Base exception for operations on entities in the wrong state."""

    code: str = "INVALID_STATE"


class InvalidSolicitationTransitionError(InvalidStateError):
    """Transition attempted from a status that does not allow it."""

    code: str = "INVALID_SOLICITATION_TRANSITION"

    def __init__(self, solicitation_id: str, current_status: str, attempted_status: str):
        self.solicitation_id = solicitation_id
        self.current_status = current_status
        self.attempted_status = attempted_status
        super().__init__(
            f"Solicitation {solicitation_id} cannot transition from "
            f"{current_status} to {attempted_status}"
        )


class ConfigurationInactiveError(InvalidStateError):
    """Deactivated configurations are read-only."""

    code: str = "CONFIGURATION_INACTIVE"

    def __init__(self, configuration_id: str):
        self.configuration_id = configuration_id
        super().__init__(f"Configuration {configuration_id} is inactive")


class DelegationAlreadyRevokedError(InvalidStateError):
    """Revocation is terminal and cannot be repeated."""

    code: str = "DELEGATION_ALREADY_REVOKED"

    def __init__(self, delegation_id: str, revoked_at: datetime):
        self.delegation_id = delegation_id
        self.revoked_at = revoked_at
        super().__init__(
            f"Delegation {delegation_id} was already revoked at {revoked_at.isoformat()}"
        )


class SolicitationNotApprovedError(InvalidStateError):
    """Only APPROVED solicitations have a deferred request to replay."""

    code: str = "SOLICITATION_NOT_APPROVED"

    def __init__(self, solicitation_id: str, current_status: str):
        self.solicitation_id = solicitation_id
        self.current_status = current_status
        super().__init__(
            f"Solicitation {solicitation_id} is {current_status}; only approved "
            "solicitations can be replayed"
        )


# Expired


class SolicitationExpiredError(ApprovalKernelError):
    """Decision attempted after the solicitation's deadline."""

    code: str = "SOLICITATION_EXPIRED"

    def __init__(self, solicitation_id: str, expires_at: datetime, attempted_at: datetime):
        self.solicitation_id = solicitation_id
        self.expires_at = expires_at
        self.attempted_at = attempted_at
        super().__init__(
            f"Solicitation {solicitation_id} expired at {expires_at.isoformat()}"
        )


# Policy violations


class PolicyViolationError(ApprovalKernelError):
    """Base exception for requests that break approval policy rules."""

    code: str = "POLICY_VIOLATION"


class MajorityQuorumError(PolicyViolationError):
    """A majority of one is meaningless."""

    code: str = "MAJORITY_QUORUM_TOO_SMALL"

    def __init__(self, min_approvals: int):
        self.min_approvals = min_approvals
        super().__init__(
            f"MAJORITY strategy requires min_approvals >= 2, got {min_approvals}"
        )


class InvalidConfigurationError(PolicyViolationError):
    """A configuration field is out of its allowed range."""

    code: str = "INVALID_CONFIGURATION"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid configuration field {field}: {reason}")


class InvalidApproverReferenceError(PolicyViolationError):
    """Approver reference payload does not match its type."""

    code: str = "INVALID_APPROVER_REFERENCE"

    def __init__(self, approver_type: str, reason: str):
        self.approver_type = approver_type
        self.reason = reason
        super().__init__(f"Invalid {approver_type} approver reference: {reason}")


class InvalidValueRangeError(PolicyViolationError):
    """Minimum value exceeds maximum value."""

    code: str = "INVALID_VALUE_RANGE"

    def __init__(self, min_value: Decimal, max_value: Decimal):
        self.min_value = min_value
        self.max_value = max_value
        super().__init__(f"min_value {min_value} exceeds max_value {max_value}")


class MissingApproversError(PolicyViolationError):
    """Configuration has no active approvers able to act on the request."""

    code: str = "MISSING_APPROVERS"

    def __init__(self, configuration_id: str, action_type: str):
        self.configuration_id = configuration_id
        self.action_type = action_type
        super().__init__(
            f"Configuration {configuration_id} ({action_type}) has no active approvers"
        )


class InvalidDelegationWindowError(PolicyViolationError):
    """Delegation end must be after its start."""

    code: str = "INVALID_DELEGATION_WINDOW"

    def __init__(self, start_date: datetime, end_date: datetime):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            f"Delegation window end {end_date.isoformat()} is not after "
            f"start {start_date.isoformat()}"
        )


class SelfDelegationError(PolicyViolationError):
    """An approver cannot delegate to themselves."""

    code: str = "SELF_DELEGATION"

    def __init__(self, source_approver_id: str, delegate_id: str):
        self.source_approver_id = source_approver_id
        self.delegate_id = delegate_id
        super().__init__(
            f"Approver {source_approver_id} cannot delegate to own principal {delegate_id}"
        )


class DelegationNotAllowedError(PolicyViolationError):
    """Source approver is inactive or lacks can_delegate."""

    code: str = "DELEGATION_NOT_ALLOWED"

    def __init__(self, source_approver_id: str, reason: str):
        self.source_approver_id = source_approver_id
        self.reason = reason
        super().__init__(f"Approver {source_approver_id} cannot delegate: {reason}")


# Execution failures


class ExecutionFailureError(ApprovalKernelError):
    """Base exception for deferred action replay failures."""

    code: str = "EXECUTION_FAILURE"


class ReplayExecutionError(ExecutionFailureError):
    """
    The replayed upstream call failed.

    The approval is already durable when this is raised; it is reported to an
    operator and never retried automatically.
    """

    code: str = "REPLAY_EXECUTION_FAILED"

    def __init__(
        self,
        solicitation_id: str,
        message: str,
        status_code: int | None = None,
        upstream_message: str | None = None,
        details: dict | None = None,
    ):
        self.solicitation_id = solicitation_id
        self.message = message
        self.status_code = status_code
        self.upstream_message = upstream_message
        self.details = details or {}
        super().__init__(f"Replay of solicitation {solicitation_id} failed: {message}")


# Concurrency


class ConcurrencyError(ApprovalKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction"
        )


# Immutability


class ImmutabilityError(ApprovalKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )


# Audit


class AuditError(ApprovalKernelError):
    """Base exception for audit-trail integrity errors."""

    code: str = "AUDIT_ERROR"


class TamperDetectedError(AuditError):
    """Stored deferred request no longer matches its creation-time hash."""

    code: str = "TAMPER_DETECTED"

    def __init__(self, solicitation_id: str, expected_hash: str, actual_hash: str):
        self.solicitation_id = solicitation_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Deferred request of solicitation {solicitation_id} was modified: "
            f"expected {expected_hash[:16]}..., got {actual_hash[:16]}..."
        )


# Configuration loading


class ConfigurationLoadError(ApprovalKernelError):
    """A YAML approval set or settings file could not be parsed."""

    code: str = "CONFIGURATION_LOAD_ERROR"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot load approval configuration {path}: {reason}")
