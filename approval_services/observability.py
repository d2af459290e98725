"""
Observability hooks for decisions and replay.

Emits structured log events for metrics and dashboards:
- Decision outcomes: decision_outcome (action, resulting status, retries).
- Replay outcomes: replay_succeeded / replay_failed (with status_code and
  duration_ms).  Failures are logged at ERROR: they are the operator's
  remediation queue.
- Fail-closed approval checks: approval_check_failed_closed.

All events use a consistent ``observability_event`` field and stable extra
fields so log aggregators can parse and build metrics.

Usage:
    from approval_services.observability import log_decision_outcome, log_replay_outcome
    log_decision_outcome(solicitation_id=str(sid), action="APPROVE", status="APPROVED")
    log_replay_outcome(solicitation_id=str(sid), success=False, error="HTTP 502: bad gateway")
"""

from __future__ import annotations

from typing import Any

from approval_kernel.logging_config import get_logger

logger = get_logger("services.observability")

# Standard event names for filtering in log pipelines
EVENT_DECISION_OUTCOME = "decision_outcome"
EVENT_REPLAY_SUCCEEDED = "replay_succeeded"
EVENT_REPLAY_FAILED = "replay_failed"
EVENT_APPROVAL_CHECK_FAILED_CLOSED = "approval_check_failed_closed"


def log_decision_outcome(
    *,
    solicitation_id: str,
    action: str,
    status: str,
    transitioned: bool = False,
    attempts: int | None = None,
    **extra: Any,
) -> None:
    """Log one committed decision.  ``attempts`` > 1 means optimistic retries happened."""
    payload: dict[str, Any] = {
        "observability_event": EVENT_DECISION_OUTCOME,
        "solicitation_id": solicitation_id,
        "action": action,
        "status": status,
        "transitioned": transitioned,
        **extra,
    }
    if attempts is not None:
        payload["attempts"] = attempts
    logger.info("approval_decision_outcome", extra=payload)


def log_replay_outcome(
    *,
    solicitation_id: str,
    success: bool,
    status_code: int | None = None,
    error: str | None = None,
    duration_ms: float | None = None,
    triggered_by: str | None = None,
    **extra: Any,
) -> None:
    """
    Log the outcome of one replay attempt.

    A failed replay leaves an APPROVED solicitation without proof that its
    side effect happened, so it is logged at ERROR.
    """
    payload: dict[str, Any] = {
        "observability_event": EVENT_REPLAY_SUCCEEDED if success else EVENT_REPLAY_FAILED,
        "solicitation_id": solicitation_id,
        **extra,
    }
    if status_code is not None:
        payload["status_code"] = status_code
    if error is not None:
        payload["error"] = error
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if triggered_by is not None:
        payload["triggered_by"] = triggered_by
    if success:
        logger.info("approval_replay_succeeded", extra=payload)
    else:
        logger.error("approval_replay_failed", extra=payload)


def log_approval_check_failed_closed(
    *,
    action_type: str,
    principal_id: str | None = None,
    error_type: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log when the approval-requirement check errored and defaulted to 'required'."""
    payload: dict[str, Any] = {
        "observability_event": EVENT_APPROVAL_CHECK_FAILED_CLOSED,
        "action_type": action_type,
        **extra,
    }
    if principal_id is not None:
        payload["principal_id"] = principal_id
    if error_type is not None:
        payload["error_type"] = error_type
    if error is not None:
        payload["error"] = error
    logger.warning("approval_check_failed_closed", extra=payload)
