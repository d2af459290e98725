"""
approval_services.replay_executor -- Deferred action replay over HTTP.

Responsibility:
    Re-issue the request captured when a solicitation was created, once it
    is APPROVED, with the approving caller's bearer credential and the
    provenance headers ``X-Approval-Request-Id`` / ``X-Approval-Executed``.

Architecture position:
    Services layer.  Performs network I/O with a sync ``httpx.Client`` and
    never touches the database; the orchestrator records the outcome.

Invariants enforced:
    - At most once: no retry of any kind.  A failure is returned as an
      unsuccessful ``ExecutionResult`` for an operator to reconcile.
    - Reserved approval metadata is stripped from the body and query
      parameters at every nesting depth before sending.
    - The method, params and body go out as captured; a captured body is
      sent whatever the method.
    - ``host``, ``content-length`` and any captured ``authorization``
      header are never forwarded; the caller's credential replaces them.

Failure modes:
    - ReplayExecutionError: no credential supplied (raised, nothing sent).
    - Upstream non-2xx: ``success=False``, ``error="HTTP <status>: <msg>"``.
    - Network failure or timeout: ``success=False``,
      ``error="Network error: <detail>"``.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from typing import Any

import httpx

from approval_engines.scrubbing import DEFAULT_RESERVED_KEYS, strip_reserved_keys
from approval_kernel.domain.approval import ExecutionResult, Solicitation
from approval_kernel.exceptions import ReplayExecutionError
from approval_kernel.logging_config import get_logger

logger = get_logger("services.replay")

HEADER_REQUEST_ID = "X-Approval-Request-Id"
HEADER_EXECUTED = "X-Approval-Executed"

_DROPPED_HEADERS = frozenset({"host", "content-length", "authorization"})


def build_url(base_url: str, url: str) -> str:
    """Absolute URLs pass through; relative paths are joined onto ``base_url``."""
    if url.startswith(("http://", "https://")):
        return url
    return f"{base_url.rstrip('/')}/{url.lstrip('/')}"


def bearer(credential: str) -> str:
    return credential if credential.lower().startswith("bearer ") else f"Bearer {credential}"


def _upstream_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text or response.reason_phrase


def _response_data(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class ReplayExecutor:
    """Replays approved deferred requests against the host application."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        reserved_keys: Iterable[str] = DEFAULT_RESERVED_KEYS,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.reserved_keys = frozenset(reserved_keys)
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def replay(self, solicitation: Solicitation, credential: str | None) -> ExecutionResult:
        """Send the deferred request once and report what happened."""
        if not credential:
            raise ReplayExecutionError(str(solicitation.id), "no bearer credential supplied")

        deferred = solicitation.deferred_request
        method = deferred.method.upper()
        url = build_url(self.base_url, deferred.url)

        headers = {
            name: value
            for name, value in deferred.headers.items()
            if name.lower() not in _DROPPED_HEADERS
        }
        headers["Authorization"] = bearer(credential)
        headers[HEADER_REQUEST_ID] = str(solicitation.id)
        headers[HEADER_EXECUTED] = "true"

        params = strip_reserved_keys(deferred.params, self.reserved_keys)
        body = None
        if deferred.body is not None:
            body = strip_reserved_keys(deferred.body, self.reserved_keys)

        details: dict[str, Any] = {"method": method, "url": url}
        started = time.monotonic()
        try:
            response = self._client.request(
                method,
                url,
                params=params or None,
                json=body,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.RequestError as exc:
            details["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
            error = f"Network error: {exc}"
            logger.warning(
                "replay_network_error",
                extra={"solicitation_id": str(solicitation.id), "url": url, "error": error},
            )
            return ExecutionResult(success=False, details=details, error=error)

        details["duration_ms"] = round((time.monotonic() - started) * 1000, 2)
        details["status_code"] = response.status_code

        if not response.is_success:
            error = f"HTTP {response.status_code}: {_upstream_message(response)}"
            logger.warning(
                "replay_upstream_error",
                extra={
                    "solicitation_id": str(solicitation.id),
                    "url": url,
                    "status_code": response.status_code,
                },
            )
            return ExecutionResult(
                success=False,
                response_data=_response_data(response),
                details=details,
                error=error,
                status_code=response.status_code,
            )

        logger.info(
            "replay_completed",
            extra={
                "solicitation_id": str(solicitation.id),
                "method": method,
                "url": url,
                "status_code": response.status_code,
            },
        )
        return ExecutionResult(
            success=True,
            response_data=_response_data(response),
            details=details,
            status_code=response.status_code,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ReplayExecutor:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
