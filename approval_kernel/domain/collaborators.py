"""
Boundary protocols for capabilities the host application provides.

The kernel never authenticates anyone and never delivers notifications;
it consumes a permission check and an event sink through these protocols.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from approval_kernel.domain.approval import Principal
from approval_kernel.domain.events import DomainEvent

# Permission names checked by the kernel.
PERMISSION_AUTO_APPROVE = "approval.auto_approve"
PERMISSION_CANCEL_ANY = "approval.solicitation.cancel"
PERMISSION_REVOKE_DELEGATION = "approval.delegation.revoke"
PERMISSION_MANUAL_REPLAY = "approval.solicitation.replay"


@runtime_checkable
class PermissionChecker(Protocol):
    """``has_permission(principal, permission, scope) -> bool``."""

    def has_permission(
        self,
        principal: Principal,
        permission: str,
        scope: str | None = None,
    ) -> bool: ...


@runtime_checkable
class EventSink(Protocol):
    """Receives domain events after the producing transaction commits."""

    def publish(self, event: DomainEvent) -> None: ...
