"""
approval_services.permissions -- Config-driven permission checks.

Responsibility:
    Answer ``has_permission(principal, permission, scope)`` from a static
    profile -> permission grant table, typically the ``permissions`` block
    of an approval set.

Architecture position:
    Services layer.  Implements the kernel's ``PermissionChecker`` protocol;
    the kernel stays actor-agnostic and never resolves identity itself.

Invariants:
    - Grants are keyed by profile only; a principal without a profile has
      no permissions.
    - An unscoped grant (``approval.solicitation.cancel``) covers every
      scope.  A scoped grant (``approval.auto_approve:budget.transfer``)
      covers only that scope.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from approval_config.schema import ApprovalSet
from approval_kernel.domain.approval import Principal


class StaticPermissionChecker:
    """Grants permissions by principal profile."""

    def __init__(self, grants: Mapping[str, Iterable[str]]):
        self._grants: dict[str, frozenset[str]] = {
            profile: frozenset(permissions) for profile, permissions in grants.items()
        }

    @classmethod
    def from_approval_set(cls, approval_set: ApprovalSet) -> StaticPermissionChecker:
        return cls(approval_set.permissions)

    def has_permission(
        self,
        principal: Principal,
        permission: str,
        scope: str | None = None,
    ) -> bool:
        if principal.profile is None:
            return False
        granted = self._grants.get(principal.profile, frozenset())
        if permission in granted:
            return True
        return scope is not None and f"{permission}:{scope}" in granted
