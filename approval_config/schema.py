"""
Approval set schema (``approval_config.schema``).

Frozen definitions parsed from YAML.  They describe configurations,
approver seats and permission grants; the seeding step turns them into
registry rows through the kernel services.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class ApproverDef:
    """One approver seat on a configuration."""

    approver_type: str  # user | profile | unit | hierarchy_level
    reference: str
    order: int = 1
    weight: Decimal = Decimal("1")
    mandatory: bool = False
    can_delegate: bool = True
    can_escalate: bool = False
    min_value: Decimal | None = None
    max_value: Decimal | None = None


@dataclass(frozen=True)
class ConfigurationDef:
    """Approval policy for one action type."""

    action_type: str
    strategy: str
    min_approvals: int = 1
    time_limit_hours: int | None = None
    description: str | None = None
    max_rejections: int | None = None
    allows_parallel_approval: bool = True
    allows_auto_approval: bool = False
    auto_approval_profiles: tuple[str, ...] = ()
    min_value: Decimal | None = None
    operating_hours: dict[str, Any] | None = None
    approvers: tuple[ApproverDef, ...] = ()


@dataclass(frozen=True)
class ApprovalSet:
    """A complete, versioned set of approval configurations."""

    name: str
    version: str
    configurations: tuple[ConfigurationDef, ...] = ()
    permissions: dict[str, tuple[str, ...]] = field(default_factory=dict)
    checksum: str = ""
