"""
Module: approval_engines
Responsibility:
    Pure calculation engines for approval orchestration: approver and
    delegation eligibility, quorum arithmetic, and reserved-key scrubbing.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import approval_kernel/domain/ (and sibling engine modules).
    MUST NOT import approval_services.

Invariants enforced:
    - Purity: engines never read the clock; "now" is always a parameter.
    - Decimal-only arithmetic for values and weights.
    - Determinism: identical inputs always produce identical outputs.

Usage:
    from approval_engines.quorum import evaluate_status, build_tally
    from approval_engines.eligibility import filter_eligible, delegation_admits
    from approval_engines.scrubbing import strip_reserved_keys
"""

from approval_engines.eligibility import (
    delegation_admits,
    filter_eligible,
    is_currently_eligible,
    is_delegation_effective,
    principal_matches,
)
from approval_engines.quorum import (
    Tally,
    build_tally,
    current_hierarchy_level,
    evaluate_status,
    quorum_target,
    serving_seats,
)
from approval_engines.scrubbing import DEFAULT_RESERVED_KEYS, strip_reserved_keys

__all__ = [
    "DEFAULT_RESERVED_KEYS",
    "Tally",
    "build_tally",
    "current_hierarchy_level",
    "delegation_admits",
    "evaluate_status",
    "filter_eligible",
    "is_currently_eligible",
    "is_delegation_effective",
    "principal_matches",
    "quorum_target",
    "serving_seats",
    "strip_reserved_keys",
]
