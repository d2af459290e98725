"""
approval_engines.scrubbing -- Reserved metadata removal for replay.

Responsibility:
    Remove approval-internal keys from a request payload at every nesting
    depth, including inside lists, so a replayed call matches a direct
    call except for provenance headers.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - strip(strip(x)) == strip(x).
    - The input is never mutated; a new structure is returned.
    - Scalars pass through unchanged.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from approval_engines.tracer import traced_engine

DEFAULT_RESERVED_KEYS: frozenset[str] = frozenset({
    "_approval_metadata",
    "approval_justification",
    "approval_code",
    "approval_request_id",
})


@traced_engine("scrubbing", "1.0")
def strip_reserved_keys(value: Any, reserved_keys: Iterable[str] = DEFAULT_RESERVED_KEYS) -> Any:
    reserved = reserved_keys if isinstance(reserved_keys, frozenset) else frozenset(reserved_keys)
    return _strip(value, reserved)


def _strip(value: Any, reserved: frozenset[str]) -> Any:
    if isinstance(value, Mapping):
        return {
            key: _strip(item, reserved)
            for key, item in value.items()
            if key not in reserved
        }
    if isinstance(value, (list, tuple)):
        return [_strip(item, reserved) for item in value]
    return value


def contains_reserved_keys(value: Any, reserved_keys: Iterable[str] = DEFAULT_RESERVED_KEYS) -> bool:
    reserved = frozenset(reserved_keys)
    if isinstance(value, Mapping):
        return any(
            key in reserved or contains_reserved_keys(item, reserved)
            for key, item in value.items()
        )
    if isinstance(value, (list, tuple)):
        return any(contains_reserved_keys(item, reserved) for item in value)
    return False
