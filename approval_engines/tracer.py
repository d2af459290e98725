"""
approval_engines.tracer -- ``@traced_engine`` for the pure calculation layer.

Each call of a decorated engine emits one DEBUG record,
``approval_engine_trace``, naming the engine and its version, how long the
call took, and a short fingerprint of the chosen arguments.  Two calls
with equal fingerprinted arguments always get the same fingerprint, so a
decision can be matched with the quorum evaluation that produced it.

Arguments are bound against the function signature, so they are
fingerprinted the same whether passed by position or by keyword.
"""

from __future__ import annotations

import dataclasses
import functools
import hashlib
import inspect
import logging
import time
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any, TypeVar

from approval_kernel.logging_config import get_logger

_logger = get_logger("engines.tracer")

F = TypeVar("F", bound=Callable[..., Any])


def _stable_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, Enum):
        return _stable_text(value.value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _stable_text(
            {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
        )
    if isinstance(value, Mapping):
        inner = ",".join(f"{k}:{_stable_text(v)}" for k, v in sorted(value.items(), key=lambda kv: str(kv[0])))
        return "{" + inner + "}"
    if isinstance(value, (set, frozenset)):
        return "[" + ",".join(sorted(_stable_text(v) for v in value)) + "]"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_stable_text(v) for v in value) + "]"
    return str(value)


def fingerprint(arguments: Mapping[str, Any], fields: tuple[str, ...]) -> str:
    """First 16 hex chars of SHA-256 over ``name=value`` pairs of ``fields``."""
    text = "|".join(f"{name}={_stable_text(arguments.get(name))}" for name in fields)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            result = func(*args, **kwargs)
            elapsed_ms = (time.perf_counter() - started) * 1000

            if _logger.isEnabledFor(logging.DEBUG):
                digest = ""
                if fingerprint_fields:
                    bound = signature.bind_partial(*args, **kwargs)
                    bound.apply_defaults()
                    digest = fingerprint(bound.arguments, fingerprint_fields)
                _logger.debug(
                    "approval_engine_trace",
                    extra={
                        "engine_name": engine_name,
                        "engine_version": engine_version,
                        "function": func.__qualname__,
                        "input_fingerprint": digest,
                        "duration_ms": round(elapsed_ms, 3),
                    },
                )
            return result

        return wrapper  # type: ignore[return-value]

    return decorator
