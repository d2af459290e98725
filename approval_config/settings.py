"""
Runtime settings (``approval_config.settings``).

Settings come from an optional YAML file and are then overridden by
environment variables:

* ``APPROVAL_DATABASE_URL``
* ``APPROVAL_REPLAY_BASE_URL``
* ``APPROVAL_REPLAY_TIMEOUT_SECONDS``

When no replay base URL is configured anywhere it is assembled from the
host application's ``APP_PROTOCOL``, ``APP_HOST`` and ``APP_PORT``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from approval_kernel.exceptions import ConfigurationLoadError

RESERVED_METADATA_KEYS: frozenset[str] = frozenset({
    "_approval_metadata",
    "approval_justification",
    "approval_code",
    "approval_request_id",
})


@dataclass(frozen=True)
class ApprovalSettings:
    database_url: str = "sqlite:///approvals.db"
    replay_base_url: str = "http://localhost:3000"
    replay_timeout_seconds: float = 30.0
    reserved_metadata_keys: frozenset[str] = field(default=RESERVED_METADATA_KEYS)
    default_time_limit_hours: int = 24
    max_optimistic_retries: int = 5
    solicitation_code_prefix: str = "SOL"


def _fallback_base_url(environ: Mapping[str, str]) -> str | None:
    host = environ.get("APP_HOST")
    if not host:
        return None
    protocol = environ.get("APP_PROTOCOL", "http")
    port = environ.get("APP_PORT")
    return f"{protocol}://{host}:{port}" if port else f"{protocol}://{host}"


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ApprovalSettings:
    """Build ``ApprovalSettings`` from YAML and the environment.

    Raises:
        ConfigurationLoadError: unreadable file, unknown keys or bad values.
    """
    environ = os.environ if environ is None else environ
    source = str(path) if path is not None else "<environment>"

    values: dict[str, Any] = {}
    if path is not None:
        try:
            with open(path) as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationLoadError(source, str(exc)) from exc
        if not isinstance(loaded, dict):
            raise ConfigurationLoadError(source, "settings document must be a mapping")
        known = {f.name for f in fields(ApprovalSettings)}
        unknown = set(loaded) - known
        if unknown:
            raise ConfigurationLoadError(source, f"unknown settings: {', '.join(sorted(unknown))}")
        values.update(loaded)

    if environ.get("APPROVAL_DATABASE_URL"):
        values["database_url"] = environ["APPROVAL_DATABASE_URL"]
    if environ.get("APPROVAL_REPLAY_BASE_URL"):
        values["replay_base_url"] = environ["APPROVAL_REPLAY_BASE_URL"]
    elif "replay_base_url" not in values:
        fallback = _fallback_base_url(environ)
        if fallback:
            values["replay_base_url"] = fallback
    if environ.get("APPROVAL_REPLAY_TIMEOUT_SECONDS"):
        values["replay_timeout_seconds"] = environ["APPROVAL_REPLAY_TIMEOUT_SECONDS"]

    try:
        if "replay_timeout_seconds" in values:
            values["replay_timeout_seconds"] = float(values["replay_timeout_seconds"])
        for name in ("default_time_limit_hours", "max_optimistic_retries"):
            if name in values:
                values[name] = int(values[name])
        if "reserved_metadata_keys" in values:
            values["reserved_metadata_keys"] = frozenset(values["reserved_metadata_keys"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationLoadError(source, str(exc)) from exc

    settings = ApprovalSettings(**values)
    if settings.replay_timeout_seconds <= 0:
        raise ConfigurationLoadError(source, "replay_timeout_seconds must be positive")
    if settings.max_optimistic_retries < 1:
        raise ConfigurationLoadError(source, "max_optimistic_retries must be at least 1")
    return settings
