"""
Approval set loader (``approval_config.loader``).

Responsibility
--------------
Parses a YAML approval set into ``approval_config.schema`` dataclasses.

Invariants enforced
-------------------
* No silent defaults for required fields: a configuration without
  ``action_type`` or ``strategy`` and an approver without ``type`` or
  ``reference`` are load errors.
* Every parsed object is a frozen dataclass.
* ``compute_checksum`` is a deterministic SHA-256 of the raw document, so
  a seeded registry can be traced back to the exact file it came from.

Failure modes
-------------
Missing file, malformed YAML, missing keys and unparseable values all
raise ``ConfigurationLoadError`` naming the file and the offending entry.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import ApprovalSet, ApproverDef, ConfigurationDef
from approval_kernel.exceptions import ConfigurationLoadError
from approval_kernel.utils.hashing import hash_payload

DEFAULT_SET_PATH = Path(__file__).parent / "sets" / "default.yaml"


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    return hash_payload(data)


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal: {value!r}") from exc


def parse_approver(data: dict[str, Any]) -> ApproverDef:
    return ApproverDef(
        approver_type=str(data["type"]),
        reference=str(data["reference"]),
        order=int(data.get("order", 1)),
        weight=_decimal(data.get("weight", 1)),
        mandatory=bool(data.get("mandatory", False)),
        can_delegate=bool(data.get("can_delegate", True)),
        can_escalate=bool(data.get("can_escalate", False)),
        min_value=_decimal(data.get("min_value")),
        max_value=_decimal(data.get("max_value")),
    )


def parse_configuration(data: dict[str, Any]) -> ConfigurationDef:
    time_limit = data.get("time_limit_hours")
    max_rejections = data.get("max_rejections")
    return ConfigurationDef(
        action_type=str(data["action_type"]),
        strategy=str(data["strategy"]).lower(),
        min_approvals=int(data.get("min_approvals", 1)),
        time_limit_hours=int(time_limit) if time_limit is not None else None,
        description=data.get("description"),
        max_rejections=int(max_rejections) if max_rejections is not None else None,
        allows_parallel_approval=bool(data.get("allows_parallel_approval", True)),
        allows_auto_approval=bool(data.get("allows_auto_approval", False)),
        auto_approval_profiles=tuple(data.get("auto_approval_profiles") or ()),
        min_value=_decimal(data.get("min_value")),
        operating_hours=data.get("operating_hours"),
        approvers=tuple(parse_approver(a) for a in data.get("approvers") or ()),
    )


def load_approval_set(path: str | Path = DEFAULT_SET_PATH) -> ApprovalSet:
    """Load and parse an approval set.

    Raises:
        ConfigurationLoadError: the document cannot be read or parsed.
    """
    path = Path(path)
    try:
        data = load_yaml_file(path)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationLoadError(str(path), str(exc)) from exc
    if not isinstance(data, dict):
        raise ConfigurationLoadError(str(path), "approval set must be a mapping")

    configurations = []
    for index, entry in enumerate(data.get("configurations") or ()):
        try:
            configurations.append(parse_configuration(entry))
        except KeyError as exc:
            raise ConfigurationLoadError(
                str(path), f"configurations[{index}]: missing key {exc.args[0]!r}"
            ) from exc
        except (TypeError, ValueError, AttributeError) as exc:
            raise ConfigurationLoadError(str(path), f"configurations[{index}]: {exc}") from exc

    permissions_raw = data.get("permissions") or {}
    if not isinstance(permissions_raw, dict):
        raise ConfigurationLoadError(str(path), "permissions must map profile -> [permission]")
    permissions = {
        str(profile): tuple(str(p) for p in (granted or ()))
        for profile, granted in permissions_raw.items()
    }

    return ApprovalSet(
        name=str(data.get("name", path.stem)),
        version=str(data.get("version", "1")),
        configurations=tuple(configurations),
        permissions=permissions,
        checksum=compute_checksum(data),
    )
