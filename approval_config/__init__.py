"""
Approval configuration: runtime settings and YAML-authored approval sets.

Public API::

    from approval_config import load_settings, load_approval_set, seed_approval_set
"""

from approval_config.loader import DEFAULT_SET_PATH, load_approval_set
from approval_config.schema import ApprovalSet, ApproverDef, ConfigurationDef
from approval_config.seeding import seed_approval_set
from approval_config.settings import ApprovalSettings, load_settings

__all__ = [
    "DEFAULT_SET_PATH",
    "ApprovalSet",
    "ApprovalSettings",
    "ApproverDef",
    "ConfigurationDef",
    "load_approval_set",
    "load_settings",
    "seed_approval_set",
]
