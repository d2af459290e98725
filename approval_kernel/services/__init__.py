"""Stateful kernel services.  Each receives a Session and only flushes."""

from approval_kernel.services.approver_directory import ApproverDirectory
from approval_kernel.services.configuration_service import ApprovalConfigurationService
from approval_kernel.services.decision_processor import DecisionOutcome, DecisionProcessor
from approval_kernel.services.delegation_service import DelegationRegistry
from approval_kernel.services.solicitation_service import SolicitationLifecycle

__all__ = [
    "ApprovalConfigurationService",
    "ApproverDirectory",
    "DecisionOutcome",
    "DecisionProcessor",
    "DelegationRegistry",
    "SolicitationLifecycle",
]
