"""ORM models for the approval kernel."""

from approval_kernel.models.configuration import ApprovalConfigurationModel, ApproverModel
from approval_kernel.models.delegation import DelegationModel
from approval_kernel.models.execution import ReplayExecutionModel
from approval_kernel.models.solicitation import DecisionHistoryModel, SolicitationModel

__all__ = [
    "ApprovalConfigurationModel",
    "ApproverModel",
    "DecisionHistoryModel",
    "DelegationModel",
    "ReplayExecutionModel",
    "SolicitationModel",
]
