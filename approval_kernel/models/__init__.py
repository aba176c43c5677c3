"""SQLAlchemy ORM models for the approval kernel."""

from approval_kernel.models.approval import (
    ApprovalApproverModel,
    ApprovalDecisionModel,
    ApprovalHistoryModel,
    ApprovalRequestModel,
)
from approval_kernel.models.delegation import DelegationModel
from approval_kernel.models.escalation import EscalationEventModel

__all__ = [
    "ApprovalApproverModel",
    "ApprovalDecisionModel",
    "ApprovalHistoryModel",
    "ApprovalRequestModel",
    "DelegationModel",
    "EscalationEventModel",
]
