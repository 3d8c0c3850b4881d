"""SQLAlchemy ORM models for the approval engine."""

from expense_kernel.models.approval_flow import ApprovalFlowModel
from expense_kernel.models.approval_rule import ApprovalRuleModel

__all__ = [
    "ApprovalFlowModel",
    "ApprovalRuleModel",
]
