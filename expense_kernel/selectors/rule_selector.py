"""
Module: expense_kernel.selectors.rule_selector
Responsibility: Read-only access to stored approval rules.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Rules are returned in evaluation order (priority, then creation time)
      so that equal-priority ties resolve the same way as in
      ``expense_engines.rule_matching``.
    - No caching: every call reads the current configuration.

Failure modes:
    - ConfigurationError if a stored definition no longer parses.
"""

from uuid import UUID

from sqlalchemy import select

from expense_kernel.domain.rules import ApprovalRule
from expense_kernel.models.approval_rule import ApprovalRuleModel
from expense_kernel.selectors.base import BaseSelector


class RuleSelector(BaseSelector[ApprovalRuleModel]):
    """Queries over the approval_rules table."""

    def active_rules(self, company_id: str | None) -> list[ApprovalRule]:
        """Active rules of a company, in evaluation order."""
        stmt = (
            select(ApprovalRuleModel)
            .where(ApprovalRuleModel.is_active.is_(True))
            .order_by(ApprovalRuleModel.priority, ApprovalRuleModel.created_at)
        )
        if company_id is None:
            stmt = stmt.where(ApprovalRuleModel.company_id.is_(None))
        else:
            stmt = stmt.where(ApprovalRuleModel.company_id == company_id)
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def get(self, rule_id: UUID) -> ApprovalRule | None:
        model = self.session.scalar(
            select(ApprovalRuleModel).where(ApprovalRuleModel.rule_id == rule_id)
        )
        return model.to_dto() if model is not None else None
