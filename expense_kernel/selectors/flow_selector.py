"""
Module: expense_kernel.selectors.flow_selector
Responsibility: Read-only queries over approval flows: lookup by id, the
    active flow of an expense, flows awaiting a given approver and flows
    whose escalation deadline has passed.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only; returns frozen ``ApprovalFlow`` values.
    - A flow awaits a user when it is active, its current step is open and
      the user can still cast a counted vote on it.

Failure modes:
    - Returns None or an empty list when nothing matches (never raises on
      absence of data).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from expense_kernel.domain.flow import ApprovalFlow, StepStatus
from expense_kernel.models.approval_flow import ApprovalFlowModel
from expense_kernel.selectors.base import BaseSelector


def awaits_user(flow: ApprovalFlow, user_id: str) -> bool:
    """True if ``user_id`` still has a counted vote to cast on the flow."""
    if flow.is_terminal:
        return False
    step = flow.current_step
    if step.status == StepStatus.ESCALATED:
        if step.escalated_to != user_id:
            return False
        return not any(
            v.approver_id == user_id and v.counted and v.cast_at >= step.escalated_at
            for v in step.votes
        )
    if step.status != StepStatus.PENDING:
        return False
    return user_id in step.approver_ids and not step.has_voted(user_id)


class FlowSelector(BaseSelector[ApprovalFlowModel]):
    """Queries over the approval_flows table."""

    def get(self, flow_id: UUID) -> ApprovalFlow | None:
        model = self.session.scalar(
            select(ApprovalFlowModel).where(ApprovalFlowModel.flow_id == flow_id)
        )
        return model.to_dto() if model is not None else None

    def active_for_expense(self, expense_id: UUID) -> ApprovalFlow | None:
        model = self.session.scalar(
            select(ApprovalFlowModel).where(
                ApprovalFlowModel.expense_id == expense_id,
                ApprovalFlowModel.status == "active",
            )
        )
        return model.to_dto() if model is not None else None

    def for_expense(self, expense_id: UUID) -> list[ApprovalFlow]:
        """Every flow ever started for an expense, oldest first."""
        stmt = (
            select(ApprovalFlowModel)
            .where(ApprovalFlowModel.expense_id == expense_id)
            .order_by(ApprovalFlowModel.created_at)
        )
        return [m.to_dto() for m in self.session.scalars(stmt)]

    def pending_for_approver(
        self,
        user_id: str,
        company_id: str | None = None,
    ) -> list[ApprovalFlow]:
        """Active flows in which ``user_id`` is expected to act, oldest first."""
        stmt = (
            select(ApprovalFlowModel)
            .where(ApprovalFlowModel.status == "active")
            .order_by(ApprovalFlowModel.created_at)
        )
        if company_id is not None:
            stmt = stmt.where(ApprovalFlowModel.company_id == company_id)
        flows = (m.to_dto() for m in self.session.scalars(stmt))
        return [f for f in flows if awaits_user(f, user_id)]

    def due_flow_ids(self, now: datetime) -> list[UUID]:
        """Ids of active flows whose current-step deadline is at or before ``now``."""
        stmt = (
            select(ApprovalFlowModel.flow_id)
            .where(
                ApprovalFlowModel.status == "active",
                ApprovalFlowModel.next_deadline.is_not(None),
                ApprovalFlowModel.next_deadline <= now,
            )
            .order_by(ApprovalFlowModel.next_deadline)
        )
        return list(self.session.scalars(stmt))
