"""
Module: expense_kernel.models.approval_flow
Responsibility: ORM persistence for approval flows.

Architecture position: Kernel > Models.  May import from db/base.py, the
    domain codec and kernel exceptions.

Invariants enforced:
    - The full flow (frozen rule snapshot, steps, votes) lives in the JSON
      ``state`` column.  Scalar columns are denormalized copies used for
      lookups: the active flow of an expense, flows of a company, flows with
      a due escalation deadline.
    - Optimistic locking: ``version`` is SQLAlchemy's version counter, so a
      concurrent writer that read an older row fails with StaleDataError
      instead of overwriting.
    - Terminal flows are immutable: the ORM listeners below refuse any
      UPDATE or DELETE of a row whose stored status is terminal.

Failure modes:
    - ImmutabilityViolationError on UPDATE/DELETE of a terminal flow row.
    - StaleDataError (translated to OptimisticLockError by the service) on
      a lost-update race.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    event,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import Base, UUIDString
from expense_kernel.exceptions import ImmutabilityViolationError

if TYPE_CHECKING:
    from expense_kernel.domain.flow import ApprovalFlow

_TERMINAL_STATUSES = frozenset({"approved", "rejected", "cancelled"})


class ApprovalFlowModel(Base):
    """Persistent approval flow.

    Contract:
        Rows are written only by ApprovalFlowService, one transition per
        transaction, under the flow's lock.

    Guarantees:
        - ``state`` always round-trips through ``flow_from_payload``.
        - ``next_deadline`` is set iff the current step is pending and can
          escalate.
    """

    __tablename__ = "approval_flows"

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'approved', 'rejected', 'cancelled')",
            name="ck_approval_flows_valid_status",
        ),
        Index("ix_approval_flows_expense_status", "expense_id", "status"),
        Index("ix_approval_flows_company_status", "company_id", "status"),
        Index("ix_approval_flows_deadline", "status", "next_deadline"),
    )

    flow_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    expense_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    company_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    rule_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    rule_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    next_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    state: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<ApprovalFlow {self.flow_id} expense={self.expense_id} "
            f"status={self.status} step={self.current_step_index}>"
        )

    def to_dto(self) -> ApprovalFlow:
        """Convert ORM model to frozen domain flow."""
        from expense_kernel.domain.codec import flow_from_payload

        return flow_from_payload(self.state)

    @classmethod
    def from_dto(cls, dto: ApprovalFlow) -> ApprovalFlowModel:
        """Create ORM model from domain flow."""
        model = cls(
            flow_id=dto.flow_id,
            expense_id=dto.expense.expense_id,
            company_id=dto.expense.company_id,
            rule_id=dto.rule.rule_id,
            rule_hash=dto.rule_hash,
            created_at=dto.created_at,
        )
        model.apply_dto(dto)
        return model

    def apply_dto(self, dto: ApprovalFlow) -> None:
        """Copy a transitioned flow onto this row."""
        from expense_kernel.domain.codec import flow_to_payload

        self.status = dto.status.value
        self.current_step_index = dto.current_step_index
        self.escalation_flagged = dto.escalation_flagged
        self.next_deadline = dto.next_deadline
        self.resolved_at = dto.resolved_at
        self.state = flow_to_payload(dto)


# =============================================================================
# ORM-Level Immutability for Terminal Flows
# =============================================================================


def _stored_status(target: ApprovalFlowModel) -> str:
    history = inspect(target).attrs.status.history
    if history.deleted:
        return history.deleted[0]
    return target.status


@event.listens_for(ApprovalFlowModel, "before_update")
def prevent_terminal_flow_update(mapper, connection, target):
    """Prevent updates to flows that already reached a terminal status."""
    status = _stored_status(target)
    if status in _TERMINAL_STATUSES:
        raise ImmutabilityViolationError(
            entity_type="ApprovalFlow",
            entity_id=str(target.flow_id),
            reason=f"Flow is {status} -- terminal flows cannot be modified",
        )


@event.listens_for(ApprovalFlowModel, "before_delete")
def prevent_terminal_flow_delete(mapper, connection, target):
    """Prevent deletion of terminal flows."""
    status = _stored_status(target)
    if status in _TERMINAL_STATUSES:
        raise ImmutabilityViolationError(
            entity_type="ApprovalFlow",
            entity_id=str(target.flow_id),
            reason=f"Flow is {status} -- terminal flows cannot be deleted",
        )
