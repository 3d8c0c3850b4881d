"""
Module: expense_kernel.models.approval_rule
Responsibility: ORM persistence for company approval rules.

Architecture position: Kernel > Models.  May import from db/base.py and the
    domain codec only.

Invariants enforced:
    - The full rule lives in the JSON ``definition`` column in the same
      payload shape as YAML rule sets.  ``company_id``, ``name``,
      ``priority``, ``is_active`` and ``created_at`` are copied out of it
      for querying and ordering only.
    - UNIQUE(rule_id).

Failure modes:
    - ConfigurationError from ``to_dto()`` if a stored definition no longer
      parses (hand-edited rows).
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from expense_kernel.db.base import Base, UUIDString

if TYPE_CHECKING:
    from expense_kernel.domain.rules import ApprovalRule


class ApprovalRuleModel(Base):
    """Persistent approval rule configuration."""

    __tablename__ = "approval_rules"

    __table_args__ = (
        Index(
            "ix_approval_rules_company_active",
            "company_id", "is_active", "priority", "created_at",
        ),
    )

    rule_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    company_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    definition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ApprovalRule {self.rule_id} {self.name!r} "
            f"priority={self.priority} active={self.is_active}>"
        )

    def to_dto(self) -> ApprovalRule:
        """Convert ORM model to frozen domain rule."""
        from expense_kernel.domain.codec import rule_from_payload

        return rule_from_payload(self.definition)

    @classmethod
    def from_dto(cls, dto: ApprovalRule) -> ApprovalRuleModel:
        """Create ORM model from domain rule."""
        from expense_kernel.domain.codec import rule_to_payload

        return cls(
            rule_id=dto.rule_id,
            company_id=dto.company_id,
            name=dto.name,
            description=dto.description,
            priority=dto.priority,
            is_active=dto.is_active,
            created_at=dto.created_at,
            definition=rule_to_payload(dto),
        )
