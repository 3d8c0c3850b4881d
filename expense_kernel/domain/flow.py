"""
Approval flow domain types (``expense_kernel.domain.flow``).

Responsibility
--------------
Pure value objects for a materialized approval flow: the flow and step
state machines, vote records, emitted events and transition results.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* Flow lifecycle -- ``FLOW_TRANSITIONS`` defines the only valid flow status
  changes.  Terminal statuses have no outgoing edges.
* Step lifecycle -- ``STEP_TRANSITIONS`` likewise for steps.  A step that has
  escalated can only be resolved; it never returns to ``pending``.
* At most one step is ``pending`` and, if one is, it is the step at
  ``current_step_index``.
* Frozen snapshot -- ``ApprovalFlow.rule`` is a private deep copy of the rule
  taken at build time and ``rule_hash`` fingerprints it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union
from uuid import UUID

from expense_kernel.domain.expense import ExpenseSnapshot
from expense_kernel.domain.rules import ApprovalRule, ConditionalAction


# =========================================================================
# Flow lifecycle
# =========================================================================


class FlowStatus(str, Enum):
    """Approval flow lifecycle states."""

    ACTIVE = "active"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


FLOW_TRANSITIONS: dict[FlowStatus, frozenset[FlowStatus]] = {
    FlowStatus.ACTIVE: frozenset({
        FlowStatus.APPROVED,
        FlowStatus.REJECTED,
        FlowStatus.CANCELLED,
    }),
    FlowStatus.APPROVED: frozenset(),
    FlowStatus.REJECTED: frozenset(),
    FlowStatus.CANCELLED: frozenset(),
}

TERMINAL_FLOW_STATUSES: frozenset[FlowStatus] = frozenset({
    FlowStatus.APPROVED,
    FlowStatus.REJECTED,
    FlowStatus.CANCELLED,
})


# =========================================================================
# Step lifecycle
# =========================================================================


class StepStatus(str, Enum):
    """Approval step lifecycle states."""

    WAITING = "waiting"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    ESCALATED = "escalated"


STEP_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.WAITING: frozenset({StepStatus.PENDING}),
    StepStatus.PENDING: frozenset({
        StepStatus.APPROVED,
        StepStatus.REJECTED,
        StepStatus.SKIPPED,
        StepStatus.ESCALATED,
    }),
    StepStatus.ESCALATED: frozenset({
        StepStatus.APPROVED,
        StepStatus.REJECTED,
    }),
    StepStatus.APPROVED: frozenset(),
    StepStatus.REJECTED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

# Statuses in which the current step still awaits a decision.
OPEN_STEP_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.PENDING,
    StepStatus.ESCALATED,
})


class Decision(str, Enum):
    """Decision an approver can cast."""

    APPROVE = "approve"
    REJECT = "reject"


class StepResolution(str, Enum):
    """Outcome of tallying a step."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


# =========================================================================
# Votes and steps
# =========================================================================


@dataclass(frozen=True)
class VoteRecord:
    """A single vote on a step.  Immutable.

    ``counted`` is False for ordinary votes cast after the step escalated:
    they are kept for the record but carry no weight.
    """

    approver_id: str
    decision: Decision
    cast_at: datetime
    comment: str = ""
    counted: bool = True


@dataclass(frozen=True)
class ApprovalStep:
    """A materialized step with a concrete approver set."""

    step_number: int
    approver_ids: tuple[str, ...]
    is_required: bool = True
    can_escalate: bool = False
    status: StepStatus = StepStatus.WAITING
    votes: tuple[VoteRecord, ...] = ()
    activated_at: datetime | None = None
    deadline: datetime | None = None
    escalated_at: datetime | None = None
    escalated_to: str | None = None
    resolved_at: datetime | None = None

    def vote_of(self, approver_id: str) -> VoteRecord | None:
        for vote in self.votes:
            if vote.approver_id == approver_id:
                return vote
        return None

    def has_voted(self, approver_id: str) -> bool:
        return self.vote_of(approver_id) is not None

    @property
    def counted_votes(self) -> tuple[VoteRecord, ...]:
        return tuple(v for v in self.votes if v.counted)

    @property
    def approve_count(self) -> int:
        return sum(1 for v in self.counted_votes if v.decision == Decision.APPROVE)

    @property
    def reject_count(self) -> int:
        return sum(1 for v in self.counted_votes if v.decision == Decision.REJECT)

    @property
    def outstanding_approvers(self) -> tuple[str, ...]:
        """Approvers of this step that have not voted yet."""
        return tuple(a for a in self.approver_ids if not self.has_voted(a))

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STEP_STATUSES


# =========================================================================
# Flow
# =========================================================================


@dataclass(frozen=True)
class ApprovalFlow:
    """One approval process for one expense."""

    flow_id: UUID
    expense: ExpenseSnapshot
    rule: ApprovalRule
    rule_hash: str
    steps: tuple[ApprovalStep, ...]
    created_at: datetime
    current_step_index: int = 0
    status: FlowStatus = FlowStatus.ACTIVE
    resolved_at: datetime | None = None
    resolution_reason: str = ""
    decided_by: str | None = None
    escalation_flagged: bool = False

    @property
    def current_step(self) -> ApprovalStep:
        return self.steps[self.current_step_index]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FLOW_STATUSES

    @property
    def is_last_step(self) -> bool:
        return self.current_step_index == len(self.steps) - 1

    @property
    def next_deadline(self) -> datetime | None:
        """Deadline of the current step while it can still escalate."""
        if self.is_terminal:
            return None
        step = self.current_step
        if step.status != StepStatus.PENDING:
            return None
        return step.deadline

    def pending_steps(self) -> tuple[int, ...]:
        return tuple(
            i for i, s in enumerate(self.steps) if s.status == StepStatus.PENDING
        )


# =========================================================================
# Events
# =========================================================================


@dataclass(frozen=True)
class FlowResolved:
    """Flow reached a terminal status (expense-status collaborator)."""

    flow_id: UUID
    expense_id: UUID
    outcome: FlowStatus
    reason: str = ""


@dataclass(frozen=True)
class StepAdvanced:
    """A step became pending (notification collaborator)."""

    flow_id: UUID
    new_step_index: int
    pending_approvers: tuple[str, ...]


@dataclass(frozen=True)
class Escalated:
    """A step escalated.  ``target`` is None when left to external handling."""

    flow_id: UUID
    step_index: int
    target: str | None


FlowEvent = Union[FlowResolved, StepAdvanced, Escalated]


# =========================================================================
# Transition result
# =========================================================================


@dataclass(frozen=True)
class FlowResult:
    """Result of applying one transition to a flow."""

    flow: ApprovalFlow
    step_outcome: StepResolution
    events: tuple[FlowEvent, ...] = ()
    conditional_action: ConditionalAction | None = None
    reason: str = ""


@dataclass(frozen=True)
class ApproverStatus:
    """A user's position in a flow: first step membership and vote."""

    step_index: int
    step_number: int
    step_status: StepStatus
    decision: Decision | None = None
    comment: str = ""
    cast_at: datetime | None = None
    is_required: bool = True
    can_escalate: bool = False
