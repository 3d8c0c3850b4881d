"""
Approval rule domain types (``expense_kernel.domain.rules``).

Responsibility
--------------
Pure value objects describing an approval rule as authored by a company
admin: applicability conditions, approval logic, step definitions with
approver selectors, escalation policy and conditional (short-circuit) rules.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* Approval logic is a tagged union: each logic variant carries only its own
  settings, so a percentage rule cannot carry hierarchical flags and vice
  versa.  ``logic_type`` is a class-level tag on every variant.
* Approver selectors are a tagged union resolved once, at flow-build time.
* Step numbers must form a contiguous 1..N sequence (checked by
  ``expense_engines.rule_validation``, not on construction, so malformed
  configuration can be reported with full context).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Union
from uuid import UUID, uuid4

from expense_kernel.domain.expense import UserRole


# =========================================================================
# Conditions
# =========================================================================


class ConditionType(str, Enum):
    """Condition kinds usable in conditional rules."""

    AMOUNT_THRESHOLD = "amount_threshold"
    CATEGORY = "category"
    DEPARTMENT = "department"
    EMPLOYEE = "employee"
    SPECIFIC_APPROVER = "specific_approver"
    PERCENTAGE = "percentage"


@dataclass(frozen=True)
class AmountThresholdCondition:
    """True when the expense amount is at or above ``threshold``."""

    condition_type: ClassVar[ConditionType] = ConditionType.AMOUNT_THRESHOLD

    threshold: Decimal


@dataclass(frozen=True)
class CategoryCondition:
    """True when the expense category is one of ``categories``."""

    condition_type: ClassVar[ConditionType] = ConditionType.CATEGORY

    categories: frozenset[str] = frozenset()


@dataclass(frozen=True)
class DepartmentCondition:
    """True when the expense department is one of ``departments``."""

    condition_type: ClassVar[ConditionType] = ConditionType.DEPARTMENT

    departments: frozenset[str] = frozenset()


@dataclass(frozen=True)
class EmployeeCondition:
    """True when the submitting employee is one of ``employee_ids``."""

    condition_type: ClassVar[ConditionType] = ConditionType.EMPLOYEE

    employee_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class SpecificApproverCondition:
    """True when ``approver_id`` has approved the current step."""

    condition_type: ClassVar[ConditionType] = ConditionType.SPECIFIC_APPROVER

    approver_id: str


@dataclass(frozen=True)
class PercentageCondition:
    """True when at least ``percentage`` % of the current step approved."""

    condition_type: ClassVar[ConditionType] = ConditionType.PERCENTAGE

    percentage: Decimal


Condition = Union[
    AmountThresholdCondition,
    CategoryCondition,
    DepartmentCondition,
    EmployeeCondition,
    SpecificApproverCondition,
    PercentageCondition,
]

# Conditions that read the flow's current step rather than the expense.
FLOW_DEPENDENT_CONDITIONS: frozenset[ConditionType] = frozenset({
    ConditionType.SPECIFIC_APPROVER,
    ConditionType.PERCENTAGE,
})


@dataclass(frozen=True)
class RuleConditions:
    """Applicability conditions of a rule.  Unset fields always match."""

    amount_threshold: Decimal | None = None
    categories: frozenset[str] = frozenset()
    departments: frozenset[str] = frozenset()
    employee_ids: frozenset[str] = frozenset()


# =========================================================================
# Conditional rules
# =========================================================================


class ConditionalAction(str, Enum):
    """Side effect of a triggered conditional rule."""

    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    SKIP_STEP = "skip_step"
    REQUIRE_ADDITIONAL = "require_additional"


TERMINAL_CONDITIONAL_ACTIONS: frozenset[ConditionalAction] = frozenset({
    ConditionalAction.AUTO_APPROVE,
    ConditionalAction.AUTO_REJECT,
})


class RuleOperator(str, Enum):
    """How conditional rule outcomes are combined."""

    AND = "AND"
    OR = "OR"


@dataclass(frozen=True)
class ConditionalRule:
    """A condition -> action pair that can short-circuit step tallying."""

    condition: Condition
    action: ConditionalAction
    additional_approvers: tuple[str, ...] = ()


# =========================================================================
# Approval logic (tagged union)
# =========================================================================


class ApprovalLogicType(str, Enum):
    """Approval logic discriminator."""

    SEQUENTIAL = "sequential"
    HIERARCHICAL = "hierarchical"
    PERCENTAGE = "percentage"
    SPECIFIC_APPROVER = "specific_approver"
    HYBRID = "hybrid"
    CONDITIONAL = "conditional"


@dataclass(frozen=True)
class SequentialLogic:
    """One decision per step: the first vote resolves the step."""

    logic_type: ClassVar[ApprovalLogicType] = ApprovalLogicType.SEQUENTIAL


@dataclass(frozen=True)
class HierarchicalLogic:
    """Several approvers per step.

    ``require_all_selected`` wins when both flags are set; when neither is
    set every approver must approve.
    """

    logic_type: ClassVar[ApprovalLogicType] = ApprovalLogicType.HIERARCHICAL

    require_all_selected: bool = True
    allow_partial_approval: bool = False


@dataclass(frozen=True)
class PercentageLogic:
    """Step approves once ``percentage`` % of its approvers approved."""

    logic_type: ClassVar[ApprovalLogicType] = ApprovalLogicType.PERCENTAGE

    percentage: Decimal


TallyPolicy = Union[SequentialLogic, HierarchicalLogic, PercentageLogic]


@dataclass(frozen=True)
class SpecificApproverLogic:
    """An approve from any of ``approver_ids`` approves the whole flow.

    Their rejects carry no special weight; they are tallied under
    ``fallback`` together with everyone else's votes.
    """

    logic_type: ClassVar[ApprovalLogicType] = ApprovalLogicType.SPECIFIC_APPROVER

    approver_ids: tuple[str, ...]
    fallback: TallyPolicy = field(default_factory=HierarchicalLogic)


@dataclass(frozen=True)
class ConditionalLogic:
    """Conditional rules evaluated on every vote, then ``fallback`` tallying."""

    logic_type: ClassVar[ApprovalLogicType] = ApprovalLogicType.CONDITIONAL

    rules: tuple[ConditionalRule, ...] = ()
    operator: RuleOperator = RuleOperator.OR
    fallback: TallyPolicy = field(default_factory=SequentialLogic)


@dataclass(frozen=True)
class HybridLogic:
    """Conditional rules, then a specific-approver override, then tallying."""

    logic_type: ClassVar[ApprovalLogicType] = ApprovalLogicType.HYBRID

    rules: tuple[ConditionalRule, ...] = ()
    operator: RuleOperator = RuleOperator.OR
    specific_approver_ids: tuple[str, ...] = ()
    fallback: TallyPolicy = field(default_factory=HierarchicalLogic)


ApprovalLogic = Union[
    SequentialLogic,
    HierarchicalLogic,
    PercentageLogic,
    SpecificApproverLogic,
    ConditionalLogic,
    HybridLogic,
]


# =========================================================================
# Approver selectors (tagged union)
# =========================================================================


@dataclass(frozen=True)
class UserSelector:
    """An explicit user id; passes through resolution unchanged."""

    user_id: str


@dataclass(frozen=True)
class RoleSelector:
    """Every active user with ``role`` ("all admins", "all managers")."""

    role: UserRole


@dataclass(frozen=True)
class DepartmentManagersSelector:
    """Every active manager of ``department``."""

    department: str


ApproverSelector = Union[UserSelector, RoleSelector, DepartmentManagersSelector]


# =========================================================================
# Steps, escalation, rule
# =========================================================================


@dataclass(frozen=True)
class StepDefinition:
    """A configured approval step."""

    step_number: int
    approvers: tuple[ApproverSelector, ...]
    is_required: bool = True
    can_escalate: bool = False


@dataclass(frozen=True)
class EscalationPolicy:
    """Time-based escalation of stalled steps.

    ``escalate_to`` names a user whose decision becomes dispositive;
    ``escalate_to_next_step`` hands the decision to the following step.
    With neither set, escalation is only flagged for external handling.
    """

    enabled: bool = False
    timeout_hours: Decimal = Decimal("72")
    escalate_to: str | None = None
    escalate_to_next_step: bool = False


@dataclass(frozen=True)
class ApprovalRule:
    """A company approval rule.  Immutable once referenced by a flow."""

    name: str
    priority: int
    steps: tuple[StepDefinition, ...]
    logic: ApprovalLogic = field(default_factory=SequentialLogic)
    conditions: RuleConditions = field(default_factory=RuleConditions)
    escalation: EscalationPolicy = field(default_factory=EscalationPolicy)
    rule_id: UUID = field(default_factory=uuid4)
    company_id: str | None = None
    description: str = ""
    is_active: bool = True
    created_at: datetime | None = None

    @property
    def logic_type(self) -> ApprovalLogicType:
        return self.logic.logic_type
