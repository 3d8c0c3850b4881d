"""
Pure domain layer.

This module contains the approval value objects with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Time/clock (except the Clock interface itself)
- I/O

All domain objects are immutable and deterministic.
"""

from expense_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from expense_kernel.domain.expense import (
    CompanyDirectory,
    DirectoryUser,
    ExpenseSnapshot,
    StaticCompanyDirectory,
    UserRole,
)
from expense_kernel.domain.flow import (
    FLOW_TRANSITIONS,
    OPEN_STEP_STATUSES,
    STEP_TRANSITIONS,
    TERMINAL_FLOW_STATUSES,
    ApprovalFlow,
    ApprovalStep,
    ApproverStatus,
    Decision,
    Escalated,
    FlowEvent,
    FlowResolved,
    FlowResult,
    FlowStatus,
    StepAdvanced,
    StepResolution,
    StepStatus,
    VoteRecord,
)
from expense_kernel.domain.rules import (
    FLOW_DEPENDENT_CONDITIONS,
    TERMINAL_CONDITIONAL_ACTIONS,
    AmountThresholdCondition,
    ApprovalLogic,
    ApprovalLogicType,
    ApprovalRule,
    ApproverSelector,
    CategoryCondition,
    Condition,
    ConditionalAction,
    ConditionalLogic,
    ConditionalRule,
    ConditionType,
    DepartmentCondition,
    DepartmentManagersSelector,
    EmployeeCondition,
    EscalationPolicy,
    HierarchicalLogic,
    HybridLogic,
    PercentageCondition,
    PercentageLogic,
    RoleSelector,
    RuleConditions,
    RuleOperator,
    SequentialLogic,
    SpecificApproverCondition,
    SpecificApproverLogic,
    StepDefinition,
    TallyPolicy,
    UserSelector,
)

__all__ = [
    # Clock
    "Clock",
    "DeterministicClock",
    "SystemClock",
    # Expense / directory
    "CompanyDirectory",
    "DirectoryUser",
    "ExpenseSnapshot",
    "StaticCompanyDirectory",
    "UserRole",
    # Rules
    "FLOW_DEPENDENT_CONDITIONS",
    "TERMINAL_CONDITIONAL_ACTIONS",
    "AmountThresholdCondition",
    "ApprovalLogic",
    "ApprovalLogicType",
    "ApprovalRule",
    "ApproverSelector",
    "CategoryCondition",
    "Condition",
    "ConditionalAction",
    "ConditionalLogic",
    "ConditionalRule",
    "ConditionType",
    "DepartmentCondition",
    "DepartmentManagersSelector",
    "EmployeeCondition",
    "EscalationPolicy",
    "HierarchicalLogic",
    "HybridLogic",
    "PercentageCondition",
    "PercentageLogic",
    "RoleSelector",
    "RuleConditions",
    "RuleOperator",
    "SequentialLogic",
    "SpecificApproverCondition",
    "SpecificApproverLogic",
    "StepDefinition",
    "TallyPolicy",
    "UserSelector",
    # Flow
    "FLOW_TRANSITIONS",
    "OPEN_STEP_STATUSES",
    "STEP_TRANSITIONS",
    "TERMINAL_FLOW_STATUSES",
    "ApprovalFlow",
    "ApprovalStep",
    "ApproverStatus",
    "Decision",
    "Escalated",
    "FlowEvent",
    "FlowResolved",
    "FlowResult",
    "FlowStatus",
    "StepAdvanced",
    "StepResolution",
    "StepStatus",
    "VoteRecord",
]
