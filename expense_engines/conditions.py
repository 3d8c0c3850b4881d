"""
expense_engines.conditions -- Pure condition evaluator.

Responsibility:
    Decide whether a single condition holds for an expense (and, for the
    flow-dependent kinds, for the current step of a flow), and whether a
    rule's applicability conditions all hold.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import expense_kernel/domain types and kernel exceptions.

Invariants enforced:
    - Amount threshold is inclusive: ``amount >= threshold``.
    - An empty membership set is vacuously true.
    - Category and department comparisons ignore case; employee ids are
      compared exactly.
    - Percentage consensus compares with integer arithmetic
      (``approvals * 100 >= pct * total``) so no rounding can flip a boundary.

Failure modes:
    - ConfigurationError for a missing threshold, a percentage outside
      (0, 100], an unknown condition object, or a flow-dependent condition
      evaluated without a step.
"""

from __future__ import annotations

from decimal import Decimal

from expense_kernel.domain.expense import ExpenseSnapshot
from expense_kernel.domain.flow import ApprovalStep, Decision
from expense_kernel.domain.rules import (
    AmountThresholdCondition,
    CategoryCondition,
    Condition,
    DepartmentCondition,
    EmployeeCondition,
    PercentageCondition,
    RuleConditions,
    SpecificApproverCondition,
)
from expense_kernel.exceptions import ConfigurationError
from expense_engines.tracer import traced_engine

_HUNDRED = Decimal("100")


def _member_ci(value: str | None, allowed: frozenset[str]) -> bool:
    if not allowed:
        return True
    if value is None:
        return False
    folded = value.casefold()
    return any(folded == a.casefold() for a in allowed)


def _member(value: str | None, allowed: frozenset[str]) -> bool:
    if not allowed:
        return True
    return value in allowed


def check_percentage(percentage: Decimal | None) -> Decimal:
    """Return ``percentage`` if it lies in (0, 100], else raise."""
    if percentage is None or not (Decimal("0") < percentage <= _HUNDRED):
        raise ConfigurationError(
            f"percentage must be in (0, 100], got {percentage!r}"
        )
    return percentage


def consensus_reached(approvals: int, total: int, percentage: Decimal) -> bool:
    """True iff ``approvals / total >= percentage / 100`` (False when total is 0)."""
    if total <= 0:
        return False
    return Decimal(approvals) * _HUNDRED >= percentage * Decimal(total)


def evaluate_condition(
    condition: Condition,
    expense: ExpenseSnapshot,
    step: ApprovalStep | None = None,
) -> bool:
    """Evaluate one condition.

    Args:
        condition: The condition to evaluate.
        expense: The expense under approval.
        step: Current step of the flow; required for specific-approver and
            percentage conditions.

    Raises:
        ConfigurationError: If the condition is malformed.
    """
    if isinstance(condition, AmountThresholdCondition):
        if condition.threshold is None:
            raise ConfigurationError("amount threshold condition has no threshold")
        return expense.amount >= condition.threshold

    if isinstance(condition, CategoryCondition):
        return _member_ci(expense.category, condition.categories)

    if isinstance(condition, DepartmentCondition):
        return _member_ci(expense.department, condition.departments)

    if isinstance(condition, EmployeeCondition):
        return _member(expense.employee_id, condition.employee_ids)

    if isinstance(condition, SpecificApproverCondition):
        if step is None:
            raise ConfigurationError(
                "specific approver condition needs the current step"
            )
        vote = step.vote_of(condition.approver_id)
        return vote is not None and vote.counted and vote.decision == Decision.APPROVE

    if isinstance(condition, PercentageCondition):
        percentage = check_percentage(condition.percentage)
        if step is None:
            raise ConfigurationError("percentage condition needs the current step")
        return consensus_reached(
            step.approve_count, len(step.approver_ids), percentage,
        )

    raise ConfigurationError(f"Unknown condition type: {type(condition).__name__}")


@traced_engine("conditions", "1.0")
def rule_conditions_match(conditions: RuleConditions, expense: ExpenseSnapshot) -> bool:
    """True iff every configured applicability condition holds."""
    if conditions.amount_threshold is not None:
        if expense.amount < conditions.amount_threshold:
            return False
    if not _member_ci(expense.category, conditions.categories):
        return False
    if not _member_ci(expense.department, conditions.departments):
        return False
    return _member(expense.employee_id, conditions.employee_ids)
