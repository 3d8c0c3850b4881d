"""
expense_engines.rule_validation -- Structural validation of approval rules.

Responsibility:
    Reject rules that cannot produce a well-formed flow before any flow is
    built from them.  Called by the YAML rule-set loader and by the flow
    builder.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Step numbers form a contiguous 1..N sequence with N >= 1.
    - Every step names at least one approver selector.
    - Percentages lie in (0, 100]; thresholds are non-negative.
    - Specific-approver logic names at least one approver.
    - Escalation settings are internally consistent.
    - ``require_additional`` conditional rules name who is required.

Failure modes:
    - ConfigurationError (carrying the rule name) on the first violation.
"""

from __future__ import annotations

from decimal import Decimal

from expense_kernel.domain.rules import (
    AmountThresholdCondition,
    ApprovalLogic,
    ApprovalRule,
    ConditionalAction,
    ConditionalLogic,
    ConditionalRule,
    HybridLogic,
    PercentageCondition,
    PercentageLogic,
    SpecificApproverLogic,
)
from expense_kernel.exceptions import ConfigurationError
from expense_engines.conditions import check_percentage


def _check_steps(rule: ApprovalRule) -> None:
    if not rule.steps:
        raise ConfigurationError("rule has no steps", rule_name=rule.name)

    numbers = [s.step_number for s in rule.steps]
    expected = list(range(1, len(numbers) + 1))
    if sorted(numbers) != expected:
        raise ConfigurationError(
            f"step numbers must be contiguous 1..{len(numbers)}, got {numbers}",
            rule_name=rule.name,
        )
    if numbers != expected:
        raise ConfigurationError(
            f"steps must be listed in order, got {numbers}",
            rule_name=rule.name,
        )

    for step in rule.steps:
        if not step.approvers:
            raise ConfigurationError(
                f"step {step.step_number} has no approvers", rule_name=rule.name,
            )


def _check_conditional_rule(rule: ApprovalRule, conditional: ConditionalRule) -> None:
    condition = conditional.condition
    if isinstance(condition, AmountThresholdCondition):
        if condition.threshold is None or condition.threshold < Decimal("0"):
            raise ConfigurationError(
                f"amount threshold must be non-negative, got {condition.threshold!r}",
                rule_name=rule.name,
            )
    elif isinstance(condition, PercentageCondition):
        _percentage(rule, condition.percentage)

    if (
        conditional.action == ConditionalAction.REQUIRE_ADDITIONAL
        and not conditional.additional_approvers
    ):
        raise ConfigurationError(
            "require_additional conditional rule names no additional approvers",
            rule_name=rule.name,
        )


def _percentage(rule: ApprovalRule, value: Decimal | None) -> None:
    try:
        check_percentage(value)
    except ConfigurationError as exc:
        raise ConfigurationError(exc.reason, rule_name=rule.name) from exc


def _check_logic(rule: ApprovalRule, logic: ApprovalLogic) -> None:
    if isinstance(logic, PercentageLogic):
        _percentage(rule, logic.percentage)
    elif isinstance(logic, SpecificApproverLogic):
        if not logic.approver_ids:
            raise ConfigurationError(
                "specific approver logic names no approvers", rule_name=rule.name,
            )
        _check_logic(rule, logic.fallback)
    elif isinstance(logic, (ConditionalLogic, HybridLogic)):
        for conditional in logic.rules:
            _check_conditional_rule(rule, conditional)
        _check_logic(rule, logic.fallback)


def _check_escalation(rule: ApprovalRule) -> None:
    policy = rule.escalation
    if not policy.enabled:
        return
    if policy.timeout_hours <= Decimal("0"):
        raise ConfigurationError(
            f"escalation timeout must be positive, got {policy.timeout_hours}",
            rule_name=rule.name,
        )
    if policy.escalate_to and policy.escalate_to_next_step:
        raise ConfigurationError(
            "escalation cannot target both a user and the next step",
            rule_name=rule.name,
        )


def validate_rule(rule: ApprovalRule) -> None:
    """Raise ConfigurationError if ``rule`` cannot drive a flow."""
    _check_steps(rule)
    threshold = rule.conditions.amount_threshold
    if threshold is not None and threshold < Decimal("0"):
        raise ConfigurationError(
            f"amount threshold must be non-negative, got {threshold}",
            rule_name=rule.name,
        )
    _check_logic(rule, rule.logic)
    _check_escalation(rule)
