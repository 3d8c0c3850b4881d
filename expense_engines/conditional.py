"""
expense_engines.conditional -- Conditional rule evaluator.

Responsibility:
    Decide whether a flow's conditional rules fire for its current step
    and apply the fired action: auto-approve, auto-reject, skip the step,
    or widen the step's approver set.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Invoked by step
    progression after each recorded vote for conditional and hybrid logic.

Invariants enforced:
    - OR: among the rules whose condition holds, the action is chosen by
      precedence auto_approve, auto_reject, require_additional, skip_step;
      ties go to the earliest rule in list order.  A fired
      require_additional merges the approvers of every fired rule with
      that action.
    - AND: every condition must hold; the first rule's action applies.
    - ``require_additional`` only ever widens the approver set.
    - ``skip_step`` on the last step is ignored and normal tallying
      continues.

Failure modes:
    - ConfigurationError propagated from ``evaluate_condition`` for a
      malformed condition.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime

from expense_kernel.domain.flow import (
    ApprovalFlow,
    FlowResult,
    FlowStatus,
    StepResolution,
    StepStatus,
)
from expense_kernel.domain.rules import (
    ConditionalAction,
    ConditionalRule,
    RuleOperator,
)
from expense_engines.conditions import evaluate_condition
from expense_engines.flow_state import (
    apply_step_resolution,
    replace_step,
    resolve_flow,
    transition_step,
)
from expense_engines.tracer import traced_engine


# Precedence among fired rules under OR
_ACTION_PRIORITY = (
    ConditionalAction.AUTO_APPROVE,
    ConditionalAction.AUTO_REJECT,
    ConditionalAction.REQUIRE_ADDITIONAL,
    ConditionalAction.SKIP_STEP,
)


@dataclass(frozen=True)
class ConditionalOutcome:
    """A fired conditional rule.

    ``additional_approvers`` are the users a ``require_additional`` action
    adds; under OR they merge every fired rule with that action.
    """

    rule: ConditionalRule
    rule_index: int
    reason: str
    additional_approvers: tuple[str, ...] = ()

    @property
    def action(self) -> ConditionalAction:
        return self.rule.action


@traced_engine("conditional", "1.0")
def evaluate_conditional_rules(
    flow: ApprovalFlow,
    rules: Sequence[ConditionalRule],
    operator: RuleOperator = RuleOperator.OR,
) -> ConditionalOutcome | None:
    """Return the rule that fires for the current step, or None."""
    if not rules:
        return None

    step = flow.current_step
    results = [evaluate_condition(r.condition, flow.expense, step) for r in rules]

    if operator == RuleOperator.AND:
        if all(results):
            return ConditionalOutcome(
                rule=rules[0],
                rule_index=0,
                reason=f"All conditional rules matched: {rules[0].action.value}",
                additional_approvers=_dedupe(rules[0].additional_approvers),
            )
        return None

    fired = [(i, r) for i, (r, matched) in enumerate(zip(rules, results)) if matched]
    for action in _ACTION_PRIORITY:
        candidates = [(i, r) for i, r in fired if r.action == action]
        if not candidates:
            continue
        index, rule = candidates[0]
        approvers: tuple[str, ...] = ()
        if action == ConditionalAction.REQUIRE_ADDITIONAL:
            approvers = _dedupe(
                a for _, r in candidates for a in r.additional_approvers
            )
        return ConditionalOutcome(
            rule=rule,
            rule_index=index,
            reason=(
                f"Conditional rule {index + 1} "
                f"({rule.condition.condition_type.value}) matched: "
                f"{rule.action.value}"
            ),
            additional_approvers=approvers,
        )
    return None


def _dedupe(values) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def apply_conditional_outcome(
    flow: ApprovalFlow,
    outcome: ConditionalOutcome,
    now: datetime,
    actor_id: str | None = None,
) -> tuple[ApprovalFlow, FlowResult | None]:
    """Apply a fired rule to the flow.

    Returns:
        ``(flow, result)``.  ``result`` is set when the action decided the
        step (auto-approve, auto-reject, skip).  Otherwise it is None and
        ``flow`` is the possibly widened flow to keep tallying on.
    """
    action = outcome.action

    if action in (ConditionalAction.AUTO_APPROVE, ConditionalAction.AUTO_REJECT):
        target = (
            FlowStatus.APPROVED
            if action == ConditionalAction.AUTO_APPROVE
            else FlowStatus.REJECTED
        )
        step_status = (
            StepStatus.APPROVED if target == FlowStatus.APPROVED else StepStatus.REJECTED
        )
        index = flow.current_step_index
        flow = replace_step(flow, index, transition_step(flow.current_step, step_status, now))
        flow, event = resolve_flow(flow, target, now, outcome.reason, actor_id)
        return flow, FlowResult(
            flow=flow,
            step_outcome=StepResolution(step_status.value),
            events=(event,),
            conditional_action=action,
            reason=outcome.reason,
        )

    if action == ConditionalAction.SKIP_STEP:
        if flow.is_last_step:
            return flow, None
        result = apply_step_resolution(
            flow, StepResolution.SKIPPED, now, reason=outcome.reason,
        )
        return result.flow, replace(result, conditional_action=action)

    # REQUIRE_ADDITIONAL
    step = flow.current_step
    extra = tuple(
        a for a in outcome.additional_approvers
        if a not in step.approver_ids
    )
    if extra:
        step = replace(step, approver_ids=step.approver_ids + extra)
        flow = replace_step(flow, flow.current_step_index, step)
    return flow, None
