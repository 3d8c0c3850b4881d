"""
expense_engines.escalation -- Time-based escalation of stalled steps.

Responsibility:
    Decide whether the current step of a flow has run past its deadline and,
    if so, escalate it according to the rule's escalation policy.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Driven by the flow
    service's ``tick`` / ``escalate_due_flows`` and, through it, by the
    escalation scheduler.

Invariants enforced:
    - Idempotent: ``tick`` returns None for terminal flows, for steps that
      are not pending, cannot escalate or are not yet due.  Ticking twice
      never escalates twice.
    - Monotonic: an escalated step never returns to pending.
    - The deadline clock starts when the step becomes pending.

Failure modes:
    - None expected; the function is total over well-formed flows.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from expense_kernel.domain.flow import (
    ApprovalFlow,
    Escalated,
    FlowResult,
    StepResolution,
    StepStatus,
)
from expense_engines.flow_state import advance, replace_step, transition_step
from expense_engines.tracer import traced_engine


def is_escalation_due(flow: ApprovalFlow, now: datetime) -> bool:
    """True iff ``tick(flow, now)`` would escalate the current step."""
    if flow.is_terminal or not flow.rule.escalation.enabled:
        return False
    step = flow.current_step
    return (
        step.status == StepStatus.PENDING
        and step.can_escalate
        and step.deadline is not None
        and now >= step.deadline
    )


@traced_engine("escalation", "1.0")
def tick(flow: ApprovalFlow, now: datetime) -> FlowResult | None:
    """Escalate the current step if it is due.

    * ``escalate_to`` set: the step is escalated to that user, whose vote
      alone decides it.
    * ``escalate_to_next_step`` (and a next step exists): the step stays
      escalated and the next step becomes pending.
    * otherwise: the flow is flagged for external handling and waits for
      ``override_step``.

    Returns:
        FlowResult, or None when nothing was due.
    """
    if not is_escalation_due(flow, now):
        return None

    policy = flow.rule.escalation
    index = flow.current_step_index
    step = transition_step(flow.current_step, StepStatus.ESCALATED, now)

    if policy.escalate_to:
        step = replace(step, escalated_to=policy.escalate_to)
        flow = replace_step(flow, index, step)
        return FlowResult(
            flow=flow,
            step_outcome=StepResolution.PENDING,
            events=(Escalated(flow_id=flow.flow_id, step_index=index, target=policy.escalate_to),),
            reason=f"Step {step.step_number} escalated to {policy.escalate_to}",
        )

    flow = replace_step(flow, index, step)
    escalated = Escalated(flow_id=flow.flow_id, step_index=index, target=None)

    if policy.escalate_to_next_step and not flow.is_last_step:
        flow, advanced = advance(flow, now)
        return FlowResult(
            flow=flow,
            step_outcome=StepResolution.PENDING,
            events=(escalated, advanced),
            reason=f"Step {step.step_number} escalated to the next step",
        )

    flow = replace(flow, escalation_flagged=True)
    return FlowResult(
        flow=flow,
        step_outcome=StepResolution.PENDING,
        events=(escalated,),
        reason=f"Step {step.step_number} escalated for external handling",
    )
