"""
expense_engines.flow_state -- Checked state transitions shared by the engines.

Responsibility:
    The only place where step and flow statuses change.  The flow builder,
    step progression, conditional rules and escalation all go through these
    helpers so every transition is checked against ``STEP_TRANSITIONS`` and
    ``FLOW_TRANSITIONS``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Only legal edges of the step/flow state machines are taken.
    - Activating a step starts its escalation clock (deadline = activation
      time + timeout) when escalation applies to it.
    - Advancing keeps at most one step pending: the previous step is already
      resolved (or escalated) when the next one is activated.

Failure modes:
    - InvalidFlowTransitionError for an illegal edge.  Reaching it means a
      caller bug, not a user error.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta

from expense_kernel.domain.flow import (
    FLOW_TRANSITIONS,
    STEP_TRANSITIONS,
    ApprovalFlow,
    ApprovalStep,
    FlowResolved,
    FlowResult,
    FlowStatus,
    StepAdvanced,
    StepResolution,
    StepStatus,
)
from expense_kernel.domain.rules import EscalationPolicy
from expense_kernel.exceptions import InvalidFlowTransitionError


def step_deadline(
    step: ApprovalStep,
    policy: EscalationPolicy,
    activated_at: datetime,
) -> datetime | None:
    """Deadline of ``step`` if it were activated at ``activated_at``."""
    if not (policy.enabled and step.can_escalate):
        return None
    return activated_at + timedelta(hours=float(policy.timeout_hours))


def transition_step(
    step: ApprovalStep,
    to_status: StepStatus,
    now: datetime,
) -> ApprovalStep:
    if to_status not in STEP_TRANSITIONS[step.status]:
        raise InvalidFlowTransitionError("step", step.status.value, to_status.value)
    if to_status == StepStatus.ESCALATED:
        return replace(step, status=to_status, escalated_at=now)
    if to_status == StepStatus.PENDING:
        return replace(step, status=to_status, activated_at=now)
    return replace(step, status=to_status, resolved_at=now)


def activate_step(
    step: ApprovalStep,
    policy: EscalationPolicy,
    now: datetime,
) -> ApprovalStep:
    """Move a waiting step to pending and start its escalation clock."""
    step = transition_step(step, StepStatus.PENDING, now)
    return replace(step, deadline=step_deadline(step, policy, now))


def replace_step(flow: ApprovalFlow, index: int, step: ApprovalStep) -> ApprovalFlow:
    steps = flow.steps[:index] + (step,) + flow.steps[index + 1:]
    return replace(flow, steps=steps)


def resolve_flow(
    flow: ApprovalFlow,
    outcome: FlowStatus,
    now: datetime,
    reason: str,
    decided_by: str | None,
) -> tuple[ApprovalFlow, FlowResolved]:
    """Move the flow to a terminal status."""
    if outcome not in FLOW_TRANSITIONS[flow.status]:
        raise InvalidFlowTransitionError("flow", flow.status.value, outcome.value)
    resolved = replace(
        flow,
        status=outcome,
        resolved_at=now,
        resolution_reason=reason,
        decided_by=decided_by,
        escalation_flagged=False,
    )
    return resolved, FlowResolved(
        flow_id=flow.flow_id,
        expense_id=flow.expense.expense_id,
        outcome=outcome,
        reason=reason,
    )


def advance(flow: ApprovalFlow, now: datetime) -> tuple[ApprovalFlow, StepAdvanced]:
    """Activate the step after the current one."""
    next_index = flow.current_step_index + 1
    step = activate_step(flow.steps[next_index], flow.rule.escalation, now)
    flow = replace(replace_step(flow, next_index, step), current_step_index=next_index)
    return flow, StepAdvanced(
        flow_id=flow.flow_id,
        new_step_index=next_index,
        pending_approvers=step.approver_ids,
    )


def apply_step_resolution(
    flow: ApprovalFlow,
    resolution: StepResolution,
    now: datetime,
    *,
    reason: str = "",
    decided_by: str | None = None,
) -> FlowResult:
    """Apply the outcome of the current step to the flow.

    A rejected step rejects the flow.  An approved (or skipped) step
    approves the flow when it was the last one, otherwise the next step
    becomes pending.
    """
    if resolution == StepResolution.PENDING:
        return FlowResult(flow=flow, step_outcome=resolution, reason=reason)

    index = flow.current_step_index
    step_status = {
        StepResolution.APPROVED: StepStatus.APPROVED,
        StepResolution.REJECTED: StepStatus.REJECTED,
        StepResolution.SKIPPED: StepStatus.SKIPPED,
    }[resolution]
    flow = replace_step(flow, index, transition_step(flow.current_step, step_status, now))
    flow = replace(flow, escalation_flagged=False)

    if resolution == StepResolution.REJECTED:
        flow, event = resolve_flow(
            flow, FlowStatus.REJECTED, now,
            reason or f"Step {flow.current_step.step_number} rejected",
            decided_by,
        )
        return FlowResult(flow=flow, step_outcome=resolution, events=(event,), reason=flow.resolution_reason)

    if flow.is_last_step:
        flow, event = resolve_flow(
            flow, FlowStatus.APPROVED, now,
            reason or "All steps approved",
            decided_by,
        )
        return FlowResult(flow=flow, step_outcome=resolution, events=(event,), reason=flow.resolution_reason)

    flow, advanced = advance(flow, now)
    return FlowResult(flow=flow, step_outcome=resolution, events=(advanced,), reason=reason)
