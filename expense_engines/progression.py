"""
expense_engines.progression -- Step progression engine.

Responsibility:
    Advance an approval flow as approvers act: validate and record a vote,
    run conditional rules, apply the specific-approver override, tally the
    step under the rule's tally policy and move the flow forward.  Also
    handles administrative overrides and cancellation.

Architecture position:
    Engines -- pure calculation layer, zero I/O, no clock access.
    Every entrypoint takes a flow and returns a ``FlowResult`` holding a new
    flow; the input flow is never modified.

Invariants enforced:
    - Terminal flows accept nothing: ``FlowAlreadyTerminalError`` is checked
      before any other rule.
    - A vote is accepted only for the current step, only from one of its
      approvers (or the escalation target) and at most once per approver.
      A refused vote leaves the flow untouched.
    - A rejected step always rejects the flow; no later step executes.
    - Hybrid precedence: conditional rules, then the specific-approver
      override, then the fallback tally.
    - Votes on an escalated step from anyone but the target are recorded
      with ``counted=False`` and never resolve the step.

Failure modes:
    - VoteError subclasses for refused actions (recoverable).
    - ConfigurationError if a conditional rule is malformed.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from expense_kernel.domain.flow import (
    ApprovalFlow,
    ApprovalStep,
    ApproverStatus,
    Decision,
    FlowResult,
    FlowStatus,
    StepResolution,
    StepStatus,
    VoteRecord,
)
from expense_kernel.domain.rules import (
    ConditionalLogic,
    HierarchicalLogic,
    HybridLogic,
    PercentageLogic,
    SequentialLogic,
    SpecificApproverLogic,
    TallyPolicy,
)
from expense_kernel.exceptions import (
    DuplicateVoteError,
    FlowAlreadyTerminalError,
    InvalidFlowTransitionError,
    NotAnApproverError,
    NotCurrentStepError,
)
from expense_engines.conditional import (
    apply_conditional_outcome,
    evaluate_conditional_rules,
)
from expense_engines.conditions import consensus_reached
from expense_engines.flow_state import (
    apply_step_resolution,
    replace_step,
    resolve_flow,
    transition_step,
)
from expense_engines.tracer import traced_engine


# =========================================================================
# Tallying
# =========================================================================


def _tally_hierarchical(policy: HierarchicalLogic, step: ApprovalStep) -> StepResolution:
    total = len(step.approver_ids)
    approvals = step.approve_count
    rejections = step.reject_count

    if policy.require_all_selected or not policy.allow_partial_approval:
        if rejections:
            return StepResolution.REJECTED
        approved = {
            v.approver_id for v in step.counted_votes if v.decision == Decision.APPROVE
        }
        if all(a in approved for a in step.approver_ids):
            return StepResolution.APPROVED
        return StepResolution.PENDING

    if approvals * 2 > total:
        return StepResolution.APPROVED
    if rejections * 2 > total:
        return StepResolution.REJECTED
    if not step.outstanding_approvers:
        # Everyone voted and neither side has a majority
        return StepResolution.REJECTED
    return StepResolution.PENDING


def _tally_percentage(policy: PercentageLogic, step: ApprovalStep) -> StepResolution:
    total = len(step.approver_ids)
    approvals = step.approve_count
    if consensus_reached(approvals, total, policy.percentage):
        return StepResolution.APPROVED
    reachable = approvals + len(step.outstanding_approvers)
    if not consensus_reached(reachable, total, policy.percentage):
        return StepResolution.REJECTED
    return StepResolution.PENDING


def tally_step(policy: TallyPolicy, step: ApprovalStep) -> StepResolution:
    """Resolve a step from its counted votes under ``policy``."""
    if isinstance(policy, SequentialLogic):
        counted = step.counted_votes
        if not counted:
            return StepResolution.PENDING
        if counted[0].decision == Decision.APPROVE:
            return StepResolution.APPROVED
        return StepResolution.REJECTED
    if isinstance(policy, HierarchicalLogic):
        return _tally_hierarchical(policy, step)
    if isinstance(policy, PercentageLogic):
        return _tally_percentage(policy, step)
    raise TypeError(f"Not a tally policy: {type(policy).__name__}")


def _tally_policy(flow: ApprovalFlow) -> TallyPolicy:
    logic = flow.rule.logic
    if isinstance(logic, (SpecificApproverLogic, ConditionalLogic, HybridLogic)):
        return logic.fallback
    return logic


def _specific_approvers(flow: ApprovalFlow) -> tuple[str, ...]:
    logic = flow.rule.logic
    if isinstance(logic, SpecificApproverLogic):
        return logic.approver_ids
    if isinstance(logic, HybridLogic):
        return logic.specific_approver_ids
    return ()


# =========================================================================
# Guards
# =========================================================================


def _ensure_active(flow: ApprovalFlow) -> None:
    if flow.is_terminal:
        raise FlowAlreadyTerminalError(str(flow.flow_id), flow.status.value)


def _ensure_current(flow: ApprovalFlow, step_index: int) -> None:
    if step_index != flow.current_step_index:
        raise NotCurrentStepError(
            str(flow.flow_id), step_index, flow.current_step_index,
        )


# =========================================================================
# Votes
# =========================================================================


def _vote_on_escalated_step(
    flow: ApprovalFlow,
    step_index: int,
    approver_id: str,
    decision: Decision,
    comment: str,
    now: datetime,
) -> FlowResult:
    step = flow.current_step
    is_target = step.escalated_to is not None and approver_id == step.escalated_to

    if not is_target and approver_id not in step.approver_ids:
        raise NotAnApproverError(str(flow.flow_id), step_index, approver_id)
    if is_target:
        # A target who voted before the escalation still gets the deciding vote
        already = any(
            v.approver_id == approver_id and v.cast_at >= step.escalated_at
            for v in step.votes
        )
    else:
        already = step.has_voted(approver_id)
    if already:
        raise DuplicateVoteError(str(flow.flow_id), step_index, approver_id)

    vote = VoteRecord(
        approver_id=approver_id,
        decision=decision,
        cast_at=now,
        comment=comment,
        counted=is_target,
    )
    flow = replace_step(flow, step_index, replace(step, votes=step.votes + (vote,)))

    if not is_target:
        return FlowResult(
            flow=flow,
            step_outcome=StepResolution.PENDING,
            reason="Step escalated; vote recorded without effect",
        )

    resolution = (
        StepResolution.APPROVED if decision == Decision.APPROVE else StepResolution.REJECTED
    )
    return apply_step_resolution(
        flow, resolution, now,
        reason=f"Escalation target {approver_id} {resolution.value} the step",
        decided_by=approver_id,
    )


@traced_engine(
    "progression", "1.0", fingerprint_fields=("step_index", "approver_id", "decision"),
)
def cast_vote(
    flow: ApprovalFlow,
    step_index: int,
    approver_id: str,
    decision: Decision,
    comment: str = "",
    *,
    now: datetime,
) -> FlowResult:
    """Record one approver's decision on the current step.

    Args:
        flow: The flow being voted on.
        step_index: Index (0-based) of the step the approver is acting on.
        approver_id: Authenticated actor id.
        decision: Approve or reject.
        comment: Free-text comment kept with the vote.
        now: Time of the vote (supplied by the caller's clock).

    Returns:
        FlowResult with the new flow, the step outcome and emitted events.

    Raises:
        FlowAlreadyTerminalError, NotCurrentStepError, NotAnApproverError,
        DuplicateVoteError.
    """
    _ensure_active(flow)
    _ensure_current(flow, step_index)

    step = flow.current_step
    if step.status == StepStatus.ESCALATED:
        return _vote_on_escalated_step(flow, step_index, approver_id, decision, comment, now)
    if step.status != StepStatus.PENDING:
        raise InvalidFlowTransitionError("step", step.status.value, "vote")

    if approver_id not in step.approver_ids:
        raise NotAnApproverError(str(flow.flow_id), step_index, approver_id)
    if step.has_voted(approver_id):
        raise DuplicateVoteError(str(flow.flow_id), step_index, approver_id)

    vote = VoteRecord(
        approver_id=approver_id, decision=decision, cast_at=now, comment=comment,
    )
    flow = replace_step(flow, step_index, replace(step, votes=step.votes + (vote,)))

    logic = flow.rule.logic
    if isinstance(logic, (ConditionalLogic, HybridLogic)):
        outcome = evaluate_conditional_rules(flow, logic.rules, logic.operator)
        if outcome is not None:
            flow, result = apply_conditional_outcome(flow, outcome, now, actor_id=approver_id)
            if result is not None:
                return result

    if decision == Decision.APPROVE and approver_id in _specific_approvers(flow):
        flow = replace_step(
            flow, step_index, transition_step(flow.current_step, StepStatus.APPROVED, now),
        )
        reason = f"Approved by designated approver {approver_id}"
        flow, event = resolve_flow(flow, FlowStatus.APPROVED, now, reason, approver_id)
        return FlowResult(
            flow=flow,
            step_outcome=StepResolution.APPROVED,
            events=(event,),
            reason=reason,
        )

    resolution = tally_step(_tally_policy(flow), flow.current_step)
    return apply_step_resolution(flow, resolution, now, decided_by=approver_id)


# =========================================================================
# Administrative actions
# =========================================================================


@traced_engine("progression", "1.0", fingerprint_fields=("actor_id", "decision"))
def override_step(
    flow: ApprovalFlow,
    decision: Decision,
    actor_id: str,
    reason: str = "",
    *,
    now: datetime,
) -> FlowResult:
    """Decide the current step from outside the approver set.

    This is the only way to unblock a step whose escalation was flagged for
    external handling.
    """
    _ensure_active(flow)
    if not flow.current_step.is_open:
        raise InvalidFlowTransitionError(
            "step", flow.current_step.status.value, "override",
        )
    resolution = (
        StepResolution.APPROVED if decision == Decision.APPROVE else StepResolution.REJECTED
    )
    return apply_step_resolution(
        flow, resolution, now,
        reason=reason or f"Step {resolution.value} by override from {actor_id}",
        decided_by=actor_id,
    )


@traced_engine("progression", "1.0", fingerprint_fields=("actor_id",))
def cancel_flow(
    flow: ApprovalFlow,
    actor_id: str,
    reason: str = "",
    *,
    now: datetime,
) -> FlowResult:
    """Cancel an active flow.  One-way."""
    _ensure_active(flow)
    flow, event = resolve_flow(
        flow, FlowStatus.CANCELLED, now, reason or "Cancelled", actor_id,
    )
    return FlowResult(
        flow=flow,
        step_outcome=StepResolution.PENDING,
        events=(event,),
        reason=flow.resolution_reason,
    )


def approver_status(flow: ApprovalFlow, user_id: str) -> ApproverStatus | None:
    """The first step ``user_id`` belongs to, and their vote on it.

    Escalation targets count as members of the step they were escalated to.
    Returns None if the user takes no part in the flow.
    """
    for index, step in enumerate(flow.steps):
        if user_id in step.approver_ids or step.escalated_to == user_id:
            vote = step.vote_of(user_id)
            return ApproverStatus(
                step_index=index,
                step_number=step.step_number,
                step_status=step.status,
                decision=vote.decision if vote else None,
                comment=vote.comment if vote else "",
                cast_at=vote.cast_at if vote else None,
                is_required=step.is_required,
                can_escalate=step.can_escalate,
            )
    return None
