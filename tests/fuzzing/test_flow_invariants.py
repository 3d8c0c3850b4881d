"""
Hypothesis fuzzing of approval flow progression.

Random rules (logic, steps, approvers, escalation) are driven through random
sequences of votes, escalation ticks, overrides and cancellations.  After
every accepted or refused action the flow must satisfy:

- At most one step is pending, and only the current one of an active
  or cancelled flow
- Steps after the current step are still waiting while the flow is active
- A rejected step means the flow is rejected
- An approved flow has no pending or rejected step
- Counted votes come from the step's approvers or its escalation target
- Terminal flows refuse every further vote
- Refused actions leave the flow unchanged
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, assume, given, settings
from hypothesis import strategies as st

from expense_kernel.domain import (
    Decision,
    EscalationPolicy,
    FlowStatus,
    HierarchicalLogic,
    PercentageLogic,
    SequentialLogic,
    StepStatus,
)
from expense_kernel.exceptions import ExpenseKernelError, FlowAlreadyTerminalError
from expense_engines import build_flow, cancel_flow, cast_vote, override_step, tick

from approval_factories import T0, make_directory, make_expense, make_rule, make_step

USERS = ("u1", "u2", "u3", "u4", "u5")
ESCALATION_TARGET = "cfo"


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


logic_strategy = st.one_of(
    st.just(SequentialLogic()),
    st.builds(
        HierarchicalLogic,
        require_all_selected=st.booleans(),
        allow_partial_approval=st.booleans(),
    ),
    st.builds(
        PercentageLogic,
        percentage=st.decimals(min_value=Decimal("1"), max_value=Decimal("100"), places=0),
    ),
)

escalation_strategy = st.one_of(
    st.just(EscalationPolicy()),
    st.just(EscalationPolicy(enabled=True, timeout_hours=Decimal("1"), escalate_to=ESCALATION_TARGET)),
    st.just(EscalationPolicy(enabled=True, timeout_hours=Decimal("1"), escalate_to_next_step=True)),
    st.just(EscalationPolicy(enabled=True, timeout_hours=Decimal("1"))),
)


@st.composite
def flows(draw):
    step_count = draw(st.integers(min_value=1, max_value=3))
    steps = tuple(
        make_step(
            number,
            *draw(st.lists(st.sampled_from(USERS), min_size=1, max_size=4, unique=True)),
            can_escalate=draw(st.booleans()),
        )
        for number in range(1, step_count + 1)
    )
    rule = make_rule(
        steps=steps,
        logic=draw(logic_strategy),
        escalation=draw(escalation_strategy),
    )
    return build_flow(make_expense(), rule, make_directory(), T0)


action_strategy = st.one_of(
    st.tuples(
        st.just("vote"),
        st.integers(min_value=0, max_value=2),
        st.sampled_from(USERS + (ESCALATION_TARGET, "outsider")),
        st.sampled_from([Decision.APPROVE, Decision.REJECT]),
    ),
    st.tuples(st.just("wait"), st.integers(min_value=0, max_value=3)),
    st.tuples(st.just("override"), st.sampled_from([Decision.APPROVE, Decision.REJECT])),
    st.tuples(st.just("cancel")),
)


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


def _assert_invariants(flow):
    pending = flow.pending_steps()
    assert len(pending) <= 1
    if pending:
        assert pending == (flow.current_step_index,)
        # Cancellation leaves the open step as it was
        assert flow.status in (FlowStatus.ACTIVE, FlowStatus.CANCELLED)

    if flow.status == FlowStatus.ACTIVE:
        for step in flow.steps[flow.current_step_index + 1:]:
            assert step.status == StepStatus.WAITING

    if any(s.status == StepStatus.REJECTED for s in flow.steps):
        assert flow.status == FlowStatus.REJECTED

    if flow.status == FlowStatus.APPROVED:
        assert all(
            s.status not in (StepStatus.PENDING, StepStatus.REJECTED) for s in flow.steps
        )

    for step in flow.steps:
        voters = [v.approver_id for v in step.votes if v.counted]
        allowed = set(step.approver_ids) | {step.escalated_to}
        assert set(voters) <= allowed


def _apply(flow, action, now):
    kind = action[0]
    if kind == "vote":
        _, step_index, approver_id, decision = action
        return cast_vote(flow, step_index, approver_id, decision, now=now).flow
    if kind == "override":
        return override_step(flow, action[1], "admin-9", now=now).flow
    if kind == "cancel":
        return cancel_flow(flow, "emp-1", now=now).flow
    result = tick(flow, now)
    return result.flow if result is not None else flow


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestFlowProgressionInvariants:

    @given(flow=flows(), actions=st.lists(action_strategy, max_size=25))
    @settings(max_examples=300, suppress_health_check=[HealthCheck.too_slow], deadline=None)
    def test_invariants_hold_for_any_action_sequence(self, flow, actions):
        now = T0
        _assert_invariants(flow)

        for action in actions:
            if action[0] == "wait":
                now += timedelta(hours=action[1])
            try:
                updated = _apply(flow, action, now)
            except ExpenseKernelError:
                # Refused actions never produce a new flow
                _assert_invariants(flow)
                continue
            if flow.is_terminal:
                assert updated == flow
            flow = updated
            _assert_invariants(flow)

        if flow.is_terminal:
            for approver_id in USERS + (ESCALATION_TARGET,):
                with pytest.raises(FlowAlreadyTerminalError):
                    cast_vote(flow, flow.current_step_index, approver_id, Decision.APPROVE, now=now)

    @given(flow=flows())
    @settings(max_examples=100, deadline=None)
    def test_unanimous_approval_completes_flow(self, flow):
        """Every approver of every step approving always approves the flow."""
        now = T0
        while flow.status == FlowStatus.ACTIVE:
            step = flow.current_step
            index = flow.current_step_index
            voter = next(a for a in step.approver_ids if not step.has_voted(a))
            flow = cast_vote(flow, index, voter, Decision.APPROVE, now=now).flow
            now += timedelta(minutes=1)

        assert flow.status == FlowStatus.APPROVED
        assert all(s.status == StepStatus.APPROVED for s in flow.steps)

    @given(flow=flows(), data=st.data())
    @settings(max_examples=100, deadline=None)
    def test_first_reject_under_sequential_logic_rejects_flow(self, flow, data):
        assume(isinstance(flow.rule.logic, SequentialLogic))
        step = flow.current_step
        voter = data.draw(st.sampled_from(step.approver_ids))

        result = cast_vote(flow, 0, voter, Decision.REJECT, now=T0)

        assert result.flow.status == FlowStatus.REJECTED
        assert result.flow.decided_by == voter
