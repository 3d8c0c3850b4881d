"""
Tests for ApprovalFlowService against the database.

Tests cover:
- start_flow: rule selection from explicit or stored rules, persistence,
  duplicate flows, no matching rule
- submit_vote / override_step / cancel_flow: persisted transitions,
  refused votes leave the stored flow untouched
- Event publication after commit, sink failures
- Queries: get_flow, pending_for_approver, approver_status
- escalate_due_flows with a deterministic clock
- Terminal flow rows and rule snapshots cannot be tampered with
"""

from dataclasses import replace
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from expense_kernel.db.engine import session_scope
from expense_kernel.domain import (
    Decision,
    Escalated,
    EscalationPolicy,
    FlowResolved,
    FlowStatus,
    HierarchicalLogic,
    RoleSelector,
    RuleConditions,
    StepAdvanced,
    StepStatus,
    UserRole,
)
from expense_kernel.domain.codec import rule_to_payload
from expense_kernel.exceptions import (
    DuplicateFlowError,
    FlowAlreadyTerminalError,
    FlowNotFoundError,
    ImmutabilityViolationError,
    NoRuleMatchedError,
    NotAnApproverError,
)
from expense_kernel.models.approval_flow import ApprovalFlowModel
from expense_kernel.models.approval_rule import ApprovalRuleModel
from expense_kernel.services.approval_flow_service import ApprovalFlowService

from approval_factories import COMPANY, make_expense, make_rule, make_step

APPROVE = Decision.APPROVE
REJECT = Decision.REJECT


def _two_step_rule(**kwargs):
    return make_rule(
        steps=(make_step(1, "mgr-1", can_escalate=True), make_step(2, "admin-1")),
        **kwargs,
    )


class TestStartFlow:

    def test_start_with_explicit_rules(self, flow_service, directory, published_events):
        expense = make_expense()

        flow = flow_service.start_flow(expense, directory, rules=[_two_step_rule()])

        assert flow.status == FlowStatus.ACTIVE
        assert flow.expense == expense
        assert flow_service.get_flow(flow.flow_id) == flow
        assert published_events == [
            StepAdvanced(flow_id=flow.flow_id, new_step_index=0, pending_approvers=("mgr-1",)),
        ]

    def test_start_with_stored_rules(self, flow_service, directory):
        flow_service.save_rule(make_rule("other-company", priority=1, company_id="globex"))
        flow_service.save_rule(make_rule("inactive", priority=2, is_active=False))
        flow_service.save_rule(make_rule(
            "managers", priority=5, steps=(make_step(1, RoleSelector(UserRole.MANAGER)),),
            logic=HierarchicalLogic(),
        ))
        flow_service.save_rule(make_rule("catch-all", priority=100))

        flow = flow_service.start_flow(make_expense(), directory)

        assert flow.rule.name == "managers"
        assert flow.steps[0].approver_ids == ("mgr-1", "mgr-2")

    def test_stored_rule_conditions_apply(self, flow_service, directory):
        flow_service.save_rule(make_rule(
            "big", priority=1, conditions=RuleConditions(amount_threshold=Decimal("1000")),
        ))
        flow_service.save_rule(make_rule("small", priority=2))

        assert flow_service.start_flow(make_expense(amount="1000"), directory).rule.name == "big"
        assert flow_service.start_flow(make_expense(amount="999"), directory).rule.name == "small"

    def test_no_rule_matched(self, flow_service, directory, captured_logs):
        expense = make_expense(amount="5")
        rule = make_rule(conditions=RuleConditions(amount_threshold=Decimal("1000")))

        with pytest.raises(NoRuleMatchedError):
            flow_service.start_flow(expense, directory, rules=[rule])

        logs = captured_logs()
        warning = next(r for r in logs if r["message"] == "no_rule_matched")
        assert warning["level"] == "WARNING"
        assert warning["expense_id"] == str(expense.expense_id)

    def test_duplicate_active_flow(self, flow_service, directory):
        expense = make_expense()
        first = flow_service.start_flow(expense, directory, rules=[make_rule()])

        with pytest.raises(DuplicateFlowError) as exc_info:
            flow_service.start_flow(expense, directory, rules=[make_rule()])

        assert exc_info.value.existing_flow_id == str(first.flow_id)

    def test_new_flow_after_cancellation(self, flow_service, directory):
        expense = make_expense()
        first = flow_service.start_flow(expense, directory, rules=[make_rule()])
        flow_service.cancel_flow(first.flow_id, "emp-1", "fixing receipt")

        second = flow_service.start_flow(expense, directory, rules=[make_rule()])

        assert second.flow_id != first.flow_id

    def test_flow_started_logged(self, flow_service, directory, captured_logs):
        flow = flow_service.start_flow(make_expense(), directory, rules=[make_rule()])

        record = next(r for r in captured_logs() if r["message"] == "flow_started")
        assert record["flow_id"] == str(flow.flow_id)
        assert record["rule_hash"] == flow.rule_hash
        assert record["step_count"] == 1


class TestSubmitVote:

    def test_votes_progress_and_persist(self, flow_service, directory, published_events):
        flow = flow_service.start_flow(make_expense(), directory, rules=[_two_step_rule()])

        flow_service.submit_vote(flow.flow_id, 0, "mgr-1", APPROVE, "ok")
        stored = flow_service.get_flow(flow.flow_id)
        assert stored.current_step_index == 1
        assert stored.steps[0].votes[0].comment == "ok"

        result = flow_service.submit_vote(flow.flow_id, 1, "admin-1", APPROVE)

        assert result.flow.status == FlowStatus.APPROVED
        assert flow_service.get_flow(flow.flow_id).status == FlowStatus.APPROVED
        assert isinstance(published_events[-1], FlowResolved)
        assert published_events[-1].outcome == FlowStatus.APPROVED

    def test_refused_vote_leaves_flow_untouched(self, flow_service, directory):
        flow = flow_service.start_flow(make_expense(), directory, rules=[_two_step_rule()])

        with pytest.raises(NotAnApproverError):
            flow_service.submit_vote(flow.flow_id, 0, "emp-1", APPROVE)

        assert flow_service.get_flow(flow.flow_id) == flow

    def test_vote_on_cancelled_flow(self, flow_service, directory):
        flow = flow_service.start_flow(make_expense(), directory, rules=[_two_step_rule()])
        flow_service.cancel_flow(flow.flow_id, "emp-1")

        with pytest.raises(FlowAlreadyTerminalError):
            flow_service.submit_vote(flow.flow_id, 0, "mgr-1", APPROVE)

    def test_unknown_flow(self, flow_service):
        with pytest.raises(FlowNotFoundError):
            flow_service.submit_vote(uuid4(), 0, "mgr-1", APPROVE)
        with pytest.raises(FlowNotFoundError):
            flow_service.get_flow(uuid4())

    def test_vote_logged(self, flow_service, directory, captured_logs):
        flow = flow_service.start_flow(make_expense(), directory, rules=[make_rule()])
        flow_service.submit_vote(flow.flow_id, 0, "mgr-1", REJECT)

        logs = captured_logs()
        vote = next(r for r in logs if r["message"] == "vote_recorded")
        assert vote["decision"] == "reject"
        assert vote["step_outcome"] == "rejected"
        resolved = next(r for r in logs if r["message"] == "flow_resolved")
        assert resolved["outcome"] == "rejected"
        assert resolved["flow_id"] == str(flow.flow_id)
        assert resolved["actor_id"] == "mgr-1"

    def test_sink_failure_does_not_undo_transition(
        self, session_factory, deterministic_clock, directory, captured_logs,
    ):
        def broken_sink(event):
            raise RuntimeError("notification service down")

        service = ApprovalFlowService(session_factory, deterministic_clock, broken_sink)
        flow = service.start_flow(make_expense(), directory, rules=[make_rule()])

        service.submit_vote(flow.flow_id, 0, "mgr-1", APPROVE)

        assert service.get_flow(flow.flow_id).status == FlowStatus.APPROVED
        failures = [r for r in captured_logs() if r["message"] == "event_publish_failed"]
        assert {r["event_type"] for r in failures} == {"StepAdvanced", "FlowResolved"}


class TestOverrideAndCancel:

    def test_override(self, flow_service, directory, captured_logs):
        flow = flow_service.start_flow(make_expense(), directory, rules=[_two_step_rule()])

        result = flow_service.override_step(flow.flow_id, REJECT, "admin-9", "policy breach")

        assert result.flow.status == FlowStatus.REJECTED
        assert flow_service.get_flow(flow.flow_id).resolution_reason == "policy breach"
        assert any(r["message"] == "step_overridden" for r in captured_logs())

    def test_cancel(self, flow_service, directory, published_events):
        flow = flow_service.start_flow(make_expense(), directory, rules=[make_rule()])

        flow_service.cancel_flow(flow.flow_id, "emp-1", "duplicate claim")

        stored = flow_service.get_flow(flow.flow_id)
        assert stored.status == FlowStatus.CANCELLED
        assert published_events[-1].outcome == FlowStatus.CANCELLED


class TestQueries:

    def test_pending_for_approver(self, flow_service, directory, deterministic_clock):
        first = flow_service.start_flow(make_expense(), directory, rules=[_two_step_rule()])
        deterministic_clock.advance(minutes=1)
        second = flow_service.start_flow(make_expense(), directory, rules=[_two_step_rule()])

        pending = flow_service.pending_for_approver("mgr-1")
        assert [f.flow_id for f in pending] == [first.flow_id, second.flow_id]
        assert flow_service.pending_for_approver("admin-1") == []

        flow_service.submit_vote(first.flow_id, 0, "mgr-1", APPROVE)

        assert [f.flow_id for f in flow_service.pending_for_approver("mgr-1")] == [second.flow_id]
        assert [f.flow_id for f in flow_service.pending_for_approver("admin-1")] == [first.flow_id]

    def test_pending_filtered_by_company(self, flow_service, directory):
        flow_service.start_flow(make_expense(), directory, rules=[make_rule()])
        other = flow_service.start_flow(
            make_expense(company_id="globex"), directory, rules=[make_rule(company_id="globex")],
        )

        pending = flow_service.pending_for_approver("mgr-1", company_id="globex")

        assert [f.flow_id for f in pending] == [other.flow_id]
        assert len(flow_service.pending_for_approver("mgr-1", company_id=COMPANY)) == 1

    def test_approver_status(self, flow_service, directory):
        flow = flow_service.start_flow(make_expense(), directory, rules=[_two_step_rule()])
        flow_service.submit_vote(flow.flow_id, 0, "mgr-1", APPROVE, "fine")

        status = flow_service.approver_status(flow.flow_id, "mgr-1")

        assert status.decision == APPROVE
        assert status.step_status == StepStatus.APPROVED
        assert flow_service.approver_status(flow.flow_id, "nobody") is None


class TestEscalationSweep:

    def _rule(self):
        return _two_step_rule(
            escalation=EscalationPolicy(enabled=True, timeout_hours=Decimal("1"), escalate_to="cfo"),
        )

    def test_escalates_due_flows_once(
        self, flow_service, directory, deterministic_clock, published_events,
    ):
        flow = flow_service.start_flow(make_expense(), directory, rules=[self._rule()])
        not_escalating = flow_service.start_flow(make_expense(), directory, rules=[make_rule()])

        assert flow_service.escalate_due_flows() == []

        deterministic_clock.advance(hours=2)
        results = flow_service.escalate_due_flows()

        assert [r.flow.flow_id for r in results] == [flow.flow_id]
        assert Escalated(flow_id=flow.flow_id, step_index=0, target="cfo") in published_events
        assert flow_service.get_flow(flow.flow_id).current_step.status == StepStatus.ESCALATED
        assert flow_service.get_flow(not_escalating.flow_id).current_step.status == StepStatus.PENDING

        assert flow_service.escalate_due_flows() == []

    def test_target_resolves_after_escalation(self, flow_service, directory, deterministic_clock):
        flow = flow_service.start_flow(make_expense(), directory, rules=[self._rule()])
        deterministic_clock.advance(hours=2)
        flow_service.escalate_due_flows()

        flow_service.submit_vote(flow.flow_id, 0, "mgr-1", REJECT)
        assert flow_service.get_flow(flow.flow_id).status == FlowStatus.ACTIVE
        assert flow_service.pending_for_approver("cfo")[0].flow_id == flow.flow_id

        flow_service.submit_vote(flow.flow_id, 0, "cfo", APPROVE)
        assert flow_service.get_flow(flow.flow_id).current_step_index == 1

    def test_tick_single_flow(self, flow_service, directory, deterministic_clock):
        flow = flow_service.start_flow(make_expense(), directory, rules=[self._rule()])

        assert flow_service.tick(flow.flow_id) is None

        deterministic_clock.advance(hours=1)
        result = flow_service.tick(flow.flow_id)
        assert result.flow.current_step.escalated_to == "cfo"

    def test_sweep_logged(self, flow_service, directory, deterministic_clock, captured_logs):
        flow_service.start_flow(make_expense(), directory, rules=[self._rule()])
        deterministic_clock.advance(hours=2)
        flow_service.escalate_due_flows()

        logs = captured_logs()
        escalated = next(r for r in logs if r["message"] == "step_escalated")
        assert escalated["level"] == "WARNING"
        assert escalated["target"] == "cfo"
        sweep = next(r for r in logs if r["message"] == "escalation_sweep_completed")
        assert sweep["due_count"] == 1
        assert sweep["escalated_count"] == 1


class TestStoredFlowIntegrity:

    def test_terminal_row_cannot_be_updated(self, flow_service, directory, session_factory):
        flow = flow_service.start_flow(make_expense(), directory, rules=[make_rule()])
        flow_service.submit_vote(flow.flow_id, 0, "mgr-1", APPROVE)

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                model = session.scalar(
                    select(ApprovalFlowModel).where(ApprovalFlowModel.flow_id == flow.flow_id)
                )
                model.status = "active"

        assert flow_service.get_flow(flow.flow_id).status == FlowStatus.APPROVED

    def test_terminal_row_cannot_be_deleted(self, flow_service, directory, session_factory):
        flow = flow_service.start_flow(make_expense(), directory, rules=[make_rule()])
        flow_service.cancel_flow(flow.flow_id, "emp-1")

        with pytest.raises(ImmutabilityViolationError):
            with session_scope(session_factory) as session:
                model = session.scalar(
                    select(ApprovalFlowModel).where(ApprovalFlowModel.flow_id == flow.flow_id)
                )
                session.delete(model)

    def test_tampered_rule_snapshot_detected(self, flow_service, directory, session_factory):
        flow = flow_service.start_flow(make_expense(), directory, rules=[make_rule()])

        with session_scope(session_factory) as session:
            model = session.scalar(
                select(ApprovalFlowModel).where(ApprovalFlowModel.flow_id == flow.flow_id)
            )
            state = dict(model.state)
            state["rule"] = {**state["rule"], "priority": 999}
            model.state = state

        with pytest.raises(ImmutabilityViolationError):
            flow_service.get_flow(flow.flow_id)
        with pytest.raises(ImmutabilityViolationError):
            flow_service.submit_vote(flow.flow_id, 0, "mgr-1", APPROVE)

    def test_editing_stored_rule_does_not_change_flow(self, flow_service, directory, session_factory):
        rule = make_rule("editable", steps=(make_step(1, "mgr-1"),))
        flow_service.save_rule(rule)
        flow = flow_service.start_flow(make_expense(), directory)

        edited = replace(rule, steps=(make_step(1, "admin-1"),))
        with session_scope(session_factory) as session:
            model = session.scalar(
                select(ApprovalRuleModel).where(ApprovalRuleModel.rule_id == rule.rule_id)
            )
            model.definition = rule_to_payload(edited)

        stored = flow_service.get_flow(flow.flow_id)
        assert stored.steps[0].approver_ids == ("mgr-1",)
        assert stored.rule.steps == rule.steps
