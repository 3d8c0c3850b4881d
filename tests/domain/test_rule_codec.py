"""
Tests for the rule and flow payload codec (expense_kernel.domain.codec).

Tests cover:
- Rule payload parsing: selectors, logic variants, escalation defaults
- Malformed payloads raise ConfigurationError naming the rule
- Flow payloads preserve votes, deadlines and the frozen rule snapshot
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from expense_kernel.domain import (
    AmountThresholdCondition,
    ConditionalAction,
    ConditionalLogic,
    DepartmentManagersSelector,
    Decision,
    HierarchicalLogic,
    HybridLogic,
    PercentageLogic,
    RoleSelector,
    RuleOperator,
    SequentialLogic,
    SpecificApproverLogic,
    StepStatus,
    UserRole,
    UserSelector,
)
from expense_kernel.domain.codec import (
    flow_from_payload,
    flow_to_payload,
    logic_from_payload,
    rule_from_payload,
    rule_to_payload,
)
from expense_kernel.exceptions import ConfigurationError
from expense_engines import build_flow, cast_vote

from approval_factories import T0, make_directory, make_expense, make_rule, make_step


def _payload(**overrides):
    payload = {
        "name": "Large travel",
        "priority": 10,
        "conditions": {"amount_threshold": "1000", "categories": ["Travel"]},
        "logic": {"type": "percentage", "percentage": "60"},
        "steps": [
            {
                "step_number": 1,
                "approvers": [
                    "u-17",
                    {"type": "role", "role": "admin"},
                    {"type": "department_managers", "department": "Sales"},
                ],
                "can_escalate": True,
            },
        ],
        "escalation": {"enabled": True, "timeout_hours": 24, "escalate_to": "u-9"},
    }
    payload.update(overrides)
    return payload


class TestRuleFromPayload:
    """Parsing rule payloads authored in YAML or stored in the database."""

    def test_full_payload(self):
        rule = rule_from_payload(_payload())

        assert rule.name == "Large travel"
        assert rule.priority == 10
        assert rule.conditions.amount_threshold == Decimal("1000")
        assert rule.conditions.categories == frozenset({"Travel"})
        assert rule.logic == PercentageLogic(percentage=Decimal("60"))
        assert rule.steps[0].approvers == (
            UserSelector("u-17"),
            RoleSelector(UserRole.ADMIN),
            DepartmentManagersSelector("Sales"),
        )
        assert rule.steps[0].is_required is True
        assert rule.steps[0].can_escalate is True
        assert rule.escalation.timeout_hours == Decimal("24")
        assert rule.escalation.escalate_to == "u-9"

    def test_defaults(self):
        rule = rule_from_payload({
            "name": "Minimal",
            "steps": [{"step_number": 1, "approvers": ["u-1"]}],
        })

        assert rule.logic == SequentialLogic()
        assert rule.escalation.enabled is False
        assert rule.escalation.timeout_hours == Decimal("72")
        assert rule.is_active is True
        assert rule.conditions.amount_threshold is None

    def test_hybrid_logic(self):
        logic = logic_from_payload({
            "type": "hybrid",
            "operator": "and",
            "specific_approver_ids": ["cfo"],
            "rules": [{
                "condition": {"type": "amount_threshold", "threshold": "5000"},
                "action": "require_additional",
                "additional_approvers": ["controller"],
            }],
            "fallback": {"type": "hierarchical", "allow_partial_approval": True,
                         "require_all_selected": False},
        })

        assert isinstance(logic, HybridLogic)
        assert logic.operator == RuleOperator.AND
        assert logic.specific_approver_ids == ("cfo",)
        assert logic.rules[0].condition == AmountThresholdCondition(Decimal("5000"))
        assert logic.rules[0].action == ConditionalAction.REQUIRE_ADDITIONAL
        assert logic.fallback == HierarchicalLogic(
            require_all_selected=False, allow_partial_approval=True,
        )

    def test_logic_fallback_defaults(self):
        assert logic_from_payload({"type": "conditional"}).fallback == SequentialLogic()
        specific = logic_from_payload({"type": "specific_approver", "approver_ids": ["cfo"]})
        assert isinstance(specific, SpecificApproverLogic)
        assert specific.fallback == HierarchicalLogic()

    def test_round_trip_preserves_rule(self):
        rule = make_rule(
            steps=(make_step(1, "a", RoleSelector(UserRole.MANAGER)), make_step(2, "b")),
            logic=ConditionalLogic(fallback=PercentageLogic(Decimal("50"))),
        )
        assert rule_from_payload(rule_to_payload(rule)) == rule


class TestMalformedRulePayloads:
    """Every malformed payload is a ConfigurationError naming the rule."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"logic": {"type": "round_robin"}},
            {"logic": {"type": "percentage"}},
            {"logic": {"type": "conditional", "fallback": {"type": "hybrid"}}},
            {"steps": [{"approvers": ["u-1"]}]},
            {"steps": [{"step_number": 1, "approvers": [{"type": "group"}]}]},
            {"steps": [{"step_number": 1, "approvers": [{"type": "role", "role": "ceo"}]}]},
            {"conditions": {"amount_threshold": "lots"}},
            {"conditions": {"categories": "Travel"}},
            {"escalation": {"enabled": True, "timeout_hours": True}},
            {"priority": "high"},
        ],
    )
    def test_rejected(self, overrides):
        with pytest.raises(ConfigurationError) as exc_info:
            rule_from_payload(_payload(**overrides))
        assert exc_info.value.rule_name == "Large travel"

    def test_missing_name(self):
        with pytest.raises(ConfigurationError):
            rule_from_payload(_payload(name=""))

    def test_condition_missing_field(self):
        with pytest.raises(ConfigurationError, match="threshold"):
            rule_from_payload(_payload(logic={
                "type": "conditional",
                "rules": [{"condition": {"type": "amount_threshold"}, "action": "auto_approve"}],
            }))

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            rule_from_payload(["not", "a", "rule"])


class TestFlowPayload:
    """The flow payload is the persisted state of a flow."""

    def test_round_trip_with_votes(self):
        rule = make_rule(steps=(make_step(1, "mgr-1"), make_step(2, "admin-1")))
        flow = build_flow(make_expense(), rule, make_directory(), T0)
        flow = cast_vote(
            flow, 0, "mgr-1", Decision.APPROVE, "fine",
            now=T0 + timedelta(minutes=5),
        ).flow

        restored = flow_from_payload(flow_to_payload(flow))

        assert restored == flow
        assert restored.steps[0].status == StepStatus.APPROVED
        assert restored.steps[0].votes[0].comment == "fine"
        assert restored.steps[1].status == StepStatus.PENDING

    def test_payload_is_json_compatible(self):
        import json

        flow = build_flow(make_expense(), make_rule(), make_directory(), T0)
        payload = flow_to_payload(flow)

        assert json.loads(json.dumps(payload)) == payload
