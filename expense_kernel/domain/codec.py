"""
Rule and flow payload codec (``expense_kernel.domain.codec``).

Responsibility
--------------
Converts approval rules and flows to and from plain JSON-compatible dicts.
The same rule payload shape is used by YAML rule sets, by the
``approval_rules.definition`` column and by the rule fingerprint; the flow
payload is the ``approval_flows.state`` column.

Architecture position
---------------------
**Kernel domain layer** -- pure functions.  ZERO I/O.

Invariants enforced
-------------------
* Every parse failure of a rule payload raises ``ConfigurationError`` naming
  the offending field; nothing is silently defaulted except fields that are
  documented as optional.
* ``rule_from_payload(rule_to_payload(r)) == r`` for every valid rule.
* Decimals travel as strings so no precision is lost.

Rule payload shape::

    name: Large travel
    priority: 10
    conditions: {amount_threshold: "1000", categories: [travel]}
    logic: {type: percentage, percentage: "60"}
    steps:
      - step_number: 1
        approvers: [u-17, {type: role, role: admin},
                    {type: department_managers, department: Sales}]
        is_required: true
        can_escalate: true
    escalation: {enabled: true, timeout_hours: 24, escalate_to: u-9}
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID, uuid4

from expense_kernel.domain.expense import ExpenseSnapshot, UserRole
from expense_kernel.domain.flow import (
    ApprovalFlow,
    ApprovalStep,
    Decision,
    FlowStatus,
    StepStatus,
    VoteRecord,
)
from expense_kernel.domain.rules import (
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
from expense_kernel.exceptions import ConfigurationError

_TALLY_TYPES = frozenset({
    ApprovalLogicType.SEQUENTIAL,
    ApprovalLogicType.HIERARCHICAL,
    ApprovalLogicType.PERCENTAGE,
})


# =========================================================================
# Scalar helpers
# =========================================================================


def _decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name} must be numeric, got {value!r}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigurationError(f"{field_name} must be numeric, got {value!r}") from exc


def _optional_decimal(value: Any, field_name: str) -> Decimal | None:
    if value is None:
        return None
    return _decimal(value, field_name)


def _string_set(value: Any, field_name: str) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ConfigurationError(f"{field_name} must be a list, got {value!r}")
    return frozenset(str(v) for v in value)


def _string_tuple(value: Any, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"{field_name} must be a list, got {value!r}")
    return tuple(str(v) for v in value)


def _enum(enum_cls: type, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(
            f"{field_name} must be one of [{allowed}], got {value!r}"
        ) from exc


def _mapping(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{field_name} must be a mapping, got {value!r}")
    return value


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _sorted(values: frozenset[str]) -> list[str]:
    return sorted(values)


# =========================================================================
# Conditions
# =========================================================================


def condition_to_payload(condition: Condition) -> dict[str, Any]:
    if isinstance(condition, AmountThresholdCondition):
        return {"type": condition.condition_type.value, "threshold": str(condition.threshold)}
    if isinstance(condition, CategoryCondition):
        return {"type": condition.condition_type.value, "categories": _sorted(condition.categories)}
    if isinstance(condition, DepartmentCondition):
        return {"type": condition.condition_type.value, "departments": _sorted(condition.departments)}
    if isinstance(condition, EmployeeCondition):
        return {"type": condition.condition_type.value, "employee_ids": _sorted(condition.employee_ids)}
    if isinstance(condition, SpecificApproverCondition):
        return {"type": condition.condition_type.value, "approver_id": condition.approver_id}
    if isinstance(condition, PercentageCondition):
        return {"type": condition.condition_type.value, "percentage": str(condition.percentage)}
    raise ConfigurationError(f"Unknown condition {condition!r}")


def condition_from_payload(data: Any) -> Condition:
    data = _mapping(data, "condition")
    kind = _enum(ConditionType, data.get("type"), "condition.type")
    try:
        if kind == ConditionType.AMOUNT_THRESHOLD:
            return AmountThresholdCondition(
                threshold=_decimal(data["threshold"], "condition.threshold"),
            )
        if kind == ConditionType.CATEGORY:
            return CategoryCondition(
                categories=_string_set(data["categories"], "condition.categories"),
            )
        if kind == ConditionType.DEPARTMENT:
            return DepartmentCondition(
                departments=_string_set(data["departments"], "condition.departments"),
            )
        if kind == ConditionType.EMPLOYEE:
            return EmployeeCondition(
                employee_ids=_string_set(data["employee_ids"], "condition.employee_ids"),
            )
        if kind == ConditionType.SPECIFIC_APPROVER:
            return SpecificApproverCondition(approver_id=str(data["approver_id"]))
        return PercentageCondition(
            percentage=_decimal(data["percentage"], "condition.percentage"),
        )
    except KeyError as exc:
        raise ConfigurationError(
            f"condition of type '{kind.value}' is missing '{exc.args[0]}'"
        ) from exc


def conditional_rule_to_payload(rule: ConditionalRule) -> dict[str, Any]:
    return {
        "condition": condition_to_payload(rule.condition),
        "action": rule.action.value,
        "additional_approvers": list(rule.additional_approvers),
    }


def conditional_rule_from_payload(data: Any) -> ConditionalRule:
    data = _mapping(data, "conditional rule")
    if "condition" not in data or "action" not in data:
        raise ConfigurationError("conditional rule requires 'condition' and 'action'")
    return ConditionalRule(
        condition=condition_from_payload(data["condition"]),
        action=_enum(ConditionalAction, data["action"], "conditional rule action"),
        additional_approvers=_string_tuple(
            data.get("additional_approvers"), "additional_approvers",
        ),
    )


# =========================================================================
# Approval logic
# =========================================================================


def logic_to_payload(logic: ApprovalLogic) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": logic.logic_type.value}
    if isinstance(logic, HierarchicalLogic):
        payload["require_all_selected"] = logic.require_all_selected
        payload["allow_partial_approval"] = logic.allow_partial_approval
    elif isinstance(logic, PercentageLogic):
        payload["percentage"] = str(logic.percentage)
    elif isinstance(logic, SpecificApproverLogic):
        payload["approver_ids"] = list(logic.approver_ids)
        payload["fallback"] = logic_to_payload(logic.fallback)
    elif isinstance(logic, (ConditionalLogic, HybridLogic)):
        payload["rules"] = [conditional_rule_to_payload(r) for r in logic.rules]
        payload["operator"] = logic.operator.value
        payload["fallback"] = logic_to_payload(logic.fallback)
        if isinstance(logic, HybridLogic):
            payload["specific_approver_ids"] = list(logic.specific_approver_ids)
    return payload


def _tally_from_payload(data: Any, field_name: str) -> TallyPolicy:
    logic = logic_from_payload(data)
    if logic.logic_type not in _TALLY_TYPES:
        raise ConfigurationError(
            f"{field_name} must be sequential, hierarchical or percentage, "
            f"got '{logic.logic_type.value}'"
        )
    return logic


def logic_from_payload(data: Any) -> ApprovalLogic:
    data = _mapping(data, "logic")
    kind = _enum(
        ApprovalLogicType, data.get("type", ApprovalLogicType.SEQUENTIAL.value), "logic.type",
    )

    if kind == ApprovalLogicType.SEQUENTIAL:
        return SequentialLogic()
    if kind == ApprovalLogicType.HIERARCHICAL:
        return HierarchicalLogic(
            require_all_selected=bool(data.get("require_all_selected", True)),
            allow_partial_approval=bool(data.get("allow_partial_approval", False)),
        )
    if kind == ApprovalLogicType.PERCENTAGE:
        if "percentage" not in data:
            raise ConfigurationError("percentage logic requires 'percentage'")
        return PercentageLogic(percentage=_decimal(data["percentage"], "logic.percentage"))
    if kind == ApprovalLogicType.SPECIFIC_APPROVER:
        kwargs: dict[str, Any] = {
            "approver_ids": _string_tuple(data.get("approver_ids"), "logic.approver_ids"),
        }
        if data.get("fallback") is not None:
            kwargs["fallback"] = _tally_from_payload(data["fallback"], "logic.fallback")
        return SpecificApproverLogic(**kwargs)

    rules = data.get("rules") or []
    if not isinstance(rules, list):
        raise ConfigurationError(f"logic.rules must be a list, got {rules!r}")
    kwargs = {
        "rules": tuple(conditional_rule_from_payload(r) for r in rules),
        "operator": _enum(
            RuleOperator, str(data.get("operator", "OR")).upper(), "logic.operator",
        ),
    }
    if data.get("fallback") is not None:
        kwargs["fallback"] = _tally_from_payload(data["fallback"], "logic.fallback")
    if kind == ApprovalLogicType.CONDITIONAL:
        return ConditionalLogic(**kwargs)
    return HybridLogic(
        specific_approver_ids=_string_tuple(
            data.get("specific_approver_ids"), "logic.specific_approver_ids",
        ),
        **kwargs,
    )


# =========================================================================
# Selectors and steps
# =========================================================================


def selector_to_payload(selector: ApproverSelector) -> dict[str, Any]:
    if isinstance(selector, UserSelector):
        return {"type": "user", "user_id": selector.user_id}
    if isinstance(selector, RoleSelector):
        return {"type": "role", "role": selector.role.value}
    if isinstance(selector, DepartmentManagersSelector):
        return {"type": "department_managers", "department": selector.department}
    raise ConfigurationError(f"Unknown approver selector {selector!r}")


def selector_from_payload(data: Any) -> ApproverSelector:
    """Parse a selector.  A bare string is an explicit user id."""
    if isinstance(data, str):
        return UserSelector(user_id=data)
    data = _mapping(data, "approver")
    kind = data.get("type")
    try:
        if kind == "user":
            return UserSelector(user_id=str(data["user_id"]))
        if kind == "role":
            return RoleSelector(role=_enum(UserRole, data["role"], "approver.role"))
        if kind == "department_managers":
            return DepartmentManagersSelector(department=str(data["department"]))
    except KeyError as exc:
        raise ConfigurationError(
            f"approver of type '{kind}' is missing '{exc.args[0]}'"
        ) from exc
    raise ConfigurationError(
        f"approver.type must be one of [user, role, department_managers], got {kind!r}"
    )


def step_definition_to_payload(step: StepDefinition) -> dict[str, Any]:
    return {
        "step_number": step.step_number,
        "approvers": [selector_to_payload(s) for s in step.approvers],
        "is_required": step.is_required,
        "can_escalate": step.can_escalate,
    }


def step_definition_from_payload(data: Any) -> StepDefinition:
    data = _mapping(data, "step")
    if "step_number" not in data:
        raise ConfigurationError("step requires 'step_number'")
    approvers = data.get("approvers") or []
    if not isinstance(approvers, list):
        raise ConfigurationError(f"step.approvers must be a list, got {approvers!r}")
    try:
        step_number = int(data["step_number"])
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(
            f"step_number must be an integer, got {data['step_number']!r}"
        ) from exc
    return StepDefinition(
        step_number=step_number,
        approvers=tuple(selector_from_payload(a) for a in approvers),
        is_required=bool(data.get("is_required", True)),
        can_escalate=bool(data.get("can_escalate", False)),
    )


# =========================================================================
# Rule
# =========================================================================


def rule_to_payload(rule: ApprovalRule) -> dict[str, Any]:
    """Serialize a rule to its canonical payload."""
    return {
        "rule_id": str(rule.rule_id),
        "name": rule.name,
        "priority": rule.priority,
        "company_id": rule.company_id,
        "description": rule.description,
        "is_active": rule.is_active,
        "created_at": _iso(rule.created_at),
        "conditions": {
            "amount_threshold": (
                str(rule.conditions.amount_threshold)
                if rule.conditions.amount_threshold is not None else None
            ),
            "categories": _sorted(rule.conditions.categories),
            "departments": _sorted(rule.conditions.departments),
            "employee_ids": _sorted(rule.conditions.employee_ids),
        },
        "logic": logic_to_payload(rule.logic),
        "steps": [step_definition_to_payload(s) for s in rule.steps],
        "escalation": {
            "enabled": rule.escalation.enabled,
            "timeout_hours": str(rule.escalation.timeout_hours),
            "escalate_to": rule.escalation.escalate_to,
            "escalate_to_next_step": rule.escalation.escalate_to_next_step,
        },
    }


def rule_from_payload(data: Any) -> ApprovalRule:
    """Parse a rule payload.

    Raises:
        ConfigurationError: if any field is missing or malformed.
    """
    data = _mapping(data, "rule")
    name = data.get("name")
    if not name:
        raise ConfigurationError("rule requires a non-empty 'name'")

    try:
        conditions_data = _mapping(data.get("conditions"), "conditions")
        conditions = RuleConditions(
            amount_threshold=_optional_decimal(
                conditions_data.get("amount_threshold"), "conditions.amount_threshold",
            ),
            categories=_string_set(conditions_data.get("categories"), "conditions.categories"),
            departments=_string_set(conditions_data.get("departments"), "conditions.departments"),
            employee_ids=_string_set(conditions_data.get("employee_ids"), "conditions.employee_ids"),
        )

        steps_data = data.get("steps") or []
        if not isinstance(steps_data, list):
            raise ConfigurationError(f"steps must be a list, got {steps_data!r}")

        escalation_data = _mapping(data.get("escalation"), "escalation")
        escalation = EscalationPolicy(
            enabled=bool(escalation_data.get("enabled", False)),
            timeout_hours=_decimal(
                escalation_data.get("timeout_hours", "72"), "escalation.timeout_hours",
            ),
            escalate_to=(
                str(escalation_data["escalate_to"])
                if escalation_data.get("escalate_to") is not None else None
            ),
            escalate_to_next_step=bool(escalation_data.get("escalate_to_next_step", False)),
        )

        try:
            priority = int(data.get("priority", 1))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"priority must be an integer, got {data.get('priority')!r}"
            ) from exc

        return ApprovalRule(
            rule_id=UUID(str(data["rule_id"])) if data.get("rule_id") else uuid4(),
            name=str(name),
            priority=priority,
            company_id=data.get("company_id"),
            description=data.get("description") or "",
            is_active=bool(data.get("is_active", True)),
            created_at=_parse_created_at(data.get("created_at")),
            conditions=conditions,
            logic=logic_from_payload(data.get("logic")),
            steps=tuple(step_definition_from_payload(s) for s in steps_data),
            escalation=escalation,
        )
    except ConfigurationError as exc:
        if exc.rule_name is None:
            raise ConfigurationError(exc.reason, rule_name=str(name)) from exc
        raise
    except ValueError as exc:
        raise ConfigurationError(str(exc), rule_name=str(name)) from exc


def _parse_created_at(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# =========================================================================
# Flow
# =========================================================================


def expense_to_payload(expense: ExpenseSnapshot) -> dict[str, Any]:
    return {
        "expense_id": str(expense.expense_id),
        "amount": str(expense.amount),
        "category": expense.category,
        "employee_id": expense.employee_id,
        "department": expense.department,
        "currency": expense.currency,
        "company_id": expense.company_id,
    }


def expense_from_payload(data: dict[str, Any]) -> ExpenseSnapshot:
    return ExpenseSnapshot(
        expense_id=UUID(data["expense_id"]),
        amount=Decimal(data["amount"]),
        category=data["category"],
        employee_id=data["employee_id"],
        department=data.get("department"),
        currency=data.get("currency", "USD"),
        company_id=data.get("company_id"),
    )


def _vote_to_payload(vote: VoteRecord) -> dict[str, Any]:
    return {
        "approver_id": vote.approver_id,
        "decision": vote.decision.value,
        "cast_at": _iso(vote.cast_at),
        "comment": vote.comment,
        "counted": vote.counted,
    }


def _vote_from_payload(data: dict[str, Any]) -> VoteRecord:
    return VoteRecord(
        approver_id=data["approver_id"],
        decision=Decision(data["decision"]),
        cast_at=datetime.fromisoformat(data["cast_at"]),
        comment=data.get("comment", ""),
        counted=data.get("counted", True),
    )


def _step_to_payload(step: ApprovalStep) -> dict[str, Any]:
    return {
        "step_number": step.step_number,
        "approver_ids": list(step.approver_ids),
        "is_required": step.is_required,
        "can_escalate": step.can_escalate,
        "status": step.status.value,
        "votes": [_vote_to_payload(v) for v in step.votes],
        "activated_at": _iso(step.activated_at),
        "deadline": _iso(step.deadline),
        "escalated_at": _iso(step.escalated_at),
        "escalated_to": step.escalated_to,
        "resolved_at": _iso(step.resolved_at),
    }


def _step_from_payload(data: dict[str, Any]) -> ApprovalStep:
    return ApprovalStep(
        step_number=data["step_number"],
        approver_ids=tuple(data["approver_ids"]),
        is_required=data["is_required"],
        can_escalate=data["can_escalate"],
        status=StepStatus(data["status"]),
        votes=tuple(_vote_from_payload(v) for v in data.get("votes", [])),
        activated_at=_dt(data.get("activated_at")),
        deadline=_dt(data.get("deadline")),
        escalated_at=_dt(data.get("escalated_at")),
        escalated_to=data.get("escalated_to"),
        resolved_at=_dt(data.get("resolved_at")),
    )


def flow_to_payload(flow: ApprovalFlow) -> dict[str, Any]:
    """Serialize a flow, including its frozen rule snapshot."""
    return {
        "flow_id": str(flow.flow_id),
        "expense": expense_to_payload(flow.expense),
        "rule": rule_to_payload(flow.rule),
        "rule_hash": flow.rule_hash,
        "steps": [_step_to_payload(s) for s in flow.steps],
        "created_at": _iso(flow.created_at),
        "current_step_index": flow.current_step_index,
        "status": flow.status.value,
        "resolved_at": _iso(flow.resolved_at),
        "resolution_reason": flow.resolution_reason,
        "decided_by": flow.decided_by,
        "escalation_flagged": flow.escalation_flagged,
    }


def flow_from_payload(data: dict[str, Any]) -> ApprovalFlow:
    return ApprovalFlow(
        flow_id=UUID(data["flow_id"]),
        expense=expense_from_payload(data["expense"]),
        rule=rule_from_payload(data["rule"]),
        rule_hash=data["rule_hash"],
        steps=tuple(_step_from_payload(s) for s in data["steps"]),
        created_at=datetime.fromisoformat(data["created_at"]),
        current_step_index=data["current_step_index"],
        status=FlowStatus(data["status"]),
        resolved_at=_dt(data.get("resolved_at")),
        resolution_reason=data.get("resolution_reason", ""),
        decided_by=data.get("decided_by"),
        escalation_flagged=data.get("escalation_flagged", False),
    )
