"""
expense_engines.flow_builder -- Materializes an approval flow from a rule.

Responsibility:
    Turn a selected rule plus a directory snapshot into a concrete flow:
    every step's approver selectors are expanded once into user ids, the
    rule is frozen into the flow and fingerprinted, and the first step is
    activated.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The directory is read
    through the ``CompanyDirectory`` protocol; the caller supplies ``now``.

Invariants enforced:
    - Frozen snapshot: the flow holds a deep copy of the rule and its
      SHA-256 fingerprint.  Later edits to the source rule never reach it.
    - Selector expansion happens exactly once, here.
    - Approver tuples are deduplicated and keep first-seen order.
    - ``steps[0]`` is pending and every later step is waiting.

Failure modes:
    - ConfigurationError if the rule fails ``validate_rule``.
    - UnresolvableStepError if a required step resolves to nobody, or if
      every step resolves to nobody.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID, uuid4

from expense_kernel.domain.codec import rule_to_payload
from expense_kernel.domain.expense import (
    CompanyDirectory,
    DirectoryUser,
    ExpenseSnapshot,
    UserRole,
)
from expense_kernel.domain.flow import ApprovalFlow, ApprovalStep
from expense_kernel.domain.rules import (
    ApprovalRule,
    ApproverSelector,
    DepartmentManagersSelector,
    RoleSelector,
    UserSelector,
)
from expense_kernel.exceptions import ConfigurationError, UnresolvableStepError
from expense_kernel.utils.hashing import hash_payload
from expense_engines.flow_state import activate_step
from expense_engines.rule_validation import validate_rule
from expense_engines.tracer import traced_engine


def resolve_approvers(
    selectors: Sequence[ApproverSelector],
    users: Sequence[DirectoryUser],
) -> tuple[str, ...]:
    """Expand selectors into an ordered, deduplicated tuple of user ids.

    Explicit user ids pass through unchanged (the directory is not asked
    whether they exist).  Role and department-manager selectors only expand
    to active users, in directory order.
    """
    resolved: list[str] = []
    seen: set[str] = set()

    def add(user_id: str) -> None:
        if user_id not in seen:
            seen.add(user_id)
            resolved.append(user_id)

    for selector in selectors:
        if isinstance(selector, UserSelector):
            add(selector.user_id)
        elif isinstance(selector, RoleSelector):
            for user in users:
                if user.is_active and user.role == selector.role:
                    add(user.user_id)
        elif isinstance(selector, DepartmentManagersSelector):
            for user in users:
                if (
                    user.is_active
                    and user.role == UserRole.MANAGER
                    and user.department == selector.department
                ):
                    add(user.user_id)
        else:
            raise ConfigurationError(f"Unknown approver selector: {selector!r}")

    return tuple(resolved)


def rule_fingerprint(rule: ApprovalRule) -> str:
    """SHA-256 over the canonical rule payload."""
    return hash_payload(rule_to_payload(rule))


@traced_engine("flow_builder", "1.0")
def build_flow(
    expense: ExpenseSnapshot,
    rule: ApprovalRule,
    directory: CompanyDirectory,
    now: datetime,
    flow_id: UUID | None = None,
) -> ApprovalFlow:
    """Build a new active flow for ``expense`` governed by ``rule``.

    Args:
        expense: The expense to route.
        rule: The selected rule (see ``expense_engines.rule_matching``).
        directory: Company directory used to expand selectors.
        now: Creation time; also the activation time of the first step.
        flow_id: Optional explicit id (a new UUID otherwise).

    Raises:
        ConfigurationError: The rule is structurally invalid.
        UnresolvableStepError: A required step has no approvers.
    """
    validate_rule(rule)
    snapshot = copy.deepcopy(rule)
    users = tuple(directory.list_users())

    steps: list[ApprovalStep] = []
    for definition in snapshot.steps:
        approver_ids = resolve_approvers(definition.approvers, users)
        if not approver_ids:
            if definition.is_required:
                raise UnresolvableStepError(snapshot.name, definition.step_number)
            # Optional step with nobody to act on it
            continue
        steps.append(ApprovalStep(
            step_number=definition.step_number,
            approver_ids=approver_ids,
            is_required=definition.is_required,
            can_escalate=definition.can_escalate,
        ))

    if not steps:
        raise UnresolvableStepError(snapshot.name, snapshot.steps[0].step_number)

    steps[0] = activate_step(steps[0], snapshot.escalation, now)

    return ApprovalFlow(
        flow_id=flow_id or uuid4(),
        expense=expense,
        rule=snapshot,
        rule_hash=rule_fingerprint(snapshot),
        steps=tuple(steps),
        created_at=now,
    )
