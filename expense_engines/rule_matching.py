"""
expense_engines.rule_matching -- Pure rule selector.

Responsibility:
    Pick the approval rule that governs an expense from a company's rules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Deterministic ordering: candidates are sorted ascending by
      ``priority``; ties are broken by ``created_at`` (earliest first, rules
      without a timestamp before timestamped ones) and then by input order.
    - First match wins.  The logic type never influences applicability.
    - Inactive rules are never selected.

Failure modes:
    - ``find_matching_rule`` returns None when nothing matches.
    - ``select_rule`` raises NoRuleMatchedError; the caller owns the fallback.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from expense_kernel.domain.expense import ExpenseSnapshot
from expense_kernel.domain.rules import ApprovalRule
from expense_kernel.exceptions import NoRuleMatchedError
from expense_engines.conditions import rule_conditions_match
from expense_engines.tracer import traced_engine


def order_rules(rules: Sequence[ApprovalRule]) -> list[ApprovalRule]:
    """Return ``rules`` in evaluation order."""

    def key(item: tuple[int, ApprovalRule]) -> tuple:
        index, rule = item
        created = rule.created_at
        return (
            rule.priority,
            created is not None,
            created.timestamp() if isinstance(created, datetime) else 0.0,
            index,
        )

    return [rule for _, rule in sorted(enumerate(rules), key=key)]


@traced_engine("rule_matching", "1.0")
def find_matching_rule(
    expense: ExpenseSnapshot,
    rules: Sequence[ApprovalRule],
) -> ApprovalRule | None:
    """Return the first active rule whose conditions all match, or None."""
    for rule in order_rules(rules):
        if not rule.is_active:
            continue
        if rule_conditions_match(rule.conditions, expense):
            return rule
    return None


def select_rule(
    expense: ExpenseSnapshot,
    rules: Sequence[ApprovalRule],
) -> ApprovalRule:
    """Like ``find_matching_rule`` but raises when nothing matches.

    Raises:
        NoRuleMatchedError: If no active rule applies.
    """
    rule = find_matching_rule(expense, rules)
    if rule is None:
        raise NoRuleMatchedError(str(expense.expense_id), len(rules))
    return rule
