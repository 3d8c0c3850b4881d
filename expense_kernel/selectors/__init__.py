"""Selectors for the expense kernel (read side)."""

from expense_kernel.selectors.flow_selector import FlowSelector, awaits_user
from expense_kernel.selectors.rule_selector import RuleSelector

__all__ = [
    "FlowSelector",
    "RuleSelector",
    "awaits_user",
]
