"""
Module: expense_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    approval engines.  This is the canonical import surface for the
    kernel services and the escalation scheduler.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import expense_kernel/domain types, kernel exceptions and
    sibling engine modules.  MUST NOT import expense_kernel services,
    models or selectors.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()``.  The current time is
      passed in explicitly by the caller.
    - Determinism: identical inputs always produce identical outputs.
    - Flows are immutable values; every transition returns a new flow.

Audit relevance:
    Public entrypoints are traced via ``@traced_engine`` (see
    ``expense_engines.tracer``), emitting EXPENSE_ENGINE_TRACE records.

Usage:
    from expense_engines import select_rule, build_flow, cast_vote, tick
"""

from expense_engines.conditional import (
    ConditionalOutcome,
    apply_conditional_outcome,
    evaluate_conditional_rules,
)
from expense_engines.conditions import (
    consensus_reached,
    evaluate_condition,
    rule_conditions_match,
)
from expense_engines.escalation import is_escalation_due, tick
from expense_engines.flow_builder import (
    build_flow,
    resolve_approvers,
    rule_fingerprint,
)
from expense_engines.progression import (
    approver_status,
    cancel_flow,
    cast_vote,
    override_step,
    tally_step,
)
from expense_engines.rule_matching import find_matching_rule, order_rules, select_rule
from expense_engines.rule_validation import validate_rule
from expense_engines.tracer import traced_engine

__all__ = [
    # Conditions
    "consensus_reached",
    "evaluate_condition",
    "rule_conditions_match",
    # Rule selection
    "find_matching_rule",
    "order_rules",
    "select_rule",
    "validate_rule",
    # Flow building
    "build_flow",
    "resolve_approvers",
    "rule_fingerprint",
    # Progression
    "approver_status",
    "cancel_flow",
    "cast_vote",
    "override_step",
    "tally_step",
    # Conditional rules
    "ConditionalOutcome",
    "apply_conditional_outcome",
    "evaluate_conditional_rules",
    # Escalation
    "is_escalation_due",
    "tick",
    # Tracing
    "traced_engine",
]
