"""
Expense Kernel - approval workflow core

Rule matching and approval flow execution for expense claims:
- Deterministic rule selection by priority and conditions
- Frozen rule snapshots per flow
- Vote-driven step progression with conditional short-circuits
- Time-driven escalation
- Per-flow serialized state transitions
"""

__version__ = "0.1.0"
