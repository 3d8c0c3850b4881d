"""
expense_services -- Long-running services around the approval engine.

Provides the in-process escalation scheduler that periodically asks
``ApprovalFlowService`` to escalate every flow whose step deadline has
passed.

Architecture:
    expense_services/ is a top-level package.  Nothing in expense_kernel/,
    expense_engines/ or expense_config/ imports from expense_services.
"""

from expense_services.escalation_scheduler import EscalationScheduler

__all__ = ["EscalationScheduler"]
