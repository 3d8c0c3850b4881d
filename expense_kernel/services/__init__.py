"""Kernel services (imperative shell around the pure engines)."""

from expense_kernel.services.approval_flow_service import ApprovalFlowService, EventSink
from expense_kernel.services.flow_locks import FlowLockRegistry

__all__ = [
    "ApprovalFlowService",
    "EventSink",
    "FlowLockRegistry",
]
