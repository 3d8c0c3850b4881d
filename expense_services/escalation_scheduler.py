"""
EscalationScheduler -- In-process polling scheduler for escalation deadlines.

Contract:
    Every ``tick_interval_seconds`` calls
    ``ApprovalFlowService.escalate_due_flows()``, which loads the flows whose
    current step deadline has passed and runs the pure escalation engine on
    each under the flow's lock.

Architecture: expense_services.  Uses expense_kernel.services for the flow
    transitions; holds no state of its own besides the polling thread.

Invariants enforced:
    - All timestamps come from the service's injected Clock.
    - A failing tick is logged and never stops the polling loop.
    - Graceful shutdown: ``stop()`` lets the current tick finish.
"""

from __future__ import annotations

import threading

from expense_kernel.logging_config import get_logger
from expense_kernel.services.approval_flow_service import ApprovalFlowService

logger = get_logger("services.escalation_scheduler")


class EscalationScheduler:
    """In-process polling scheduler for step escalation.

    Contract:
        - ``tick()`` escalates all due flows once.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Running several
          schedulers against one database is safe because every escalation
          takes the flow row lock, but it is wasted work.
    """

    def __init__(
        self,
        service: ApprovalFlowService,
        tick_interval_seconds: float = 60.0,
    ):
        if tick_interval_seconds <= 0:
            raise ValueError("tick_interval_seconds must be positive")
        self._service = service
        self._tick_interval = tick_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, service: ApprovalFlowService, settings) -> EscalationScheduler:
        """Build a scheduler using ``EngineSettings.escalation_tick_seconds``."""
        return cls(service, tick_interval_seconds=settings.escalation_tick_seconds)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Escalate due flows (public for testing).

        Returns the number of flows that were escalated.
        """
        try:
            return len(self._service.escalate_due_flows())
        except Exception:
            logger.exception("scheduler_tick_failed")
            return 0

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="escalation-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._tick_interval)
