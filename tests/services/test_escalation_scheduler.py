"""
Tests for EscalationScheduler.

Tests cover:
- tick() escalates due flows and reports how many
- A failing sweep is logged and does not propagate
- Background thread start/stop
- Construction from EngineSettings
"""

from decimal import Decimal

import pytest

from expense_config import EngineSettings
from expense_kernel.domain import EscalationPolicy, StepStatus
from expense_services import EscalationScheduler

from approval_factories import make_expense, make_rule, make_step


class _BrokenService:
    def escalate_due_flows(self):
        raise RuntimeError("database unavailable")


def _escalating_rule():
    return make_rule(
        steps=(make_step(1, "mgr-1", can_escalate=True),),
        escalation=EscalationPolicy(enabled=True, timeout_hours=Decimal("4"), escalate_to="cfo"),
    )


class TestSchedulerTick:

    def test_tick_escalates_due_flows(self, flow_service, directory, deterministic_clock):
        scheduler = EscalationScheduler(flow_service, tick_interval_seconds=1)
        first = flow_service.start_flow(make_expense(), directory, rules=[_escalating_rule()])
        second = flow_service.start_flow(make_expense(), directory, rules=[_escalating_rule()])

        assert scheduler.tick() == 0

        deterministic_clock.advance(hours=4)
        assert scheduler.tick() == 2
        assert scheduler.tick() == 0

        for flow_id in (first.flow_id, second.flow_id):
            assert flow_service.get_flow(flow_id).current_step.status == StepStatus.ESCALATED

    def test_failing_tick_is_logged(self, captured_logs):
        scheduler = EscalationScheduler(_BrokenService())

        assert scheduler.tick() == 0

        record = next(r for r in captured_logs() if r["message"] == "scheduler_tick_failed")
        assert record["level"] == "ERROR"
        assert record["exc_type"] == "RuntimeError"


class TestSchedulerLifecycle:

    def test_start_and_stop(self, flow_service, captured_logs):
        scheduler = EscalationScheduler(flow_service, tick_interval_seconds=0.01)

        scheduler.start()
        assert scheduler.is_running
        scheduler.start()  # already running, no second thread

        scheduler.stop(timeout=5)
        assert not scheduler.is_running

        messages = [r["message"] for r in captured_logs()]
        assert messages.count("scheduler_started") == 1
        assert "scheduler_stopped" in messages

    def test_stop_without_start(self, flow_service):
        scheduler = EscalationScheduler(flow_service)
        scheduler.stop()
        assert not scheduler.is_running

    def test_from_settings(self, flow_service):
        settings = EngineSettings(escalation_tick_seconds=15)
        scheduler = EscalationScheduler.from_settings(flow_service, settings)
        assert scheduler._tick_interval == 15

    @pytest.mark.parametrize("interval", [0, -5])
    def test_invalid_interval(self, flow_service, interval):
        with pytest.raises(ValueError):
            EscalationScheduler(flow_service, tick_interval_seconds=interval)
