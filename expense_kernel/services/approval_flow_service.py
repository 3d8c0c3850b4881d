"""
expense_kernel.services.approval_flow_service -- Approval flow lifecycle.

Responsibility:
    Coordinates the pure engines with persistence, locking and event
    publication: starts a flow for an expense, records votes, overrides,
    cancellations and escalation ticks, and answers flow queries.

Architecture position:
    Kernel > Services.  May import from domain/, models/, selectors/, db/
    and the pure engines.

Invariants enforced:
    - One transition per transaction: each call loads the flow row with
      SELECT ... FOR UPDATE, applies one pure engine transition and commits.
    - Per-flow serialization: every mutating call holds the flow's lock
      from ``FlowLockRegistry`` for the whole load/compute/commit cycle.
    - Lost updates from other processes are rejected by the optimistic
      ``version`` column (OptimisticLockError).
    - At most one active flow per expense (DuplicateFlowError).
    - Events reach the sink only after the transaction committed.
    - Frozen snapshot verification: the stored rule fingerprint is checked
      each time a flow is loaded.

Failure modes:
    - FlowNotFoundError for unknown flow ids.
    - NoRuleMatchedError, ConfigurationError, UnresolvableStepError from
      ``start_flow``.
    - VoteError subclasses from vote/override/cancel (nothing is written).
    - OptimisticLockError on a concurrent write from another process.
    - ImmutabilityViolationError if a flow's stored rule fingerprint no
      longer matches its rule snapshot.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from expense_kernel.db.engine import session_scope
from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.domain.expense import CompanyDirectory, ExpenseSnapshot
from expense_kernel.domain.flow import (
    ApprovalFlow,
    ApproverStatus,
    Decision,
    Escalated,
    FlowEvent,
    FlowResolved,
    FlowResult,
    StepAdvanced,
)
from expense_kernel.domain.rules import ApprovalRule
from expense_kernel.exceptions import (
    DuplicateFlowError,
    ExpenseKernelError,
    FlowNotFoundError,
    ImmutabilityViolationError,
    NoRuleMatchedError,
    OptimisticLockError,
)
from expense_kernel.logging_config import LogContext, get_logger
from expense_kernel.models.approval_flow import ApprovalFlowModel
from expense_kernel.models.approval_rule import ApprovalRuleModel
from expense_kernel.selectors.flow_selector import FlowSelector
from expense_kernel.selectors.rule_selector import RuleSelector
from expense_kernel.services.flow_locks import FlowLockRegistry
from expense_engines import (
    approver_status as engine_approver_status,
    build_flow,
    cancel_flow as engine_cancel_flow,
    cast_vote,
    override_step as engine_override_step,
    rule_fingerprint,
    select_rule,
    tick as engine_tick,
    validate_rule,
)

logger = get_logger("services.approval_flow")

EventSink = Callable[[FlowEvent], None]


def _discard(event: FlowEvent) -> None:
    """Default sink: events are dropped."""


class ApprovalFlowService:
    """Runs approval flows against the database.

    Usage:
        service = ApprovalFlowService(get_session_factory(), clock, sink)
        flow = service.start_flow(expense, directory)
        service.submit_vote(flow.flow_id, 0, "u-42", Decision.APPROVE)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        event_sink: EventSink | None = None,
        locks: FlowLockRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._event_sink = event_sink or _discard
        self._locks = locks or FlowLockRegistry()

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def save_rule(self, rule: ApprovalRule) -> ApprovalRule:
        """Validate and store a rule for rule selection by ``start_flow``."""
        validate_rule(rule)
        with session_scope(self._session_factory) as session:
            session.add(ApprovalRuleModel.from_dto(rule))
        logger.info(
            "rule_saved",
            extra={
                "rule_id": str(rule.rule_id),
                "rule_name": rule.name,
                "company_id": rule.company_id,
                "priority": rule.priority,
                "logic_type": rule.logic_type.value,
            },
        )
        return rule

    # ------------------------------------------------------------------
    # Flow creation
    # ------------------------------------------------------------------

    def start_flow(
        self,
        expense: ExpenseSnapshot,
        directory: CompanyDirectory,
        rules: Sequence[ApprovalRule] | None = None,
    ) -> ApprovalFlow:
        """Select a rule, build the flow and persist it.

        Args:
            expense: The submitted expense (amount in company currency).
            directory: Company directory used to expand approver selectors.
            rules: Candidate rules; the company's active stored rules when None.

        Raises:
            DuplicateFlowError: The expense already has an active flow.
            NoRuleMatchedError: No rule applies.
            UnresolvableStepError: A required step has no approvers.
        """
        with LogContext.bind(expense_id=str(expense.expense_id)):
            with self._locks.hold(("expense", expense.expense_id)):
                with session_scope(self._session_factory) as session:
                    existing = FlowSelector(session).active_for_expense(expense.expense_id)
                    if existing is not None:
                        raise DuplicateFlowError(
                            str(expense.expense_id), str(existing.flow_id),
                        )

                    if rules is None:
                        rules = RuleSelector(session).active_rules(expense.company_id)
                    try:
                        rule = select_rule(expense, rules)
                    except NoRuleMatchedError:
                        logger.warning(
                            "no_rule_matched",
                            extra={
                                "company_id": expense.company_id,
                                "amount": expense.amount,
                                "category": expense.category,
                                "candidate_count": len(rules),
                            },
                        )
                        raise

                    flow = build_flow(expense, rule, directory, self._clock.now())
                    session.add(ApprovalFlowModel.from_dto(flow))

            with LogContext.bind(flow_id=str(flow.flow_id)):
                logger.info(
                    "flow_started",
                    extra={
                        "rule_id": str(rule.rule_id),
                        "rule_name": rule.name,
                        "logic_type": rule.logic_type.value,
                        "rule_hash": flow.rule_hash,
                        "step_count": len(flow.steps),
                    },
                )
                self._publish((
                    StepAdvanced(
                        flow_id=flow.flow_id,
                        new_step_index=0,
                        pending_approvers=flow.steps[0].approver_ids,
                    ),
                ))
        return flow

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit_vote(
        self,
        flow_id: UUID,
        step_index: int,
        approver_id: str,
        decision: Decision,
        comment: str = "",
    ) -> FlowResult:
        """Record an approver's vote on the current step."""
        def apply(flow: ApprovalFlow, now: datetime) -> FlowResult:
            return cast_vote(flow, step_index, approver_id, decision, comment, now=now)

        result = self._transition(flow_id, approver_id, apply)
        logger.info(
            "vote_recorded",
            extra={
                "flow_id": str(flow_id),
                "step_index": step_index,
                "approver_id": approver_id,
                "decision": decision.value,
                "step_outcome": result.step_outcome.value,
                "conditional_action": (
                    result.conditional_action.value if result.conditional_action else None
                ),
            },
        )
        return result

    def override_step(
        self,
        flow_id: UUID,
        decision: Decision,
        actor_id: str,
        reason: str = "",
    ) -> FlowResult:
        """Decide the current step administratively."""
        def apply(flow: ApprovalFlow, now: datetime) -> FlowResult:
            return engine_override_step(flow, decision, actor_id, reason, now=now)

        result = self._transition(flow_id, actor_id, apply)
        logger.info(
            "step_overridden",
            extra={
                "flow_id": str(flow_id),
                "actor_id": actor_id,
                "decision": decision.value,
                "reason": reason,
            },
        )
        return result

    def cancel_flow(self, flow_id: UUID, actor_id: str, reason: str = "") -> FlowResult:
        """Cancel an active flow."""
        def apply(flow: ApprovalFlow, now: datetime) -> FlowResult:
            return engine_cancel_flow(flow, actor_id, reason, now=now)

        return self._transition(flow_id, actor_id, apply)

    def tick(self, flow_id: UUID) -> FlowResult | None:
        """Escalate the flow's current step if its deadline has passed."""
        return self._transition(flow_id, None, engine_tick)

    def escalate_due_flows(self) -> list[FlowResult]:
        """Tick every active flow whose deadline has passed.

        A failure on one flow is logged and does not stop the others.
        """
        now = self._clock.now()
        with session_scope(self._session_factory) as session:
            due = FlowSelector(session).due_flow_ids(now)

        results: list[FlowResult] = []
        for flow_id in due:
            try:
                result = self.tick(flow_id)
            except ExpenseKernelError:
                logger.warning(
                    "escalation_tick_failed",
                    extra={"flow_id": str(flow_id)},
                    exc_info=True,
                )
                continue
            if result is not None:
                results.append(result)

        logger.info(
            "escalation_sweep_completed",
            extra={"due_count": len(due), "escalated_count": len(results)},
        )
        return results

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_flow(self, flow_id: UUID) -> ApprovalFlow:
        """Load a flow.

        Raises:
            FlowNotFoundError: If no flow has this id.
        """
        with session_scope(self._session_factory) as session:
            flow = FlowSelector(session).get(flow_id)
        if flow is None:
            raise FlowNotFoundError(str(flow_id))
        self._verify_snapshot(flow)
        return flow

    def pending_for_approver(
        self,
        user_id: str,
        company_id: str | None = None,
    ) -> list[ApprovalFlow]:
        """Active flows waiting for ``user_id`` to act."""
        with session_scope(self._session_factory) as session:
            return FlowSelector(session).pending_for_approver(user_id, company_id)

    def approver_status(self, flow_id: UUID, user_id: str) -> ApproverStatus | None:
        """The user's step membership and vote in a flow."""
        return engine_approver_status(self.get_flow(flow_id), user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        flow_id: UUID,
        actor_id: str | None,
        apply: Callable[[ApprovalFlow, datetime], FlowResult | None],
    ) -> FlowResult | None:
        with LogContext.bind(flow_id=str(flow_id), actor_id=actor_id):
            with self._locks.hold(flow_id):
                version = None
                try:
                    with session_scope(self._session_factory) as session:
                        model = session.scalar(
                            select(ApprovalFlowModel)
                            .where(ApprovalFlowModel.flow_id == flow_id)
                            .with_for_update()
                        )
                        if model is None:
                            raise FlowNotFoundError(str(flow_id))
                        version = model.version
                        flow = model.to_dto()
                        self._verify_snapshot(flow)

                        result = apply(flow, self._clock.now())
                        if result is not None and result.flow != flow:
                            model.apply_dto(result.flow)
                except StaleDataError as exc:
                    raise OptimisticLockError(
                        "ApprovalFlow", str(flow_id), version or 0,
                    ) from exc

            if result is not None:
                self._log_events(result)
                self._publish(result.events)
        return result

    @staticmethod
    def _verify_snapshot(flow: ApprovalFlow) -> None:
        if rule_fingerprint(flow.rule) != flow.rule_hash:
            raise ImmutabilityViolationError(
                entity_type="ApprovalFlow",
                entity_id=str(flow.flow_id),
                reason="rule snapshot does not match its recorded fingerprint",
            )

    def _log_events(self, result: FlowResult) -> None:
        for event in result.events:
            if isinstance(event, FlowResolved):
                logger.info(
                    "flow_resolved",
                    extra={
                        "outcome": event.outcome.value,
                        "reason": event.reason,
                        "decided_by": result.flow.decided_by,
                    },
                )
            elif isinstance(event, Escalated):
                logger.warning(
                    "step_escalated",
                    extra={
                        "step_index": event.step_index,
                        "target": event.target,
                        "flagged": result.flow.escalation_flagged,
                    },
                )
            elif isinstance(event, StepAdvanced):
                logger.info(
                    "step_advanced",
                    extra={
                        "new_step_index": event.new_step_index,
                        "pending_approvers": list(event.pending_approvers),
                    },
                )

    def _publish(self, events: Sequence[FlowEvent]) -> None:
        for event in events:
            try:
                self._event_sink(event)
            except Exception:
                # The transition is committed; a failing sink cannot undo it.
                logger.exception(
                    "event_publish_failed",
                    extra={"event_type": type(event).__name__},
                )
