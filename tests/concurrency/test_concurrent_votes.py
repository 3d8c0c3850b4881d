"""
Concurrency tests for vote submission.

Many threads vote on the same flow at once.  Each vote must be applied
exactly once and the final flow must match a serial application of the
same votes.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from expense_kernel.domain import Decision, FlowStatus, HierarchicalLogic, StepStatus
from expense_kernel.exceptions import DuplicateVoteError, FlowAlreadyTerminalError
from expense_kernel.services.flow_locks import FlowLockRegistry

from approval_factories import make_expense, make_rule, make_step

APPROVERS = tuple(f"approver-{i}" for i in range(8))


def _committee_flow(flow_service, directory):
    rule = make_rule(steps=(make_step(1, *APPROVERS),), logic=HierarchicalLogic())
    return flow_service.start_flow(make_expense(), directory, rules=[rule])


def _vote_together(flow_service, flow_id, voters, decision=Decision.APPROVE):
    barrier = threading.Barrier(len(voters))

    def vote(approver_id):
        barrier.wait()
        try:
            flow_service.submit_vote(flow_id, 0, approver_id, decision)
        except (DuplicateVoteError, FlowAlreadyTerminalError) as exc:
            return exc
        return None

    with ThreadPoolExecutor(max_workers=len(voters)) as pool:
        return list(pool.map(vote, voters))


@pytest.mark.slow
class TestConcurrentVotes:

    def test_all_votes_applied_once(self, flow_service, directory):
        flow = _committee_flow(flow_service, directory)

        errors = _vote_together(flow_service, flow.flow_id, APPROVERS)

        assert errors == [None] * len(APPROVERS)
        stored = flow_service.get_flow(flow.flow_id)
        assert stored.status == FlowStatus.APPROVED
        assert stored.steps[0].status == StepStatus.APPROVED
        assert sorted(v.approver_id for v in stored.steps[0].votes) == sorted(APPROVERS)

    def test_same_approver_racing(self, flow_service, directory):
        flow = _committee_flow(flow_service, directory)

        errors = _vote_together(flow_service, flow.flow_id, ["approver-0"] * 6)

        assert errors.count(None) == 1
        assert all(isinstance(e, DuplicateVoteError) for e in errors if e is not None)
        stored = flow_service.get_flow(flow.flow_id)
        assert len(stored.steps[0].votes) == 1

    def test_reject_races_with_approvals(self, flow_service, directory):
        flow = _committee_flow(flow_service, directory)
        voters = list(APPROVERS)

        def vote(approver_id):
            decision = Decision.REJECT if approver_id == "approver-3" else Decision.APPROVE
            try:
                flow_service.submit_vote(flow.flow_id, 0, approver_id, decision)
            except FlowAlreadyTerminalError:
                return False
            return True

        with ThreadPoolExecutor(max_workers=len(voters)) as pool:
            applied = list(pool.map(vote, voters))

        stored = flow_service.get_flow(flow.flow_id)
        assert stored.status == FlowStatus.REJECTED
        assert stored.decided_by == "approver-3"
        # Votes after the rejection were refused; everything before it stuck
        assert len(stored.steps[0].votes) == applied.count(True)
        assert stored.steps[0].votes[-1].approver_id == "approver-3"


class TestFlowLockRegistry:

    def test_serializes_same_key(self):
        locks = FlowLockRegistry()
        inside = 0
        peak = 0
        guard = threading.Lock()

        def work(_):
            nonlocal inside, peak
            with locks.hold("flow-1"):
                with guard:
                    inside += 1
                    peak = max(peak, inside)
                time.sleep(0.001)
                with guard:
                    inside -= 1

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, range(32)))

        assert peak == 1

    def test_different_keys_do_not_block(self):
        locks = FlowLockRegistry()
        with locks.hold("flow-1"):
            acquired = threading.Event()

            def other():
                with locks.hold("flow-2"):
                    acquired.set()

            thread = threading.Thread(target=other)
            thread.start()
            thread.join(timeout=5)

        assert acquired.is_set()

    def test_entries_released(self):
        locks = FlowLockRegistry()

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda i: _hold_briefly(locks, i % 3), range(12)))

        assert len(locks) == 0

    def test_entry_released_after_exception(self):
        locks = FlowLockRegistry()
        with pytest.raises(RuntimeError):
            with locks.hold("flow-1"):
                raise RuntimeError("transition failed")
        assert len(locks) == 0


def _hold_briefly(locks, key):
    with locks.hold(key):
        time.sleep(0.001)
