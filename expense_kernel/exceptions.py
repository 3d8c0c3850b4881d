"""
Typed Exception Hierarchy for the Expense Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval errors reach three different audiences: the admin who authored a
rule, the integration code that starts flows, and the approver whose vote was
refused.  Each needs to branch on the KIND of failure, not on message text:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        service.submit_vote(flow_id, 0, user_id, Decision.APPROVE)
    except DuplicateVoteError as e:
        api_response(code=e.code, approver=e.approver_id, step=e.step_index)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ExpenseKernelError (base)
    |
    +-- ConfigurationError
    +-- NoRuleMatchedError
    +-- UnresolvableStepError
    |
    +-- VoteError
    |   +-- NotCurrentStepError
    |   +-- NotAnApproverError
    |   +-- DuplicateVoteError
    |   +-- FlowAlreadyTerminalError
    |
    +-- FlowError
    |   +-- FlowNotFoundError
    |   +-- DuplicateFlowError
    |   +-- InvalidFlowTransitionError
    |
    +-- ImmutabilityViolationError
    |
    +-- ConcurrencyError
        +-- OptimisticLockError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Configuration   | CONFIGURATION_ERROR         | Malformed rule or condition payload
Selection       | NO_RULE_MATCHED             | No active rule applies to the expense
Build           | UNRESOLVABLE_STEP           | Required step resolved to zero approvers
----------------|-----------------------------|-----------------------------------------
Vote            | NOT_CURRENT_STEP            | Vote targets a step other than current
                | NOT_AN_APPROVER             | Actor not in the step's approver set
                | DUPLICATE_VOTE              | Actor already voted on this step
                | FLOW_ALREADY_TERMINAL       | Flow approved, rejected or cancelled
----------------|-----------------------------|-----------------------------------------
Flow            | FLOW_NOT_FOUND              | Flow ID doesn't exist
                | DUPLICATE_FLOW              | Expense already has an active flow
                | INVALID_FLOW_TRANSITION     | Illegal status change requested
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Writing to a terminal flow record
Concurrency     | OPTIMISTIC_LOCK_CONFLICT    | Concurrent modification detected

===============================================================================
HANDLING PATTERNS
===============================================================================

1. VOTE ERRORS ARE RECOVERABLE.  They are reported back to the approver as a
   refused action; the flow is never modified when one is raised.

2. NoRuleMatchedError IS NOT AN ENGINE FAILURE.  The caller owns the fallback
   policy (auto-approve, default single-approver rule, ...).

3. ConfigurationError and UnresolvableStepError go to an admin.  Never
   default them silently.
"""


class ExpenseKernelError(Exception):
    """
    Base exception for all expense kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "EXPENSE_KERNEL_ERROR"


# Configuration / selection / build


class ConfigurationError(ExpenseKernelError):
    """Rule or condition payload is malformed."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, reason: str, rule_name: str | None = None):
        self.reason = reason
        self.rule_name = rule_name
        prefix = f"Rule '{rule_name}': " if rule_name else ""
        super().__init__(f"{prefix}{reason}")


class NoRuleMatchedError(ExpenseKernelError):
    """No active approval rule applies to the expense."""

    code: str = "NO_RULE_MATCHED"

    def __init__(self, expense_id: str, candidate_count: int):
        self.expense_id = expense_id
        self.candidate_count = candidate_count
        super().__init__(
            f"No approval rule matched expense {expense_id} "
            f"({candidate_count} candidate rules)"
        )


class UnresolvableStepError(ExpenseKernelError):
    """A required step resolved to an empty approver set."""

    code: str = "UNRESOLVABLE_STEP"

    def __init__(self, rule_name: str, step_number: int):
        self.rule_name = rule_name
        self.step_number = step_number
        super().__init__(
            f"Rule '{rule_name}' step {step_number} resolved to no approvers"
        )


# Vote transition errors


class VoteError(ExpenseKernelError):
    """Base exception for refused vote/override actions."""

    code: str = "VOTE_ERROR"


class NotCurrentStepError(VoteError):
    """Vote targets a step that is not the flow's current step."""

    code: str = "NOT_CURRENT_STEP"

    def __init__(self, flow_id: str, step_index: int, current_step_index: int):
        self.flow_id = flow_id
        self.step_index = step_index
        self.current_step_index = current_step_index
        super().__init__(
            f"Flow {flow_id}: step {step_index} is not the current step "
            f"({current_step_index})"
        )


class NotAnApproverError(VoteError):
    """Actor is not an approver of the current step."""

    code: str = "NOT_AN_APPROVER"

    def __init__(self, flow_id: str, step_index: int, approver_id: str):
        self.flow_id = flow_id
        self.step_index = step_index
        self.approver_id = approver_id
        super().__init__(
            f"Flow {flow_id}: {approver_id} is not an approver of step {step_index}"
        )


class DuplicateVoteError(VoteError):
    """Actor already voted on this step."""

    code: str = "DUPLICATE_VOTE"

    def __init__(self, flow_id: str, step_index: int, approver_id: str):
        self.flow_id = flow_id
        self.step_index = step_index
        self.approver_id = approver_id
        super().__init__(
            f"Flow {flow_id}: {approver_id} already voted on step {step_index}"
        )


class FlowAlreadyTerminalError(VoteError):
    """Flow has reached a terminal status and accepts no further actions."""

    code: str = "FLOW_ALREADY_TERMINAL"

    def __init__(self, flow_id: str, status: str):
        self.flow_id = flow_id
        self.status = status
        super().__init__(f"Flow {flow_id} is already {status}")


# Flow lookup / lifecycle errors


class FlowError(ExpenseKernelError):
    """Base exception for flow lifecycle errors."""

    code: str = "FLOW_ERROR"


class FlowNotFoundError(FlowError):
    """Flow with given ID was not found."""

    code: str = "FLOW_NOT_FOUND"

    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"Approval flow not found: {flow_id}")


class DuplicateFlowError(FlowError):
    """Expense already has an active approval flow."""

    code: str = "DUPLICATE_FLOW"

    def __init__(self, expense_id: str, existing_flow_id: str):
        self.expense_id = expense_id
        self.existing_flow_id = existing_flow_id
        super().__init__(
            f"Expense {expense_id} already has active flow {existing_flow_id}"
        )


class InvalidFlowTransitionError(FlowError):
    """Requested status change is not a legal edge of the state machine."""

    code: str = "INVALID_FLOW_TRANSITION"

    def __init__(self, entity: str, from_status: str, to_status: str):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity} transition: {from_status} -> {to_status}"
        )


# Persistence errors


class ImmutabilityViolationError(ExpenseKernelError):
    """Attempt to modify an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


class ConcurrencyError(ExpenseKernelError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Concurrent modification detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, expected_version: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity_type} {entity_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
