"""
Status enums and transition rules for executions and step executions.

All transition legality lives here; models ask this module before they
change status instead of carrying their own boolean helpers.

Execution:  ACTIVE -> COMPLETED | CANCELLED | FAILED  (terminal, one-way)

Step:       PENDING -> CLAIMED | SENT | DELIVERED | FAILED | SKIPPED
            CLAIMED -> PENDING (claim recovery) | SENT | DELIVERED | FAILED | SKIPPED
            SENT    -> DELIVERED (async delivery confirmation)
"""

from enum import Enum
from typing import Dict, FrozenSet, Union

from src.services.automation.errors import InvalidTransitionError


class ExecutionStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'
    FAILED = 'FAILED'


class StepStatus(str, Enum):
    PENDING = 'PENDING'
    CLAIMED = 'CLAIMED'
    SENT = 'SENT'
    DELIVERED = 'DELIVERED'
    FAILED = 'FAILED'
    SKIPPED = 'SKIPPED'


EXECUTION_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.ACTIVE: frozenset({
        ExecutionStatus.COMPLETED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FAILED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}

STEP_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({
        StepStatus.CLAIMED,
        StepStatus.SENT,
        StepStatus.DELIVERED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
    }),
    StepStatus.CLAIMED: frozenset({
        StepStatus.PENDING,
        StepStatus.SENT,
        StepStatus.DELIVERED,
        StepStatus.FAILED,
        StepStatus.SKIPPED,
    }),
    StepStatus.SENT: frozenset({StepStatus.DELIVERED}),
    StepStatus.DELIVERED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

# Step states that count as a successful dispatch
SUCCESSFUL_STEP_STATUSES = frozenset({StepStatus.SENT, StepStatus.DELIVERED})

# Step states that still occupy the execution's single in-flight slot
OPEN_STEP_STATUSES = frozenset({StepStatus.PENDING, StepStatus.CLAIMED})


def execution_status(value: Union[str, ExecutionStatus]) -> ExecutionStatus:
    return value if isinstance(value, ExecutionStatus) else ExecutionStatus(value)


def step_status(value: Union[str, StepStatus]) -> StepStatus:
    return value if isinstance(value, StepStatus) else StepStatus(value)


def is_execution_terminal(status) -> bool:
    return not EXECUTION_TRANSITIONS[execution_status(status)]


def is_step_terminal(status) -> bool:
    """SENT is terminal for dispatch purposes even though DELIVERED may follow."""
    status = step_status(status)
    return status not in OPEN_STEP_STATUSES


def is_step_successful(status) -> bool:
    return step_status(status) in SUCCESSFUL_STEP_STATUSES


def can_transition_execution(current, target) -> bool:
    return execution_status(target) in EXECUTION_TRANSITIONS[execution_status(current)]


def can_transition_step(current, target) -> bool:
    return step_status(target) in STEP_TRANSITIONS[step_status(current)]


def require_execution_transition(current, target) -> ExecutionStatus:
    if not can_transition_execution(current, target):
        raise InvalidTransitionError('execution', execution_status(current).value, execution_status(target).value)
    return execution_status(target)


def require_step_transition(current, target) -> StepStatus:
    if not can_transition_step(current, target):
        raise InvalidTransitionError('step', step_status(current).value, step_status(target).value)
    return step_status(target)
