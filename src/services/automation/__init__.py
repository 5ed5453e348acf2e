"""
Automation engine services package.

This package contains the review-request automation engine:
- state_machine.py: Execution and step status enums and transition rules
- errors.py: Exception taxonomy
- conditions.py: Eligibility conditions and webhook key matching
- scheduling.py: Step delays and the retry/backoff policy
- metrics.py: Metrics sink port and backends
- message_renderer.py: Placeholder rendering for step templates
- senders.py: MessageSender capability and channel adapters
- execution_service.py: Starting, stopping and cancelling executions
- trigger_evaluator.py: Domain event handling
- dispatcher.py: Claiming and dispatching due steps

Only the model-free modules are re-exported here so that src.models can
import the state machine without a circular import.
"""

from .errors import (
    AutomationError,
    ConfigurationError,
    DeliveryError,
    EntityNotFoundError,
    InvalidTransitionError,
    SequenceValidationError,
)
from .state_machine import ExecutionStatus, StepStatus

__all__ = [
    'AutomationError', 'ConfigurationError', 'DeliveryError', 'EntityNotFoundError',
    'InvalidTransitionError', 'SequenceValidationError', 'ExecutionStatus', 'StepStatus'
]
