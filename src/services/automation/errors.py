"""
Exception taxonomy for the automation engine.

- ConfigurationError: malformed sequence conditions or trigger config.
  Caught during trigger evaluation and treated as "not eligible".
- DeliveryError: a channel failed to send a message. Recorded on the
  step execution and retried by the dispatcher.
- EntityNotFoundError: a customer, organization or execution referenced
  by an event does not exist. Aborts that single event.
- InvalidTransitionError: an illegal state machine transition.
- SequenceValidationError: a sequence definition breaks its step rules.
"""

from typing import Any, Dict, List, Optional


class AutomationError(Exception):
    """Base exception for the automation engine."""


class ConfigurationError(AutomationError):
    """Raised when a sequence's conditions or trigger config are malformed."""

    def __init__(self, message, sequence_id=None, key=None):
        super().__init__(message)
        self.sequence_id = sequence_id
        self.key = key


class DeliveryError(AutomationError):
    """Raised by a message sender when a message could not be delivered."""

    def __init__(self, message, channel=None, retryable=True, response_data=None):
        super().__init__(message)
        self.channel = channel
        self.retryable = retryable
        self.response_data = response_data


class EntityNotFoundError(AutomationError, LookupError):
    """Raised when an entity referenced by an event or request is missing."""

    def __init__(self, entity: str, entity_id: Any = None):
        message = f"{entity} not found"
        if entity_id is not None:
            message += f": {entity_id}"
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(AutomationError):
    """Raised when a status transition is not allowed by the state machine."""

    def __init__(self, kind: str, current: Any, target: Any):
        super().__init__(f"Illegal {kind} transition: {current} -> {target}")
        self.kind = kind
        self.current = current
        self.target = target


class SequenceValidationError(AutomationError):
    """Raised when a sequence definition violates its step rules."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]

    def to_dict(self) -> Dict[str, Any]:
        return {'message': str(self), 'errors': self.errors}
