"""
Eligibility conditions and webhook key matching.

A sequence's `conditions` is a map of named predicates. Every recognized
predicate that is present must pass; unknown keys are ignored so newer
configurations keep working on older engines. No conditions at all means
the customer is always eligible.

Recognized keys:
- has_email (bool): customer email must be non-blank
- has_phone (bool): customer phone must be non-blank
- service_types (list[str]): customer's service type must be in the list
- max_executions_per_customer (int): executions of this sequence for the
  customer (any status) must be below the cap
- business_id (str): customer must belong to this business
- event_properties (dict): every key must equal the event data value
- execution_hours ({start, end}): current UTC hour inside the window
- min_days_since_created (int): customer must be at least this old

Malformed values raise ConfigurationError.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from src.models import Customer, Execution, SequenceDefinition
from src.services.automation.errors import ConfigurationError

logger = logging.getLogger(__name__)

RECOGNIZED_CONDITIONS = (
    'has_email',
    'has_phone',
    'service_types',
    'max_executions_per_customer',
    'business_id',
    'event_properties',
    'execution_hours',
    'min_days_since_created',
)


def evaluate_conditions(
    sequence: SequenceDefinition,
    customer: Customer,
    event_data: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None
) -> bool:
    """Return True when the customer passes every configured condition."""
    conditions = sequence.conditions
    if not conditions:
        return True

    if not isinstance(conditions, dict):
        raise ConfigurationError("conditions must be a mapping", sequence_id=sequence.id)

    event_data = event_data or {}
    now = now or datetime.utcnow()

    for key in conditions:
        if key not in RECOGNIZED_CONDITIONS:
            logger.debug(f"Ignoring unknown condition '{key}' on sequence {sequence.id}")

    if not _check_has_email(sequence, customer, conditions):
        return False
    if not _check_has_phone(sequence, customer, conditions):
        return False
    if not _check_service_types(sequence, customer, conditions, event_data):
        return False
    if not _check_business(sequence, customer, conditions):
        return False
    if not _check_event_properties(sequence, conditions, event_data):
        return False
    if not _check_execution_hours(sequence, conditions, now):
        return False
    if not _check_customer_age(sequence, customer, conditions, now):
        return False
    if not _check_max_executions(sequence, customer, conditions):
        return False

    return True


def matches_webhook_key(sequence: SequenceDefinition, webhook_key: str) -> bool:
    """Whether a WEBHOOK sequence listens to this key (exact match or list membership)."""
    trigger_config = sequence.trigger_config or {}
    if not isinstance(trigger_config, dict) or 'webhook_keys' not in trigger_config:
        raise ConfigurationError("trigger_config.webhook_keys is missing", sequence_id=sequence.id, key='webhook_keys')

    webhook_keys = trigger_config['webhook_keys']
    if isinstance(webhook_keys, str):
        return webhook_key == webhook_keys
    if isinstance(webhook_keys, (list, tuple)):
        return webhook_key in webhook_keys

    raise ConfigurationError(
        f"webhook_keys must be a string or a list, got {type(webhook_keys).__name__}",
        sequence_id=sequence.id,
        key='webhook_keys'
    )


def _require_bool(sequence, conditions, key) -> bool:
    value = conditions[key]
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key} must be a boolean", sequence_id=sequence.id, key=key)
    return value


def _require_int(sequence, conditions, key) -> int:
    value = conditions[key]
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{key} must be an integer", sequence_id=sequence.id, key=key)
    return value


def _check_has_email(sequence, customer, conditions) -> bool:
    if 'has_email' not in conditions or not _require_bool(sequence, conditions, 'has_email'):
        return True
    if not customer.has_email:
        logger.debug(f"Sequence {sequence.id} skipped - customer {customer.id} has no email")
        return False
    return True


def _check_has_phone(sequence, customer, conditions) -> bool:
    if 'has_phone' not in conditions or not _require_bool(sequence, conditions, 'has_phone'):
        return True
    if not customer.has_phone:
        logger.debug(f"Sequence {sequence.id} skipped - customer {customer.id} has no phone")
        return False
    return True


def _check_service_types(sequence, customer, conditions, event_data) -> bool:
    if 'service_types' not in conditions:
        return True

    allowed = conditions['service_types']
    if allowed is None:
        return True
    if not isinstance(allowed, (list, tuple)):
        raise ConfigurationError("service_types must be a list", sequence_id=sequence.id, key='service_types')
    if not allowed:
        return True

    service_type = customer.service_type or event_data.get('service_type')
    if not service_type or service_type not in allowed:
        logger.debug(
            f"Sequence {sequence.id} skipped - customer {customer.id} service type "
            f"'{service_type}' not in allowed list"
        )
        return False
    return True


def _check_business(sequence, customer, conditions) -> bool:
    if 'business_id' not in conditions or conditions['business_id'] is None:
        return True
    return str(customer.business_id) == str(conditions['business_id'])


def _check_event_properties(sequence, conditions, event_data) -> bool:
    if 'event_properties' not in conditions:
        return True

    required = conditions['event_properties']
    if not isinstance(required, dict):
        raise ConfigurationError("event_properties must be a mapping", sequence_id=sequence.id, key='event_properties')

    for key, expected in required.items():
        if key not in event_data or event_data[key] != expected:
            return False
    return True


def _check_execution_hours(sequence, conditions, now) -> bool:
    if 'execution_hours' not in conditions:
        return True

    window = conditions['execution_hours']
    try:
        start_hour = int(window['start'])
        end_hour = int(window['end'])
    except (TypeError, KeyError, ValueError):
        raise ConfigurationError("execution_hours needs integer start and end", sequence_id=sequence.id, key='execution_hours')

    current_hour = now.hour
    if start_hour <= end_hour:
        return start_hour <= current_hour <= end_hour
    # Overnight window, e.g. 22 -> 8
    return current_hour >= start_hour or current_hour <= end_hour


def _check_customer_age(sequence, customer, conditions, now) -> bool:
    if 'min_days_since_created' not in conditions:
        return True

    min_days = _require_int(sequence, conditions, 'min_days_since_created')
    if customer.created_at is None:
        return min_days <= 0
    return (now - customer.created_at).days >= min_days


def _check_max_executions(sequence, customer, conditions) -> bool:
    if 'max_executions_per_customer' not in conditions or conditions['max_executions_per_customer'] is None:
        return True

    cap = _require_int(sequence, conditions, 'max_executions_per_customer')
    if cap <= 0:
        return True

    existing = Execution.count_for(customer.id, sequence.id)
    if existing >= cap:
        logger.debug(
            f"Sequence {sequence.id} skipped - customer {customer.id} already has "
            f"{existing} execution(s), cap is {cap}"
        )
        return False
    return True
