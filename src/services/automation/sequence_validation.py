"""
Sequence definition validation report.

Errors make a sequence unusable; warnings flag configurations that will
run but probably not as intended.
"""

import logging
from typing import Any, Dict

from src.models import SequenceDefinition, TriggerType
from src.services.automation.conditions import RECOGNIZED_CONDITIONS
from src.services.automation.message_renderer import PLACEHOLDER_PATTERN

logger = logging.getLogger(__name__)

SMS_SEGMENT_LENGTH = 160


def validate_sequence(sequence: SequenceDefinition) -> Dict[str, Any]:
    """Validate a sequence definition."""
    errors = []
    warnings = []

    if not sequence.has_steps():
        errors.append("Sequence must have at least one step")
        return {'valid': False, 'errors': errors, 'warnings': warnings}

    numbers = [step.step_number for step in sequence.steps]
    if sorted(numbers) != list(range(1, len(numbers) + 1)):
        errors.append(f"Step numbers must be 1..{len(numbers)} without gaps or duplicates, got {sorted(numbers)}")

    for step in sequence.steps:
        errors.extend(step.validate())

        body = step.body_template or ''
        if not PLACEHOLDER_PATTERN.search(body):
            warnings.append(f"Step {step.step_number}: No personalization placeholders found")
        if step.channel == 'SMS' and len(body) > SMS_SEGMENT_LENGTH:
            warnings.append(f"Step {step.step_number}: SMS body is longer than {SMS_SEGMENT_LENGTH} characters")
        if not step.enabled:
            warnings.append(f"Step {step.step_number}: Step is inactive and will be skipped")

    if sequence.trigger_type is None:
        if not sequence.is_default:
            warnings.append("Sequence has no trigger and is not the default; it will only start explicitly")
    elif sequence.trigger_type not in [trigger.value for trigger in TriggerType]:
        errors.append(f"Unknown trigger_type '{sequence.trigger_type}'")
    elif sequence.trigger_type == TriggerType.WEBHOOK.value:
        webhook_keys = (sequence.trigger_config or {}).get('webhook_keys') if isinstance(sequence.trigger_config, dict) else None
        if not webhook_keys or not isinstance(webhook_keys, (str, list)):
            errors.append("WEBHOOK sequences need trigger_config.webhook_keys (a string or a list)")

    conditions = sequence.conditions
    if conditions:
        if not isinstance(conditions, dict):
            errors.append("conditions must be a mapping")
        else:
            for key in conditions:
                if key not in RECOGNIZED_CONDITIONS:
                    warnings.append(f"Unknown condition '{key}' will be ignored")

    return {
        'valid': len(errors) == 0,
        'errors': errors,
        'warnings': warnings
    }
