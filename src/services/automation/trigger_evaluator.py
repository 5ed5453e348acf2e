"""
Trigger evaluation for automation sequences.

Domain events (customer created, service completed, review completed and
inbound webhooks) are matched against the organization's active
sequences. Every candidate sequence is evaluated on its own: a broken
sequence is logged and counted as a failure, and the remaining candidates
are still processed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.extensions import db
from src.models import Customer, Execution, ReviewRequest, SequenceDefinition, TriggerType
from src.services.automation.conditions import evaluate_conditions, matches_webhook_key
from src.services.automation.errors import ConfigurationError, EntityNotFoundError
from src.services.automation.execution_service import ExecutionService
from src.services.automation.metrics import MetricsSink, get_metrics_sink

logger = logging.getLogger(__name__)


@dataclass
class TriggerContext:
    """Everything a trigger needs to know about the event that fired it."""
    customer: Customer
    organization_id: str
    business_id: Optional[str] = None
    triggering_entity_id: Optional[str] = None
    triggering_entity_type: str = 'customer'
    data: Dict[str, Any] = field(default_factory=dict)
    webhook_key: Optional[str] = None

    @classmethod
    def for_customer(cls, customer: Customer, **kwargs) -> 'TriggerContext':
        return cls(
            customer=customer,
            organization_id=customer.organization_id,
            business_id=customer.business_id,
            triggering_entity_id=kwargs.pop('triggering_entity_id', None) or customer.id,
            **kwargs
        )


def trigger_label(trigger_type: TriggerType, webhook_key: Optional[str] = None) -> str:
    """Execution trigger label, e.g. SERVICE_COMPLETED or WEBHOOK_jobber."""
    if trigger_type is TriggerType.WEBHOOK and webhook_key:
        return f"{TriggerType.WEBHOOK.value}_{webhook_key}"
    return trigger_type.value


class TriggerEvaluator:
    """Starts executions for the sequences a domain event matches."""

    def __init__(self, metrics: Optional[MetricsSink] = None, clock=None,
                 execution_service: Optional[ExecutionService] = None):
        self.metrics = metrics or get_metrics_sink()
        self.clock = clock or datetime.utcnow
        self.executions = execution_service or ExecutionService(metrics=self.metrics, clock=self.clock)

    def on_event(self, trigger_type: TriggerType, context: TriggerContext) -> List[Execution]:
        """
        Evaluate every active sequence of the organization for this event.

        Returns the executions that were started.
        """
        trigger_type = TriggerType(trigger_type)
        label = trigger_label(trigger_type, context.webhook_key)
        now = self.clock()

        candidates = SequenceDefinition.find_active_for_trigger(context.organization_id, trigger_type)
        if not candidates:
            logger.debug(f"No active {trigger_type.value} sequences for organization {context.organization_id}")
            return []

        logger.info(
            f"Evaluating {len(candidates)} {label} sequence(s) for customer {context.customer.id}"
        )

        # Load ids up front; a rollback below expires the ORM objects
        candidate_ids = [sequence.id for sequence in candidates]
        started = []
        for sequence_id in candidate_ids:
            execution = self._evaluate_candidate(sequence_id, trigger_type, label, context, now)
            if execution is not None:
                started.append(execution)

        logger.info(f"{label} for customer {context.customer.id} started {len(started)} execution(s)")
        return started

    def _evaluate_candidate(self, sequence_id: str, trigger_type: TriggerType, label: str,
                            context: TriggerContext, now: datetime) -> Optional[Execution]:
        try:
            sequence = db.session.get(SequenceDefinition, sequence_id)
            customer = db.session.get(Customer, context.customer.id)
            if sequence is None or customer is None:
                raise EntityNotFoundError('Sequence' if sequence is None else 'Customer',
                                          sequence_id if sequence is None else context.customer.id)

            reason = self._ineligibility_reason(sequence, customer, trigger_type, context, now)
            if reason is not None:
                self.metrics.record_trigger_skipped(label, sequence_id, reason)
                return None

            execution = self.executions.start_execution(
                sequence,
                customer,
                triggering_entity_id=context.triggering_entity_id or customer.id,
                triggering_entity_type=context.triggering_entity_type,
                trigger_type=label,
                trigger_data=self._trigger_data(trigger_type, customer, context),
                now=now
            )
        except Exception as e:
            db.session.rollback()
            logger.error(f"Error processing {label} for sequence {sequence_id}: {str(e)}")
            self.metrics.record_trigger(label, sequence_id, success=False)
            return None

        self.metrics.record_trigger(label, sequence_id, success=True)
        logger.info(f"Triggered sequence {sequence_id} for customer {customer.id} via {label}")
        return execution

    def _ineligibility_reason(self, sequence, customer, trigger_type, context, now) -> Optional[str]:
        """None when the candidate should start, otherwise a short reason tag."""
        try:
            if trigger_type is TriggerType.WEBHOOK and not matches_webhook_key(sequence, context.webhook_key):
                return 'webhook_key_mismatch'

            if not sequence.has_steps():
                logger.warning(f"Sequence {sequence.id} has no steps")
                return 'no_steps'

            if not evaluate_conditions(sequence, customer, context.data, now=now):
                return 'conditions_not_met'
        except ConfigurationError as e:
            logger.warning(f"Sequence {sequence.id} has invalid configuration, treating as not eligible: {str(e)}")
            return 'configuration_error'

        if Execution.find_active_for(customer.id, sequence.id) is not None:
            logger.info(f"Sequence {sequence.id} already active for customer {customer.id}")
            return 'already_active'

        return None

    def _trigger_data(self, trigger_type, customer, context) -> Dict[str, Any]:
        data = {
            'triggered_by': trigger_type.value,
            'customer_name': customer.name,
            'customer_email': customer.email,
            'customer_phone': customer.phone,
            'service_type': customer.service_type,
            'business_id': context.business_id or customer.business_id
        }
        if context.webhook_key:
            data['webhook_key'] = context.webhook_key
        data.update(context.data or {})
        return data

    # Inbound event API

    def on_customer_created(self, customer: Customer) -> List[Execution]:
        return self.on_event(TriggerType.CUSTOMER_CREATED, TriggerContext.for_customer(customer))

    def on_service_completed(self, customer: Customer, service_type: Optional[str] = None) -> List[Execution]:
        data = {'service_type': service_type or customer.service_type}
        return self.on_event(TriggerType.SERVICE_COMPLETED, TriggerContext.for_customer(customer, data=data))

    def on_review_request_completed(self, review_request: ReviewRequest) -> List[Execution]:
        customer = db.session.get(Customer, review_request.customer_id)
        if customer is None:
            raise EntityNotFoundError('Customer', review_request.customer_id)

        context = TriggerContext.for_customer(
            customer,
            triggering_entity_id=review_request.id,
            triggering_entity_type='review_request',
            data={
                'review_request_id': review_request.id,
                'delivery_method': review_request.delivery_method
            }
        )
        return self.on_event(TriggerType.REVIEW_COMPLETED, context)

    def on_webhook_received(self, webhook_key: str, customer_id: str,
                            payload: Optional[Dict[str, Any]] = None) -> List[Execution]:
        customer = db.session.get(Customer, customer_id)
        if customer is None:
            raise EntityNotFoundError('Customer', customer_id)

        context = TriggerContext.for_customer(customer, data=dict(payload or {}), webhook_key=webhook_key)
        return self.on_event(TriggerType.WEBHOOK, context)
