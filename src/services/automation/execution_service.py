"""
Execution lifecycle operations.

This module contains functionality for:
- Starting an execution with its first step
- Stopping and cancelling executions (open steps become SKIPPED)
- Delivery status callbacks matched by provider message id
- Execution statistics for monitoring

Each operation commits once, so a state change and its audit events land
together or not at all.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from src.extensions import db
from src.models import (
    Customer,
    Execution,
    ExecutionEvent,
    ReviewRequest,
    SequenceDefinition,
    StepExecution,
)
from src.services.automation.errors import EntityNotFoundError, SequenceValidationError
from src.services.automation.metrics import MetricsSink, get_metrics_sink
from src.services.automation.scheduling import calculate_scheduled_at
from src.services.automation.state_machine import (
    OPEN_STEP_STATUSES,
    ExecutionStatus,
    StepStatus,
)

logger = logging.getLogger(__name__)


def record_event(execution_id: str, event_type: str, step: Optional[StepExecution] = None,
                 now: Optional[datetime] = None, **meta) -> ExecutionEvent:
    """Add an audit event to the session (committed by the caller)."""
    if step is not None:
        meta.setdefault('step_number', step.step_number)
        meta.setdefault('attempt', step.attempt or 1)
    event = ExecutionEvent(
        execution_id=execution_id,
        step_execution_id=step.id if step is not None else None,
        event_type=event_type,
        timestamp=now or datetime.utcnow(),
        meta_json=meta or None
    )
    db.session.add(event)
    return event


def open_steps(execution_id: str) -> List[StepExecution]:
    return StepExecution.query.filter(
        StepExecution.execution_id == execution_id,
        StepExecution.status.in_([status.value for status in OPEN_STEP_STATUSES])
    ).all()


def skip_open_steps(execution: Execution, now: Optional[datetime] = None, reason: Optional[str] = None) -> int:
    skipped = 0
    for step in open_steps(execution.id):
        step.mark_skipped()
        record_event(execution.id, 'step_skipped', step=step, now=now, reason=reason)
        skipped += 1
    return skipped


class ExecutionService:
    """Starts and finishes executions outside of the dispatcher's send path."""

    def __init__(self, metrics: Optional[MetricsSink] = None, clock=None):
        self.metrics = metrics or get_metrics_sink()
        self.clock = clock or datetime.utcnow

    def start_execution(
        self,
        sequence: SequenceDefinition,
        customer: Customer,
        triggering_entity_id: Optional[str] = None,
        triggering_entity_type: str = 'customer',
        trigger_type: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Execution:
        """Create an ACTIVE execution at step 1 with its first step scheduled."""
        now = now or self.clock()

        first_step = sequence.get_step(1)
        if first_step is None:
            raise SequenceValidationError(f"Sequence {sequence.id} has no steps")

        execution = Execution(
            sequence_id=sequence.id,
            organization_id=sequence.organization_id,
            customer_id=customer.id,
            triggering_entity_id=triggering_entity_id or customer.id,
            triggering_entity_type=triggering_entity_type,
            trigger_type=trigger_type,
            trigger_data=trigger_data or {},
            current_step=1,
            status=ExecutionStatus.ACTIVE.value,
            started_at=now
        )
        db.session.add(execution)
        db.session.flush()

        step = StepExecution(
            execution_id=execution.id,
            step_number=1,
            attempt=1,
            scheduled_at=calculate_scheduled_at(first_step.delay_hours, now),
            status=StepStatus.PENDING.value,
            created_at=now
        )
        db.session.add(step)
        db.session.flush()

        record_event(execution.id, 'execution_started', now=now,
                     sequence_id=sequence.id, trigger_type=trigger_type)
        db.session.commit()

        logger.info(
            f"Started execution {execution.id} of sequence '{sequence.name}' for customer {customer.id}, "
            f"step 1 scheduled at {step.scheduled_at.isoformat()}"
        )
        return execution

    def start_default_sequence(self, review_request: ReviewRequest, now: Optional[datetime] = None) -> Optional[Execution]:
        """Start the organization's default sequence for a new review request."""
        customer = db.session.get(Customer, review_request.customer_id)
        if customer is None:
            raise EntityNotFoundError('Customer', review_request.customer_id)

        existing = Execution.find_active_for_entity(review_request.id)
        if existing is not None:
            logger.warning(f"Sequence already running for review request {review_request.id}")
            return existing

        sequence = SequenceDefinition.find_default(customer.organization_id)
        if sequence is None:
            logger.info(f"No default sequence for organization {customer.organization_id}")
            return None

        return self.start_execution(
            sequence,
            customer,
            triggering_entity_id=review_request.id,
            triggering_entity_type='review_request',
            trigger_type='REVIEW_REQUEST_CREATED',
            trigger_data={
                'review_request_id': review_request.id,
                'delivery_method': review_request.delivery_method,
                'customer_name': customer.name
            },
            now=now
        )

    def get_execution(self, execution_id: str) -> Execution:
        execution = db.session.get(Execution, execution_id)
        if execution is None:
            raise EntityNotFoundError('Execution', execution_id)
        return execution

    def cancel_execution(self, execution_id: str, reason: Optional[str] = None,
                         now: Optional[datetime] = None) -> bool:
        """Cancel an execution. Returns False if it had already finished."""
        return self._finish(execution_id, ExecutionStatus.CANCELLED, reason or 'cancelled', now)

    def stop_execution(self, execution_id: str, reason: str, now: Optional[datetime] = None) -> bool:
        """End an execution early as COMPLETED, e.g. once the customer has reviewed."""
        return self._finish(execution_id, ExecutionStatus.COMPLETED, reason, now)

    def _finish(self, execution_id, target: ExecutionStatus, reason: str, now: Optional[datetime]) -> bool:
        now = now or self.clock()
        execution = self.get_execution(execution_id)

        if execution.is_finished:
            logger.debug(f"Execution {execution_id} already finished ({execution.status})")
            return False

        if target is ExecutionStatus.CANCELLED:
            execution.mark_cancelled(now)
        else:
            execution.mark_completed(now)

        skipped = skip_open_steps(execution, now=now, reason=reason)
        record_event(execution.id, f"execution_{target.value.lower()}", now=now,
                     reason=reason, skipped_steps=skipped)
        db.session.commit()

        self.metrics.record_execution_finished(target.value)
        logger.info(f"Execution {execution_id} {target.value.lower()}: {reason} ({skipped} step(s) skipped)")
        return True

    def mark_delivered_by_message_id(self, message_id: str, now: Optional[datetime] = None) -> StepExecution:
        """Apply an asynchronous delivery confirmation from a channel provider."""
        now = now or self.clock()
        step = StepExecution.query.filter_by(message_id=message_id).first()
        if step is None:
            raise EntityNotFoundError('Step execution for message', message_id)

        if step.status_enum is StepStatus.DELIVERED:
            return step

        step.mark_delivered(now)
        record_event(step.execution_id, 'step_delivered', step=step, now=now, message_id=message_id)
        db.session.commit()

        logger.info(f"Step execution {step.id} delivered (message {message_id})")
        return step

    def get_execution_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self.clock()
        since = now - timedelta(days=1)

        by_status = dict(
            db.session.query(Execution.status, db.func.count(Execution.id))
            .group_by(Execution.status).all()
        )
        finished_24h = dict(
            db.session.query(Execution.status, db.func.count(Execution.id))
            .filter(Execution.completed_at >= since)
            .group_by(Execution.status).all()
        )
        step_counts = dict(
            db.session.query(StepExecution.status, db.func.count(StepExecution.id))
            .group_by(StepExecution.status).all()
        )
        due = StepExecution.query.filter(
            StepExecution.status == StepStatus.PENDING.value,
            StepExecution.scheduled_at <= now
        ).count()

        return {
            'executions': {status.value: by_status.get(status.value, 0) for status in ExecutionStatus},
            'completed_24h': finished_24h.get(ExecutionStatus.COMPLETED.value, 0),
            'failed_24h': finished_24h.get(ExecutionStatus.FAILED.value, 0),
            'cancelled_24h': finished_24h.get(ExecutionStatus.CANCELLED.value, 0),
            'steps': {status.value: step_counts.get(status.value, 0) for status in StepStatus},
            'steps_due': due,
            'generated_at': now.isoformat()
        }
