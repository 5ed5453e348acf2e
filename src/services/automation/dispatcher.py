"""
Dispatcher for due step executions.

One dispatch cycle:
1. Requeue steps whose claim timed out (the worker that claimed them died)
2. Atomically claim a batch of due PENDING steps with a single conditional
   UPDATE, so concurrent dispatchers never claim the same row
3. Send each claimed step through the MessageSender, then either schedule
   the next step, complete the execution, or apply the retry policy

A step is only ever created after the previous one was dispatched, so an
execution never has more than one open step.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import update

from src.extensions import db
from src.models import (
    Channel,
    Customer,
    Execution,
    ReviewRequest,
    SequenceDefinition,
    StepExecution,
    TriggerType,
)
from src.services.automation.errors import DeliveryError
from src.services.automation.execution_service import record_event, skip_open_steps
from src.services.automation.message_renderer import build_context, render_template
from src.services.automation.metrics import MetricsSink, get_metrics_sink
from src.services.automation.scheduling import RetryPolicy, calculate_scheduled_at
from src.services.automation.senders import MessageSender, create_message_sender
from src.services.automation.state_machine import ExecutionStatus, StepStatus

logger = logging.getLogger(__name__)

SENT = 'sent'
DELIVERED = 'delivered'
RETRYING = 'retrying'
FAILED = 'failed'
SKIPPED = 'skipped'
STOPPED = 'stopped'
IGNORED = 'ignored'
ERROR = 'error'

OUTCOMES = (SENT, DELIVERED, RETRYING, FAILED, SKIPPED, STOPPED, IGNORED, ERROR)


class Dispatcher:
    """Claims due steps and pushes them through the message sender."""

    def __init__(
        self,
        sender: MessageSender,
        metrics: Optional[MetricsSink] = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = 50,
        max_workers: int = 1,
        claim_timeout_seconds: int = 900,
        app=None,
        clock=None
    ):
        self.sender = sender
        self.metrics = metrics or get_metrics_sink()
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        self.max_workers = max(1, max_workers)
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.app = app
        self.clock = clock or datetime.utcnow

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run one dispatch cycle and return a count per outcome."""
        now = now or self.clock()
        summary = {outcome: 0 for outcome in OUTCOMES}

        summary['recovered'] = self.recover_stale_claims(now)

        claim_token, step_ids = self.claim_due_steps(now)
        summary['claimed'] = len(step_ids)
        if not step_ids:
            return summary

        logger.info(f"Claimed {len(step_ids)} due step(s)")

        if self.max_workers > 1 and len(step_ids) > 1 and self.app is not None:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                outcomes = list(pool.map(
                    lambda step_id: self._dispatch_in_context(step_id, now, claim_token),
                    step_ids
                ))
        else:
            outcomes = [self._dispatch_safely(step_id, now, claim_token) for step_id in step_ids]

        for outcome in outcomes:
            summary[outcome] = summary.get(outcome, 0) + 1

        logger.info(f"Dispatch cycle finished: {summary}")
        return summary

    def claim_due_steps(self, now: Optional[datetime] = None):
        """
        Claim up to batch_size due steps.

        Returns (claim_token, step_ids). Only rows that were still PENDING
        when the UPDATE ran carry the token, so a row that another
        dispatcher claimed first is silently left out.
        """
        now = now or self.clock()

        candidate_ids = [
            row.id for row in db.session.query(StepExecution.id).filter(
                StepExecution.status == StepStatus.PENDING.value,
                StepExecution.scheduled_at <= now
            ).order_by(StepExecution.scheduled_at.asc()).limit(self.batch_size).all()
        ]
        if not candidate_ids:
            return None, []

        claim_token = str(uuid.uuid4())
        db.session.execute(
            update(StepExecution)
            .where(
                StepExecution.id.in_(candidate_ids),
                StepExecution.status == StepStatus.PENDING.value
            )
            .values(
                status=StepStatus.CLAIMED.value,
                claim_token=claim_token,
                claimed_at=now,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        claimed_ids = [
            row.id for row in db.session.query(StepExecution.id).filter(
                StepExecution.claim_token == claim_token,
                StepExecution.status == StepStatus.CLAIMED.value
            ).order_by(StepExecution.scheduled_at.asc()).all()
        ]
        if len(claimed_ids) < len(candidate_ids):
            logger.debug(f"{len(candidate_ids) - len(claimed_ids)} step(s) were claimed by another dispatcher")
        return claim_token, claimed_ids

    def recover_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Return CLAIMED steps older than the claim timeout to PENDING."""
        now = now or self.clock()
        cutoff = now - self.claim_timeout

        result = db.session.execute(
            update(StepExecution)
            .where(
                StepExecution.status == StepStatus.CLAIMED.value,
                StepExecution.claimed_at < cutoff
            )
            .values(
                status=StepStatus.PENDING.value,
                claim_token=None,
                claimed_at=None,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        recovered = result.rowcount or 0
        if recovered:
            logger.warning(f"Requeued {recovered} step(s) with claims older than {cutoff.isoformat()}")
            self.metrics.record_claims_recovered(recovered)
        return recovered

    def _dispatch_in_context(self, step_id, now, claim_token) -> str:
        with self.app.app_context():
            return self._dispatch_safely(step_id, now, claim_token)

    def _dispatch_safely(self, step_id, now, claim_token) -> str:
        try:
            return self.dispatch_step(step_id, now=now, claim_token=claim_token)
        except Exception as e:
            # The step stays CLAIMED and is requeued by the recovery sweep
            db.session.rollback()
            logger.error(f"Error dispatching step execution {step_id}: {str(e)}")
            return ERROR

    def dispatch_step(self, step_id: str, now: Optional[datetime] = None,
                      claim_token: Optional[str] = None) -> str:
        """Dispatch one claimed step end to end and return its outcome."""
        now = now or self.clock()

        step = db.session.get(StepExecution, step_id)
        if step is None or not step.is_claimed:
            return IGNORED
        if claim_token is not None and step.claim_token != claim_token:
            logger.debug(f"Step execution {step_id} was reclaimed by another dispatcher")
            return IGNORED

        execution = db.session.get(Execution, step.execution_id)
        if execution is None or execution.is_finished:
            step.mark_skipped()
            record_event(step.execution_id, 'step_skipped', step=step, now=now, reason='execution_finished')
            db.session.commit()
            self.metrics.record_step(SKIPPED)
            logger.info(f"Skipped step {step.step_number} of finished execution {step.execution_id}")
            return SKIPPED

        if self._review_already_done(execution):
            return self._stop_early(execution, step, now)

        sequence = db.session.get(SequenceDefinition, execution.sequence_id)
        if sequence is None:
            return self._fail_execution(execution, step, "Sequence not found", now)

        template = sequence.get_step(step.step_number)
        if template is None or not template.enabled:
            return self._skip_and_advance(execution, sequence, step, 'step_disabled', now)

        customer = db.session.get(Customer, execution.customer_id)
        if customer is None:
            return self._fail_execution(execution, step, "Customer not found", now)

        recipient = customer.email if template.channel == Channel.EMAIL.value else customer.phone
        if not recipient or not recipient.strip():
            logger.warning(
                f"Customer {customer.id} has no {template.channel} recipient, "
                f"skipping step {step.step_number} of execution {execution.id}"
            )
            return self._skip_and_advance(execution, sequence, step, 'missing_recipient', now, template.channel)

        context = build_context(customer, execution)
        subject = render_template(template.subject_template, context) if template.requires_subject else None
        body = render_template(template.body_template, context)

        try:
            result = self.sender.send(template.channel, recipient.strip(), subject, body)
        except DeliveryError as e:
            return self._handle_failure(execution, step, str(e), e.retryable, now, template.channel)
        except Exception as e:
            return self._handle_failure(execution, step, f"Unexpected sender error: {str(e)}", True, now, template.channel)

        if not self._still_owned(execution, step):
            logger.warning(
                f"Execution {execution.id} finished while step {step.step_number} was being sent; "
                f"message {result.message_id} was delivered anyway"
            )
            return IGNORED

        if result.delivered:
            step.mark_delivered(now, result.message_id)
            outcome = DELIVERED
        else:
            step.mark_sent(now, result.message_id)
            outcome = SENT
        record_event(execution.id, f"step_{outcome}", step=step, now=now,
                     channel=template.channel, message_id=result.message_id)

        completed = self._advance(execution, sequence, step, step.sent_at)
        db.session.commit()

        self.metrics.record_step(outcome, template.channel)
        if completed:
            self.metrics.record_execution_finished(ExecutionStatus.COMPLETED.value)
        logger.info(
            f"Step {step.step_number} of execution {execution.id} {outcome} via {template.channel} "
            f"to {recipient.strip()}"
        )
        return outcome

    def _advance(self, execution: Execution, sequence: SequenceDefinition,
                 step: StepExecution, base_time: datetime) -> bool:
        """Schedule the next step, or complete the execution. Returns True when completed."""
        if sequence.is_final_step(step.step_number):
            execution.mark_completed(base_time)
            record_event(execution.id, 'execution_completed', now=base_time)
            logger.info(f"Execution {execution.id} completed")
            return True

        next_template = sequence.get_step(step.step_number + 1)
        execution.advance()

        next_step = StepExecution(
            execution_id=execution.id,
            step_number=step.step_number + 1,
            attempt=1,
            scheduled_at=calculate_scheduled_at(next_template.delay_hours, base_time),
            status=StepStatus.PENDING.value,
            created_at=base_time
        )
        db.session.add(next_step)
        db.session.flush()
        record_event(execution.id, 'step_scheduled', step=next_step, now=base_time,
                     scheduled_at=next_step.scheduled_at.isoformat())
        return False

    def _skip_and_advance(self, execution, sequence, step, reason, now, channel=None) -> str:
        step.mark_skipped()
        record_event(execution.id, 'step_skipped', step=step, now=now, reason=reason)
        completed = self._advance(execution, sequence, step, now)
        db.session.commit()

        self.metrics.record_step(SKIPPED, channel)
        if completed:
            self.metrics.record_execution_finished(ExecutionStatus.COMPLETED.value)
        return SKIPPED

    def _handle_failure(self, execution, step, reason, retryable, now, channel) -> str:
        if not self._still_owned(execution, step):
            logger.info(f"Execution {execution.id} finished while step {step.step_number} was failing")
            return IGNORED

        attempt = step.attempt or 1
        step.mark_failed(reason)
        record_event(execution.id, 'step_failed', step=step, now=now, reason=reason, retryable=retryable)

        if retryable and self.retry_policy.should_retry(attempt):
            retry = StepExecution(
                execution_id=execution.id,
                step_number=step.step_number,
                attempt=attempt + 1,
                scheduled_at=self.retry_policy.next_retry_at(attempt, now),
                status=StepStatus.PENDING.value,
                created_at=now
            )
            db.session.add(retry)
            db.session.flush()
            record_event(execution.id, 'step_retry_scheduled', step=retry, now=now,
                         scheduled_at=retry.scheduled_at.isoformat())
            db.session.commit()

            self.metrics.record_step(RETRYING, channel)
            logger.warning(
                f"Step {step.step_number} of execution {execution.id} failed (attempt {attempt}): {reason}. "
                f"Retrying at {retry.scheduled_at.isoformat()}"
            )
            return RETRYING

        execution.mark_failed(now)
        record_event(execution.id, 'execution_failed', now=now, reason=reason, attempts=attempt)
        db.session.commit()

        self.metrics.record_step(FAILED, channel)
        self.metrics.record_execution_finished(ExecutionStatus.FAILED.value)
        logger.error(
            f"Step {step.step_number} of execution {execution.id} failed after {attempt} attempt(s): {reason}"
        )
        return FAILED

    def _fail_execution(self, execution, step, reason, now) -> str:
        step.mark_failed(reason)
        execution.mark_failed(now)
        record_event(execution.id, 'execution_failed', step=step, now=now, reason=reason)
        db.session.commit()

        self.metrics.record_step(FAILED)
        self.metrics.record_execution_finished(ExecutionStatus.FAILED.value)
        logger.error(f"Execution {execution.id} failed: {reason}")
        return FAILED

    def _review_already_done(self, execution: Execution) -> bool:
        """Review-request runs stop once the customer has already left the review."""
        if execution.triggering_entity_type != 'review_request':
            return False
        if execution.trigger_type == TriggerType.REVIEW_COMPLETED.value:
            return False
        review_request = db.session.get(ReviewRequest, execution.triggering_entity_id)
        return review_request is not None and review_request.is_finished

    def _stop_early(self, execution, step, now) -> str:
        step.mark_skipped()
        record_event(execution.id, 'step_skipped', step=step, now=now, reason='review_completed')
        execution.mark_completed(now)
        skip_open_steps(execution, now=now, reason='review_completed')
        record_event(execution.id, 'execution_completed', now=now, reason='review_completed')
        db.session.commit()

        self.metrics.record_step(SKIPPED)
        self.metrics.record_execution_finished(ExecutionStatus.COMPLETED.value)
        logger.info(f"Stopped execution {execution.id}: review request already completed")
        return STOPPED

    def _still_owned(self, execution: Execution, step: StepExecution) -> bool:
        """Re-read both rows; a cancel may have landed while the sender was running."""
        db.session.refresh(execution)
        db.session.refresh(step)
        return execution.is_active and step.is_claimed


def create_dispatcher(app, sender: Optional[MessageSender] = None,
                      metrics: Optional[MetricsSink] = None) -> Dispatcher:
    """Build a dispatcher from app config."""
    config = app.config
    return Dispatcher(
        sender=sender or create_message_sender(config),
        metrics=metrics or get_metrics_sink(),
        retry_policy=RetryPolicy.from_config(config),
        batch_size=int(config.get('DISPATCH_BATCH_SIZE', 50)),
        max_workers=int(config.get('DISPATCH_MAX_WORKERS', 1)),
        claim_timeout_seconds=int(config.get('DISPATCH_CLAIM_TIMEOUT_SECONDS', 900)),
        app=app
    )
