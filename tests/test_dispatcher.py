"""
Tests for the dispatcher: claiming, sending, advancing, retrying and
recovering due step executions.
"""

import pytest
from datetime import timedelta
from unittest.mock import patch

from src.extensions import db
from src.models import Customer, Execution, ExecutionEvent, StepExecution, TriggerType
from src.services.automation.dispatcher import Dispatcher
from src.services.automation.errors import EntityNotFoundError
from src.services.automation.execution_service import ExecutionService
from src.services.automation.metrics import CLAIMS_RECOVERED, EXECUTIONS_FINISHED, STEPS_DISPATCHED
from src.services.automation.scheduling import RetryPolicy

from tests.conftest import T0, FakeSender


def steps_for(execution_id):
    return StepExecution.query.filter_by(execution_id=execution_id).order_by(
        StepExecution.step_number.asc(),
        StepExecution.attempt.asc()
    ).all()


def open_steps_for(execution_id):
    return [step for step in steps_for(execution_id) if step.status in ('PENDING', 'CLAIMED')]


def start(evaluator, customer):
    executions = evaluator.on_service_completed(customer)
    assert len(executions) == 1
    return executions[0].id


class TestExampleScenario:
    """Three steps [EMAIL 0h, SMS 24h, EMAIL 72h] run to completion."""

    def test_full_sequence(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        execution_id = start(evaluator, customer)

        summary = dispatcher.run_once(T0)
        assert summary['claimed'] == 1
        assert summary['sent'] == 1

        execution = db.session.get(Execution, execution_id)
        assert execution.status == 'ACTIVE'
        assert execution.current_step == 2
        steps = steps_for(execution_id)
        assert [(s.step_number, s.status) for s in steps] == [(1, 'SENT'), (2, 'PENDING')]
        assert steps[0].sent_at == T0
        assert steps[1].scheduled_at == T0 + timedelta(hours=24)

        # Nothing is due before the delay has passed
        assert dispatcher.run_once(T0 + timedelta(hours=23))['claimed'] == 0

        dispatcher.run_once(T0 + timedelta(hours=24))
        execution = db.session.get(Execution, execution_id)
        assert execution.current_step == 3
        steps = steps_for(execution_id)
        assert steps[2].step_number == 3
        assert steps[2].scheduled_at == T0 + timedelta(hours=96)

        dispatcher.run_once(T0 + timedelta(hours=96))
        execution = db.session.get(Execution, execution_id)
        assert execution.status == 'COMPLETED'
        assert execution.completed_at == T0 + timedelta(hours=96)
        assert execution.current_step == 3
        assert [s.status for s in steps_for(execution_id)] == ['SENT', 'SENT', 'SENT']

        assert [message['channel'] for message in fake_sender.sent] == ['EMAIL', 'SMS', 'EMAIL']
        assert [message['recipient'] for message in fake_sender.sent] == [
            'jane@example.com', '+15550100', 'jane@example.com'
        ]

        # Terminal: nothing further is created or claimed
        assert dispatcher.run_once(T0 + timedelta(days=30))['claimed'] == 0
        assert len(steps_for(execution_id)) == 3

    def test_rendered_message(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        start(evaluator, customer)
        dispatcher.run_once(T0)
        dispatcher.run_once(T0 + timedelta(hours=24))

        email, sms = fake_sender.sent
        assert email['subject'] == 'How did we do, Jane?'
        assert email['body'] == 'Hi Jane, thanks for choosing Acme Plumbing!'
        assert sms['subject'] is None

    def test_at_most_one_open_step(self, dispatcher, evaluator, customer, three_step_sequence):
        execution_id = start(evaluator, customer)

        for hours in (0, 24, 96):
            assert len(open_steps_for(execution_id)) == 1
            dispatcher.run_once(T0 + timedelta(hours=hours))

            sent_numbers = sorted(s.step_number for s in steps_for(execution_id) if s.is_successful)
            assert sent_numbers == list(range(1, len(sent_numbers) + 1))

        assert open_steps_for(execution_id) == []

    def test_audit_events(self, dispatcher, evaluator, customer, three_step_sequence):
        execution_id = start(evaluator, customer)
        dispatcher.run_once(T0)

        event_types = [
            event.event_type for event in
            ExecutionEvent.query.filter_by(execution_id=execution_id).order_by(ExecutionEvent.timestamp).all()
        ]
        assert 'execution_started' in event_types
        assert 'step_sent' in event_types
        assert 'step_scheduled' in event_types

    def test_metrics(self, dispatcher, evaluator, metrics, customer, make_sequence):
        make_sequence([('EMAIL', 0)])
        start(evaluator, customer)
        dispatcher.run_once(T0)

        assert metrics.count(STEPS_DISPATCHED, outcome='sent', channel='EMAIL') == 1
        assert metrics.count(EXECUTIONS_FINISHED, status='COMPLETED') == 1


class TestDelayArithmetic:

    def test_next_step_is_relative_to_previous_send(self, dispatcher, evaluator, customer, make_sequence):
        make_sequence([('EMAIL', 0), ('EMAIL', 48)])
        execution_id = start(evaluator, customer)

        # Step 1 goes out three hours late
        sent_at = T0 + timedelta(hours=3)
        dispatcher.run_once(sent_at)

        first, second = steps_for(execution_id)
        assert first.scheduled_at == T0
        assert first.sent_at == sent_at
        assert second.scheduled_at == sent_at + timedelta(hours=48)
        assert second.scheduled_at != T0 + timedelta(hours=48)


class TestRetries:

    def test_retry_then_fail(self, dispatcher, evaluator, fake_sender, metrics, customer, three_step_sequence):
        fake_sender.fail_with("smtp timeout")
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['retrying'] == 1
        retry = open_steps_for(execution_id)[0]
        assert (retry.step_number, retry.attempt) == (1, 2)
        assert retry.scheduled_at == T0 + timedelta(minutes=5)

        # Backoff is respected
        assert dispatcher.run_once(T0 + timedelta(minutes=4))['claimed'] == 0

        assert dispatcher.run_once(T0 + timedelta(minutes=5))['retrying'] == 1
        assert open_steps_for(execution_id)[0].scheduled_at == T0 + timedelta(minutes=15)

        assert dispatcher.run_once(T0 + timedelta(minutes=15))['retrying'] == 1
        assert open_steps_for(execution_id)[0].scheduled_at == T0 + timedelta(minutes=35)

        assert dispatcher.run_once(T0 + timedelta(minutes=35))['failed'] == 1

        steps = steps_for(execution_id)
        assert [(s.step_number, s.attempt, s.status) for s in steps] == [
            (1, 1, 'FAILED'), (1, 2, 'FAILED'), (1, 3, 'FAILED'), (1, 4, 'FAILED')
        ]
        assert all(s.error_message == 'smtp timeout' for s in steps)
        assert all(s.sent_at is None for s in steps)

        execution = db.session.get(Execution, execution_id)
        assert execution.status == 'FAILED'
        assert execution.completed_at == T0 + timedelta(minutes=35)
        assert execution.current_step == 1

        # One original attempt plus three retries, and no later step
        assert len(fake_sender.sent) == 4
        assert dispatcher.run_once(T0 + timedelta(days=10))['claimed'] == 0
        assert StepExecution.query.filter(
            StepExecution.execution_id == execution_id,
            StepExecution.step_number > 1
        ).count() == 0
        assert metrics.count(EXECUTIONS_FINISHED, status='FAILED') == 1

    def test_recovers_after_transient_failure(self, dispatcher, evaluator, fake_sender, customer, make_sequence):
        make_sequence([('EMAIL', 0), ('SMS', 24)])
        fake_sender.fail_with()
        execution_id = start(evaluator, customer)

        dispatcher.run_once(T0)
        fake_sender.error = None
        dispatcher.run_once(T0 + timedelta(minutes=5))

        steps = steps_for(execution_id)
        assert [(s.step_number, s.attempt, s.status) for s in steps] == [
            (1, 1, 'FAILED'), (1, 2, 'SENT'), (2, 1, 'PENDING')
        ]
        # The next step counts from the successful retry
        assert steps[2].scheduled_at == T0 + timedelta(minutes=5, hours=24)
        assert db.session.get(Execution, execution_id).current_step == 2

    def test_non_retryable_failure(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        fake_sender.fail_with("mailbox does not exist", retryable=False)
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['failed'] == 1
        assert len(steps_for(execution_id)) == 1
        assert db.session.get(Execution, execution_id).status == 'FAILED'

    def test_unexpected_sender_exception_is_retried(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        fake_sender.error = RuntimeError("connection reset")
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['retrying'] == 1
        assert 'connection reset' in steps_for(execution_id)[0].error_message

    def test_zero_retries(self, app, evaluator, fake_sender, metrics, customer, three_step_sequence):
        dispatcher = Dispatcher(sender=fake_sender, metrics=metrics, retry_policy=RetryPolicy(max_retries=0))
        fake_sender.fail_with()
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['failed'] == 1
        assert db.session.get(Execution, execution_id).status == 'FAILED'


class TestCancellation:

    def test_cancel_skips_pending_step(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        execution_id = start(evaluator, customer)

        assert ExecutionService(clock=lambda: T0).cancel_execution(execution_id, reason='customer opted out')

        execution = db.session.get(Execution, execution_id)
        assert execution.status == 'CANCELLED'
        assert execution.completed_at == T0
        assert [s.status for s in steps_for(execution_id)] == ['SKIPPED']

        assert dispatcher.run_once(T0 + timedelta(hours=1))['claimed'] == 0
        assert fake_sender.sent == []

    def test_cancel_twice_is_noop(self, evaluator, customer, three_step_sequence):
        execution_id = start(evaluator, customer)
        service = ExecutionService(clock=lambda: T0)

        assert service.cancel_execution(execution_id) is True
        assert service.cancel_execution(execution_id) is False
        assert db.session.get(Execution, execution_id).completed_at == T0

    def test_cancel_unknown_execution(self, db_session):
        with pytest.raises(EntityNotFoundError):
            ExecutionService().cancel_execution('missing')

    def test_terminal_execution_is_never_dispatched(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        execution_id = start(evaluator, customer)
        _, claimed = dispatcher.claim_due_steps(T0)

        # Execution finished by someone else after the claim
        execution = db.session.get(Execution, execution_id)
        execution.mark_cancelled(T0)
        db.session.commit()

        assert dispatcher.dispatch_step(claimed[0], now=T0) == 'skipped'
        assert fake_sender.sent == []
        assert steps_for(execution_id)[0].status == 'SKIPPED'

    def test_cancel_during_send(self, app, evaluator, metrics, customer, three_step_sequence):
        class CancellingSender(FakeSender):
            def send(self, channel, recipient, subject, body):
                result = super().send(channel, recipient, subject, body)
                ExecutionService(clock=lambda: T0).cancel_execution(execution_id)
                return result

        sender = CancellingSender()
        dispatcher = Dispatcher(sender=sender, metrics=metrics)
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['ignored'] == 1
        assert db.session.get(Execution, execution_id).status == 'CANCELLED'
        assert [s.status for s in steps_for(execution_id)] == ['SKIPPED']


class TestClaiming:

    def test_second_claim_gets_nothing(self, dispatcher, evaluator, customer, three_step_sequence):
        start(evaluator, customer)

        token, first = dispatcher.claim_due_steps(T0)
        assert token is not None
        assert len(first) == 1
        assert db.session.get(StepExecution, first[0]).status == 'CLAIMED'

        other = Dispatcher(sender=FakeSender())
        assert other.claim_due_steps(T0) == (None, [])

    def test_claim_skips_rows_claimed_concurrently(self, dispatcher, evaluator, customer, three_step_sequence):
        execution_id = start(evaluator, customer)
        step = steps_for(execution_id)[0]

        # Another dispatcher wins the race between our SELECT and UPDATE
        real_execute = db.session.execute

        def claim_first(statement, *args, **kwargs):
            if getattr(statement, 'is_update', False) and 'claim_token' in str(statement):
                StepExecution.query.filter_by(id=step.id).update(
                    {'status': 'CLAIMED', 'claim_token': 'other-dispatcher', 'claimed_at': T0},
                    synchronize_session=False
                )
            return real_execute(statement, *args, **kwargs)

        with patch.object(db.session, 'execute', side_effect=claim_first):
            token, claimed = dispatcher.claim_due_steps(T0)

        assert claimed == []
        assert db.session.get(StepExecution, step.id).claim_token == 'other-dispatcher'

    def test_batch_size(self, db_session, app, evaluator, fake_sender, organization, make_sequence):
        make_sequence([('EMAIL', 0)])
        for index in range(3):
            customer = Customer(organization_id=organization.id, name=f"Customer {index}",
                                email=f"c{index}@example.com")
            db_session.add(customer)
            db_session.commit()
            evaluator.on_service_completed(customer)

        dispatcher = Dispatcher(sender=fake_sender, batch_size=2)
        assert dispatcher.run_once(T0)['claimed'] == 2
        assert dispatcher.run_once(T0)['claimed'] == 1

    def test_claimed_step_ignored_with_wrong_token(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        start(evaluator, customer)
        _, claimed = dispatcher.claim_due_steps(T0)

        assert dispatcher.dispatch_step(claimed[0], now=T0, claim_token='stale-token') == 'ignored'
        assert fake_sender.sent == []

    def test_worker_pool(self, dispatcher, evaluator, organization, make_sequence, db_session):
        make_sequence([('EMAIL', 0)])
        for index in range(3):
            customer = Customer(organization_id=organization.id, name=f"Customer {index}",
                                email=f"c{index}@example.com")
            db_session.add(customer)
            db_session.commit()
            evaluator.on_service_completed(customer)

        dispatcher.max_workers = 3
        with patch.object(Dispatcher, '_dispatch_safely', return_value='sent') as dispatch:
            summary = dispatcher.run_once(T0)

        assert summary['claimed'] == 3
        assert summary['sent'] == 3
        assert dispatch.call_count == 3


class TestRecoverySweep:

    def test_stale_claim_is_requeued(self, dispatcher, evaluator, fake_sender, metrics, customer, three_step_sequence):
        execution_id = start(evaluator, customer)
        dispatcher.claim_due_steps(T0)  # the worker dies before sending

        assert dispatcher.recover_stale_claims(T0 + timedelta(minutes=10)) == 0
        assert steps_for(execution_id)[0].status == 'CLAIMED'

        summary = dispatcher.run_once(T0 + timedelta(minutes=16))
        assert summary['recovered'] == 1
        assert summary['sent'] == 1
        assert steps_for(execution_id)[0].status == 'SENT'
        assert len(fake_sender.sent) == 1
        assert metrics.count(CLAIMS_RECOVERED) == 1

    def test_dispatch_error_leaves_claim_for_sweep(self, dispatcher, evaluator, customer, three_step_sequence):
        execution_id = start(evaluator, customer)

        with patch('src.services.automation.dispatcher.build_context', side_effect=RuntimeError("boom")):
            assert dispatcher.run_once(T0)['error'] == 1

        step = steps_for(execution_id)[0]
        assert step.status == 'CLAIMED'
        assert dispatcher.recover_stale_claims(T0 + timedelta(minutes=16)) == 1


class TestSkips:

    def test_missing_recipient_skips_and_advances(self, db_session, dispatcher, evaluator, fake_sender, customer, make_sequence):
        make_sequence([('SMS', 0), ('EMAIL', 24)])
        customer.phone = None
        db_session.commit()
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['skipped'] == 1

        steps = steps_for(execution_id)
        assert [(s.step_number, s.status) for s in steps] == [(1, 'SKIPPED'), (2, 'PENDING')]
        assert steps[1].scheduled_at == T0 + timedelta(hours=24)
        assert fake_sender.sent == []

    def test_missing_recipient_on_last_step_completes(self, db_session, dispatcher, evaluator, customer, make_sequence):
        make_sequence([('SMS', 0)])
        customer.phone = ''
        db_session.commit()
        execution_id = start(evaluator, customer)

        dispatcher.run_once(T0)
        assert db.session.get(Execution, execution_id).status == 'COMPLETED'

    def test_inactive_step_is_skipped(self, db_session, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        three_step_sequence.get_step(1).is_active = False
        db_session.commit()
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['skipped'] == 1
        assert [s.status for s in steps_for(execution_id)] == ['SKIPPED', 'PENDING']
        assert fake_sender.sent == []

    def test_missing_customer_fails_execution(self, db_session, dispatcher, evaluator, customer, three_step_sequence):
        execution_id = start(evaluator, customer)
        execution = db.session.get(Execution, execution_id)
        execution.customer_id = 'deleted-customer'
        db_session.commit()

        assert dispatcher.run_once(T0)['failed'] == 1
        assert db.session.get(Execution, execution_id).status == 'FAILED'


class TestDelivery:

    def test_synchronous_delivery(self, dispatcher, evaluator, fake_sender, customer, three_step_sequence):
        fake_sender.delivered = True
        execution_id = start(evaluator, customer)

        assert dispatcher.run_once(T0)['delivered'] == 1
        first = steps_for(execution_id)[0]
        assert first.status == 'DELIVERED'
        assert first.sent_at == T0

    def test_delivery_callback(self, dispatcher, evaluator, customer, three_step_sequence):
        execution_id = start(evaluator, customer)
        dispatcher.run_once(T0)
        service = ExecutionService()

        step = service.mark_delivered_by_message_id('msg-1', now=T0 + timedelta(minutes=2))
        assert step.status == 'DELIVERED'
        assert step.sent_at == T0

        # Repeated callbacks are harmless
        assert service.mark_delivered_by_message_id('msg-1').status == 'DELIVERED'
        assert steps_for(execution_id)[0].message_id == 'msg-1'

    def test_delivery_callback_unknown_message(self, db_session):
        with pytest.raises(EntityNotFoundError):
            ExecutionService().mark_delivered_by_message_id('nope')


class TestEarlyStop:

    def test_completed_review_stops_execution(self, db_session, dispatcher, fake_sender, customer, review_request, make_sequence):
        make_sequence([('EMAIL', 0), ('SMS', 48)], trigger_type=None, is_default=True, name='Default')
        execution = ExecutionService(clock=lambda: T0).start_default_sequence(review_request)
        dispatcher.run_once(T0)

        review_request.status = 'COMPLETED'
        db_session.commit()

        assert dispatcher.run_once(T0 + timedelta(hours=48))['stopped'] == 1

        execution = db.session.get(Execution, execution.id)
        assert execution.status == 'COMPLETED'
        assert [s.status for s in steps_for(execution.id)] == ['SENT', 'SKIPPED']
        assert len(fake_sender.sent) == 1

    def test_review_completed_trigger_is_not_stopped(self, dispatcher, evaluator, fake_sender, customer, review_request, make_sequence, db_session):
        make_sequence([('EMAIL', 0)], trigger_type=TriggerType.REVIEW_COMPLETED, name='Thank you')
        review_request.status = 'COMPLETED'
        db_session.commit()

        evaluator.on_review_request_completed(review_request)
        assert dispatcher.run_once(T0)['sent'] == 1


class TestExecutionStats:

    def test_stats(self, dispatcher, evaluator, customer, make_sequence):
        make_sequence([('EMAIL', 0), ('SMS', 24)])
        start(evaluator, customer)
        dispatcher.run_once(T0)

        stats = ExecutionService().get_execution_stats(now=T0 + timedelta(hours=25))

        assert stats['executions']['ACTIVE'] == 1
        assert stats['executions']['COMPLETED'] == 0
        assert stats['steps']['SENT'] == 1
        assert stats['steps']['PENDING'] == 1
        assert stats['steps_due'] == 1
