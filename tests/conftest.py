"""
Pytest configuration and fixtures for automation engine tests.

This module provides:
- Test database setup and teardown
- Flask test client
- A fake message sender and in-memory metrics
- Common test data (organization, business, customer, sequences)
"""

import pytest
from datetime import datetime

from src.main import create_app
from src.extensions import db
from src.models import (
    Business,
    Customer,
    Organization,
    ReviewRequest,
    SequenceDefinition,
    StepTemplate,
    TriggerType,
)
from src.services.automation.dispatcher import Dispatcher
from src.services.automation.errors import DeliveryError
from src.services.automation.metrics import InMemoryMetricsSink
from src.services.automation.scheduling import RetryPolicy
from src.services.automation.senders import MessageSender, SendResult
from src.services.automation.trigger_evaluator import TriggerEvaluator

# Fixed reference time for scheduling assertions
T0 = datetime(2024, 3, 4, 9, 0, 0)


class FakeSender(MessageSender):
    """Records every send; can be told to fail or to confirm delivery."""

    def __init__(self):
        self.sent = []
        self.error = None
        self.delivered = False
        self._counter = 0

    def send(self, channel, recipient, subject, body):
        self.sent.append({
            'channel': channel,
            'recipient': recipient,
            'subject': subject,
            'body': body
        })
        if self.error is not None:
            raise self.error
        self._counter += 1
        return SendResult(
            message_id=f"msg-{self._counter}",
            status='DELIVERED' if self.delivered else 'SENT'
        )

    def fail_with(self, message="provider unavailable", retryable=True):
        self.error = DeliveryError(message, retryable=retryable)


@pytest.fixture
def app():
    """Create and configure a new app instance for each test."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()


@pytest.fixture
def db_session(app):
    """Database session for tests."""
    yield db.session


@pytest.fixture
def metrics():
    return InMemoryMetricsSink()


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def dispatcher(app, fake_sender, metrics):
    return Dispatcher(
        sender=fake_sender,
        metrics=metrics,
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=300, max_backoff_seconds=21600),
        batch_size=50,
        max_workers=1,
        claim_timeout_seconds=900,
        app=app,
        clock=lambda: T0
    )


@pytest.fixture
def evaluator(app, metrics):
    return TriggerEvaluator(metrics=metrics, clock=lambda: T0)


@pytest.fixture
def organization(db_session):
    organization = Organization(name="Acme Plumbing Group")
    db_session.add(organization)
    db_session.commit()
    return organization


@pytest.fixture
def business(db_session, organization):
    business = Business(organization_id=organization.id, name="Acme Plumbing", industry="plumbing")
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture
def customer(db_session, organization, business):
    customer = Customer(
        organization_id=organization.id,
        business_id=business.id,
        name="Jane Doe",
        email="jane@example.com",
        phone="+15550100",
        service_type="drain_cleaning",
        created_at=datetime(2024, 1, 1)
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def review_request(db_session, customer, business):
    review_request = ReviewRequest(
        customer_id=customer.id,
        business_id=business.id,
        delivery_method='EMAIL',
        status='SENT'
    )
    db_session.add(review_request)
    db_session.commit()
    return review_request


@pytest.fixture
def make_sequence(db_session, organization):
    """Factory for sequences; steps are (channel, delay_hours) pairs."""

    def _make(steps, trigger_type=TriggerType.SERVICE_COMPLETED, conditions=None,
              trigger_config=None, name="Follow-up", is_default=False, created_at=None):
        sequence = SequenceDefinition(
            organization_id=organization.id,
            name=name,
            is_default=is_default,
            is_active=True,
            trigger_type=trigger_type.value if trigger_type else None,
            trigger_config=trigger_config,
            conditions=conditions,
            created_at=created_at or datetime.utcnow()
        )
        for channel, delay_hours in steps:
            sequence.add_step(StepTemplate(
                channel=channel,
                delay_hours=delay_hours,
                subject_template="How did we do, {{first_name}}?" if channel == 'EMAIL' else None,
                body_template="Hi {{first_name}}, thanks for choosing {{business_name}}!"
            ))
        db_session.add(sequence)
        db_session.commit()
        return sequence

    return _make


@pytest.fixture
def three_step_sequence(make_sequence):
    return make_sequence([('EMAIL', 0), ('SMS', 24), ('EMAIL', 72)])


@pytest.fixture
def json_headers():
    """Headers for JSON requests."""
    return {
        'Content-Type': 'application/json'
    }
