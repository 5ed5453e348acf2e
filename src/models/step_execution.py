import uuid
from datetime import datetime
from typing import Optional

from src.models import db
from src.services.automation.state_machine import (
    StepStatus,
    is_step_successful,
    is_step_terminal,
    require_step_transition,
    step_status,
)


class StepExecution(db.Model):
    """One scheduled message inside an execution.

    A retry is a new row for the same step_number with attempt + 1; the
    failed attempt keeps its FAILED status and error message.
    """
    __tablename__ = 'step_executions'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = db.Column(db.String(36), db.ForeignKey('executions.id'), nullable=False, index=True)
    step_number = db.Column(db.Integer, nullable=False)
    attempt = db.Column(db.Integer, nullable=False, default=1)
    scheduled_at = db.Column(db.DateTime, nullable=False, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)  # Set once the step reaches SENT or DELIVERED
    status = db.Column(db.String(20), nullable=False, default=StepStatus.PENDING.value, index=True)
    error_message = db.Column(db.Text, nullable=True)  # Only populated for FAILED
    message_id = db.Column(db.String(255), nullable=True, index=True)  # Provider message id
    claim_token = db.Column(db.String(36), nullable=True, index=True)
    claimed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def status_enum(self) -> StepStatus:
        return step_status(self.status or StepStatus.PENDING)

    @property
    def is_pending(self) -> bool:
        return self.status_enum is StepStatus.PENDING

    @property
    def is_claimed(self) -> bool:
        return self.status_enum is StepStatus.CLAIMED

    @property
    def is_successful(self) -> bool:
        return is_step_successful(self.status_enum)

    @property
    def is_finished(self) -> bool:
        return is_step_terminal(self.status_enum)

    @property
    def has_failed(self) -> bool:
        return self.status_enum is StepStatus.FAILED

    def is_due(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.is_pending and self.scheduled_at is not None and self.scheduled_at <= now

    def mark_sent(self, now: Optional[datetime] = None, message_id: Optional[str] = None):
        self._transition(StepStatus.SENT)
        if self.sent_at is None:
            self.sent_at = now or datetime.utcnow()
        if message_id:
            self.message_id = message_id

    def mark_delivered(self, now: Optional[datetime] = None, message_id: Optional[str] = None):
        self._transition(StepStatus.DELIVERED)
        if self.sent_at is None:
            self.sent_at = now or datetime.utcnow()
        if message_id:
            self.message_id = message_id

    def mark_failed(self, reason: str):
        self._transition(StepStatus.FAILED)
        self.error_message = reason

    def mark_skipped(self):
        self._transition(StepStatus.SKIPPED)

    def _transition(self, target: StepStatus):
        self.status = require_step_transition(self.status_enum, target).value

    def to_dict(self):
        return {
            'id': str(self.id) if self.id else None,
            'execution_id': str(self.execution_id),
            'step_number': self.step_number,
            'attempt': self.attempt or 1,
            'scheduled_at': self.scheduled_at.isoformat() if self.scheduled_at else None,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
            'status': self.status,
            'error_message': self.error_message,
            'message_id': self.message_id,
            'claimed_at': self.claimed_at.isoformat() if self.claimed_at else None
        }

    def __repr__(self):
        return f'<StepExecution {self.step_number}#{self.attempt or 1} {self.status}>'
