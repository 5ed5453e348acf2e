import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON

from src.models import db
from src.services.automation.errors import InvalidTransitionError
from src.services.automation.state_machine import (
    ExecutionStatus,
    execution_status,
    is_execution_terminal,
    require_execution_transition,
)


class Execution(db.Model):
    """One run of a sequence for one triggering entity."""
    __tablename__ = 'executions'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sequence_id = db.Column(db.String(36), db.ForeignKey('sequences.id'), nullable=False, index=True)
    organization_id = db.Column(db.String(36), nullable=False, index=True)
    customer_id = db.Column(db.String(36), nullable=False, index=True)
    triggering_entity_id = db.Column(db.String(36), nullable=False, index=True)
    triggering_entity_type = db.Column(db.String(50), nullable=False, default='customer')  # customer, review_request
    trigger_type = db.Column(db.String(100), nullable=True)  # e.g. SERVICE_COMPLETED, WEBHOOK_jobber
    trigger_data = db.Column(JSON, nullable=True)  # Snapshot of the event data at trigger time
    current_step = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(20), nullable=False, default=ExecutionStatus.ACTIVE.value)
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)  # Set iff status is terminal
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index('ix_executions_customer_sequence_status', 'customer_id', 'sequence_id', 'status'),
    )

    @property
    def status_enum(self) -> ExecutionStatus:
        return execution_status(self.status or ExecutionStatus.ACTIVE)

    @property
    def is_active(self) -> bool:
        return self.status_enum is ExecutionStatus.ACTIVE

    @property
    def is_finished(self) -> bool:
        return is_execution_terminal(self.status_enum)

    def mark_completed(self, now: Optional[datetime] = None) -> bool:
        return self._finish(ExecutionStatus.COMPLETED, now)

    def mark_failed(self, now: Optional[datetime] = None) -> bool:
        return self._finish(ExecutionStatus.FAILED, now)

    def mark_cancelled(self, now: Optional[datetime] = None) -> bool:
        return self._finish(ExecutionStatus.CANCELLED, now)

    def _finish(self, target: ExecutionStatus, now: Optional[datetime]) -> bool:
        """Move to a terminal status. Returns False (and changes nothing) if already terminal."""
        if self.is_finished:
            return False
        self.status = require_execution_transition(self.status_enum, target).value
        self.completed_at = now or datetime.utcnow()
        return True

    def advance(self) -> int:
        """Move the step pointer forward by one."""
        if self.is_finished:
            raise InvalidTransitionError('execution', self.status, 'advance')
        self.current_step = (self.current_step or 1) + 1
        return self.current_step

    def step_executions(self) -> List['StepExecution']:
        """All step executions of this run, oldest schedule first."""
        from src.models.step_execution import StepExecution
        return StepExecution.query.filter_by(execution_id=self.id).order_by(
            StepExecution.scheduled_at.asc(),
            StepExecution.created_at.asc()
        ).all()

    @classmethod
    def find_active_for(cls, customer_id: str, sequence_id: str) -> Optional['Execution']:
        return cls.query.filter_by(
            customer_id=customer_id,
            sequence_id=sequence_id,
            status=ExecutionStatus.ACTIVE.value
        ).first()

    @classmethod
    def find_active_for_entity(cls, triggering_entity_id: str, sequence_id: Optional[str] = None) -> Optional['Execution']:
        query = cls.query.filter_by(
            triggering_entity_id=triggering_entity_id,
            status=ExecutionStatus.ACTIVE.value
        )
        if sequence_id:
            query = query.filter_by(sequence_id=sequence_id)
        return query.first()

    @classmethod
    def count_for(cls, customer_id: str, sequence_id: str) -> int:
        return cls.query.filter_by(customer_id=customer_id, sequence_id=sequence_id).count()

    def to_dict(self, include_steps: bool = False):
        data = {
            'id': str(self.id) if self.id else None,
            'sequence_id': str(self.sequence_id),
            'organization_id': str(self.organization_id),
            'customer_id': str(self.customer_id),
            'triggering_entity_id': str(self.triggering_entity_id),
            'triggering_entity_type': self.triggering_entity_type,
            'trigger_type': self.trigger_type,
            'trigger_data': self.trigger_data,
            'current_step': self.current_step,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None
        }
        if include_steps:
            data['steps'] = [step.to_dict() for step in self.step_executions()]
        return data

    def __repr__(self):
        return f'<Execution {self.id} step={self.current_step} {self.status}>'
