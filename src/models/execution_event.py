import uuid
from datetime import datetime
from src.models import db
from sqlalchemy import JSON


class ExecutionEvent(db.Model):
    __tablename__ = 'execution_events'
    
    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    execution_id = db.Column(db.String(36), db.ForeignKey('executions.id'), nullable=False, index=True)
    step_execution_id = db.Column(db.String(36), nullable=True)
    event_type = db.Column(db.String(50), nullable=False)
    # Event types: execution_started, step_scheduled, step_sent, step_delivered, step_failed,
    # step_retry_scheduled, step_skipped, execution_completed, execution_failed, execution_cancelled
    timestamp = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    meta_json = db.Column(JSON, nullable=True)  # Step number, error details, message id, etc.
    
    def to_dict(self):
        return {
            'id': str(self.id),
            'execution_id': str(self.execution_id),
            'step_execution_id': str(self.step_execution_id) if self.step_execution_id else None,
            'event_type': self.event_type,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'meta_json': self.meta_json
        }
    
    def __repr__(self):
        return f'<ExecutionEvent {self.event_type} for Execution {self.execution_id}>'
