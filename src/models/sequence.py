import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON

from src.models import db
from src.services.automation.errors import SequenceValidationError


class Channel(str, Enum):
    EMAIL = 'EMAIL'
    SMS = 'SMS'


class TriggerType(str, Enum):
    CUSTOMER_CREATED = 'CUSTOMER_CREATED'
    SERVICE_COMPLETED = 'SERVICE_COMPLETED'
    REVIEW_COMPLETED = 'REVIEW_COMPLETED'
    WEBHOOK = 'WEBHOOK'


def describe_delay(delay_hours: Optional[int]) -> str:
    """Render a delay in hours the way the dashboard shows it."""
    hours = delay_hours or 0
    if hours == 0:
        return "Immediately"
    if hours < 24:
        return f"{hours} hour{'s' if hours > 1 else ''}"
    days = hours // 24
    return f"{days} day{'s' if days > 1 else ''}"


class StepTemplate(db.Model):
    __tablename__ = 'sequence_steps'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sequence_id = db.Column(db.String(36), db.ForeignKey('sequences.id'), nullable=False, index=True)
    step_number = db.Column(db.Integer, nullable=False)  # 1-based, contiguous within the sequence
    delay_hours = db.Column(db.Integer, nullable=False, default=0)  # Hours after the previous step
    channel = db.Column(db.String(10), nullable=False)  # EMAIL, SMS
    subject_template = db.Column(db.String(255), nullable=True)
    body_template = db.Column(db.Text, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def requires_subject(self) -> bool:
        return self.channel == Channel.EMAIL.value

    @property
    def delay_description(self) -> str:
        return describe_delay(self.delay_hours)

    @property
    def enabled(self) -> bool:
        return self.is_active is not False

    def validate(self) -> List[str]:
        """Return the list of problems with this step (empty when valid)."""
        errors = []
        label = f"Step {self.step_number}" if self.step_number else "Step"

        if self.step_number is not None and self.step_number < 1:
            errors.append(f"{label}: step_number must be >= 1")

        if self.channel not in (Channel.EMAIL.value, Channel.SMS.value):
            errors.append(f"{label}: Invalid channel '{self.channel}'")

        if self.delay_hours is not None and self.delay_hours < 0:
            errors.append(f"{label}: delay_hours cannot be negative")

        if not self.body_template or not self.body_template.strip():
            errors.append(f"{label}: Missing body_template")

        has_subject = bool(self.subject_template and self.subject_template.strip())
        if self.requires_subject and not has_subject:
            errors.append(f"{label}: EMAIL steps require a subject_template")
        elif not self.requires_subject and has_subject:
            errors.append(f"{label}: subject_template is only allowed on EMAIL steps")

        return errors

    def to_dict(self):
        return {
            'id': str(self.id) if self.id else None,
            'sequence_id': str(self.sequence_id) if self.sequence_id else None,
            'step_number': self.step_number,
            'delay_hours': self.delay_hours or 0,
            'delay_description': self.delay_description,
            'channel': self.channel,
            'subject_template': self.subject_template,
            'body_template': self.body_template,
            'is_active': self.enabled
        }

    def __repr__(self):
        return f'<StepTemplate {self.step_number} {self.channel} +{self.delay_hours or 0}h>'


class SequenceDefinition(db.Model):
    """An organization's ordered outreach template and the trigger that starts it."""
    __tablename__ = 'sequences'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = db.Column(db.String(36), db.ForeignKey('organizations.id'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    trigger_type = db.Column(db.String(50), nullable=True, index=True)  # None = started explicitly only
    trigger_config = db.Column(JSON, nullable=True)  # e.g. {"webhook_keys": ["jobber", "zapier"]}
    conditions = db.Column(JSON, nullable=True)  # Eligibility conditions
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Steps are configuration owned by the sequence; executions reference the sequence by id only
    steps = db.relationship(
        'StepTemplate',
        backref='sequence',
        lazy=True,
        order_by='StepTemplate.step_number',
        cascade='all, delete-orphan'
    )

    @property
    def step_count(self) -> int:
        return len(self.steps) if self.steps else 0

    def has_steps(self) -> bool:
        return self.step_count > 0

    def add_step(self, template: StepTemplate) -> StepTemplate:
        """Append a step. Its number must be exactly step_count + 1."""
        expected = self.step_count + 1
        if template.step_number is None:
            template.step_number = expected
        elif template.step_number != expected:
            raise SequenceValidationError(
                f"Step number {template.step_number} out of order, expected {expected}"
            )

        errors = template.validate()
        if errors:
            raise SequenceValidationError(f"Invalid step {template.step_number}", errors)

        self.steps.append(template)
        return template

    def remove_step(self, step_number: int) -> StepTemplate:
        """Remove a step and renumber the ones after it so numbering stays dense."""
        template = self.get_step(step_number)
        if template is None:
            raise SequenceValidationError(f"Step {step_number} does not exist")

        self.steps.remove(template)
        for step in self.steps:
            if step.step_number > step_number:
                step.step_number -= 1
        return template

    def get_step(self, step_number: int) -> Optional[StepTemplate]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def is_final_step(self, step_number: int) -> bool:
        return step_number >= self.step_count

    @staticmethod
    def requires_subject(step: StepTemplate) -> bool:
        return step.requires_subject

    @classmethod
    def find_active_for_trigger(cls, organization_id: str, trigger_type) -> List['SequenceDefinition']:
        """Active sequences of an organization for a trigger, newest first."""
        value = trigger_type.value if isinstance(trigger_type, TriggerType) else trigger_type
        return cls.query.filter_by(
            organization_id=organization_id,
            trigger_type=value,
            is_active=True
        ).order_by(cls.created_at.desc()).all()

    @classmethod
    def find_default(cls, organization_id: str) -> Optional['SequenceDefinition']:
        return cls.query.filter_by(
            organization_id=organization_id,
            is_default=True,
            is_active=True
        ).order_by(cls.created_at.desc()).first()

    def to_dict(self, include_steps: bool = True):
        data = {
            'id': str(self.id) if self.id else None,
            'organization_id': str(self.organization_id),
            'name': self.name,
            'description': self.description,
            'is_default': bool(self.is_default),
            'is_active': self.is_active is not False,
            'trigger_type': self.trigger_type,
            'trigger_config': self.trigger_config,
            'conditions': self.conditions,
            'step_count': self.step_count,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
        if include_steps:
            data['steps'] = [step.to_dict() for step in self.steps]
        return data

    def __repr__(self):
        return f'<SequenceDefinition {self.name} ({self.step_count} steps)>'
