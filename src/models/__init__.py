# Import db from extensions to use the same instance
from src.extensions import db

# Import all models to ensure they are registered with SQLAlchemy
from src.models.organization import Organization
from src.models.business import Business
from src.models.customer import Customer
from src.models.review_request import ReviewRequest
from src.models.sequence import SequenceDefinition, StepTemplate, Channel, TriggerType
from src.models.execution import Execution
from src.models.step_execution import StepExecution
from src.models.execution_event import ExecutionEvent
from src.models.metric_counter import MetricCounter

__all__ = [
    'db', 'Organization', 'Business', 'Customer', 'ReviewRequest',
    'SequenceDefinition', 'StepTemplate', 'Channel', 'TriggerType',
    'Execution', 'StepExecution', 'ExecutionEvent', 'MetricCounter'
]
