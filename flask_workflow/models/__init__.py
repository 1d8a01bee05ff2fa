"""
Workflow data models.
"""

from .sqla import db, JSONType, Model
from .process_models import ProcessHistory, ProcessInstance, ProcessTemplate, StepInstance
from .notification_models import Notification, OutboxEvent
from .user_models import User

__all__ = [
    'db',
    'Model',
    'JSONType',
    'ProcessTemplate',
    'ProcessInstance',
    'StepInstance',
    'ProcessHistory',
    'Notification',
    'OutboxEvent',
    'User',
]
