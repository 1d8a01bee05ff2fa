"""
Workflow side-effect services.
"""

from .notification_service import NotificationService
from .outbox import Outbox, OutboxDispatcher
from .template_service import TemplateService

__all__ = ['NotificationService', 'Outbox', 'OutboxDispatcher', 'TemplateService']
