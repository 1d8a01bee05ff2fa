"""
Notification and outbox models.
"""

import logging
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import validates

from ..const import NotificationPriority, NotificationType, OutboxStatus
from .sqla import JSONType, Model

log = logging.getLogger(__name__)


class Notification(Model):
    """In-app notification delivered to a single user."""

    __tablename__ = 'wf_notification'
    __table_args__ = (
        Index('ix_wf_notification_user_read', 'user_id', 'is_read'),
        Index('ix_wf_notification_created', 'created_at'),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    type = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    related_process = Column(Integer)
    related_step = Column(Integer)
    priority = Column(String(20), default=NotificationPriority.MEDIUM.value, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @validates('type')
    def validate_type(self, key, value):
        valid_types = [t.value for t in NotificationType]
        if value not in valid_types:
            raise ValueError(f"Invalid notification type: {value}")
        return value

    @validates('priority')
    def validate_priority(self, key, value):
        valid_priorities = [p.value for p in NotificationPriority]
        if value not in valid_priorities:
            raise ValueError(f"Invalid notification priority: {value}")
        return value

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.utcnow()

    def __repr__(self):
        return f'<Notification {self.type} -> {self.user_id}>'


class OutboxEvent(Model):
    """
    Side effect queued in the same transaction as a state change.

    Drained by ``OutboxDispatcher``; failed deliveries keep their error
    and are retried until the attempt budget is spent.
    """

    __tablename__ = 'wf_outbox_event'
    __table_args__ = (
        Index('ix_wf_outbox_status_created', 'status', 'created_at'),
    )

    id = Column(Integer, primary_key=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(String(20), default=OutboxStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    delivered_at = Column(DateTime)

    def mark_delivered(self):
        self.status = OutboxStatus.DELIVERED.value
        self.delivered_at = datetime.utcnow()
        self.last_error = None

    def mark_attempt_failed(self, error: str, max_attempts: int):
        self.attempts = (self.attempts or 0) + 1
        self.last_error = error
        if self.attempts >= max_attempts:
            self.status = OutboxStatus.FAILED.value

    def __repr__(self):
        return f'<OutboxEvent {self.event_type} ({self.status}, attempts={self.attempts})>'
