"""
Notification outbox.

The engine enqueues notifications as ``OutboxEvent`` rows inside the
transaction of the state change; the dispatcher delivers them later, so
a delivery failure is recorded and retried instead of being lost.
"""

import logging
from typing import Any, Dict, List, Optional

from flask import current_app

from ..const import NotificationPriority, OutboxStatus
from ..models import OutboxEvent, db

log = logging.getLogger(__name__)

NOTIFICATION_EVENT = "notification"


class Outbox:
    """Appends outbox events to the current session; the caller commits."""

    def enqueue(self, event_type: str, payload: Dict[str, Any]) -> OutboxEvent:
        event = OutboxEvent(event_type=event_type, payload=payload,
                            status=OutboxStatus.PENDING.value, attempts=0)
        db.session.add(event)
        return event

    def notify(self, user_id: Optional[int], type: str, title: str, message: str,
               related_process: int = None, related_step: int = None,
               priority: str = NotificationPriority.MEDIUM.value) -> Optional[OutboxEvent]:
        if user_id is None:
            log.debug(f"Skipping '{type}' notification without recipient")
            return None
        return self.enqueue(NOTIFICATION_EVENT, {
            'user_id': user_id,
            'type': type,
            'title': title,
            'message': message,
            'related_process': related_process,
            'related_step': related_step,
            'priority': priority,
        })

    def pending(self, limit: int = 100) -> List[OutboxEvent]:
        return (
            db.session.query(OutboxEvent)
            .filter(OutboxEvent.status == OutboxStatus.PENDING.value)
            .order_by(OutboxEvent.id)
            .limit(limit)
            .all()
        )


class OutboxDispatcher:
    """
    Delivers pending outbox events to their sinks.

    Each event commits on its own; a failing sink rolls back only that
    event, which stays pending with ``last_error`` set until
    ``max_attempts`` is reached.
    """

    def __init__(self, notification_sink, outbox: Outbox = None, max_attempts: int = None):
        self.notification_sink = notification_sink
        self.outbox = outbox or Outbox()
        self._max_attempts = max_attempts
        self.handlers = {NOTIFICATION_EVENT: self._deliver_notification}

    @property
    def max_attempts(self) -> int:
        if self._max_attempts is not None:
            return self._max_attempts
        return current_app.config.get('WORKFLOW_OUTBOX_MAX_ATTEMPTS', 5)

    def register_handler(self, event_type: str, handler):
        self.handlers[event_type] = handler

    def drain(self, limit: int = None) -> Dict[str, int]:
        """Deliver up to ``limit`` pending events, committing each one."""
        if limit is None:
            limit = current_app.config.get('WORKFLOW_OUTBOX_BATCH_SIZE', 100)

        stats = {'delivered': 0, 'failed': 0}
        event_ids = [event.id for event in self.outbox.pending(limit)]
        for event_id in event_ids:
            event = db.session.get(OutboxEvent, event_id)
            handler = self.handlers.get(event.event_type)
            try:
                if handler is None:
                    raise LookupError(f"No handler for outbox event type '{event.event_type}'")
                handler(event.payload or {})
                event.mark_delivered()
                db.session.commit()
                stats['delivered'] += 1
            except Exception as e:
                db.session.rollback()
                log.error(f"Outbox delivery failed for event {event_id}: {e}")
                event = db.session.get(OutboxEvent, event_id)
                event.mark_attempt_failed(str(e), self.max_attempts)
                db.session.commit()
                stats['failed'] += 1

        if stats['delivered'] or stats['failed']:
            log.info(f"Outbox drained: {stats['delivered']} delivered, {stats['failed']} failed")
        return stats

    def _deliver_notification(self, payload: Dict[str, Any]):
        self.notification_sink.create(payload)
