"""
Collaborators consumed by the engine.

Template repository, user directory, history sink and notification sink,
each with a SQLAlchemy-backed default. The sinks add rows to the current
session so they commit together with the state change they describe.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..const import TemplateStatus
from ..models import Notification, ProcessHistory, ProcessTemplate, User, db
from ..template import TemplateGraph

log = logging.getLogger(__name__)

TEMPLATE_CACHE_SIZE = 128


class TemplateRepository:
    """Loads template graphs by id."""

    def find_by_id(self, template_id: int) -> Optional[TemplateGraph]:
        raise NotImplementedError


class UserDirectory:
    """Read-only view of workflow users."""

    def get(self, user_id: int) -> Optional[Any]:
        raise NotImplementedError

    def find_active_by_role(self, *roles: str) -> List[Any]:
        raise NotImplementedError

    def find_digest_recipients(self) -> List[Any]:
        raise NotImplementedError


class HistorySink:
    def append(self, entry: Dict[str, Any]):
        raise NotImplementedError


class NotificationSink:
    def create(self, notification: Dict[str, Any]):
        raise NotImplementedError


class SQLATemplateRepository(TemplateRepository):
    """
    Parses templates stored in ``wf_process_template``.

    Only non-draft templates are cached: their steps can no longer be
    edited, so the id alone identifies the graph. The cache is shared by
    request and scheduler threads and keeps the ``max_size`` most
    recently used graphs.
    """

    def __init__(self, max_size: int = TEMPLATE_CACHE_SIZE):
        self.max_size = max_size
        self._cache: "OrderedDict[int, TemplateGraph]" = OrderedDict()
        self._lock = threading.Lock()

    def find_by_id(self, template_id: int) -> Optional[TemplateGraph]:
        with self._lock:
            graph = self._cache.get(template_id)
            if graph is not None:
                self._cache.move_to_end(template_id)
                return graph

        template = db.session.get(ProcessTemplate, template_id)
        if template is None:
            return None
        graph = template.to_graph()
        if template.status != TemplateStatus.DRAFT.value:
            with self._lock:
                self._cache[template_id] = graph
                while len(self._cache) > self.max_size:
                    self._cache.popitem(last=False)
        return graph


class SQLAUserDirectory(UserDirectory):

    def get(self, user_id: int) -> Optional[User]:
        if user_id is None:
            return None
        return db.session.get(User, user_id)

    def find_active_by_role(self, *roles: str) -> List[User]:
        return (
            db.session.query(User)
            .filter(User.role.in_(roles), User.is_active.is_(True))
            .order_by(User.id)
            .all()
        )

    def find_digest_recipients(self) -> List[User]:
        return (
            db.session.query(User)
            .filter(User.is_active.is_(True), User.email_notifications.is_(True))
            .order_by(User.id)
            .all()
        )


class SQLAHistorySink(HistorySink):

    def append(self, entry: Dict[str, Any]) -> ProcessHistory:
        row = ProcessHistory(
            process_instance_id=entry['process_instance_id'],
            step_instance_id=entry.get('step_instance_id'),
            action=entry['action'],
            performed_by=entry.get('performed_by'),
            from_status=entry.get('from_status'),
            to_status=entry.get('to_status'),
            comments=entry.get('comments'),
            details=entry.get('metadata') or {},
            timestamp=entry.get('timestamp') or datetime.utcnow(),
        )
        db.session.add(row)
        return row


class SQLANotificationSink(NotificationSink):

    def create(self, notification: Dict[str, Any]) -> Notification:
        row = Notification(
            user_id=notification['user_id'],
            type=notification['type'],
            title=notification['title'],
            message=notification['message'],
            related_process=notification.get('related_process'),
            related_step=notification.get('related_step'),
            priority=notification.get('priority', 'medium'),
        )
        db.session.add(row)
        return row
