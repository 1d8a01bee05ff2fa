"""
Notification Service.

Email side of workflow notifications: the daily task digest sent through
Flask-Mail, plus retention cleanup of read in-app notifications. Email
failures are logged and reported through the return value, never raised.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app, render_template_string
from flask_mail import Message

from ..models import Notification, db

log = logging.getLogger(__name__)


DIGEST_TEXT_TEMPLATE = """Hello {{ user_name }},

You have {{ pending_tasks }} pending task(s){% if overdue_tasks %}, {{ overdue_tasks }} of them overdue{% endif %}.
{% for task in tasks %}
- {{ task.name }}{% if task.due_date %} (due {{ task.due_date.strftime('%Y-%m-%d %H:%M') }}){% endif %}
{%- endfor %}

{{ system_url }}
"""

DIGEST_HTML_TEMPLATE = """<p>Hello {{ user_name }},</p>
<p>You have <strong>{{ pending_tasks }}</strong> pending task(s){% if overdue_tasks %},
<strong>{{ overdue_tasks }}</strong> of them overdue{% endif %}.</p>
<ul>
{% for task in tasks %}<li>{{ task.name }}{% if task.due_date %} (due {{ task.due_date.strftime('%Y-%m-%d %H:%M') }}){% endif %}</li>
{% endfor %}</ul>
<p><a href="{{ system_url }}">Open your task list</a></p>
"""


class NotificationService:
    """
    Email notifications for workflow participants.

    :param mail: Flask-Mail instance (defaults to the app extension)
    """

    def __init__(self, mail=None):
        self._mail = mail

    @property
    def mail(self):
        if self._mail is not None:
            return self._mail
        return current_app.extensions.get('mail')

    def send_digest_email(self, user, digest: Dict[str, Any]) -> bool:
        """
        Send the task digest to ``user``.

        :param user: recipient with ``email`` and ``email_notifications``
        :param digest: ``pending_tasks``, ``overdue_tasks`` counts and ``tasks``
        :return: True if the email was handed to the mail server
        """
        if not getattr(user, 'email_notifications', False):
            return False
        if self.mail is None:
            log.warning("Flask-Mail is not configured, digest email not sent")
            return False

        try:
            context = {
                'user_name': getattr(user, 'full_name', None) or user.username,
                'pending_tasks': digest.get('pending_tasks', 0),
                'overdue_tasks': digest.get('overdue_tasks', 0),
                'tasks': digest.get('tasks', []),
                'system_url': current_app.config.get('WORKFLOW_FRONTEND_URL', 'http://localhost:3000'),
            }
            msg = Message(
                subject=f"Daily Task Digest - {context['pending_tasks']} pending tasks",
                sender=current_app.config.get('MAIL_DEFAULT_SENDER'),
                recipients=[user.email],
            )
            msg.body = render_template_string(DIGEST_TEXT_TEMPLATE, **context)
            msg.html = render_template_string(DIGEST_HTML_TEMPLATE, **context)

            self.mail.send(msg)
            log.info(f"Digest email sent to user {user.id}")
            return True

        except Exception as e:
            log.error(f"Failed to send digest email to user {user.id}: {e}")
            return False

    def unread_for(self, user_id: int, limit: int = 50) -> List[Notification]:
        return (
            db.session.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .order_by(Notification.created_at.desc())
            .limit(limit)
            .all()
        )

    def mark_read(self, notification_id: int, user_id: int) -> Optional[Notification]:
        notification = db.session.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            return None
        notification.mark_read()
        db.session.commit()
        return notification

    def delete_read_before(self, cutoff: datetime) -> int:
        """Delete read notifications created before ``cutoff``; the caller commits."""
        deleted = (
            db.session.query(Notification)
            .filter(Notification.is_read.is_(True), Notification.created_at < cutoff)
            .delete(synchronize_session=False)
        )
        log.info(f"Notifications cleaned up: {deleted}")
        return deleted
