"""
Scheduled workflow jobs.

Job bodies for the overdue check, the escalation cascade, data cleanup,
the email digest, the health check and outbox delivery. Each one can be
called directly with an explicit ``now`` and returns a result dict; the
schedulers call them without arguments.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List

from flask import current_app
from sqlalchemy import func

from ..const import (
    LIVE_STEP_STATUSES, HistoryAction, NotificationPriority, NotificationType,
    OutboxStatus, ProcessStatus, UserRole
)
from ..engine.assignment import AllEscalationTargetsStrategy, EscalationTargetStrategy
from ..models import OutboxEvent, ProcessHistory, ProcessInstance, StepInstance, db

log = logging.getLogger(__name__)

# Default crontab fields per job, evaluated in WORKFLOW_TIMEZONE
JOB_SCHEDULES = {
    'check_overdue_tasks': {'minute': '*/15'},
    'process_task_escalations': {'minute': '*/30'},
    'cleanup_old_data': {'minute': 0, 'hour': 2},
    'send_notification_digest': {'minute': 0, 'hour': 9, 'day_of_week': 'mon-fri'},
    'perform_health_check': {'minute': '*/5'},
    'drain_outbox': {'minute': '*'},
}


class WorkflowJobs:
    """
    Periodic maintenance of running workflows.

    :param engine: the ``WorkflowEngine``; its user directory, history sink
        and outbox are reused
    :param notification_service: sends the digest emails
    :param dispatcher: ``OutboxDispatcher`` drained by ``drain_outbox``
    """

    def __init__(self, engine, notification_service, dispatcher,
                 cascade_strategy: EscalationTargetStrategy = None):
        self.engine = engine
        self.notification_service = notification_service
        self.dispatcher = dispatcher
        self.cascade_strategy = cascade_strategy or AllEscalationTargetsStrategy()

    @property
    def names(self) -> List[str]:
        return list(JOB_SCHEDULES)

    def get(self, name: str):
        if name not in JOB_SCHEDULES:
            raise KeyError(f"Unknown workflow job: {name}")
        return getattr(self, name)

    @staticmethod
    def _now(now: datetime = None) -> datetime:
        return now or datetime.utcnow()

    def check_overdue_tasks(self, now: datetime = None) -> Dict[str, Any]:
        """Flag overdue steps and tell their assignees, once per step."""
        now = self._now(now)
        overdue = self.engine.find_overdue_steps(now, escalated=False)
        if not overdue:
            log.debug("No overdue tasks found")
            return {'success': True, 'overdue': 0, 'processed': 0}

        log.info(f"Found {len(overdue)} overdue tasks")
        processed = 0
        for step in overdue:
            step_id = step.id
            try:
                step.escalated = True
                self.engine.outbox.notify(
                    user_id=step.assigned_to,
                    type=NotificationType.TASK_OVERDUE.value,
                    title="Task Overdue",
                    message=f'Task "{step.name}" is overdue',
                    related_process=step.process_instance_id,
                    related_step=step_id,
                    priority=NotificationPriority.HIGH.value,
                )
                db.session.commit()
                processed += 1
                log.info(f"Processed overdue task: {step_id}")
            except Exception as e:
                db.session.rollback()
                log.error(f"Failed to process overdue task {step_id}: {e}")

        return {'success': True, 'overdue': len(overdue), 'processed': processed}

    def process_task_escalations(self, now: datetime = None) -> Dict[str, Any]:
        """
        Raise the escalation level of steps still overdue after the grace period.

        The level is capped at ``WORKFLOW_MAX_ESCALATION_LEVEL``; steps at
        the cap are left alone.
        """
        now = self._now(now)
        config = current_app.config
        grace = timedelta(hours=config.get('WORKFLOW_ESCALATION_GRACE_HOURS', 2))
        max_level = config.get('WORKFLOW_MAX_ESCALATION_LEVEL', 3)
        threshold = now - grace

        steps = (
            db.session.query(StepInstance)
            .filter(
                StepInstance.status.in_(LIVE_STEP_STATUSES),
                StepInstance.escalated.is_(True),
                StepInstance.due_date < threshold,
                StepInstance.escalation_level < max_level,
            )
            .order_by(StepInstance.due_date, StepInstance.id)
            .all()
        )
        if not steps:
            log.debug("No tasks need escalation")
            return {'success': True, 'escalated': 0}

        log.info(f"Found {len(steps)} tasks for escalation")
        roles = config.get('WORKFLOW_ESCALATION_ROLES', ('manager', 'admin'))
        escalated = 0
        for step in steps:
            step_id = step.id
            try:
                level = min((step.escalation_level or 0) + 1, max_level)
                targets = self.cascade_strategy.select(
                    step, self.engine.users.find_active_by_role(*roles)
                )
                reason = "Task still overdue after escalation"
                step.record_escalation(level, targets[0].id if targets else None, reason, at=now)

                self.engine.history.append({
                    'process_instance_id': step.process_instance_id,
                    'step_instance_id': step_id,
                    'action': HistoryAction.STEP_ESCALATED.value,
                    'performed_by': None,
                    'comments': reason,
                    'metadata': {'escalation_level': level,
                                 'notified': [t.id for t in targets]},
                    'timestamp': now,
                })
                for target in targets:
                    self.engine.outbox.notify(
                        user_id=target.id,
                        type=NotificationType.TASK_ESCALATED.value,
                        title=f"Task Escalated (Level {level})",
                        message=f'Task "{step.name}" has been escalated due to being overdue',
                        related_process=step.process_instance_id,
                        related_step=step_id,
                        priority=NotificationPriority.URGENT.value,
                    )
                db.session.commit()
                escalated += 1
                log.info(f"Escalated task {step_id} to level {level}")
            except Exception as e:
                db.session.rollback()
                log.error(f"Failed to escalate task {step_id}: {e}")

        return {'success': True, 'escalated': escalated}

    def cleanup_old_data(self, now: datetime = None) -> Dict[str, Any]:
        """Delete old read notifications, delivered outbox events and completed processes."""
        now = self._now(now)
        config = current_app.config
        notification_cutoff = now - timedelta(days=config.get('WORKFLOW_NOTIFICATION_RETENTION_DAYS', 30))
        process_cutoff = now - timedelta(days=config.get('WORKFLOW_PROCESS_RETENTION_DAYS', 90))
        log.info("Starting data cleanup...")

        try:
            notifications = self.notification_service.delete_read_before(notification_cutoff)
            outbox_events = (
                db.session.query(OutboxEvent)
                .filter(OutboxEvent.status == OutboxStatus.DELIVERED.value,
                        OutboxEvent.created_at < notification_cutoff)
                .delete(synchronize_session=False)
            )

            old_processes = (
                db.session.query(ProcessInstance)
                .filter(ProcessInstance.status == ProcessStatus.COMPLETED.value,
                        ProcessInstance.end_date < process_cutoff)
                .all()
            )
            process_ids = [p.id for p in old_processes]
            history = 0
            steps = 0
            if process_ids:
                history = (
                    db.session.query(ProcessHistory)
                    .filter(ProcessHistory.process_instance_id.in_(process_ids))
                    .delete(synchronize_session=False)
                )
            for process in old_processes:
                steps += len(process.steps)
                db.session.delete(process)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        result = {
            'success': True,
            'notifications_removed': notifications,
            'outbox_events_removed': outbox_events,
            'processes_removed': len(process_ids),
            'steps_removed': steps,
            'history_removed': history,
        }
        log.info(f"Data cleanup completed: {result}")
        return result

    def send_notification_digest(self, now: datetime = None) -> Dict[str, Any]:
        """Email each opted-in user a summary of their pending and overdue tasks."""
        if not current_app.config.get('WORKFLOW_EMAIL_NOTIFICATIONS', True):
            log.info("Email notifications disabled, skipping notification digest")
            return {'success': True, 'skipped': True, 'sent': 0}

        now = self._now(now)
        limit = current_app.config.get('WORKFLOW_DIGEST_TASK_LIMIT', 10)
        sent = 0
        for user in self.engine.users.find_digest_recipients():
            try:
                pending = (
                    db.session.query(StepInstance)
                    .filter(StepInstance.assigned_to == user.id,
                            StepInstance.status.in_(LIVE_STEP_STATUSES))
                    .order_by(StepInstance.created_at, StepInstance.id)
                    .all()
                )
                if not pending:
                    continue
                overdue = [t for t in pending if t.due_date and t.due_date < now]
                if self.notification_service.send_digest_email(user, {
                    'pending_tasks': len(pending),
                    'overdue_tasks': len(overdue),
                    'tasks': pending[:limit],
                }):
                    sent += 1
            except Exception as e:
                log.error(f"Failed to send digest to user {user.id}: {e}")

        log.info(f"Notification digest sent to {sent} user(s)")
        return {'success': True, 'skipped': False, 'sent': sent}

    def perform_health_check(self, now: datetime = None) -> Dict[str, Any]:
        """Report active processes without activity; admins are told, nothing is changed."""
        now = self._now(now)
        hours = current_app.config.get('WORKFLOW_STUCK_PROCESS_HOURS', 24)
        cutoff = now - timedelta(hours=hours)

        total = db.session.query(func.count(ProcessInstance.id)).scalar()
        stuck = (
            db.session.query(ProcessInstance.id)
            .filter(ProcessInstance.status == ProcessStatus.ACTIVE.value,
                    ProcessInstance.updated_at < cutoff)
            .order_by(ProcessInstance.id)
            .all()
        )
        stuck_ids = [row.id for row in stuck]

        if stuck_ids:
            log.warning(f"Found {len(stuck_ids)} potentially stuck processes")
            for admin in self.engine.users.find_active_by_role(UserRole.ADMIN.value):
                self.engine.outbox.notify(
                    user_id=admin.id,
                    type=NotificationType.SYSTEM_NOTIFICATION.value,
                    title="System Health Alert",
                    message=f"Found {len(stuck_ids)} potentially stuck processes",
                    priority=NotificationPriority.HIGH.value,
                )
            db.session.commit()

        log.debug(f"Health check completed: {total} processes, {len(stuck_ids)} stuck")
        return {'success': True, 'total_processes': total, 'stuck_processes': stuck_ids}

    def drain_outbox(self, now: datetime = None) -> Dict[str, Any]:
        stats = self.dispatcher.drain()
        return dict(stats, success=True)
