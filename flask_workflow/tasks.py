"""
Celery driver for the workflow jobs.

For deployments that run Celery beat instead of the in-process
scheduler: the same job bodies as celery tasks, plus a beat schedule
mirroring the default job schedules.
"""

import logging
import os
from datetime import timedelta
from typing import Any, Dict

from celery import Celery
from celery.schedules import crontab, schedule
from kombu import Exchange, Queue

from .manager import get_workflow
from .scheduler.jobs import JOB_SCHEDULES

log = logging.getLogger(__name__)

celery = Celery('flask_workflow')

WORKFLOW_QUEUE = 'workflow'


def beat_entry(spec):
    if isinstance(spec, (schedule, crontab)):
        return spec
    if isinstance(spec, timedelta):
        return spec
    if isinstance(spec, (int, float)):
        return timedelta(seconds=spec)
    return crontab(**spec)


def build_beat_schedule(overrides: Dict[str, Any] = None) -> Dict[str, Dict[str, Any]]:
    overrides = overrides or {}
    return {
        name.replace('_', '-'): {
            'task': f'flask_workflow.tasks.{name}',
            'schedule': beat_entry(overrides.get(name, spec)),
            'options': {'queue': WORKFLOW_QUEUE},
        }
        for name, spec in JOB_SCHEDULES.items()
    }


class CeleryConfig:
    """Celery configuration for the workflow jobs."""

    broker_url = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
    result_backend = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

    task_serializer = 'json'
    result_serializer = 'json'
    accept_content = ['json']
    timezone = 'UTC'
    enable_utc = True

    task_always_eager = os.environ.get('CELERY_ALWAYS_EAGER', 'false').lower() == 'true'
    task_eager_propagates = True
    task_acks_late = True
    worker_hijack_root_logger = False

    task_routes = {
        'flask_workflow.tasks.*': {'queue': WORKFLOW_QUEUE},
    }
    task_queues = (
        Queue('default', Exchange('default'), routing_key='default'),
        Queue(WORKFLOW_QUEUE, Exchange(WORKFLOW_QUEUE), routing_key='workflow.jobs'),
    )
    task_default_queue = 'default'

    beat_schedule = build_beat_schedule()


def create_celery_app(app=None) -> Celery:
    """Configure the workflow celery app, binding tasks to ``app``'s context."""
    celery.config_from_object(CeleryConfig)

    if app:
        class ContextTask(celery.Task):
            """Make celery tasks work with Flask app context."""
            def __call__(self, *args, **kwargs):
                with app.app_context():
                    return self.run(*args, **kwargs)

        celery.Task = ContextTask
        celery.conf.timezone = app.config.get('WORKFLOW_TIMEZONE', 'UTC')
        celery.conf.beat_schedule = build_beat_schedule(app.config.get('WORKFLOW_JOB_SCHEDULES'))
        app.extensions['celery'] = celery

    log.info("Workflow celery app configured")
    return celery


def run_job(name: str) -> Dict[str, Any]:
    try:
        return get_workflow().jobs.get(name)()
    except Exception as e:
        log.error(f"Workflow job {name} failed: {e}")
        return {'success': False, 'error': str(e)}


@celery.task(name='flask_workflow.tasks.check_overdue_tasks')
def check_overdue_tasks():
    return run_job('check_overdue_tasks')


@celery.task(name='flask_workflow.tasks.process_task_escalations')
def process_task_escalations():
    return run_job('process_task_escalations')


@celery.task(name='flask_workflow.tasks.cleanup_old_data')
def cleanup_old_data():
    return run_job('cleanup_old_data')


@celery.task(name='flask_workflow.tasks.send_notification_digest')
def send_notification_digest():
    return run_job('send_notification_digest')


@celery.task(name='flask_workflow.tasks.perform_health_check')
def perform_health_check():
    return run_job('perform_health_check')


@celery.task(name='flask_workflow.tasks.drain_outbox')
def drain_outbox():
    return run_job('drain_outbox')
