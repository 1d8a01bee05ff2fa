"""
Flask integration for the workflow engine.

``Workflow`` wires the engine, outbox, notification service, template
service and scheduler for one Flask app, installs the configuration
defaults, the error handler and the ``flask workflow`` CLI group.
"""

import logging
from typing import Any, Dict

from flask import current_app, jsonify

from .engine import (
    AssignmentStrategy, EscalationTargetStrategy, SQLANotificationSink, WorkflowEngine
)
from .exceptions import WorkflowError
from .models import db
from .scheduler import WorkflowJobs, create_scheduler
from .services import NotificationService, Outbox, OutboxDispatcher, TemplateService

log = logging.getLogger(__name__)

CONFIG_DEFAULTS: Dict[str, Any] = {
    'WORKFLOW_TIMEZONE': 'UTC',
    'WORKFLOW_ESCALATION_ROLES': ('manager', 'admin'),
    'WORKFLOW_ESCALATION_GRACE_HOURS': 2,
    'WORKFLOW_MAX_ESCALATION_LEVEL': 3,
    'WORKFLOW_NOTIFICATION_RETENTION_DAYS': 30,
    'WORKFLOW_PROCESS_RETENTION_DAYS': 90,
    'WORKFLOW_STUCK_PROCESS_HOURS': 24,
    'WORKFLOW_EMAIL_NOTIFICATIONS': True,
    'WORKFLOW_DIGEST_TASK_LIMIT': 10,
    'WORKFLOW_FRONTEND_URL': 'http://localhost:3000',
    'WORKFLOW_OUTBOX_EAGER': False,
    'WORKFLOW_OUTBOX_MAX_ATTEMPTS': 5,
    'WORKFLOW_OUTBOX_BATCH_SIZE': 100,
    'WORKFLOW_SCHEDULER_AUTOSTART': False,
    'WORKFLOW_JOB_SCHEDULES': {},
}


class Workflow:
    """
    Workflow extension.

    Usage::

        app = Flask(__name__)
        workflow = Workflow(app)
        workflow.engine.start_process(instance_id, user_id)

    or with an application factory, ``Workflow()`` followed by
    ``workflow.init_app(app)``.
    """

    def __init__(self, app=None, mail=None,
                 assignment_strategy: AssignmentStrategy = None,
                 escalation_strategy: EscalationTargetStrategy = None):
        self.mail = mail
        self.assignment_strategy = assignment_strategy
        self.escalation_strategy = escalation_strategy

        self.engine = None
        self.outbox = None
        self.dispatcher = None
        self.notification_service = None
        self.templates = None
        self.jobs = None
        self.scheduler = None

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        for key, value in CONFIG_DEFAULTS.items():
            app.config.setdefault(key, value)

        if 'sqlalchemy' not in app.extensions:
            db.init_app(app)

        self.outbox = Outbox()
        self.dispatcher = OutboxDispatcher(SQLANotificationSink(), self.outbox)
        self.engine = WorkflowEngine(
            outbox=self.outbox,
            dispatcher=self.dispatcher,
            assignment_strategy=self.assignment_strategy,
            escalation_strategy=self.escalation_strategy,
        )
        self.notification_service = NotificationService(self.mail)
        self.templates = TemplateService()
        self.jobs = WorkflowJobs(self.engine, self.notification_service, self.dispatcher)
        self.scheduler = create_scheduler(app, self.jobs)

        app.register_error_handler(WorkflowError, handle_workflow_error)

        from .cli import workflow as workflow_cli
        app.cli.add_command(workflow_cli)

        app.extensions['workflow'] = self

        if app.config['WORKFLOW_SCHEDULER_AUTOSTART']:
            self.scheduler.start()

        log.info("Workflow extension initialized")


def handle_workflow_error(error: WorkflowError):
    return jsonify(error.to_dict()), error.status_code


def get_workflow() -> Workflow:
    """The ``Workflow`` extension of the current app."""
    try:
        return current_app.extensions['workflow']
    except KeyError:
        raise RuntimeError("Workflow extension is not initialized on this app")
