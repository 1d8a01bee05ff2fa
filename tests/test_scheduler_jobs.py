from datetime import datetime, timedelta
from unittest.mock import patch

from flask_mail import Mail

from flask_workflow.models import (
    Notification, OutboxEvent, ProcessHistory, ProcessInstance, StepInstance, db
)

from tests.base import WorkflowTestCase


class JobsTestCase(WorkflowTestCase):

    def setUp(self):
        super().setUp()
        self.jobs = self.workflow.jobs
        self.alice = self.create_user('alice')
        self.manager = self.create_user('manager', role='manager')
        self.admin = self.create_user('admin', role='admin')

    def overdue_step(self, hours=5, escalated=False):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')
        step.due_date = self.hours_ago(hours)
        step.escalated = escalated
        db.session.commit()
        return step


class TestCheckOverdueTasks(JobsTestCase):

    def test_flags_and_notifies_assignee(self):
        step = self.overdue_step()

        result = self.jobs.check_overdue_tasks()

        self.assertEqual(result, {'success': True, 'overdue': 1, 'processed': 1})
        self.assertTrue(db.session.get(StepInstance, step.id).escalated)
        overdue = self.outbox_payloads('task_overdue')
        self.assertEqual(len(overdue), 1)
        self.assertEqual(overdue[0]['user_id'], self.alice.id)
        self.assertEqual(overdue[0]['message'], 'Task "Review" is overdue')
        self.assertEqual(overdue[0]['priority'], 'high')

    def test_second_run_finds_nothing(self):
        self.overdue_step()
        self.jobs.check_overdue_tasks()
        self.assertEqual(self.jobs.check_overdue_tasks(),
                         {'success': True, 'overdue': 0, 'processed': 0})
        self.assertEqual(len(self.outbox_payloads('task_overdue')), 1)


class TestProcessTaskEscalations(JobsTestCase):

    def test_cascade_up_to_max_level(self):
        step = self.overdue_step(escalated=True)

        for level in (1, 2, 3):
            self.assertEqual(self.jobs.process_task_escalations(),
                             {'success': True, 'escalated': 1})
            self.assertEqual(db.session.get(StepInstance, step.id).escalation_level, level)

        self.assertEqual(self.jobs.process_task_escalations(),
                         {'success': True, 'escalated': 0})

        escalated = self.outbox_payloads('task_escalated')
        self.assertEqual(len(escalated), 6)
        self.assertEqual({p['user_id'] for p in escalated}, {self.manager.id, self.admin.id})
        self.assertEqual(escalated[-1]['title'], 'Task Escalated (Level 3)')
        self.assertEqual(escalated[-1]['priority'], 'urgent')

        rows = (
            db.session.query(ProcessHistory)
            .filter_by(step_instance_id=step.id, action='step_escalated')
            .order_by(ProcessHistory.id)
            .all()
        )
        self.assertEqual([r.details['escalation_level'] for r in rows], [1, 2, 3])
        self.assertEqual(rows[0].details['notified'], [self.manager.id, self.admin.id])

    def test_grace_period(self):
        step = self.overdue_step(hours=1, escalated=True)
        self.assertEqual(self.jobs.process_task_escalations()['escalated'], 0)
        result = self.jobs.process_task_escalations(now=datetime.utcnow() + timedelta(hours=2))
        self.assertEqual(result['escalated'], 1)
        self.assertEqual(db.session.get(StepInstance, step.id).escalation_level, 1)

    def test_unflagged_steps_are_left_to_overdue_check(self):
        self.overdue_step(escalated=False)
        self.assertEqual(self.jobs.process_task_escalations()['escalated'], 0)


class TestCleanupOldData(JobsTestCase):

    def setUp(self):
        super().setUp()
        finished = self.start(self.two_step_template(self.alice.id), self.alice, name='Finished')
        self.engine.complete_step(self.live_step(finished, 'review').id, self.alice.id)
        running = self.start(self.two_step_template(self.alice.id), self.alice, name='Running')
        self.finished_id = finished.id
        self.running_id = running.id

        self.workflow.dispatcher.drain()
        notification = db.session.query(Notification).order_by(Notification.id).first()
        self.workflow.notification_service.mark_read(notification.id, self.alice.id)

    def test_nothing_is_old_yet(self):
        result = self.jobs.cleanup_old_data()
        self.assertEqual(result['notifications_removed'], 0)
        self.assertEqual(result['outbox_events_removed'], 0)
        self.assertEqual(result['processes_removed'], 0)

    def test_removes_expired_data(self):
        result = self.jobs.cleanup_old_data(now=datetime.utcnow() + timedelta(days=100))

        self.assertTrue(result['success'])
        self.assertEqual(result['notifications_removed'], 1)
        self.assertEqual(result['outbox_events_removed'], 3)
        self.assertEqual(result['processes_removed'], 1)
        self.assertEqual(result['steps_removed'], 2)
        self.assertGreater(result['history_removed'], 0)

        self.assertIsNone(db.session.get(ProcessInstance, self.finished_id))
        self.assertIsNotNone(db.session.get(ProcessInstance, self.running_id))
        self.assertEqual(
            db.session.query(StepInstance).filter_by(process_instance_id=self.finished_id).count(), 0
        )
        self.assertEqual(
            db.session.query(ProcessHistory).filter_by(process_instance_id=self.finished_id).count(), 0
        )
        self.assertGreater(
            db.session.query(ProcessHistory).filter_by(process_instance_id=self.running_id).count(), 0
        )
        self.assertEqual(db.session.query(Notification).count(), 2)
        self.assertEqual(db.session.query(OutboxEvent).count(), 0)


class TestNotificationDigest(JobsTestCase):

    CONFIG = {'MAIL_DEFAULT_SENDER': 'workflow@example.com'}

    def setUp(self):
        super().setUp()
        self.mail = Mail(self.app)
        self.create_user('quiet', email_notifications=False)

    def test_digest_for_users_with_tasks(self):
        self.overdue_step()
        self.start(self.two_step_template(self.alice.id), self.alice)

        with self.mail.record_messages() as outbox:
            result = self.jobs.send_notification_digest()

        self.assertEqual(result, {'success': True, 'skipped': False, 'sent': 1})
        self.assertEqual(len(outbox), 1)
        message = outbox[0]
        self.assertEqual(message.recipients, ['alice@example.com'])
        self.assertEqual(message.sender, 'workflow@example.com')
        self.assertEqual(message.subject, 'Daily Task Digest - 2 pending tasks')
        self.assertIn('1 of them overdue', message.body)

    def test_digest_counts(self):
        self.overdue_step()
        with patch.object(self.workflow.notification_service, 'send_digest_email',
                          return_value=True) as send:
            self.jobs.send_notification_digest()

        send.assert_called_once()
        user, digest = send.call_args[0]
        self.assertEqual(user.id, self.alice.id)
        self.assertEqual(digest['pending_tasks'], 1)
        self.assertEqual(digest['overdue_tasks'], 1)
        self.assertEqual(len(digest['tasks']), 1)

    def test_digest_task_limit(self):
        self.app.config['WORKFLOW_DIGEST_TASK_LIMIT'] = 2
        for _ in range(3):
            self.start(self.two_step_template(self.alice.id), self.alice)
        with patch.object(self.workflow.notification_service, 'send_digest_email',
                          return_value=True) as send:
            self.jobs.send_notification_digest()
        digest = send.call_args[0][1]
        self.assertEqual(digest['pending_tasks'], 3)
        self.assertEqual(len(digest['tasks']), 2)

    def test_disabled(self):
        self.app.config['WORKFLOW_EMAIL_NOTIFICATIONS'] = False
        self.overdue_step()
        with self.mail.record_messages() as outbox:
            result = self.jobs.send_notification_digest()
        self.assertEqual(result, {'success': True, 'skipped': True, 'sent': 0})
        self.assertEqual(outbox, [])


class TestHealthCheck(JobsTestCase):

    def test_reports_stuck_processes(self):
        stuck = self.start(self.two_step_template(), self.alice, name='Stuck')
        fresh = self.start(self.two_step_template(), self.alice, name='Fresh')
        db.session.query(ProcessInstance).filter_by(id=stuck.id).update(
            {ProcessInstance.updated_at: self.hours_ago(30)}, synchronize_session=False
        )
        db.session.commit()

        result = self.jobs.perform_health_check()

        self.assertEqual(result, {'success': True, 'total_processes': 2,
                                  'stuck_processes': [stuck.id]})
        self.assertNotIn(fresh.id, result['stuck_processes'])
        alerts = self.outbox_payloads('system_notification')
        self.assertEqual([a['user_id'] for a in alerts], [self.admin.id])
        self.assertEqual(alerts[0]['message'], 'Found 1 potentially stuck processes')

    def test_healthy(self):
        self.start(self.two_step_template(), self.alice)
        result = self.jobs.perform_health_check()
        self.assertEqual(result['stuck_processes'], [])
        self.assertEqual(self.outbox_payloads('system_notification'), [])


class TestDrainOutboxJob(JobsTestCase):

    def test_drain(self):
        self.start(self.two_step_template(self.alice.id), self.alice)
        self.assertEqual(self.jobs.drain_outbox(),
                         {'success': True, 'delivered': 1, 'failed': 0})
        self.assertEqual(db.session.query(Notification).filter_by(user_id=self.alice.id).count(), 1)

    def test_unknown_job(self):
        with self.assertRaises(KeyError):
            self.jobs.get('reticulate_splines')
        self.assertEqual(self.jobs.get('drain_outbox'), self.jobs.drain_outbox)
