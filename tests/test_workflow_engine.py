import unittest
from datetime import datetime, timedelta

from flask_workflow.engine import SQLATemplateRepository
from flask_workflow.exceptions import (
    ForbiddenError, InvalidInputError, InvalidStateError, NotFoundError, StepNotCompletableError
)
from flask_workflow.models import ProcessInstance, StepInstance, db

from tests.base import WorkflowTestCase, end_step, user_step


class EngineTestCase(WorkflowTestCase):

    def setUp(self):
        super().setUp()
        self.alice = self.create_user('alice')
        self.bob = self.create_user('bob')
        self.manager = self.create_user('manager', role='manager')

    def three_step_template(self):
        return self.create_template(
            [user_step('review', self.alice.id, ['approve']),
             user_step('approve', self.bob.id, ['end']),
             end_step()],
            start_step='review',
        )

    def decision_template(self):
        return self.create_template(
            [user_step('decide', self.alice.id, [
                {'step_id': 'A', 'condition': 'approve'},
                {'step_id': 'B', 'condition': 'reject'},
            ], type='decision'),
             user_step('A', self.alice.id, ['end']),
             user_step('B', self.alice.id, ['end']),
             end_step()],
            start_step='decide',
        )

    def reload(self, instance):
        return db.session.get(ProcessInstance, instance.id)

    def steps_of(self, instance, step_id):
        return (
            db.session.query(StepInstance)
            .filter_by(process_instance_id=instance.id, step_id=step_id)
            .all()
        )


class TestStartProcess(EngineTestCase):

    def test_start_creates_start_step(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)

        self.assertEqual(instance.status, 'active')
        self.assertIsNotNone(instance.start_date)
        self.assertEqual(instance.current_steps, ['review'])

        live = [s for s in instance.steps if s.is_live]
        self.assertEqual(len(live), 1)
        self.assertEqual(live[0].step_id, 'review')
        self.assertEqual(live[0].status, 'pending')
        self.assertEqual(live[0].assigned_to, self.alice.id)
        self.assertEqual(self.history_actions(instance),
                         ['process_created', 'process_started', 'step_created'])

        assigned = self.outbox_payloads('task_assigned')
        self.assertEqual(len(assigned), 1)
        self.assertEqual(assigned[0]['user_id'], self.alice.id)
        self.assertEqual(assigned[0]['title'], 'New Task Assigned')
        self.assertEqual(assigned[0]['related_step'], live[0].id)

    def test_start_twice_fails(self):
        instance = self.start(self.two_step_template(), self.alice)
        with self.assertRaises(InvalidStateError):
            self.engine.start_process(instance.id, self.alice.id)
        self.assertEqual(len(self.reload(instance).steps), 1)

    def test_start_missing_instance(self):
        with self.assertRaises(NotFoundError):
            self.engine.start_process(999, self.alice.id)

    def test_create_requires_published_template(self):
        template = self.create_template([user_step('review', None, ['end']), end_step()],
                                        start_step='review', status='draft')
        with self.assertRaises(InvalidStateError):
            self.engine.create_process(template.id, self.alice.id, 'Draft')

    def test_malformed_due_date_is_rejected(self):
        template = self.two_step_template(self.alice.id)
        with self.assertRaises(InvalidInputError) as cm:
            self.engine.create_process(template.id, self.alice.id, 'Bad date',
                                       due_date='next tuesday')
        self.assertEqual(cm.exception.status_code, 400)
        self.assertEqual(db.session.query(ProcessInstance).count(), 0)

    def test_time_limit_sets_due_date(self):
        template = self.create_template(
            [user_step('review', self.alice.id, ['end'], time_limit_hours=24), end_step()],
            start_step='review',
        )
        before = datetime.utcnow()
        instance = self.start(template, self.alice)
        step = self.live_step(instance, 'review')
        self.assertGreaterEqual(step.due_date, before + timedelta(hours=24))
        self.assertLess(step.due_date, datetime.utcnow() + timedelta(hours=24, minutes=1))

    def test_service_task_runs_inline(self):
        template = self.create_template(
            [{'step_id': 'prepare', 'name': 'Prepare', 'type': 'service_task',
              'next_steps': [{'step_id': 'review'}]},
             user_step('review', self.alice.id, ['end']),
             end_step()],
            start_step='prepare',
        )
        instance = self.start(template, self.alice)

        prepare = self.steps_of(instance, 'prepare')[0]
        self.assertEqual(prepare.status, 'completed')
        self.assertEqual(prepare.completed_by, self.alice.id)
        self.assertEqual(instance.current_steps, ['review'])
        self.assertEqual(instance.completion_percentage, 50)


class TestCompleteStep(EngineTestCase):

    def test_two_step_template_completes_process(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')

        self.engine.complete_step(step.id, self.alice.id, form_data={'ok': True})

        instance = self.reload(instance)
        self.assertEqual(instance.status, 'completed')
        self.assertEqual(instance.completion_percentage, 100)
        self.assertEqual(instance.current_steps, [])
        self.assertIsNotNone(instance.end_date)
        self.assertFalse([s for s in instance.steps if s.is_live])

        step = db.session.get(StepInstance, step.id)
        self.assertEqual(step.status, 'completed')
        self.assertEqual(step.completed_by, self.alice.id)
        self.assertEqual(step.form_data, {'ok': True})
        self.assertEqual(self.steps_of(instance, 'end')[0].status, 'completed')

        self.assertIn('step_completed', self.history_actions(instance))
        self.assertEqual(self.history_actions(instance)[-1], 'process_completed')
        completed = self.outbox_payloads('process_completed')
        self.assertEqual([p['user_id'] for p in completed], [self.alice.id])

    def test_routes_to_next_step(self):
        instance = self.start(self.three_step_template(), self.alice)
        self.engine.complete_step(self.live_step(instance, 'review').id, self.alice.id)

        instance = self.reload(instance)
        self.assertEqual(instance.status, 'active')
        self.assertEqual(instance.current_steps, ['approve'])
        self.assertEqual(instance.completion_percentage, 50)
        self.assertEqual(self.live_step(instance, 'approve').assigned_to, self.bob.id)

    def test_other_user_is_forbidden(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')

        with self.assertRaises(ForbiddenError):
            self.engine.complete_step(step.id, self.bob.id)
        self.assertEqual(db.session.get(StepInstance, step.id).status, 'pending')

        self.engine.complete_step(step.id, self.alice.id)
        self.assertEqual(self.reload(instance).status, 'completed')

    def test_unassigned_step_can_be_completed_by_anyone(self):
        instance = self.start(self.two_step_template(), self.alice)
        self.engine.complete_step(self.live_step(instance, 'review').id, self.bob.id)
        self.assertEqual(self.reload(instance).status, 'completed')

    def test_completed_step_cannot_be_completed_again(self):
        instance = self.start(self.three_step_template(), self.alice)
        step = self.live_step(instance, 'review')
        self.engine.complete_step(step.id, self.alice.id)

        with self.assertRaises(StepNotCompletableError) as cm:
            self.engine.complete_step(step.id, self.alice.id)
        self.assertIsInstance(cm.exception, InvalidStateError)
        self.assertIsInstance(cm.exception, ForbiddenError)
        self.assertEqual(len(self.steps_of(instance, 'approve')), 1)

    def test_missing_step(self):
        with self.assertRaises(NotFoundError):
            self.engine.complete_step(999, self.alice.id)

    def test_decision_routing(self):
        template = self.decision_template()
        for decision, expected in (('approve', 'A'), ('reject', 'B'), ('unknown', 'A')):
            instance = self.start(template, self.alice, name=f'Decision {decision}')
            decide = self.live_step(instance, 'decide')
            self.engine.complete_step(decide.id, self.alice.id, decision=decision)

            instance = self.reload(instance)
            self.assertEqual(instance.current_steps, [expected])
            self.assertEqual([s.step_id for s in instance.steps if s.is_live], [expected])
            self.assertEqual(db.session.get(StepInstance, decide.id).variables,
                             {'decision': decision})

    def test_parallel_branches_cancelled_on_completion(self):
        template = self.create_template(
            [user_step('split', None, ['A', 'B']),
             user_step('A', None, ['end']),
             user_step('B', None, ['C']),
             user_step('C', None, ['end']),
             end_step()],
            start_step='split',
        )
        instance = self.start(template, self.alice)
        self.engine.complete_step(self.live_step(instance, 'split').id, self.alice.id)
        self.assertEqual(self.reload(instance).current_steps, ['A', 'B'])

        b = self.live_step(instance, 'B')
        self.engine.complete_step(self.live_step(instance, 'A').id, self.alice.id)

        instance = self.reload(instance)
        self.assertEqual(instance.status, 'completed')
        self.assertEqual(instance.current_steps, [])
        self.assertEqual(db.session.get(StepInstance, b.id).status, 'cancelled')

    def test_join_does_not_duplicate_live_step(self):
        template = self.create_template(
            [user_step('split', None, ['A', 'B']),
             user_step('A', None, ['C']),
             user_step('B', None, ['C']),
             user_step('C', None, ['end']),
             end_step()],
            start_step='split',
        )
        instance = self.start(template, self.alice)
        self.engine.complete_step(self.live_step(instance, 'split').id, self.alice.id)
        self.engine.complete_step(self.live_step(instance, 'A').id, self.alice.id)
        self.engine.complete_step(self.live_step(instance, 'B').id, self.alice.id)

        self.assertEqual(len(self.steps_of(instance, 'C')), 1)
        self.assertEqual(self.reload(instance).current_steps, ['C'])

    def test_suspended_process_rejects_completion(self):
        instance = self.start(self.two_step_template(), self.alice)
        self.engine.suspend_process(instance.id, self.alice.id, reason='waiting')
        step = self.live_step(instance, 'review')

        with self.assertRaises(InvalidStateError):
            self.engine.complete_step(step.id, self.alice.id)

        self.engine.resume_process(instance.id, self.alice.id)
        self.engine.complete_step(step.id, self.alice.id)
        self.assertEqual(self.reload(instance).status, 'completed')

    def test_resume_requires_suspended(self):
        instance = self.start(self.two_step_template(), self.alice)
        with self.assertRaises(InvalidStateError):
            self.engine.resume_process(instance.id, self.alice.id)


class TestCancelProcess(EngineTestCase):

    def test_cancel_active_process(self):
        instance = self.start(self.three_step_template(), self.alice)
        step = self.live_step(instance, 'review')
        self.engine.start_step(step.id, self.alice.id)

        self.engine.cancel_process(instance.id, self.alice.id, reason='No longer needed')

        instance = self.reload(instance)
        self.assertEqual(instance.status, 'cancelled')
        self.assertIsNotNone(instance.end_date)
        self.assertEqual(instance.current_steps, [])
        self.assertEqual([s.status for s in instance.steps], ['cancelled'])
        self.assertEqual(self.history_actions(instance)[-1], 'process_cancelled')

    def test_cancel_twice_fails(self):
        instance = self.start(self.two_step_template(), self.alice)
        self.engine.cancel_process(instance.id, self.alice.id)
        with self.assertRaises(InvalidStateError):
            self.engine.cancel_process(instance.id, self.alice.id)

    def test_cancel_requires_initiator_or_manager(self):
        instance = self.start(self.two_step_template(), self.alice)
        with self.assertRaises(ForbiddenError):
            self.engine.cancel_process(instance.id, self.bob.id)

        self.engine.cancel_process(instance.id, self.manager.id)
        notified = [p['user_id'] for p in self.outbox_payloads('process_cancelled')]
        self.assertEqual(notified, [self.alice.id])

    def test_cancelled_process_accepts_no_steps(self):
        instance = self.start(self.three_step_template(), self.alice)
        step = self.live_step(instance, 'review')
        self.engine.cancel_process(instance.id, self.alice.id)
        with self.assertRaises(InvalidStateError):
            self.engine.complete_step(step.id, self.alice.id)


class TestStepAdministration(EngineTestCase):

    def role_template(self):
        return self.create_template(
            [user_step('review', None, ['end'], assignee_type='role', assignees=['manager']),
             end_step()],
            start_step='review',
        )

    def test_start_step(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')

        with self.assertRaises(ForbiddenError):
            self.engine.start_step(step.id, self.bob.id)

        self.engine.start_step(step.id, self.alice.id)
        step = db.session.get(StepInstance, step.id)
        self.assertEqual(step.status, 'in_progress')
        self.assertIsNotNone(step.start_date)

        with self.assertRaises(InvalidStateError):
            self.engine.start_step(step.id, self.alice.id)

        self.engine.complete_step(step.id, self.alice.id)
        self.assertEqual(self.reload(instance).status, 'completed')

    def test_start_unassigned_step_binds_actor(self):
        instance = self.start(self.two_step_template(), self.alice)
        step = self.engine.start_step(self.live_step(instance, 'review').id, self.bob.id)
        self.assertEqual(step.assigned_to, self.bob.id)

    def test_claim_role_step(self):
        instance = self.start(self.role_template(), self.alice)
        step = self.live_step(instance, 'review')
        self.assertEqual(step.assigned_role, 'manager')
        self.assertIsNone(step.assigned_to)

        with self.assertRaises(ForbiddenError):
            self.engine.claim_step(step.id, self.alice.id)

        self.engine.claim_step(step.id, self.manager.id)
        step = db.session.get(StepInstance, step.id)
        self.assertEqual(step.status, 'in_progress')
        self.assertEqual(step.assigned_to, self.manager.id)

        with self.assertRaises(InvalidStateError):
            self.engine.claim_step(step.id, self.manager.id)

    def test_assign_step(self):
        instance = self.start(self.two_step_template(), self.alice)
        step = self.live_step(instance, 'review')

        self.engine.assign_step(step.id, self.manager.id, assigned_to=self.bob.id,
                                due_date='2030-01-01T12:00:00+02:00', comment='Please')

        step = db.session.get(StepInstance, step.id)
        self.assertEqual(step.assigned_to, self.bob.id)
        self.assertEqual(step.due_date, datetime(2030, 1, 1, 10, 0))
        self.assertEqual(self.outbox_payloads('task_assigned')[-1]['user_id'], self.bob.id)

    def test_assign_malformed_due_date(self):
        instance = self.start(self.two_step_template(), self.alice)
        step = self.live_step(instance, 'review')

        with self.assertRaises(InvalidInputError):
            self.engine.assign_step(step.id, self.manager.id, assigned_to=self.bob.id,
                                    due_date='2030-13-45')

        step = db.session.get(StepInstance, step.id)
        self.assertIsNone(step.assigned_to)
        self.assertIsNone(step.due_date)

    def test_assign_unknown_user(self):
        instance = self.start(self.two_step_template(), self.alice)
        with self.assertRaises(NotFoundError):
            self.engine.assign_step(self.live_step(instance, 'review').id, self.manager.id,
                                    assigned_to=999)

    def test_assign_requires_pending(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')
        self.engine.start_step(step.id, self.alice.id)
        with self.assertRaises(InvalidStateError):
            self.engine.assign_step(step.id, self.manager.id, assigned_to=self.bob.id)

    def test_reassign_in_progress_step(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')
        self.engine.start_step(step.id, self.alice.id)

        self.engine.reassign_step(step.id, self.manager.id, self.bob.id, reason='Vacation')

        step = db.session.get(StepInstance, step.id)
        self.assertEqual(step.status, 'pending')
        self.assertEqual(step.assigned_to, self.bob.id)
        self.assertIsNone(step.start_date)
        self.assertEqual(self.outbox_payloads('task_assigned')[-1]['user_id'], self.bob.id)
        self.assertEqual([p['user_id'] for p in self.outbox_payloads('task_reassigned')],
                         [self.alice.id])
        self.assertIn('step_reassigned', self.history_actions(instance))

    def test_reassign_completed_step_fails(self):
        instance = self.start(self.three_step_template(), self.alice)
        step = self.live_step(instance, 'review')
        self.engine.complete_step(step.id, self.alice.id)
        with self.assertRaises(InvalidStateError):
            self.engine.reassign_step(step.id, self.manager.id, self.bob.id)

    def test_escalate_step_up_to_cap(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')

        for level in (1, 2, 3):
            self.engine.escalate_step(step.id, self.alice.id, self.manager.id, reason='Stuck')
            step = db.session.get(StepInstance, step.id)
            self.assertEqual(step.escalation_level, level)
            self.assertTrue(step.escalated)

        with self.assertRaises(InvalidStateError):
            self.engine.escalate_step(step.id, self.alice.id, self.manager.id)
        step = db.session.get(StepInstance, step.id)
        self.assertEqual(step.escalation_level, 3)
        self.assertEqual([e['level'] for e in step.escalation_history], [1, 2, 3])

    def test_skip_step_continues_workflow(self):
        instance = self.start(self.three_step_template(), self.alice)
        step = self.live_step(instance, 'review')

        self.engine.skip_step(step.id, self.manager.id, reason='Not needed')

        self.assertEqual(db.session.get(StepInstance, step.id).status, 'skipped')
        instance = self.reload(instance)
        self.assertEqual(instance.current_steps, ['approve'])
        self.assertIn('step_skipped', self.history_actions(instance))

        with self.assertRaises(InvalidStateError):
            self.engine.skip_step(step.id, self.manager.id)

    def test_add_comment(self):
        instance = self.start(self.two_step_template(self.alice.id), self.alice)
        step = self.live_step(instance, 'review')

        self.engine.add_comment(step.id, self.bob.id, 'Looks good')
        self.engine.add_comment(step.id, self.bob.id, 'Internal note', is_internal=True)

        step = db.session.get(StepInstance, step.id)
        self.assertEqual([c['comment'] for c in step.comments], ['Looks good', 'Internal note'])
        self.assertEqual(step.comments[0]['user_id'], self.bob.id)
        self.assertEqual(len(self.outbox_payloads('comment_added')), 1)

    def test_update_variables(self):
        instance = self.start(self.two_step_template(), self.alice)
        self.engine.update_variables(instance.id, self.alice.id, {'amount': 10})
        self.engine.update_variables(instance.id, self.alice.id, {'currency': 'EUR'})
        self.assertEqual(self.reload(instance).variables, {'amount': 10, 'currency': 'EUR'})
        self.assertIn('variable_updated', self.history_actions(instance))


class TestStepHelpers(unittest.TestCase):

    def test_can_complete(self):
        step = StepInstance(status='pending', assigned_to=5)
        self.assertTrue(step.can_complete(5))
        self.assertFalse(step.can_complete(6))

        step.assigned_to = None
        self.assertTrue(step.can_complete(6))

        step.status = 'completed'
        self.assertFalse(step.can_complete(6))

    def test_is_overdue(self):
        now = datetime(2030, 1, 1, 12, 0)
        step = StepInstance(status='in_progress', due_date=datetime(2030, 1, 1, 11, 0))
        self.assertTrue(step.is_overdue(now))
        self.assertFalse(step.is_overdue(datetime(2030, 1, 1, 10, 0)))

        step.status = 'completed'
        self.assertFalse(step.is_overdue(now))

        step = StepInstance(status='pending', due_date=None)
        self.assertFalse(step.is_overdue(now))


class TestTemplateRepository(EngineTestCase):

    def test_published_graph_is_cached(self):
        repository = SQLATemplateRepository()
        template = self.two_step_template(self.alice.id)

        graph = repository.find_by_id(template.id)
        self.assertIs(repository.find_by_id(template.id), graph)
        self.assertEqual(graph.start_step, 'review')

    def test_draft_is_reloaded(self):
        repository = SQLATemplateRepository()
        template = self.create_template([user_step('review', None, ['end']), end_step()],
                                        start_step='review', status='draft')

        self.assertEqual(repository.find_by_id(template.id).start_step, 'review')
        template.steps = [user_step('intake', None, ['end']), end_step()]
        template.start_step = 'intake'
        db.session.commit()

        self.assertEqual(repository.find_by_id(template.id).start_step, 'intake')

    def test_cache_is_bounded(self):
        repository = SQLATemplateRepository(max_size=2)
        first, second, third = [self.two_step_template() for _ in range(3)]

        graph = repository.find_by_id(first.id)
        repository.find_by_id(second.id)
        self.assertIs(repository.find_by_id(first.id), graph)
        repository.find_by_id(third.id)

        self.assertEqual(list(repository._cache), [first.id, third.id])

    def test_missing_template(self):
        self.assertIsNone(SQLATemplateRepository().find_by_id(999))
