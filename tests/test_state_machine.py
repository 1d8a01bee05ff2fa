import unittest
from unittest.mock import Mock

from flask_workflow.engine import ProcessStateMachine, StepStateMachine
from flask_workflow.exceptions import InvalidStateError, StateTransitionError


class Entity:
    def __init__(self, status):
        self.id = 1
        self.status = status


class TestStepStateMachine(unittest.TestCase):

    def setUp(self):
        self.machine = StepStateMachine()

    def test_happy_path(self):
        step = Entity('pending')
        self.assertEqual(self.machine.fire(step, StepStateMachine.START), 'pending')
        self.assertEqual(step.status, 'in_progress')
        self.machine.fire(step, StepStateMachine.COMPLETE)
        self.assertEqual(step.status, 'completed')

    def test_complete_from_pending(self):
        step = Entity('pending')
        self.machine.fire(step, StepStateMachine.COMPLETE)
        self.assertEqual(step.status, 'completed')

    def test_release_returns_to_pending(self):
        step = Entity('in_progress')
        self.machine.fire(step, StepStateMachine.RELEASE)
        self.assertEqual(step.status, 'pending')

    def test_unlisted_transition_rejected(self):
        step = Entity('completed')
        with self.assertRaises(StateTransitionError) as cm:
            self.machine.fire(step, StepStateMachine.START)
        self.assertEqual(step.status, 'completed')
        self.assertEqual(cm.exception.from_state, 'completed')
        self.assertEqual(cm.exception.event, 'start')
        self.assertIsInstance(cm.exception, InvalidStateError)

    def test_auto_complete_only_from_pending(self):
        self.assertTrue(self.machine.can_fire('pending', StepStateMachine.AUTO_COMPLETE))
        self.assertFalse(self.machine.can_fire('in_progress', StepStateMachine.AUTO_COMPLETE))

    def test_terminal_states(self):
        self.assertEqual(self.machine.terminal_states,
                         {'completed', 'skipped', 'failed', 'cancelled'})
        self.assertEqual(self.machine.events_from('cancelled'), set())

    def test_hooks(self):
        hook = Mock()
        failing = Mock(side_effect=RuntimeError("boom"))
        self.machine.register_hook('pending', StepStateMachine.SKIP, failing)
        self.machine.register_hook('pending', StepStateMachine.SKIP, hook)

        step = Entity('pending')
        self.machine.fire(step, StepStateMachine.SKIP)

        self.assertEqual(step.status, 'skipped')
        hook.assert_called_once_with(step, 'pending', 'skip', 'skipped')


class TestProcessStateMachine(unittest.TestCase):

    def setUp(self):
        self.machine = ProcessStateMachine()

    def test_lifecycle(self):
        process = Entity('draft')
        for event, expected in ((ProcessStateMachine.START, 'active'),
                                (ProcessStateMachine.SUSPEND, 'suspended'),
                                (ProcessStateMachine.RESUME, 'active'),
                                (ProcessStateMachine.COMPLETE, 'completed')):
            self.machine.fire(process, event)
            self.assertEqual(process.status, expected)

    def test_start_only_from_draft(self):
        for status in ('active', 'completed', 'cancelled', 'suspended'):
            with self.assertRaises(StateTransitionError):
                self.machine.fire(Entity(status), ProcessStateMachine.START)

    def test_cancel(self):
        for status in ('draft', 'active', 'suspended'):
            process = Entity(status)
            self.machine.fire(process, ProcessStateMachine.CANCEL)
            self.assertEqual(process.status, 'cancelled')
        with self.assertRaises(StateTransitionError):
            self.machine.fire(Entity('completed'), ProcessStateMachine.CANCEL)

    def test_events_from_active(self):
        self.assertEqual(self.machine.events_from('active'), {'complete', 'suspend', 'cancel'})
