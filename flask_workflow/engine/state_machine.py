"""
Workflow state machines.

Explicit transition tables for process and step instances, keyed by
``(current_state, event) -> new_state``. Any pair not listed is rejected,
so status is never assigned ad hoc.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..const import ProcessStatus, StepStatus
from ..exceptions import StateTransitionError

log = logging.getLogger(__name__)

Transition = Tuple[str, str]

_PENDING = StepStatus.PENDING.value
_IN_PROGRESS = StepStatus.IN_PROGRESS.value


class StateMachine:
    """
    Transition table with per-transition hooks.

    Hooks receive ``(entity, from_state, event, to_state)`` and run after
    the status has been assigned; a failing hook is logged and does not
    undo the transition.
    """

    entity_name = "entity"

    def __init__(self, transitions: Dict[Transition, str]):
        self._lock = threading.RLock()
        self.transitions = dict(transitions)
        self.hooks: Dict[Transition, List[Callable]] = {}

    def next_state(self, current_state: str, event: str) -> Optional[str]:
        """Target state for ``event`` from ``current_state``, or None."""
        return self.transitions.get((current_state, event))

    def can_fire(self, current_state: str, event: str) -> bool:
        return (current_state, event) in self.transitions

    def events_from(self, current_state: str) -> Set[str]:
        """All events accepted in ``current_state``."""
        return {event for (state, event) in self.transitions if state == current_state}

    @property
    def terminal_states(self) -> Set[str]:
        sources = {state for (state, _) in self.transitions}
        targets = set(self.transitions.values())
        return targets - sources

    def fire(self, entity, event: str) -> str:
        """
        Apply ``event`` to ``entity.status``.

        Returns:
            the previous status

        Raises:
            StateTransitionError: when the table does not list the pair
        """
        with self._lock:
            old_state = entity.status
            new_state = self.next_state(old_state, event)
            if new_state is None:
                raise StateTransitionError(
                    f"Cannot {event} {self.entity_name} {getattr(entity, 'id', None)} "
                    f"in status '{old_state}'",
                    from_state=old_state,
                    event=event,
                )
            entity.status = new_state
            log.debug(f"{self.entity_name} {getattr(entity, 'id', None)}: "
                      f"{old_state} --{event}--> {new_state}")
            self._run_hooks(entity, old_state, event, new_state)
            return old_state

    def register_hook(self, from_state: str, event: str, hook: Callable):
        with self._lock:
            self.hooks.setdefault((from_state, event), []).append(hook)

    def _run_hooks(self, entity, old_state: str, event: str, new_state: str):
        for hook in self.hooks.get((old_state, event), []):
            try:
                hook(entity, old_state, event, new_state)
            except Exception as e:
                log.error(f"Error executing {self.entity_name} transition hook: {e}")


class StepStateMachine(StateMachine):
    """Step instance lifecycle; escalation is a flag, not a state."""

    entity_name = "step"

    START = "start"
    COMPLETE = "complete"
    AUTO_COMPLETE = "auto_complete"
    SKIP = "skip"
    FAIL = "fail"
    CANCEL = "cancel"
    RELEASE = "release"

    TRANSITIONS = {
        (_PENDING, START): _IN_PROGRESS,
        (_PENDING, COMPLETE): StepStatus.COMPLETED.value,
        (_IN_PROGRESS, COMPLETE): StepStatus.COMPLETED.value,
        (_PENDING, AUTO_COMPLETE): StepStatus.COMPLETED.value,
        (_PENDING, SKIP): StepStatus.SKIPPED.value,
        (_IN_PROGRESS, SKIP): StepStatus.SKIPPED.value,
        (_PENDING, FAIL): StepStatus.FAILED.value,
        (_IN_PROGRESS, FAIL): StepStatus.FAILED.value,
        (_PENDING, CANCEL): StepStatus.CANCELLED.value,
        (_IN_PROGRESS, CANCEL): StepStatus.CANCELLED.value,
        (_IN_PROGRESS, RELEASE): _PENDING,
    }

    def __init__(self):
        super().__init__(self.TRANSITIONS)


class ProcessStateMachine(StateMachine):
    """Process instance lifecycle; completed and cancelled are final."""

    entity_name = "process"

    START = "start"
    COMPLETE = "complete"
    SUSPEND = "suspend"
    RESUME = "resume"
    CANCEL = "cancel"

    TRANSITIONS = {
        (ProcessStatus.DRAFT.value, START): ProcessStatus.ACTIVE.value,
        (ProcessStatus.ACTIVE.value, COMPLETE): ProcessStatus.COMPLETED.value,
        (ProcessStatus.ACTIVE.value, SUSPEND): ProcessStatus.SUSPENDED.value,
        (ProcessStatus.SUSPENDED.value, RESUME): ProcessStatus.ACTIVE.value,
        (ProcessStatus.DRAFT.value, CANCEL): ProcessStatus.CANCELLED.value,
        (ProcessStatus.ACTIVE.value, CANCEL): ProcessStatus.CANCELLED.value,
        (ProcessStatus.SUSPENDED.value, CANCEL): ProcessStatus.CANCELLED.value,
    }

    def __init__(self):
        super().__init__(self.TRANSITIONS)
