"""
Routing resolver.

Pure functions deciding which template steps become active after a step
finishes. No I/O and no access to the session.
"""

import logging
from typing import Any, List, Optional

from ..template import StepDefinition

log = logging.getLogger(__name__)

ALWAYS_TRUE_CONDITIONS = ("", "true")


class RoutingResolver:
    """
    Computes next step ids from a finished step.

    Conditions are literals: an empty or ``"true"`` condition always
    holds, any other condition holds only when it equals the decision.
    """

    def evaluate_condition(self, condition: Optional[str], step_instance: Any = None,
                           decision: Optional[str] = None) -> bool:
        if condition is None or condition in ALWAYS_TRUE_CONDITIONS:
            return True
        if decision is not None and condition == decision:
            return True
        return False

    def determine_next_steps(self, step_def: StepDefinition, step_instance: Any = None,
                             decision: Optional[str] = None) -> List[str]:
        """
        Next step ids, in precedence order:

        1. every transition whose condition holds (several may fire);
        2. for a decision step, the transition whose condition literally
           equals the decision;
        3. the first transition as the default path;
        4. nothing, which completes the process.
        """
        if not step_def.next_steps:
            return []

        next_ids = [
            transition.step_id for transition in step_def.next_steps
            if self.evaluate_condition(transition.condition, step_instance, decision)
        ]

        if not next_ids and step_def.is_decision and decision is not None:
            for transition in step_def.next_steps:
                if transition.condition == decision:
                    next_ids = [transition.step_id]
                    break

        if not next_ids:
            default = step_def.next_steps[0].step_id
            log.debug(f"No condition matched on step {step_def.step_id} "
                      f"(decision={decision!r}), taking default path to {default}")
            next_ids = [default]

        return next_ids
