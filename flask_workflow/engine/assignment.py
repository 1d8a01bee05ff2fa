"""
Assignment and escalation-target strategies.

The engine asks a strategy who should own a new step and who should
receive an escalation, so load balancing can be plugged in without
touching engine control flow.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..const import AssigneeType
from ..template import StepDefinition

log = logging.getLogger(__name__)


@dataclass
class Assignment:
    """Resolved owner of a step; role/department wait for a claim."""
    assigned_to: Optional[int] = None
    assigned_role: Optional[str] = None
    assigned_department: Optional[str] = None


class AssignmentStrategy:
    """Decides the assignment of a step instance created from ``step_def``."""

    def assign(self, step_def: StepDefinition, instance=None) -> Assignment:
        raise NotImplementedError


class FirstAssigneeStrategy(AssignmentStrategy):
    """First entry of ``assignees``; no load balancing."""

    def assign(self, step_def: StepDefinition, instance=None) -> Assignment:
        first = step_def.assignees[0] if step_def.assignees else None
        if first is None:
            return Assignment()

        if step_def.assignee_type == AssigneeType.USER.value:
            return Assignment(assigned_to=_to_user_id(first))
        if step_def.assignee_type == AssigneeType.ROLE.value:
            return Assignment(assigned_role=first)
        if step_def.assignee_type == AssigneeType.DEPARTMENT.value:
            return Assignment(assigned_department=first)
        return Assignment()


class EscalationTargetStrategy:
    """Picks escalation recipients among the active candidates."""

    def select(self, step, candidates: Sequence) -> List:
        raise NotImplementedError


class FirstEscalationTargetStrategy(EscalationTargetStrategy):
    """The first active manager or admin."""

    def select(self, step, candidates: Sequence) -> List:
        return list(candidates[:1])


class AllEscalationTargetsStrategy(EscalationTargetStrategy):
    """Everyone; used by the cascade to re-notify all managers and admins."""

    def select(self, step, candidates: Sequence) -> List:
        return list(candidates)


def _to_user_id(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        log.warning(f"Assignee '{value}' is not a user id, leaving step unassigned")
        return None
