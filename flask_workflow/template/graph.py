"""
Template graph.

Immutable, behaviour-free view of a published process template: the
step definitions, their named transitions, the start step and the set
of end steps.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..const import StepType


@dataclass(frozen=True)
class NextStep:
    """A named transition to another step."""
    step_id: str
    condition: str = ""


@dataclass(frozen=True)
class StepDefinition:
    """One node of the template graph."""
    step_id: str
    name: str
    type: str
    assignee_type: str = "user"
    assignees: Tuple[str, ...] = ()
    next_steps: Tuple[NextStep, ...] = ()
    time_limit_hours: Optional[float] = None
    auto_complete: bool = False
    description: str = ""

    @property
    def is_decision(self) -> bool:
        return self.type == StepType.DECISION.value

    @property
    def runs_inline(self) -> bool:
        """Service tasks and auto-complete steps finish at creation."""
        return self.type == StepType.SERVICE_TASK.value or self.auto_complete


@dataclass(frozen=True)
class TemplateGraph:
    """Directed graph of step definitions."""
    steps: Tuple[StepDefinition, ...]
    start_step: str
    end_steps: FrozenSet[str] = field(default_factory=frozenset)
    template_id: Optional[int] = None
    name: str = ""
    version: int = 1

    def __post_init__(self):
        object.__setattr__(self, '_index', {s.step_id: s for s in self.steps})

    @property
    def step_ids(self) -> List[str]:
        return [s.step_id for s in self.steps]

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        return self._index.get(step_id)

    def get_start_step(self) -> Optional[StepDefinition]:
        return self.get_step(self.start_step)

    def is_end_step(self, step_id: str) -> bool:
        return step_id in self.end_steps

    def dangling_references(self) -> Dict[str, List[str]]:
        """Map of field name to referenced step ids that do not exist."""
        known = set(self._index)
        problems: Dict[str, List[str]] = {}
        if self.start_step not in known:
            problems.setdefault('start_step', []).append(self.start_step)
        for step in self.steps:
            for transition in step.next_steps:
                if transition.step_id not in known:
                    problems.setdefault('next_steps', []).append(
                        f"{step.step_id}->{transition.step_id}"
                    )
        for end_step in sorted(self.end_steps):
            if end_step not in known:
                problems.setdefault('end_steps', []).append(end_step)
        return problems
