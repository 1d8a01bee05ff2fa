from .assignment import (  # noqa: F401
    AllEscalationTargetsStrategy, Assignment, AssignmentStrategy, EscalationTargetStrategy,
    FirstAssigneeStrategy, FirstEscalationTargetStrategy
)
from .collaborators import (  # noqa: F401
    HistorySink, NotificationSink, SQLAHistorySink, SQLANotificationSink,
    SQLATemplateRepository, SQLAUserDirectory, TemplateRepository, UserDirectory
)
from .routing import RoutingResolver  # noqa: F401
from .state_machine import ProcessStateMachine, StateMachine, StepStateMachine  # noqa: F401
from .workflow_engine import WorkflowEngine, parse_due_date  # noqa: F401
