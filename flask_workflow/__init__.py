__author__ = "Flask-Workflow developers"
__version__ = "1.0.0"

from .engine import WorkflowEngine  # noqa: F401
from .exceptions import (  # noqa: F401
    ConcurrentModificationError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
    StateTransitionError,
    StepNotCompletableError,
    TemplateValidationError,
    WorkflowError,
)
from .manager import Workflow, get_workflow  # noqa: F401
from .models import db  # noqa: F401
from .scheduler import PeriodicJob, SchedulerService, WorkflowJobs  # noqa: F401
from .template import TemplateGraph, validate_template  # noqa: F401
