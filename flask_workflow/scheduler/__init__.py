"""
Time-driven workflow maintenance.
"""

from .jobs import JOB_SCHEDULES, WorkflowJobs
from .service import SchedulerService, create_scheduler
from .timers import PeriodicJob, make_schedule

__all__ = [
    'JOB_SCHEDULES',
    'PeriodicJob',
    'SchedulerService',
    'WorkflowJobs',
    'create_scheduler',
    'make_schedule',
]
