"""
Scheduler service.

Registry of named periodic jobs with an explicit start/stop/restart
lifecycle, per job and for the whole set.
"""

import logging
from typing import Any, Callable, Dict, List

from .jobs import JOB_SCHEDULES, WorkflowJobs
from .timers import PeriodicJob, ScheduleSpec, make_schedule

log = logging.getLogger(__name__)


class SchedulerService:
    """
    Runs a set of ``PeriodicJob`` instances for a Flask app.

    Jobs are independent: stopping, restarting or failing one leaves the
    others untouched.
    """

    def __init__(self, app=None, jobs: Dict[str, PeriodicJob] = None):
        self.app = app
        self.jobs: Dict[str, PeriodicJob] = dict(jobs or {})
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def add_job(self, name: str, func: Callable[[], Any], schedule: ScheduleSpec) -> PeriodicJob:
        if name in self.jobs:
            raise ValueError(f"Job {name} is already registered")
        timezone = self.app.config.get('WORKFLOW_TIMEZONE', 'UTC') if self.app else 'UTC'
        job = PeriodicJob(name, func, make_schedule(schedule, timezone), app=self.app)
        self.jobs[name] = job
        if self._started:
            job.start()
        return job

    def remove_job(self, name: str) -> bool:
        job = self.jobs.pop(name, None)
        if job is None:
            return False
        job.stop()
        return True

    def get_job(self, name: str) -> PeriodicJob:
        try:
            return self.jobs[name]
        except KeyError:
            raise KeyError(f"Unknown job: {name}")

    def start(self):
        if self._started:
            log.warning("Scheduler service already started")
            return
        for job in self.jobs.values():
            job.start()
        self._started = True
        log.info(f"Scheduler service started with {len(self.jobs)} jobs: {', '.join(self.jobs)}")

    def stop(self):
        log.info("Stopping all scheduled jobs...")
        for name, job in self.jobs.items():
            try:
                job.stop()
            except Exception as e:
                log.error(f"Error stopping job {name}: {e}")
        self._started = False

    def start_job(self, name: str) -> bool:
        return self.get_job(name).start()

    def stop_job(self, name: str) -> bool:
        return self.get_job(name).stop()

    def restart_job(self, name: str) -> bool:
        log.info(f"Restarting job: {name}")
        return self.get_job(name).restart()

    def run_job(self, name: str) -> Any:
        """Run one job immediately in the calling thread."""
        return self.get_job(name).run_once()

    def job_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: job.status() for name, job in self.jobs.items()}

    def job_names(self) -> List[str]:
        return list(self.jobs)


def create_scheduler(app, workflow_jobs: WorkflowJobs) -> SchedulerService:
    """
    Scheduler with every workflow job registered.

    ``WORKFLOW_JOB_SCHEDULES`` overrides the default schedule per job
    name. The digest job is only registered while
    ``WORKFLOW_EMAIL_NOTIFICATIONS`` is enabled.
    """
    scheduler = SchedulerService(app)
    overrides = app.config.get('WORKFLOW_JOB_SCHEDULES') or {}
    for name, default in JOB_SCHEDULES.items():
        if name == 'send_notification_digest' and \
                not app.config.get('WORKFLOW_EMAIL_NOTIFICATIONS', True):
            log.info("Email notifications disabled, skipping notification digest job")
            continue
        scheduler.add_job(name, workflow_jobs.get(name), overrides.get(name, default))
    return scheduler
