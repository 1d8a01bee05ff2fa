"""
Cancellable periodic jobs.

Each ``PeriodicJob`` owns a daemon thread that sleeps until the next tick
of its celery ``crontab``/``schedule`` and then runs the job inside the
Flask application context. A failing run is logged and recorded on the
job; the loop keeps going.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

from celery.schedules import crontab, schedule
from dateutil import tz

log = logging.getLogger(__name__)

ScheduleSpec = Union[crontab, schedule, timedelta, int, float, Dict[str, Any]]


def make_schedule(spec: ScheduleSpec, timezone: str = "UTC") -> schedule:
    """
    Build a celery schedule from ``spec``.

    ``spec`` may already be a schedule, a ``timedelta`` or a number of
    seconds (fixed interval), or a dict of ``crontab`` keyword arguments.
    Crontab fields are evaluated in ``timezone``.
    """
    if isinstance(spec, (schedule, crontab)):
        return spec
    zone = tz.gettz(timezone) or tz.UTC

    def nowfun():
        return datetime.now(zone)

    if isinstance(spec, timedelta):
        return schedule(run_every=spec, nowfun=nowfun)
    if isinstance(spec, (int, float)):
        return schedule(run_every=timedelta(seconds=spec), nowfun=nowfun)
    if isinstance(spec, dict):
        return crontab(nowfun=nowfun, **spec)
    raise TypeError(f"Unsupported schedule specification: {spec!r}")


def describe_schedule(sched: schedule) -> str:
    if isinstance(sched, crontab):
        return repr(sched)
    return f"every {sched.run_every}"


class PeriodicJob:
    """
    A named job running on its own schedule.

    :param name: job name, unique within a scheduler
    :param func: callable run on every tick
    :param schedule: celery ``crontab`` or ``schedule``
    :param app: Flask app whose context wraps every run
    """

    def __init__(self, name: str, func: Callable[[], Any], schedule: schedule, app=None):
        self.name = name
        self.func = func
        self.schedule = schedule
        self.app = app

        self._lock = threading.RLock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.last_run_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_result: Any = None
        self.run_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def seconds_until_next_run(self) -> float:
        remaining = self.schedule.remaining_estimate(self.schedule.now())
        return max(0.0, remaining.total_seconds())

    def start(self) -> bool:
        with self._lock:
            if self.is_running:
                log.warning(f"Job {self.name} is already running")
                return False
            # A fresh event per thread; a thread still winding down keeps its own.
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name=f"WorkflowJob-{self.name}",
                daemon=True,
            )
            self._thread.start()
        log.info(f"Job {self.name} scheduled ({describe_schedule(self.schedule)})")
        return True

    def stop(self, timeout: float = 5.0) -> bool:
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._stop_event.set()
            self._thread = None

        if thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                log.warning(f"Job {self.name} did not stop within {timeout}s")
        log.info(f"Stopped job: {self.name}")
        return True

    def restart(self) -> bool:
        self.stop()
        return self.start()

    def _loop(self, stop_event: threading.Event):
        log.debug(f"Job loop {self.name} started")
        while not stop_event.wait(self.seconds_until_next_run()):
            self.run_once()
        log.debug(f"Job loop {self.name} stopped")

    def run_once(self) -> Any:
        """Run the job now; errors are logged and recorded, never raised."""
        started = datetime.utcnow()
        try:
            if self.app is not None:
                with self.app.app_context():
                    result = self.func()
            else:
                result = self.func()
            self.last_error = None
            self.last_result = result
            return result
        except Exception as e:
            log.error(f"Error running job {self.name}: {e}")
            self.last_error = str(e)
            self.error_count += 1
            return None
        finally:
            self.last_run_at = started
            self.run_count += 1

    def status(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'schedule': describe_schedule(self.schedule),
            'running': self.is_running,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
            'last_error': self.last_error,
            'run_count': self.run_count,
            'error_count': self.error_count,
        }

    def __repr__(self):
        return f'<PeriodicJob {self.name} running={self.is_running}>'
