"""
APScheduler-driven backup scheduling for tarkeep.

A single tick job runs every SCHEDULER_TICK_SECONDS. Each tick reloads the
job configuration, and launches every enabled, scheduled job whose interval
has elapsed since its last run on a separate worker pool, so a slow job
never delays the tick or the other jobs.

Manages:
- Interval parsing (durations, aliases, crontab expressions)
- Due-time computation per job
- In-flight tracking so a job never overlaps with itself
"""

import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from tarkeep.backup.errors import ScheduleParseFailure
from tarkeep.backup.types import JobConfig

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = timedelta(hours=24)

INTERVAL_ALIASES = {
    'daily': timedelta(hours=24),
    '1d': timedelta(hours=24),
    'hourly': timedelta(hours=1),
    'weekly': timedelta(days=7),
    '7d': timedelta(days=7),
    'monthly': timedelta(days=30),
    '30d': timedelta(days=30),
    '15min': timedelta(minutes=15),
    '30min': timedelta(minutes=30),
}

_DURATION_RE = re.compile(r'^(\d+(?:\.\d+)?)(ms|h|m|s)')
_DURATION_UNITS = {
    'h': 'hours',
    'm': 'minutes',
    's': 'seconds',
    'ms': 'milliseconds',
}


def parse_interval(value: str) -> timedelta:
    """
    Parse a schedule interval.

    Accepts durations such as '24h', '1h30m' or '90s' and the aliases
    daily, hourly, weekly, monthly, 1d, 7d, 30d, 15min, 30min.

    Raises:
        ScheduleParseFailure: If the value is not a known interval
    """
    text = (value or '').strip().lower()
    if text in INTERVAL_ALIASES:
        return INTERVAL_ALIASES[text]

    remaining = text
    total = timedelta()
    while remaining:
        match = _DURATION_RE.match(remaining)
        if not match:
            raise ScheduleParseFailure(f"Unknown schedule interval: {value!r}")
        amount, unit = match.groups()
        total += timedelta(**{_DURATION_UNITS[unit]: float(amount)})
        remaining = remaining[match.end():]

    if total <= timedelta():
        raise ScheduleParseFailure(f"Unknown schedule interval: {value!r}")
    return total


def is_cron_expression(value: str) -> bool:
    return len((value or '').split()) == 5


def interval_for(job: JobConfig, default: timedelta = DEFAULT_INTERVAL) -> timedelta:
    """Interval of a job, falling back to the default when it cannot be parsed."""
    try:
        return parse_interval(job.schedule.interval)
    except ScheduleParseFailure as e:
        logger.warning(f"Could not parse schedule for job {job.name}: {e}, defaulting to {default}")
        return default


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_due(job: JobConfig, last_run: Optional[datetime], now: datetime,
           default: timedelta = DEFAULT_INTERVAL) -> bool:
    """
    Decide whether a job should run at now.

    A job that never ran is due. Crontab schedules are due once their next
    fire time after the last run has passed; interval schedules once the
    interval has elapsed.
    """
    if last_run is None:
        return True

    last_run = _as_utc(last_run)
    now = _as_utc(now)

    if is_cron_expression(job.schedule.interval):
        try:
            trigger = CronTrigger.from_crontab(job.schedule.interval, timezone='UTC')
        except ValueError as e:
            logger.warning(f"Invalid cron expression for job {job.name}: {e}, defaulting to {default}")
            return now - last_run >= default

        next_fire = trigger.get_next_fire_time(None, last_run + timedelta(seconds=1))
        return next_fire is not None and next_fire <= now

    return now - last_run >= interval_for(job, default)


class JobScheduler:
    """
    Tracks last run times and launches due jobs.

    The scheduler state (last run per job name and the in-flight set) is
    guarded by a lock; job execution itself happens outside of it.
    """

    def __init__(self, job_loader: Callable[[], List[JobConfig]],
                 job_runner: Callable[[str], object],
                 launcher: Optional[Callable[[str, Callable[[], None]], None]] = None,
                 tick_seconds: int = 60, max_workers: int = 4,
                 default_interval: timedelta = DEFAULT_INTERVAL):
        """
        Initialize job scheduler.

        Args:
            job_loader: Function returning the current job configurations
            job_runner: Function running one job by name
            launcher: Optional function(job_name, func) running func in the
                background; defaults to the APScheduler worker pool
            tick_seconds: Tick period
            max_workers: Worker threads available for job runs
            default_interval: Interval used when a schedule cannot be parsed
        """
        self.job_loader = job_loader
        self.job_runner = job_runner
        self.launcher = launcher or self._launch
        self.tick_seconds = tick_seconds
        self.max_workers = max_workers
        self.default_interval = default_interval

        self.jobs: List[JobConfig] = []
        self.last_run: Dict[str, datetime] = {}
        self.in_flight: Set[str] = set()
        self._lock = threading.Lock()
        self.scheduler = self._build_scheduler()

    def _build_scheduler(self) -> BackgroundScheduler:
        return BackgroundScheduler(
            executors={
                'default': ThreadPoolExecutor(max_workers=1),
                'jobs': ThreadPoolExecutor(max_workers=self.max_workers)
            },
            job_defaults={
                'coalesce': True,  # Combine missed ticks into one
                'max_instances': 1,
                'misfire_grace_time': 300
            },
            timezone='UTC'
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start ticking; the first tick fires immediately."""
        if self.scheduler.running:
            logger.info("Scheduler already running")
            return

        self.scheduler.add_job(
            func=self.tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds, timezone='UTC'),
            id='scheduler_tick',
            name='Backup Scheduler Tick',
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Backup scheduler started (tick: {self.tick_seconds}s)")

    def stop(self):
        """
        Stop ticking. Runs already in progress are not waited for.

        A shut down APScheduler cannot submit work to its executors again,
        so a fresh one is prepared for the next start().
        """
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.scheduler = self._build_scheduler()
            logger.info("Backup scheduler stopped")

    def reload_jobs(self) -> List[JobConfig]:
        """Reload job configuration, keeping the previous set on failure."""
        try:
            self.jobs = list(self.job_loader())
        except Exception as e:
            logger.warning(f"Failed to reload job configuration, keeping previous jobs: {e}")
        return self.jobs

    def due_jobs(self, now: Optional[datetime] = None) -> List[JobConfig]:
        now = now or datetime.now(timezone.utc)
        with self._lock:
            return [
                job for job in self.jobs
                if job.enabled and job.schedule.enabled
                and job.name not in self.in_flight
                and is_due(job, self.last_run.get(job.name), now, self.default_interval)
            ]

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Run one scheduling pass.

        Returns:
            Names of the jobs launched
        """
        now = now or datetime.now(timezone.utc)
        self.reload_jobs()

        launched = []
        for job in self.due_jobs(now):
            with self._lock:
                if job.name in self.in_flight:
                    continue
                self.in_flight.add(job.name)
                self.last_run[job.name] = now

            logger.info(f"Running scheduled backup: {job.name}")
            try:
                self.launcher(job.name, self._make_task(job.name))
            except Exception as e:
                logger.error(f"Failed to launch scheduled backup {job.name}: {e}")
                with self._lock:
                    self.in_flight.discard(job.name)
                continue
            launched.append(job.name)

        return launched

    def _make_task(self, job_name: str) -> Callable[[], None]:
        def task():
            self._execute(job_name)
        return task

    def _execute(self, job_name: str):
        try:
            self.job_runner(job_name)
            logger.info(f"Scheduled backup completed: {job_name}")
        except Exception as e:
            logger.error(f"Scheduled backup {job_name} failed: {e}")
        finally:
            with self._lock:
                self.in_flight.discard(job_name)

    def _launch(self, job_name: str, func: Callable[[], None]):
        self.scheduler.add_job(
            func=func,
            trigger=DateTrigger(run_date=datetime.now(timezone.utc)),
            executor='jobs',
            id=f"backup_{job_name}_{int(datetime.now(timezone.utc).timestamp())}",
            name=f"Backup: {job_name}",
            replace_existing=True
        )

    def get_status(self) -> dict:
        with self._lock:
            return {
                'running': self.running,
                'tick_seconds': self.tick_seconds,
                'in_flight': sorted(self.in_flight),
                'last_run': {name: ts.isoformat() for name, ts in self.last_run.items()}
            }


def init_scheduler(app) -> JobScheduler:
    """
    Create the scheduler for an app and store it in app.extensions.

    Args:
        app: Flask app instance
    """
    existing = app.extensions.get('tarkeep_scheduler')
    if existing is not None:
        return existing

    from tarkeep.backup.jobs import load_job_configs, run_job

    def load_jobs():
        with app.app_context():
            return load_job_configs()

    def run_scheduled(job_name):
        with app.app_context():
            return run_job(job_name, trigger='scheduled')

    default = app.config.get('DEFAULT_SCHEDULE_INTERVAL', '24h')
    try:
        default_interval = parse_interval(default)
    except ScheduleParseFailure:
        app.logger.warning(f"Invalid DEFAULT_SCHEDULE_INTERVAL {default!r}, using 24h")
        default_interval = DEFAULT_INTERVAL

    job_scheduler = JobScheduler(
        load_jobs,
        run_scheduled,
        tick_seconds=app.config.get('SCHEDULER_TICK_SECONDS', 60),
        max_workers=app.config.get('SCHEDULER_MAX_WORKERS', 4),
        default_interval=default_interval
    )
    app.extensions['tarkeep_scheduler'] = job_scheduler
    return job_scheduler


def _resolve_app(app):
    if app is not None:
        return app
    from flask import current_app
    return current_app._get_current_object()


def start_scheduler(app=None) -> JobScheduler:
    """Start the scheduler of an app (current_app by default)."""
    app = _resolve_app(app)
    job_scheduler = init_scheduler(app)
    job_scheduler.start()
    return job_scheduler


def stop_scheduler(app=None):
    """Stop the scheduler of an app if it was started."""
    app = _resolve_app(app)
    job_scheduler = app.extensions.get('tarkeep_scheduler')
    if job_scheduler is not None:
        job_scheduler.stop()
