"""
Unit tests for backup scheduling (tarkeep/scheduler.py).

Tests interval parsing, due-time computation and the tick loop with an
injected launcher so no background threads are involved.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from freezegun import freeze_time

from tarkeep.backup.errors import ScheduleParseFailure
from tarkeep.backup.types import DirectoryEntry, JobConfig, ScheduleConfig
from tarkeep.scheduler import (
    JobScheduler, init_scheduler, interval_for, is_due, parse_interval,
    start_scheduler, stop_scheduler
)

T0 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _job(name='nightly', interval='24h', enabled=True, schedule_enabled=True):
    return JobConfig(
        name=name,
        directories=(DirectoryEntry(path='/data', name='data'),),
        enabled=enabled,
        schedule=ScheduleConfig(interval=interval, enabled=schedule_enabled)
    )


class RecordingLauncher:
    """Launcher that keeps tasks instead of running them."""

    def __init__(self):
        self.launched = []
        self.tasks = {}

    def __call__(self, job_name, func):
        self.launched.append(job_name)
        self.tasks[job_name] = func

    def run(self, job_name):
        self.tasks.pop(job_name)()


@pytest.fixture
def mock_background_scheduler():
    """
    Mock APScheduler for testing scheduler start/stop.
    """
    with patch('tarkeep.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance
        scheduler_instance.running = False
        yield scheduler_instance


def _scheduler(jobs, runner=None, launcher=None):
    return JobScheduler(
        job_loader=lambda: jobs,
        job_runner=runner or MagicMock(),
        launcher=launcher or RecordingLauncher()
    )


class TestParseInterval:
    """Test schedule interval parsing."""

    @pytest.mark.parametrize("value,expected", [
        ('24h', timedelta(hours=24)),
        ('1h30m', timedelta(hours=1, minutes=30)),
        ('90s', timedelta(seconds=90)),
        ('500ms', timedelta(milliseconds=500)),
        ('1.5h', timedelta(minutes=90)),
        ('daily', timedelta(hours=24)),
        ('Daily', timedelta(hours=24)),
        ('1d', timedelta(hours=24)),
        ('hourly', timedelta(hours=1)),
        ('weekly', timedelta(days=7)),
        ('7d', timedelta(days=7)),
        ('168h', timedelta(days=7)),
        ('monthly', timedelta(days=30)),
        ('720h', timedelta(days=30)),
        ('15m', timedelta(minutes=15)),
        ('15min', timedelta(minutes=15)),
        ('30min', timedelta(minutes=30)),
    ])
    def test_valid(self, value, expected):
        assert parse_interval(value) == expected

    @pytest.mark.parametrize("value", ['', 'fortnightly', '10x', '0s', '2d', None])
    def test_invalid(self, value):
        with pytest.raises(ScheduleParseFailure):
            parse_interval(value)

    def test_interval_for_falls_back_to_default(self):
        assert interval_for(_job(interval='whenever')) == timedelta(hours=24)
        assert interval_for(_job(interval='whenever'), default=timedelta(hours=2)) == timedelta(hours=2)


class TestIsDue:
    """Test due-time computation."""

    def test_never_run_is_due(self):
        assert is_due(_job(), None, T0) is True

    def test_interval_not_elapsed(self):
        assert is_due(_job(interval='1h'), T0, T0 + timedelta(minutes=59)) is False

    def test_interval_elapsed(self):
        assert is_due(_job(interval='1h'), T0, T0 + timedelta(hours=1)) is True

    def test_unparseable_interval_uses_daily(self):
        job = _job(interval='sometimes')

        assert is_due(job, T0, T0 + timedelta(hours=23)) is False
        assert is_due(job, T0, T0 + timedelta(hours=24)) is True

    def test_cron_expression(self):
        job = _job(interval='0 2 * * *')
        last_run = datetime(2024, 1, 15, 2, 0, tzinfo=timezone.utc)

        assert is_due(job, last_run, datetime(2024, 1, 16, 1, 59, tzinfo=timezone.utc)) is False
        assert is_due(job, last_run, datetime(2024, 1, 16, 2, 0, tzinfo=timezone.utc)) is True

    def test_naive_times_are_utc(self):
        assert is_due(_job(interval='1h'), datetime(2024, 1, 15, 12), T0 + timedelta(hours=1)) is True


class TestJobScheduler:
    """Test the tick loop."""

    def test_first_tick_launches_enabled_jobs(self):
        launcher = RecordingLauncher()
        scheduler = _scheduler([
            _job('a'),
            _job('b', enabled=False),
            _job('c', schedule_enabled=False),
        ], launcher=launcher)

        launched = scheduler.tick(T0)

        assert launched == ['a']
        assert launcher.launched == ['a']
        assert scheduler.last_run == {'a': T0}
        assert scheduler.in_flight == {'a'}

    def test_in_flight_job_is_not_relaunched(self):
        launcher = RecordingLauncher()
        scheduler = _scheduler([_job('slow', interval='15m')], launcher=launcher)

        scheduler.tick(T0)
        scheduler.tick(T0 + timedelta(hours=1))

        assert launcher.launched == ['slow']

    def test_completed_job_runs_again_after_interval(self):
        runner = MagicMock()
        launcher = RecordingLauncher()
        scheduler = _scheduler([_job('a', interval='1h')], runner=runner, launcher=launcher)

        scheduler.tick(T0)
        launcher.run('a')
        assert scheduler.in_flight == set()
        runner.assert_called_once_with('a')

        assert scheduler.tick(T0 + timedelta(minutes=30)) == []
        assert scheduler.tick(T0 + timedelta(hours=1)) == ['a']

    def test_jobs_due_independently(self):
        launcher = RecordingLauncher()
        scheduler = _scheduler([_job('hourly', interval='1h'), _job('daily', interval='24h')],
                               launcher=launcher)

        scheduler.tick(T0)
        launcher.run('hourly')
        launcher.run('daily')

        assert scheduler.tick(T0 + timedelta(hours=1)) == ['hourly']

    def test_failing_job_does_not_stop_scheduler(self):
        runner = MagicMock(side_effect=RuntimeError("backup failed"))
        launcher = RecordingLauncher()
        scheduler = _scheduler([_job('a', interval='1h'), _job('b', interval='1h')],
                               runner=runner, launcher=launcher)

        scheduler.tick(T0)
        launcher.run('a')
        launcher.run('b')

        assert scheduler.in_flight == set()
        assert scheduler.tick(T0 + timedelta(hours=1)) == ['a', 'b']

    def test_reload_failure_keeps_previous_jobs(self):
        loader = MagicMock(side_effect=[[_job('a', interval='1h')], OSError("database locked")])
        launcher = RecordingLauncher()
        scheduler = JobScheduler(job_loader=loader, job_runner=MagicMock(), launcher=launcher)

        scheduler.tick(T0)
        launcher.run('a')
        launched = scheduler.tick(T0 + timedelta(hours=2))

        assert launched == ['a']
        assert [job.name for job in scheduler.jobs] == ['a']

    def test_configuration_changes_picked_up(self):
        jobs = [_job('a', interval='1h')]
        launcher = RecordingLauncher()
        scheduler = JobScheduler(job_loader=lambda: list(jobs), job_runner=MagicMock(), launcher=launcher)

        scheduler.tick(T0)
        launcher.run('a')
        jobs.append(_job('new', interval='1h'))

        assert scheduler.tick(T0 + timedelta(minutes=5)) == ['new']

    def test_launch_failure_clears_in_flight(self):
        def broken_launcher(job_name, func):
            raise RuntimeError("executor shut down")

        scheduler = _scheduler([_job('a')], launcher=broken_launcher)

        assert scheduler.tick(T0) == []
        assert scheduler.in_flight == set()

    @freeze_time("2024-01-15 12:00:00")
    def test_tick_defaults_to_current_time(self):
        scheduler = _scheduler([_job('a')])

        scheduler.tick()

        assert scheduler.last_run['a'] == T0

    def test_get_status(self):
        scheduler = _scheduler([_job('a')])
        scheduler.tick(T0)

        status = scheduler.get_status()

        assert status['in_flight'] == ['a']
        assert status['last_run'] == {'a': T0.isoformat()}


class TestSchedulerLifecycle:
    """Test starting and stopping the APScheduler backend."""

    def test_start_adds_tick_job(self, mock_background_scheduler):
        scheduler = _scheduler([])

        scheduler.start()

        mock_background_scheduler.add_job.assert_called_once()
        kwargs = mock_background_scheduler.add_job.call_args.kwargs
        assert kwargs['id'] == 'scheduler_tick'
        assert kwargs['func'] == scheduler.tick
        mock_background_scheduler.start.assert_called_once()

    def test_stop_does_not_wait_for_runs(self, mock_background_scheduler):
        scheduler = _scheduler([])
        mock_background_scheduler.running = True

        scheduler.stop()

        mock_background_scheduler.shutdown.assert_called_once_with(wait=False)

    def test_default_launcher_uses_jobs_executor(self, mock_background_scheduler):
        scheduler = JobScheduler(job_loader=lambda: [_job('a')], job_runner=MagicMock())

        scheduler.tick(T0)

        kwargs = mock_background_scheduler.add_job.call_args.kwargs
        assert kwargs['executor'] == 'jobs'
        assert kwargs['name'] == 'Backup: a'

    def test_init_scheduler_uses_app_config(self, app, mock_background_scheduler):
        app.config['SCHEDULER_TICK_SECONDS'] = 30

        scheduler = init_scheduler(app)

        assert app.extensions['tarkeep_scheduler'] is scheduler
        assert scheduler.tick_seconds == 30
        assert init_scheduler(app) is scheduler

    def test_start_and_stop_scheduler(self, app, mock_background_scheduler):
        scheduler = start_scheduler(app)
        mock_background_scheduler.start.assert_called_once()

        mock_background_scheduler.running = True
        stop_scheduler(app)

        assert app.extensions['tarkeep_scheduler'] is scheduler
        mock_background_scheduler.shutdown.assert_called_once_with(wait=False)

    def test_restart_after_stop_launches_jobs_again(self):
        runs = []
        ran = threading.Event()

        def runner(job_name):
            runs.append(job_name)
            ran.set()

        scheduler = JobScheduler(job_loader=lambda: [_job('a', interval='1s')], job_runner=runner,
                                 tick_seconds=1)

        scheduler.start()
        try:
            assert ran.wait(10)
        finally:
            scheduler.stop()
        assert scheduler.running is False

        ran.clear()
        scheduler.start()
        try:
            assert ran.wait(10)
        finally:
            scheduler.stop()

        assert len(runs) >= 2
