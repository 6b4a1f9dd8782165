"""
Tests for cron handling and the APScheduler-backed scheduling engine
"""

import asyncio
import pytest
from datetime import datetime, timezone

from core.exceptions import InvalidCronExpressionError
from ingestion.backends import APSchedulerBackend, build_trigger, next_run_time, validate_cron


async def noop():
    pass


class TestCron:
    """Five-field crontab expressions"""

    def test_validate_normalizes_whitespace(self):
        assert validate_cron("  0   2 * * 1-5 ") == "0 2 * * 1-5"

    @pytest.mark.parametrize("expression", ["", "   ", "not a cron", "61 * * * *", "* * * *"])
    def test_invalid(self, expression):
        with pytest.raises(InvalidCronExpressionError):
            build_trigger(expression)

    def test_next_run_time(self):
        now = datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)
        assert next_run_time("0 2 * * *", "UTC", now=now) == datetime(2024, 1, 2, 2, 0, tzinfo=timezone.utc)

    def test_next_run_time_honours_timezone(self):
        now = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
        fire = next_run_time("0 9 * * *", "Europe/Berlin", now=now)
        assert fire.astimezone(timezone.utc) == datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


class TestAPSchedulerBackend:
    """Recurring and one-off registrations"""

    @pytest.mark.asyncio
    async def test_register_replace_and_remove(self):
        backend = APSchedulerBackend(timezone="UTC")
        backend.start()
        try:
            backend.add_or_update("job-1", "*/5 * * * *", noop)
            backend.add_or_update("job-1", "0 * * * *", noop)
            assert backend.is_registered("job-1")
            assert [job.id for job in backend.scheduler.get_jobs()] == ["recurring:job-1"]

            assert backend.remove_if_exists("job-1") is True
            assert backend.remove_if_exists("job-1") is False
            assert not backend.is_registered("job-1")
        finally:
            backend.shutdown()

    def test_invalid_cron_is_rejected(self):
        backend = APSchedulerBackend(timezone="UTC")
        with pytest.raises(InvalidCronExpressionError):
            backend.add_or_update("job-1", "every day", noop)
        assert not backend.is_registered("job-1")

    def test_not_running_until_started(self):
        assert APSchedulerBackend().running is False

    @pytest.mark.asyncio
    async def test_enqueue_runs_once(self):
        backend = APSchedulerBackend(timezone="UTC", max_workers=1)
        ran = asyncio.Event()

        async def handler():
            ran.set()

        execution_id = backend.enqueue(handler)
        assert execution_id.startswith("once:")
        backend.start()
        try:
            assert backend.running
            await asyncio.wait_for(ran.wait(), timeout=5)
        finally:
            backend.shutdown()
