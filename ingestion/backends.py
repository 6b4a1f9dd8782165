"""
Scheduling engine abstraction.

The job scheduler only needs three things from an engine: keep a recurring
registration per job id, drop it again, and run something once right away.
APSchedulerBackend provides them with an in-process AsyncIOScheduler.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Optional
import asyncio
import logging
import uuid

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from core.config import settings
from core.exceptions import InvalidCronExpressionError

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Awaitable[None]]

RECURRING_PREFIX = "recurring"
ONE_OFF_PREFIX = "once"


def build_trigger(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """CronTrigger for a 5-field crontab expression in the configured time zone"""
    if not expression or not expression.strip():
        raise InvalidCronExpressionError("Cron expression is empty")
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=timezone or settings.SCHEDULER_TIMEZONE)
    except (ValueError, TypeError) as e:
        raise InvalidCronExpressionError(
            f"Invalid cron expression '{expression}': {e}",
            context={"cron_expression": expression},
            original_exception=e
        )


def validate_cron(expression: str, timezone: Optional[str] = None) -> str:
    """Return the normalized expression or raise InvalidCronExpressionError"""
    build_trigger(expression, timezone)
    return " ".join(expression.split())


def next_run_time(expression: str, timezone: Optional[str] = None, now: Optional[datetime] = None) -> Optional[datetime]:
    trigger = build_trigger(expression, timezone)
    if now is None:
        now = datetime.now(trigger.timezone)
    return trigger.get_next_fire_time(None, now)


class SchedulingBackend(ABC):
    """Engine the job scheduler registers recurring and one-off executions with"""

    @abstractmethod
    def add_or_update(self, job_id: str, cron_expression: str, handler: JobHandler):
        pass

    @abstractmethod
    def remove_if_exists(self, job_id: str) -> bool:
        pass

    @abstractmethod
    def enqueue(self, handler: JobHandler) -> str:
        """Run `handler` once as soon as possible; returns an execution id"""
        pass

    @abstractmethod
    def is_registered(self, job_id: str) -> bool:
        pass

    @abstractmethod
    def start(self):
        pass

    @abstractmethod
    def shutdown(self):
        pass

    @property
    def running(self) -> bool:
        return False


class APSchedulerBackend(SchedulingBackend):
    """
    AsyncIOScheduler-backed engine.

    Each recurring registration is a CronTrigger job with max_instances=1, so
    a slow run is never overlapped by its own next tick. Concurrent executions
    across jobs are capped at SCHEDULER_MAX_WORKERS.
    """

    def __init__(
        self,
        scheduler: Optional[AsyncIOScheduler] = None,
        timezone: Optional[str] = None,
        max_workers: Optional[int] = None
    ):
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.scheduler = scheduler or AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        )
        self._max_workers = max_workers or settings.SCHEDULER_MAX_WORKERS
        self._slots: Optional[asyncio.Semaphore] = None

    @staticmethod
    def _recurring_id(job_id: str) -> str:
        return f"{RECURRING_PREFIX}:{job_id}"

    def _bounded(self, handler: JobHandler) -> JobHandler:
        async def run():
            if self._slots is None:
                self._slots = asyncio.Semaphore(self._max_workers)
            async with self._slots:
                await handler()
        return run

    def add_or_update(self, job_id: str, cron_expression: str, handler: JobHandler):
        trigger = build_trigger(cron_expression, self.timezone)
        self.scheduler.add_job(
            self._bounded(handler),
            trigger=trigger,
            id=self._recurring_id(job_id),
            name=f"ingestion job {job_id}",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(f"Registered recurring job {job_id} ({cron_expression}, {self.timezone})")

    def remove_if_exists(self, job_id: str) -> bool:
        try:
            self.scheduler.remove_job(self._recurring_id(job_id))
        except JobLookupError:
            return False
        logger.info(f"Removed recurring job {job_id}")
        return True

    def is_registered(self, job_id: str) -> bool:
        return self.scheduler.get_job(self._recurring_id(job_id)) is not None

    def enqueue(self, handler: JobHandler) -> str:
        execution_id = f"{ONE_OFF_PREFIX}:{uuid.uuid4().hex}"
        self.scheduler.add_job(
            self._bounded(handler),
            trigger=DateTrigger(timezone=self.timezone),
            id=execution_id,
            misfire_grace_time=None,
        )
        logger.info(f"Enqueued execution {execution_id}")
        return execution_id

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info(f"Scheduling backend started (timezone={self.timezone})")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduling backend stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running
