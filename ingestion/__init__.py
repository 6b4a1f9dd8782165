"""
Job orchestration and transformation for the ingestion framework.

Modules:
    backends: Scheduling engine abstraction and the APScheduler backend
    repository: Job and data source persistence (in-memory and SQLAlchemy)
    scheduler: IngestionJobScheduler - schedule, update, pause, resume, trigger, delete
    executor: JobExecutor - one job run with retry accounting and auto-pause
    notifications: Email and webhook notifications about job outcomes

Subpackages:
    transformers: Ordered transformation-rule engine and its built-in functions

Architecture:
    A job run resolves the job's data source, builds a connector through the
    connector factory, connects with secrets resolved from the credential
    store, extracts, optionally transforms, and records the outcome:

    1. Success - status Completed, failure counter reset to zero
    2. Failure - status Failed, counter incremented, failure notification
    3. Retry budget exhausted - job paused and its cron registration dropped

Usage:
    from ingestion.backends import APSchedulerBackend
    from ingestion.executor import JobExecutor
    from ingestion.scheduler import IngestionJobScheduler

Example:
    backend = APSchedulerBackend()
    executor = JobExecutor(jobs, data_sources, factory, credentials, backend=backend)
    scheduler = IngestionJobScheduler(jobs, backend, executor)

    await scheduler.start()
    job_id = await scheduler.schedule_job(definition)
"""

__all__ = [
    "SchedulingBackend",
    "APSchedulerBackend",
    "JobRepository",
    "DataSourceRepository",
    "IngestionJobScheduler",
    "JobExecutor",
    "JobNotificationService",
    "TransformationEngine",
]
