"""Celery app, beat schedule and tasks for the scheduled access job."""

import asyncio
from typing import Optional

from celery import Celery
from celery.schedules import crontab
from sqlalchemy.orm import sessionmaker

from access_manager.core.config import settings

celery_app = Celery(
    "access_manager",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_concurrency=1,  # the dashboard actor is a single session
    task_soft_time_limit=settings.JOB_LOCK_TTL_SECONDS - 60,
    task_time_limit=settings.JOB_LOCK_TTL_SECONDS,
    beat_schedule={
        "run-access-job": {
            "task": "run_access_job",
            "schedule": crontab(
                minute=settings.JOB_SCHEDULE_CRON_MINUTE,
                hour=settings.JOB_SCHEDULE_CRON_HOUR,
            ),
        },
        "send-expiry-warnings": {
            "task": "send_expiry_warnings",
            "schedule": crontab(
                minute=settings.WARNING_SCHEDULE_CRON_MINUTE,
                hour=settings.WARNING_SCHEDULE_CRON_HOUR,
            ),
        },
    },
)

_session_factory: Optional[sessionmaker] = None


def get_session_factory() -> sessionmaker:
    """One engine per worker process."""
    global _session_factory
    if _session_factory is None:
        from access_manager.db.session import build_engine, build_session_factory

        _session_factory = build_session_factory(build_engine())
    return _session_factory


@celery_app.task(bind=True, name="run_access_job")
def run_access_job(self) -> dict:
    """Run one expire-then-promote pass.

    The run lock makes overlapping beats and manual runs skip instead of
    driving the dashboard twice.
    """
    from access_manager.executor.access_job import AccessJob

    job = AccessJob.from_settings(get_session_factory())
    report = asyncio.run(job.run())
    return report.summary()


@celery_app.task(bind=True, name="send_expiry_warnings")
def send_expiry_warnings(self) -> dict:
    """Warn users whose access ends within the warning window."""
    from access_manager.executor.access_job import send_expiry_warnings as send_warnings

    count = asyncio.run(send_warnings(get_session_factory()))
    return {"warnings_queued": count}
