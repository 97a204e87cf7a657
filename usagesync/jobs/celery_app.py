"""Celery configuration for the scheduled usage sync."""

from __future__ import annotations

import os

from celery import Celery
from celery.schedules import crontab

from usagesync.utils.dates import timezone_name

broker_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
backend_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")

celery_app = Celery("usagesync", broker=broker_url, backend=backend_url, include=["usagesync.jobs.sync"])
celery_app.conf.timezone = timezone_name()
celery_app.conf.beat_schedule = {
    "vendor-usage-sync": {
        "task": "usagesync.jobs.sync.run_sync",
        "schedule": crontab(hour=os.environ.get("SYNC_HOURS", "6,18"), minute=0),
        "kwargs": {"api_only": True},
    },
}


@celery_app.task(name="usagesync.jobs.sync.run_sync")
def run_sync_task(vendors: list[str] | None = None, dry_run: bool = False, api_only: bool = False) -> dict[str, object]:  # pragma: no cover - executed by worker
    import asyncio

    from usagesync.jobs.sync import run_sync

    report = asyncio.run(run_sync(vendors, dry_run=dry_run, api_only=api_only))
    return {
        "exit_code": report.exit_code,
        "results": {result.vendor.value: result.status for result in report.results},
    }
