"""Background jobs: order generation, crop planning, task checks, reminders.

Uses FastAPI's lifespan context to start/stop asyncio background loops.
No Celery, no APScheduler: each job is a sleep loop, either daily at a
configured UTC hour or every N minutes.

Jobs:
    order_generation   daily   ORDER_GENERATION_HOUR   recurring templates,
                                                       then plans for new orders
    plan_generation    daily   PLAN_GENERATION_HOUR    plans for pending orders
    task_check         every TASK_CHECK_INTERVAL_MINUTES  due stage/planting tasks
    monitor_sweep      daily   MONITOR_SWEEP_HOUR      overdue/urgent reminders

Every job body runs under a job lock (utils.locks), so a trigger that fires
while the previous run of the same job is still going is skipped.

Set SCHEDULER_ENABLED=false to run the API without background jobs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from fastapi import FastAPI

from microfarm.config import settings
from microfarm.database import async_session
from microfarm.services.crop_planning import generate_plans_for_upcoming_orders
from microfarm.services.monitor import sweep
from microfarm.services.notifications import get_notifier
from microfarm.services.recurring_orders import process_recurring_orders
from microfarm.services.stage_tasks import process_due_tasks
from microfarm.utils.locks import close_redis, get_job_lock

logger = logging.getLogger("microfarm.scheduler")


async def run_guarded(name: str, job: Callable[[], Awaitable[dict]]) -> dict | None:
    """Run ``job`` unless another run of ``name`` holds the lock."""
    lock = await get_job_lock()
    async with lock.hold(name) as acquired:
        if not acquired:
            logger.info("Skipping %s: previous run still in progress", name)
            return None
        return await job()


# ── Job bodies ──────────────────────────────────────────────

async def run_order_generation() -> dict:
    orders = await process_recurring_orders(async_session)
    plans = await generate_plans_for_upcoming_orders(async_session)
    return {"recurring_orders": orders.as_dict(), "crop_plans": plans.as_dict()}


async def run_plan_generation() -> dict:
    summary = await generate_plans_for_upcoming_orders(async_session)
    return summary.as_dict()


async def run_task_check() -> dict:
    summary = await process_due_tasks(async_session, get_notifier(), settings.recipients)
    return summary.as_dict()


async def run_monitor_sweep() -> dict:
    async with async_session() as db:
        report = await sweep(db, get_notifier(), settings.recipients)
    return report.as_dict()


# ── Loops ───────────────────────────────────────────────────

def seconds_until_hour(now: datetime, hour: int) -> float:
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def _daily_loop(name: str, hour: int, job: Callable[[], Awaitable[dict]]) -> None:
    while True:
        wait_seconds = seconds_until_hour(datetime.now(timezone.utc), hour)
        logger.info("Next %s run in %.0f seconds", name, wait_seconds)
        await asyncio.sleep(wait_seconds)

        try:
            await run_guarded(name, job)
        except Exception:
            logger.exception("Unhandled error in %s", name)

        # Small buffer to avoid running twice in the same minute
        await asyncio.sleep(60)


async def _interval_loop(name: str, minutes: int, job: Callable[[], Awaitable[dict]]) -> None:
    while True:
        await asyncio.sleep(minutes * 60)
        try:
            await run_guarded(name, job)
        except Exception:
            logger.exception("Unhandled error in %s", name)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan: start the job loops on startup, cancel on shutdown."""
    tasks: list[asyncio.Task] = []
    if settings.scheduler_enabled:
        tasks = [
            asyncio.create_task(
                _daily_loop("order_generation", settings.order_generation_hour, run_order_generation)
            ),
            asyncio.create_task(
                _daily_loop("plan_generation", settings.plan_generation_hour, run_plan_generation)
            ),
            asyncio.create_task(
                _interval_loop("task_check", settings.task_check_interval_minutes, run_task_check)
            ),
            asyncio.create_task(
                _daily_loop("monitor_sweep", settings.monitor_sweep_hour, run_monitor_sweep)
            ),
        ]
        logger.info("Scheduler started with %d jobs", len(tasks))
    try:
        yield
    finally:
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await close_redis()
        logger.info("Scheduler stopped")
