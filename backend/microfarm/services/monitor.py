"""Plan and task monitor — periodic read-only sweep with reminders.

Items are bucketed by how far away their due time is:

    overdue    due before now
    urgent     due within ``urgent_days``      (default 2)
    upcoming   due within ``upcoming_days``    (default 7)
    on_track   anything later

Unsown plans are due at the end of their plant-by day; crop stage tasks
are due at ``next_run_at``.  Every urgent or overdue item gets one reminder
per sweep.  Nothing is remembered between sweeps, so an item keeps being
reminded about until someone acts on it.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from microfarm.config import settings
from microfarm.models.crop_plan import UNSOWN_PLAN_STATUSES, CropPlan, CropPlanStatus
from microfarm.models.recipe import Recipe
from microfarm.models.task_schedule import ResourceType, TaskSchedule
from microfarm.services.notifications import Notifier, notify
from microfarm.utils.clock import utcnow

logger = logging.getLogger("microfarm.monitor")

OVERDUE = "overdue"
URGENT = "urgent"
UPCOMING = "upcoming"
ON_TRACK = "on_track"
CATEGORIES = (OVERDUE, URGENT, UPCOMING, ON_TRACK)


def categorize(due_at: datetime, now: datetime, urgent_days: int, upcoming_days: int) -> str:
    if due_at < now:
        return OVERDUE
    if due_at <= now + timedelta(days=urgent_days):
        return URGENT
    if due_at <= now + timedelta(days=upcoming_days):
        return UPCOMING
    return ON_TRACK


def plan_due_at(plan: CropPlan) -> datetime:
    return datetime.combine(plan.plant_by_date, time.max)


@dataclass
class MonitoredItem:
    kind: str          # plan | task
    id: str
    category: str
    due_at: datetime
    label: str

    def as_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.id,
            "category": self.category,
            "due_at": self.due_at.isoformat(),
            "label": self.label,
        }


@dataclass
class SweepReport:
    swept_at: datetime
    plans: dict[str, int] = field(default_factory=lambda: dict.fromkeys(CATEGORIES, 0))
    tasks: dict[str, int] = field(default_factory=lambda: dict.fromkeys(CATEGORIES, 0))
    items: list[MonitoredItem] = field(default_factory=list)
    reminders_sent: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "swept_at": self.swept_at.isoformat(),
            "plans": dict(self.plans),
            "tasks": dict(self.tasks),
            "items": [i.as_dict() for i in self.items if i.category in (OVERDUE, URGENT)],
            "reminders_sent": self.reminders_sent,
            "errors": list(self.errors),
        }


async def _recipe_name(db: AsyncSession, recipe_id: str) -> str:
    recipe = await db.get(Recipe, recipe_id)
    return recipe.name if recipe else recipe_id


def _reminder_text(item: MonitoredItem) -> str:
    when = "was due" if item.category == OVERDUE else "is due"
    return f"[{item.category.upper()}] {item.label} {when} {item.due_at:%Y-%m-%d %H:%M} UTC"


async def sweep(
    db: AsyncSession,
    notifier: Notifier,
    recipients: Sequence[str] = (),
    now: datetime | None = None,
    urgent_days: int | None = None,
    upcoming_days: int | None = None,
) -> SweepReport:
    """Classify open plans and crop tasks, and remind about the pressing ones."""
    now = now or utcnow()
    urgent_days = settings.monitor_urgent_days if urgent_days is None else urgent_days
    upcoming_days = settings.monitor_upcoming_days if upcoming_days is None else upcoming_days
    report = SweepReport(swept_at=now)

    plans = (
        await db.execute(
            select(CropPlan)
            .where(CropPlan.status.in_(UNSOWN_PLAN_STATUSES))
            .order_by(CropPlan.plant_by_date)
        )
    ).scalars().all()
    for plan in plans:
        due_at = plan_due_at(plan)
        category = categorize(due_at, now, urgent_days, upcoming_days)
        report.plans[category] += 1
        name = await _recipe_name(db, plan.recipe_id)
        report.items.append(MonitoredItem(
            kind="plan", id=plan.id, category=category, due_at=due_at,
            label=f"Sowing {plan.trays_needed} trays of {name}",
        ))

    tasks = (
        await db.execute(
            select(TaskSchedule)
            .where(
                TaskSchedule.resource_type == ResourceType.CROPS,
                TaskSchedule.is_active == True,  # noqa: E712
            )
            .order_by(TaskSchedule.next_run_at)
        )
    ).scalars().all()
    for task in tasks:
        category = categorize(task.next_run_at, now, urgent_days, upcoming_days)
        report.tasks[category] += 1
        report.items.append(MonitoredItem(
            kind="task", id=task.id, category=category, due_at=task.next_run_at,
            label=task.name,
        ))

    for item in report.items:
        if item.category not in (OVERDUE, URGENT):
            continue
        results = await notify(notifier, recipients, _reminder_text(item))
        if any(r.ok for r in results):
            report.reminders_sent += 1
        report.errors.extend(
            f"{item.kind} {item.id} → {r.recipient}: {r.error}" for r in results if not r.ok
        )

    logger.info(
        "Monitor sweep: plans %s, tasks %s, %d reminders, %d errors",
        report.plans, report.tasks, report.reminders_sent, len(report.errors),
    )
    return report


# ── Read models ─────────────────────────────────────────────

async def get_upcoming_plans(
    db: AsyncSession,
    days: int = 7,
    today: date | None = None,
) -> list[CropPlan]:
    today = today or utcnow().date()
    result = await db.execute(
        select(CropPlan)
        .where(
            CropPlan.status.in_(UNSOWN_PLAN_STATUSES),
            CropPlan.plant_by_date >= today,
            CropPlan.plant_by_date <= today + timedelta(days=days),
        )
        .order_by(CropPlan.plant_by_date)
    )
    return list(result.scalars().all())


async def get_overdue_plans(db: AsyncSession, today: date | None = None) -> list[CropPlan]:
    today = today or utcnow().date()
    result = await db.execute(
        select(CropPlan)
        .where(
            CropPlan.status.in_(UNSOWN_PLAN_STATUSES),
            CropPlan.plant_by_date < today,
        )
        .order_by(CropPlan.plant_by_date)
    )
    return list(result.scalars().all())


async def get_plans_summary_by_status(db: AsyncSession) -> dict[str, int]:
    result = await db.execute(
        select(CropPlan.status, func.count(CropPlan.id)).group_by(CropPlan.status)
    )
    counts = {s.value: 0 for s in CropPlanStatus}
    for status, count in result.all():
        counts[CropPlanStatus(status).value] = count
    return counts
