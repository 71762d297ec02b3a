"""Stage task scheduling — keeps one dated reminder per growing crop.

For a crop in stage S with entry time T the next transition is due at
T + duration(S), targeting the next stage the recipe actually uses.  The
crop's single active TaskSchedule is created or updated to say exactly
that whenever the crop is created or its stage changes.

This module never moves a crop forward by itself.  ``advance_stage`` and
``rollback_stage`` are the manual actions; scheduling only computes when
the next one is due.

Crops whose recipe is missing, or whose current stage has no entry time
or no usable duration, are logged and any task they had is retired.
"""

import logging
from datetime import datetime, time, timedelta
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from microfarm.middleware.exceptions import ConfigurationError, StageTransitionError
from microfarm.models.crop import STAGE_ORDER, Crop, CropStage
from microfarm.models.crop_plan import UNSOWN_PLAN_STATUSES, CropPlan
from microfarm.models.crop_stage_history import CropStageHistory
from microfarm.models.recipe import Recipe
from microfarm.models.task_schedule import ResourceType, TaskSchedule
from microfarm.schemas.task_conditions import (
    CropStageConditions,
    PlantingConditions,
    dump_conditions,
    parse_conditions,
)
from microfarm.services.notifications import Notifier, notify
from microfarm.services.run_summary import RunSummary
from microfarm.utils.clock import utcnow

logger = logging.getLogger("microfarm.stage_tasks")

PLANTING_TASK_NAME = "plant_crop_plan"


def stage_task_name(target: CropStage) -> str:
    return f"advance_to_{target.value}"


async def _recipe_for(db: AsyncSession, crop: Crop) -> Recipe | None:
    if crop.recipe_id is None:
        return None
    return await db.get(Recipe, crop.recipe_id)


async def active_crop_tasks(db: AsyncSession, crop_id: str) -> list[TaskSchedule]:
    result = await db.execute(
        select(TaskSchedule)
        .where(
            TaskSchedule.resource_type == ResourceType.CROPS,
            TaskSchedule.crop_id == crop_id,
            TaskSchedule.is_active == True,  # noqa: E712
        )
        .order_by(TaskSchedule.created_at)
    )
    return list(result.scalars().all())


async def deactivate_crop_tasks(db: AsyncSession, crop_id: str) -> int:
    tasks = await active_crop_tasks(db, crop_id)
    for task in tasks:
        task.is_active = False
    await db.flush()
    return len(tasks)


async def schedule_stage_tasks(db: AsyncSession, crop: Crop) -> TaskSchedule | None:
    """Create or update the crop's single active stage task.

    Returns the task, or None when no transition can be scheduled.
    """
    if crop.id is None:
        await db.flush()

    recipe = await _recipe_for(db, crop)
    if recipe is None:
        logger.warning("Crop %s has no recipe %s; skipping task scheduling", crop.id, crop.recipe_id)
        await deactivate_crop_tasks(db, crop.id)
        return None

    stage = CropStage(crop.current_stage)
    if stage == CropStage.HARVESTED:
        await deactivate_crop_tasks(db, crop.id)
        return None

    target = recipe.next_stage(stage)
    if target is None:
        logger.warning(
            "Crop %s is in stage %s, which recipe %s does not use; skipping task scheduling",
            crop.id, stage.value, recipe.name,
        )
        await deactivate_crop_tasks(db, crop.id)
        return None

    entered_at = crop.stage_entered_at(stage)
    if entered_at is None:
        logger.warning("Crop %s has no entry time for stage %s; skipping task scheduling", crop.id, stage.value)
        await deactivate_crop_tasks(db, crop.id)
        return None

    duration = recipe.stage_duration(stage)
    if duration is None or duration <= timedelta(0):
        logger.warning(
            "Recipe %s has no duration for stage %s; skipping task scheduling for crop %s",
            recipe.name, stage.value, crop.id,
        )
        await deactivate_crop_tasks(db, crop.id)
        return None

    conditions = CropStageConditions(
        crop_id=crop.id,
        crop_plan_id=crop.crop_plan_id,
        current_stage=stage.value,
        target_stage=target.value,
        tray_number=crop.tray_number,
        recipe_name=recipe.name,
    )

    tasks = await active_crop_tasks(db, crop.id)
    if tasks:
        task = tasks[0]
        for extra in tasks[1:]:
            extra.is_active = False
    else:
        task = TaskSchedule(resource_type=ResourceType.CROPS, crop_id=crop.id)
        db.add(task)

    task.task_name = stage_task_name(target)
    task.name = f"Move tray {crop.tray_number or crop.id} ({recipe.name}) to {target.value}"
    task.next_run_at = entered_at + duration
    task.conditions = dump_conditions(conditions)
    task.is_active = True
    await db.flush()
    return task


def _record_history(
    db: AsyncSession,
    crop: Crop,
    event_type: str,
    from_stage: CropStage,
    to_stage: CropStage,
    occurred_at: datetime,
    reason: str | None,
) -> None:
    db.add(CropStageHistory(
        crop_id=crop.id,
        event_type=event_type,
        from_stage=from_stage.value,
        to_stage=to_stage.value,
        occurred_at=occurred_at,
        reason=reason,
    ))


async def _require_recipe(db: AsyncSession, crop: Crop) -> Recipe:
    recipe = await _recipe_for(db, crop)
    if recipe is None:
        raise ConfigurationError(f"Crop {crop.id} has no recipe")
    return recipe


async def advance_stage(
    db: AsyncSession,
    crop: Crop,
    at: datetime | None = None,
    reason: str | None = None,
) -> Crop:
    """Move the crop to its next stage and reschedule its task."""
    recipe = await _require_recipe(db, crop)
    current = CropStage(crop.current_stage)
    target = recipe.next_stage(current)
    if target is None:
        raise StageTransitionError(f"Crop {crop.id} cannot advance from {current.value}")

    at = at or utcnow()
    entered_at = crop.stage_entered_at(current)
    if entered_at is not None and at < entered_at:
        raise StageTransitionError(
            f"Crop {crop.id} entered {current.value} at {entered_at.isoformat()}; cannot advance earlier"
        )

    crop.set_stage_entered_at(target, at)
    crop.current_stage = target
    _record_history(db, crop, "advance", current, target, at, reason)
    await db.flush()
    await schedule_stage_tasks(db, crop)
    logger.info("Crop %s advanced %s → %s", crop.id, current.value, target.value)
    return crop


async def rollback_stage(
    db: AsyncSession,
    crop: Crop,
    target_stage: CropStage | None = None,
    reason: str | None = None,
    at: datetime | None = None,
) -> Crop:
    """Return the crop to an earlier stage.

    The target stage keeps its original entry time; every later stage
    timestamp is cleared, so the rescheduled task is due exactly when it
    was before the crop advanced.
    """
    recipe = await _require_recipe(db, crop)
    current = CropStage(crop.current_stage)
    stages = recipe.stages()

    target = CropStage(target_stage) if target_stage is not None else recipe.previous_stage(current)
    if target is None or target not in stages or current not in stages:
        raise StageTransitionError(f"Crop {crop.id} cannot roll back from {current.value}")
    if stages.index(target) >= stages.index(current):
        raise StageTransitionError(
            f"Crop {crop.id} cannot roll back from {current.value} to {target.value}"
        )

    at = at or utcnow()
    if crop.stage_entered_at(target) is None:
        crop.set_stage_entered_at(target, at)
    for later in STAGE_ORDER[STAGE_ORDER.index(target) + 1:]:
        crop.set_stage_entered_at(later, None)

    crop.current_stage = target
    _record_history(db, crop, "rollback", current, target, at, reason)
    await db.flush()
    await schedule_stage_tasks(db, crop)
    logger.info("Crop %s rolled back %s → %s", crop.id, current.value, target.value)
    return crop


async def delete_crop(db: AsyncSession, crop: Crop) -> int:
    """Delete a crop; its tasks stay behind as inactive rows."""
    deactivated = await deactivate_crop_tasks(db, crop.id)
    await db.delete(crop)
    await db.flush()
    logger.info("Deleted crop %s (%d tasks deactivated)", crop.id, deactivated)
    return deactivated


async def get_crop_task(db: AsyncSession, crop_id: str) -> TaskSchedule | None:
    tasks = await active_crop_tasks(db, crop_id)
    return tasks[0] if tasks else None


# ── Planting tasks (approved plans) ─────────────────────────

async def active_plan_tasks(db: AsyncSession, plan_id: str) -> list[TaskSchedule]:
    result = await db.execute(
        select(TaskSchedule).where(
            TaskSchedule.resource_type == ResourceType.CROP_PLANS,
            TaskSchedule.crop_plan_id == plan_id,
            TaskSchedule.is_active == True,  # noqa: E712
        )
    )
    return list(result.scalars().all())


async def schedule_planting_task(db: AsyncSession, plan: CropPlan) -> TaskSchedule:
    recipe = await db.get(Recipe, plan.recipe_id)
    recipe_name = recipe.name if recipe else None
    conditions = PlantingConditions(
        crop_plan_id=plan.id,
        recipe_name=recipe_name,
        trays_needed=plan.trays_needed,
        plant_by_date=plan.plant_by_date,
    )
    tasks = await active_plan_tasks(db, plan.id)
    if tasks:
        task = tasks[0]
        for extra in tasks[1:]:
            extra.is_active = False
    else:
        task = TaskSchedule(resource_type=ResourceType.CROP_PLANS, crop_plan_id=plan.id)
        db.add(task)

    task.task_name = PLANTING_TASK_NAME
    task.name = f"Sow {plan.trays_needed} trays of {recipe_name or plan.recipe_id}"
    task.next_run_at = datetime.combine(plan.plant_by_date, time.min)
    task.conditions = dump_conditions(conditions)
    task.is_active = True
    await db.flush()
    return task


async def deactivate_plan_tasks(db: AsyncSession, plan_id: str) -> int:
    tasks = await active_plan_tasks(db, plan_id)
    for task in tasks:
        task.is_active = False
    await db.flush()
    return len(tasks)


# ── Due task check ──────────────────────────────────────────

async def _handle_crop_task(
    db: AsyncSession,
    task: TaskSchedule,
    notifier: Notifier,
    recipients: Sequence[str],
    now: datetime,
    summary: RunSummary,
) -> None:
    conditions = parse_conditions(task.conditions)
    crop = await db.get(Crop, task.crop_id) if task.crop_id else None
    if crop is None:
        task.is_active = False
        summary.deactivated += 1
        logger.info("Task %s: crop %s no longer exists, deactivated", task.id, task.crop_id)
        return

    if CropStage(crop.current_stage).value != conditions.current_stage:
        # Crop moved on since the task was written
        if await schedule_stage_tasks(db, crop) is None:
            summary.deactivated += 1
        else:
            summary.skipped += 1
        return

    message = (
        f"Tray {conditions.tray_number or crop.id} ({conditions.recipe_name}) "
        f"is due to move to {conditions.target_stage} "
        f"(due {task.next_run_at:%Y-%m-%d %H:%M} UTC)"
    )
    await _deliver(task, message, notifier, recipients, now, summary)


async def _handle_plan_task(
    db: AsyncSession,
    task: TaskSchedule,
    notifier: Notifier,
    recipients: Sequence[str],
    now: datetime,
    summary: RunSummary,
) -> None:
    conditions = parse_conditions(task.conditions)
    plan = await db.get(CropPlan, task.crop_plan_id) if task.crop_plan_id else None
    if plan is None or plan.status not in UNSOWN_PLAN_STATUSES:
        task.is_active = False
        summary.deactivated += 1
        return

    message = (
        f"Sow {plan.trays_needed} trays of {conditions.recipe_name} "
        f"by {plan.plant_by_date.isoformat()}"
    )
    await _deliver(task, message, notifier, recipients, now, summary)


async def _deliver(
    task: TaskSchedule,
    message: str,
    notifier: Notifier,
    recipients: Sequence[str],
    now: datetime,
    summary: RunSummary,
) -> None:
    results = await notify(notifier, recipients, message)
    summary.notified += sum(1 for r in results if r.ok)
    summary.errors.extend(
        f"task {task.id} → {r.recipient}: {r.error}" for r in results if not r.ok
    )
    task.last_run_at = now


TASK_HANDLERS = {
    ResourceType.CROPS: _handle_crop_task,
    ResourceType.CROP_PLANS: _handle_plan_task,
}


async def process_due_tasks(
    session_factory: async_sessionmaker,
    notifier: Notifier,
    recipients: Sequence[str],
    resource_type: ResourceType | None = None,
    now: datetime | None = None,
) -> RunSummary:
    """Notify about every active task that is due.

    Tasks stay active after notification; only tasks whose crop or plan
    is gone are deactivated.
    """
    now = now or utcnow()
    summary = RunSummary(job="task_check")

    async with session_factory() as db:
        query = select(TaskSchedule.id).where(
            TaskSchedule.is_active == True,  # noqa: E712
            TaskSchedule.next_run_at <= now,
        )
        if resource_type is not None:
            query = query.where(TaskSchedule.resource_type == resource_type)
        task_ids = [row[0] for row in (await db.execute(query.order_by(TaskSchedule.next_run_at))).all()]

    logger.info("Found %d due tasks", len(task_ids))

    for task_id in task_ids:
        summary.processed += 1
        try:
            async with session_factory() as db:
                try:
                    task = await db.get(TaskSchedule, task_id)
                    handler = TASK_HANDLERS[ResourceType(task.resource_type)]
                    await handler(db, task, notifier, recipients, now, summary)
                    await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise
            logger.exception("Processing task %s failed", task_id)
            summary.record_failure(f"task {task_id}", exc)
        except Exception as exc:
            logger.exception("Processing task %s failed", task_id)
            summary.record_failure(f"task {task_id}", exc)

    logger.info(
        "Task check complete: %d due, %d notifications, %d deactivated, %d failed",
        summary.processed, summary.notified, summary.deactivated, summary.failed,
    )
    return summary
