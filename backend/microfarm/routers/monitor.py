"""Plan/task overview and manual triggers for the periodic jobs."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from microfarm.config import settings
from microfarm.database import async_session, get_db
from microfarm.models.task_schedule import ResourceType
from microfarm.schemas.crop_plan import CropPlanOut
from microfarm.schemas.order import RunSummaryOut
from microfarm.services import monitor
from microfarm.services.notifications import get_notifier
from microfarm.services.stage_tasks import process_due_tasks

router = APIRouter()


@router.get("/summary")
async def summary(
    days: int = Query(7, ge=1, le=60),
    db: AsyncSession = Depends(get_db),
):
    """Plan counts by status plus upcoming and overdue plans."""
    upcoming = await monitor.get_upcoming_plans(db, days=days)
    overdue = await monitor.get_overdue_plans(db)
    return {
        "by_status": await monitor.get_plans_summary_by_status(db),
        "upcoming": [CropPlanOut.model_validate(p) for p in upcoming],
        "overdue": [CropPlanOut.model_validate(p) for p in overdue],
    }


@router.post("/sweep")
async def run_sweep(db: AsyncSession = Depends(get_db)):
    report = await monitor.sweep(db, get_notifier(), settings.recipients)
    return report.as_dict()


@router.post("/process-tasks", response_model=RunSummaryOut)
async def run_task_check(resource_type: ResourceType | None = None):
    result = await process_due_tasks(
        async_session, get_notifier(), settings.recipients, resource_type=resource_type,
    )
    return result.as_dict()
