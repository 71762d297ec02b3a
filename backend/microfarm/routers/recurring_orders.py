"""Recurring template endpoints.

Endpoints:
    POST /                           Create a template
    GET  /stats                      Active/paused/generated counts
    GET  /upcoming                   Templates generating within N days
    POST /backfill                   Backfill one or all templates over a window
    POST /run                        Trigger the scheduled generation run now
    POST /{template_id}/pause        Stop generating
    POST /{template_id}/resume       Resume from the next occurrence after today
    POST /{template_id}/generate-next  Materialize only the next occurrence
"""

from datetime import timedelta

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from microfarm.config import settings
from microfarm.database import async_session, get_db
from microfarm.middleware.exceptions import ResourceNotFoundError
from microfarm.models.order import Order
from microfarm.schemas.order import (
    BackfillOut,
    BackfillRequest,
    OrderOut,
    RecurringStats,
    RunSummaryOut,
    TemplateCreate,
)
from microfarm.services import recurring_orders
from microfarm.utils.clock import utcnow

router = APIRouter()


async def _template_or_404(db: AsyncSession, template_id: str) -> Order:
    template = await recurring_orders.get_template(db, template_id)
    if template is None:
        raise ResourceNotFoundError("Recurring template", template_id)
    return template


@router.post("/", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
async def create_template(body: TemplateCreate, db: AsyncSession = Depends(get_db)):
    return await recurring_orders.create_template(
        db,
        customer_name=body.customer_name,
        order_type=body.order_type,
        frequency=body.frequency,
        start_date=body.start_date,
        end_date=body.end_date,
        interval=body.interval,
        billing_frequency=body.billing_frequency,
        items=[i.model_dump() for i in body.items],
        packaging=[p.model_dump() for p in body.packaging],
        notes=body.notes,
    )


@router.get("/stats", response_model=RecurringStats)
async def get_stats(db: AsyncSession = Depends(get_db)):
    return await recurring_orders.get_recurring_stats(db)


@router.get("/upcoming", response_model=list[OrderOut])
async def get_upcoming(
    days: int = Query(7, ge=0, le=90),
    db: AsyncSession = Depends(get_db),
):
    return await recurring_orders.get_upcoming_templates(db, days=days)


@router.post("/backfill", response_model=list[BackfillOut])
async def backfill_templates(body: BackfillRequest, db: AsyncSession = Depends(get_db)):
    """Backfill inside the request transaction; use /run for the batch job."""
    now = utcnow()
    to_date = body.to_date or now.date() + timedelta(weeks=settings.recurring_horizon_weeks)
    if body.template_id is not None:
        templates = [await _template_or_404(db, body.template_id)]
    else:
        templates = await recurring_orders.list_active_templates(db)

    results = []
    for template in templates:
        result = await recurring_orders.backfill(
            db, template, to_date,
            from_date=body.from_date, now=now, dry_run=body.dry_run,
        )
        results.append(BackfillOut(
            template_id=result.template_id,
            generated=result.generated_count,
            planned_dates=result.planned_dates,
            skipped_dates=result.skipped_dates,
            next_generation_date=result.next_generation_date,
            deactivated=result.deactivated,
            dry_run=result.dry_run,
        ))
    return results


@router.post("/run", response_model=RunSummaryOut)
async def run_generation(dry_run: bool = False):
    """Same job the scheduler runs daily, one transaction per template."""
    summary = await recurring_orders.process_recurring_orders(async_session, dry_run=dry_run)
    return summary.as_dict()


@router.post("/{template_id}/pause", response_model=OrderOut)
async def pause(template_id: str, db: AsyncSession = Depends(get_db)):
    template = await _template_or_404(db, template_id)
    return await recurring_orders.pause_template(db, template)


@router.post("/{template_id}/resume", response_model=OrderOut)
async def resume(template_id: str, db: AsyncSession = Depends(get_db)):
    template = await _template_or_404(db, template_id)
    return await recurring_orders.resume_template(db, template)


@router.post("/{template_id}/generate-next", response_model=OrderOut | None)
async def generate_next(template_id: str, db: AsyncSession = Depends(get_db)):
    template = await _template_or_404(db, template_id)
    return await recurring_orders.generate_next_order(db, template)
