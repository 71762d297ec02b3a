"""Crop plan endpoints: derivation, planting schedule and plan lifecycle.

Endpoints:
    GET  /                          List plans (optional status filter)
    GET  /schedule                  Planting schedule grouped by plant-by date
    POST /generate                  Derive plans for upcoming pending orders
    POST /orders/{order_id}/derive  Derive plans for one order now
    POST /{plan_id}/approve         planned → approved (schedules the sowing task)
    POST /{plan_id}/start           Sow: create crops and their stage tasks
    POST /{plan_id}/complete        in_production → completed
"""

from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from microfarm.database import async_session, get_db
from microfarm.middleware.exceptions import ResourceNotFoundError
from microfarm.models.crop_plan import CropPlan, CropPlanStatus
from microfarm.models.order import Order
from microfarm.schemas.crop_plan import (
    CropOut,
    CropPlanOut,
    DerivationOut,
    GeneratePlansRequest,
    ScheduleDay,
    StartProductionRequest,
)
from microfarm.schemas.order import RunSummaryOut
from microfarm.services import crop_planning
from microfarm.utils.clock import today

router = APIRouter()


async def _plan_or_404(db: AsyncSession, plan_id: str) -> CropPlan:
    plan = await db.get(CropPlan, plan_id)
    if plan is None:
        raise ResourceNotFoundError("Crop plan", plan_id)
    return plan


@router.get("/", response_model=list[CropPlanOut])
async def list_plans(
    status: CropPlanStatus | None = None,
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    query = select(CropPlan).order_by(CropPlan.plant_by_date).limit(limit)
    if status is not None:
        query = query.where(CropPlan.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/schedule", response_model=list[ScheduleDay])
async def planting_schedule(
    start: date | None = None,
    end: date | None = None,
    db: AsyncSession = Depends(get_db),
):
    start = start or today()
    end = end or start + timedelta(days=14)
    return await crop_planning.get_planting_schedule(db, start, end)


@router.post("/generate", response_model=RunSummaryOut)
async def generate_plans(body: GeneratePlansRequest):
    summary = await crop_planning.generate_plans_for_upcoming_orders(
        async_session,
        days_ahead=body.days_ahead,
        order_id=body.order_id,
        dry_run=body.dry_run,
    )
    return summary.as_dict()


@router.post("/orders/{order_id}/derive", response_model=DerivationOut)
async def derive_for_order(order_id: str, db: AsyncSession = Depends(get_db)):
    order = await db.get(Order, order_id)
    if order is None:
        raise ResourceNotFoundError("Order", order_id)
    result = await crop_planning.derive_for_order(db, order)
    return DerivationOut(
        order_id=result.order_id,
        skipped=result.skipped,
        created=result.created,
        aggregated=result.aggregated,
        plans=[CropPlanOut.model_validate(p) for p in result.plans],
        errors=result.errors,
    )


@router.post("/{plan_id}/approve", response_model=CropPlanOut)
async def approve(plan_id: str, db: AsyncSession = Depends(get_db)):
    plan = await _plan_or_404(db, plan_id)
    return await crop_planning.approve_plan(db, plan)


@router.post("/{plan_id}/start", response_model=list[CropOut])
async def start(
    plan_id: str,
    body: StartProductionRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    plan = await _plan_or_404(db, plan_id)
    body = body or StartProductionRequest()
    return await crop_planning.start_production(
        db, plan, planted_at=body.planted_at, tray_numbers=body.tray_numbers,
    )


@router.post("/{plan_id}/complete", response_model=CropPlanOut)
async def complete(plan_id: str, db: AsyncSession = Depends(get_db)):
    plan = await _plan_or_404(db, plan_id)
    return await crop_planning.complete_plan(db, plan)
