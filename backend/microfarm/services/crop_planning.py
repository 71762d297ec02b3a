"""Crop plan derivation — turns concrete orders into sowing requirements.

For every line item of an order:

    grams  = quantity × fill weight of the sold variation (default 100 g)
    recipe = the product's recipe, or each recipe of a product mix with
             its percentage share of the grams

Requirements are grouped per recipe, then per group:

    trays         = max(1, ceil(grams ÷ recipe yield per tray))
    harvest date  = order harvest date, else delivery date − 1 day
    plant-by date = harvest date − ceil(recipe total grow days)

A still-``planned`` plan for the same (recipe, harvest date) absorbs the
new requirement instead of a second plan being created; each contributing
order is recorded as a CropPlanOrder allocation.  Approved and running
plans are never touched.

Line items that cannot be resolved to a recipe are reported as errors on
the result while the rest of the order is still planned.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import exists, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from microfarm.config import settings
from microfarm.middleware.exceptions import BusinessLogicError, ConfigurationError
from microfarm.models.crop import Crop
from microfarm.models.crop_plan import UNSOWN_PLAN_STATUSES, CropPlan, CropPlanOrder, CropPlanStatus
from microfarm.models.order import Order, OrderStatus
from microfarm.models.product import Product, ProductMixComponent, ProductVariation
from microfarm.models.recipe import Recipe
from microfarm.services import stage_tasks
from microfarm.services.run_summary import RunSummary
from microfarm.utils.clock import utcnow

logger = logging.getLogger("microfarm.crop_planning")


@dataclass
class RecipeRequirement:
    recipe: Recipe
    grams: float = 0.0
    item_ids: list[str] = field(default_factory=list)

    def trays(self) -> int:
        yield_per_tray = self.recipe.expected_yield_grams or settings.default_yield_grams_per_tray
        return max(1, math.ceil(self.grams / yield_per_tray))


@dataclass
class DerivationResult:
    order_id: str
    plans: list[CropPlan] = field(default_factory=list)
    created: int = 0
    aggregated: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)


def harvest_date_for(order: Order) -> date | None:
    if order.harvest_date is not None:
        return order.harvest_date
    if order.delivery_date is not None:
        return order.delivery_date - timedelta(days=1)
    return None


def plant_by_date_for(recipe: Recipe, harvest_date: date) -> date:
    return harvest_date - timedelta(days=math.ceil(recipe.total_days()))


def is_overdue(recipe: Recipe, plant_by: date, now: datetime) -> bool:
    """Too late once plant-by falls before now minus the soak lead."""
    return plant_by < (now - recipe.soak_lead()).date()


async def is_order_planned(db: AsyncSession, order_id: str) -> bool:
    result = await db.execute(
        select(exists().where(CropPlanOrder.order_id == order_id))
    )
    return bool(result.scalar())


async def _recipe_shares(db: AsyncSession, product: Product) -> list[tuple[Recipe | None, float, str]]:
    """(recipe, percentage, recipe_ref) per component of the product."""
    if product.recipe_id is not None:
        return [(await db.get(Recipe, product.recipe_id), 100.0, product.recipe_id)]

    components = (
        await db.execute(
            select(ProductMixComponent).where(ProductMixComponent.product_id == product.id)
        )
    ).scalars().all()
    return [
        (await db.get(Recipe, c.recipe_id), c.percentage, c.recipe_id)
        for c in components
    ]


async def collect_requirements(
    db: AsyncSession,
    order: Order,
) -> tuple[dict[str, RecipeRequirement], list[str]]:
    requirements: dict[str, RecipeRequirement] = {}
    errors: list[str] = []

    for item in order.items:
        product = await db.get(Product, item.product_id)
        if product is None:
            errors.append(f"Order item {item.id}: product {item.product_id} not found")
            continue

        fill_weight = None
        if item.price_variation_id is not None:
            variation = await db.get(ProductVariation, item.price_variation_id)
            fill_weight = variation.fill_weight_grams if variation else None
        grams = item.quantity * (fill_weight or settings.default_fill_weight_grams)

        shares = await _recipe_shares(db, product)
        if not shares:
            errors.append(f"Order item {item.id}: product '{product.name}' has no recipe")
            continue

        for recipe, percentage, recipe_ref in shares:
            if recipe is None:
                errors.append(
                    f"Order item {item.id}: recipe {recipe_ref} for '{product.name}' not found"
                )
                continue
            req = requirements.setdefault(recipe.id, RecipeRequirement(recipe=recipe))
            req.grams += grams * percentage / 100
            req.item_ids.append(item.id)

    return requirements, errors


async def find_open_plan(
    db: AsyncSession,
    recipe_id: str,
    harvest_date: date,
) -> CropPlan | None:
    result = await db.execute(
        select(CropPlan)
        .where(
            CropPlan.recipe_id == recipe_id,
            CropPlan.expected_harvest_date == harvest_date,
            CropPlan.status == CropPlanStatus.PLANNED,
        )
        .order_by(CropPlan.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()


def _allocation_entry(order: Order, req: RecipeRequirement, trays: int) -> dict:
    return {
        "order_id": order.id,
        "customer": order.customer_name,
        "grams": round(req.grams, 2),
        "trays": trays,
        "order_item_ids": list(req.item_ids),
    }


async def derive_for_order(
    db: AsyncSession,
    order: Order,
    now: datetime | None = None,
) -> DerivationResult:
    """Create or extend the crop plans needed to fulfil ``order``.

    Deriving an order that is already planned is a no-op.
    """
    if order.is_template:
        raise BusinessLogicError("Recurring templates are not planned; plan their orders")

    now = now or utcnow()
    result = DerivationResult(order_id=order.id)

    if order.status == OrderStatus.CANCELLED or await is_order_planned(db, order.id):
        result.skipped = True
        return result

    harvest_date = harvest_date_for(order)
    if harvest_date is None:
        result.errors.append(f"Order {order.id} has neither a harvest nor a delivery date")
        return result

    requirements, result.errors = await collect_requirements(db, order)

    for recipe_id, req in requirements.items():
        recipe = req.recipe
        trays = req.trays()
        entry = _allocation_entry(order, req, trays)
        plan = await find_open_plan(db, recipe_id, harvest_date)

        if plan is not None:
            plan.trays_needed += trays
            plan.grams_needed += req.grams
            details = dict(plan.calculation_details or {})
            details["orders"] = list(details.get("orders", [])) + [entry]
            plan.calculation_details = details
            result.aggregated += 1
        else:
            plant_by = plant_by_date_for(recipe, harvest_date)
            plan = CropPlan(
                recipe_id=recipe.id,
                status=CropPlanStatus.PLANNED,
                trays_needed=trays,
                grams_needed=req.grams,
                grams_per_tray=recipe.expected_yield_grams or settings.default_yield_grams_per_tray,
                expected_harvest_date=harvest_date,
                delivery_date=order.delivery_date,
                plant_by_date=plant_by,
                seed_soak_date=plant_by if recipe.requires_soaking else None,
                is_overdue=is_overdue(recipe, plant_by, now),
                calculation_details={
                    "recipe": {
                        "name": recipe.name,
                        "total_days": recipe.total_days(),
                        "seed_soak_hours": recipe.seed_soak_hours,
                        "germination_days": recipe.germination_days,
                        "blackout_days": recipe.blackout_days,
                        "light_days": recipe.light_days,
                    },
                    "orders": [entry],
                },
            )
            db.add(plan)
            await db.flush()
            result.created += 1
            if plan.is_overdue:
                logger.warning(
                    "Crop plan %s for %s is overdue: plant-by %s", plan.id, recipe.name, plant_by
                )

        db.add(CropPlanOrder(
            crop_plan_id=plan.id, order_id=order.id, trays=trays, grams=req.grams,
        ))
        result.plans.append(plan)

    await db.flush()

    for error in result.errors:
        logger.warning("Order %s: %s", order.id, error)
    return result


async def _orders_needing_plans(
    session_factory: async_sessionmaker,
    today: date,
    days_ahead: int,
    order_id: str | None,
) -> list[str]:
    async with session_factory() as db:
        query = select(Order.id).where(
            Order.is_recurring == False,  # noqa: E712
            Order.status == OrderStatus.PENDING,
            Order.delivery_date.is_not(None),
            Order.delivery_date >= today,
            Order.delivery_date <= today + timedelta(days=days_ahead),
            ~exists().where(CropPlanOrder.order_id == Order.id),
        )
        if order_id is not None:
            query = select(Order.id).where(Order.id == order_id)
        result = await db.execute(query.order_by(Order.delivery_date))
        return [row[0] for row in result.all()]


async def generate_plans_for_upcoming_orders(
    session_factory: async_sessionmaker,
    days_ahead: int | None = None,
    order_id: str | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> RunSummary:
    """Derive plans for pending orders delivering within ``days_ahead``.

    One transaction per order; a failing order is logged and counted.
    """
    now = now or utcnow()
    days_ahead = settings.plan_generation_days_ahead if days_ahead is None else days_ahead
    summary = RunSummary(job="crop_plans", dry_run=dry_run)

    order_ids = await _orders_needing_plans(session_factory, now.date(), days_ahead, order_id)
    logger.info("Deriving crop plans for %d orders", len(order_ids))

    for oid in order_ids:
        summary.processed += 1
        try:
            async with session_factory() as db:
                try:
                    order = await db.get(Order, oid)
                    if order is None:
                        raise BusinessLogicError(f"Order {oid} disappeared")
                    result = await derive_for_order(db, order, now=now)
                    if result.skipped:
                        summary.skipped += 1
                    summary.generated += result.created
                    summary.errors.extend(f"order {oid}: {e}" for e in result.errors)
                    if dry_run:
                        await db.rollback()
                    else:
                        await db.commit()
                except Exception:
                    await db.rollback()
                    raise
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise
            logger.exception("Crop plan derivation failed for order %s", oid)
            summary.record_failure(f"order {oid}", exc)
        except Exception as exc:
            logger.exception("Crop plan derivation failed for order %s", oid)
            summary.record_failure(f"order {oid}", exc)

    logger.info(
        "Crop plan run complete: %d orders, %d plans created, %d failed",
        summary.processed, summary.generated, summary.failed,
    )
    return summary


# ── Plan lifecycle ──────────────────────────────────────────

async def approve_plan(
    db: AsyncSession,
    plan: CropPlan,
    now: datetime | None = None,
) -> CropPlan:
    if plan.status != CropPlanStatus.PLANNED:
        raise BusinessLogicError(f"Crop plan {plan.id} is {plan.status.value}, not planned")
    plan.status = CropPlanStatus.APPROVED
    plan.approved_at = now or utcnow()
    await db.flush()
    await stage_tasks.schedule_planting_task(db, plan)
    return plan


async def start_production(
    db: AsyncSession,
    plan: CropPlan,
    planted_at: datetime | None = None,
    tray_numbers: list[str] | None = None,
) -> list[Crop]:
    """Sow the plan: one Crop per tray in the recipe's first stage."""
    if plan.status not in UNSOWN_PLAN_STATUSES:
        raise BusinessLogicError(f"Crop plan {plan.id} is {plan.status.value}; cannot start")
    recipe = await db.get(Recipe, plan.recipe_id)
    if recipe is None:
        raise ConfigurationError(f"Recipe {plan.recipe_id} for crop plan {plan.id} not found")
    if tray_numbers is not None and len(tray_numbers) != plan.trays_needed:
        raise BusinessLogicError(
            f"Crop plan {plan.id} needs {plan.trays_needed} tray numbers, got {len(tray_numbers)}"
        )

    planted_at = planted_at or utcnow()
    first_stage = recipe.first_stage()
    crops = []
    for idx in range(plan.trays_needed):
        crop = Crop(
            crop_plan_id=plan.id,
            recipe_id=recipe.id,
            tray_number=tray_numbers[idx] if tray_numbers else f"{plan.id[:8]}-{idx + 1}",
            current_stage=first_stage,
        )
        crop.set_stage_entered_at(first_stage, planted_at)
        db.add(crop)
        crops.append(crop)
    await db.flush()

    for crop in crops:
        await stage_tasks.schedule_stage_tasks(db, crop)

    plan.status = CropPlanStatus.IN_PRODUCTION
    plan.started_at = planted_at
    await stage_tasks.deactivate_plan_tasks(db, plan.id)
    await db.flush()
    logger.info("Crop plan %s in production with %d trays", plan.id, len(crops))
    return crops


async def complete_plan(
    db: AsyncSession,
    plan: CropPlan,
    now: datetime | None = None,
) -> CropPlan:
    if plan.status != CropPlanStatus.IN_PRODUCTION:
        raise BusinessLogicError(f"Crop plan {plan.id} is {plan.status.value}, not in production")
    plan.status = CropPlanStatus.COMPLETED
    plan.completed_at = now or utcnow()
    await db.flush()
    return plan


async def withdraw_order(db: AsyncSession, order_id: str) -> dict:
    """Remove a cancelled order's share from the plans it fed.

    Unsown plans shrink by the order's allocation and are cancelled once no
    order is left.  Plans already in production keep their trays; when no
    live order remains their crops' stage tasks are deactivated.
    """
    allocations = (
        await db.execute(select(CropPlanOrder).where(CropPlanOrder.order_id == order_id))
    ).scalars().all()
    plans_updated = 0
    plans_cancelled = 0
    tasks_deactivated = 0

    for allocation in allocations:
        plan = await db.get(CropPlan, allocation.crop_plan_id)
        if plan is None:
            continue
        plans_updated += 1

        if plan.status in UNSOWN_PLAN_STATUSES:
            plan.trays_needed = max(0, plan.trays_needed - allocation.trays)
            plan.grams_needed = max(0.0, plan.grams_needed - allocation.grams)
            details = dict(plan.calculation_details or {})
            details["orders"] = [
                o for o in details.get("orders", []) if o.get("order_id") != order_id
            ]
            plan.calculation_details = details
            await db.delete(allocation)
            await db.flush()
            if not await _plan_has_live_orders(db, plan.id):
                plan.status = CropPlanStatus.CANCELLED
                plans_cancelled += 1
                tasks_deactivated += await stage_tasks.deactivate_plan_tasks(db, plan.id)
        elif plan.status == CropPlanStatus.IN_PRODUCTION:
            if not await _plan_has_live_orders(db, plan.id, excluding=order_id):
                crop_ids = (
                    await db.execute(select(Crop.id).where(Crop.crop_plan_id == plan.id))
                ).scalars().all()
                for crop_id in crop_ids:
                    tasks_deactivated += await stage_tasks.deactivate_crop_tasks(db, crop_id)

    await db.flush()
    return {
        "plans_updated": plans_updated,
        "plans_cancelled": plans_cancelled,
        "tasks_deactivated": tasks_deactivated,
    }


async def _plan_has_live_orders(
    db: AsyncSession,
    plan_id: str,
    excluding: str | None = None,
) -> bool:
    query = (
        select(CropPlanOrder.id)
        .join(Order, Order.id == CropPlanOrder.order_id)
        .where(
            CropPlanOrder.crop_plan_id == plan_id,
            Order.status != OrderStatus.CANCELLED,
        )
    )
    if excluding is not None:
        query = query.where(CropPlanOrder.order_id != excluding)
    result = await db.execute(query.limit(1))
    return result.first() is not None


async def get_planting_schedule(
    db: AsyncSession,
    start: date,
    end: date,
) -> list[dict]:
    """Open plans between two plant-by dates, grouped by date then recipe."""
    plans = (
        await db.execute(
            select(CropPlan)
            .where(
                CropPlan.plant_by_date >= start,
                CropPlan.plant_by_date <= end,
                CropPlan.status.in_(UNSOWN_PLAN_STATUSES),
            )
            .order_by(CropPlan.plant_by_date)
        )
    ).scalars().all()

    by_date: dict[date, dict[str, dict]] = defaultdict(dict)
    for plan in plans:
        recipe = await db.get(Recipe, plan.recipe_id)
        name = recipe.name if recipe else plan.recipe_id
        bucket = by_date[plan.plant_by_date].setdefault(
            plan.recipe_id,
            {"recipe_id": plan.recipe_id, "recipe_name": name, "trays": 0, "plan_ids": []},
        )
        bucket["trays"] += plan.trays_needed
        bucket["plan_ids"].append(plan.id)

    return [
        {
            "plant_by_date": day,
            "total_trays": sum(r["trays"] for r in recipes.values()),
            "recipes": list(recipes.values()),
        }
        for day, recipes in sorted(by_date.items())
    ]
