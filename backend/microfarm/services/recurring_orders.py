"""Recurring order generation — materializes orders from templates.

A template (see models.order) describes a cadence.  ``backfill`` walks that
cadence over a date window and creates one generated order per occurrence:

    harvest date   = the occurrence itself
    delivery date  = harvest date for market stalls, the next day otherwise
    status         = from the initial-status policy (past deliveries are
                     created already delivered / completed)
    billing period = from services.billing, keyed on the delivery date

An occurrence whose delivery date already has an order for the template is
skipped, so re-running any window is harmless.

``process_recurring_orders`` is the scheduled entry point: every active
template gets its own session and transaction, a failing template is
logged and counted, and the run continues with the next one.  Only a lost
database connection aborts the run.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from microfarm.config import settings
from microfarm.middleware.exceptions import (
    BusinessLogicError,
    ConfigurationError,
    ResourceNotFoundError,
)
from microfarm.models.order import (
    BillingFrequency,
    Frequency,
    Order,
    OrderItem,
    OrderPackaging,
    OrderStatus,
    OrderType,
)
from microfarm.services.billing import apply_billing_period
from microfarm.services.calendar import next_occurrence
from microfarm.services.run_summary import RunSummary
from microfarm.utils.clock import utcnow

logger = logging.getLogger("microfarm.recurring")

# Market stalls harvest and sell on the same day; everything else ships next day
SAME_DAY_DELIVERY_TYPES = frozenset({
    OrderType.FARMERS_MARKET,
    OrderType.FARMERS_MARKET_RECURRING,
})


# ── Initial status policy ───────────────────────────────────

@dataclass(frozen=True)
class InitialStatusPolicy:
    """Status given to an order at creation, from how old its delivery is.

    delivered more than ``completed_after_days`` ago   → completed
    delivered at least ``delivered_after_days`` ago    → delivered
    delivered today or in the future                   → pending
    """
    completed_after_days: int = 7
    delivered_after_days: int = 1

    @classmethod
    def from_settings(cls) -> "InitialStatusPolicy":
        return cls(
            completed_after_days=settings.completed_after_days,
            delivered_after_days=settings.delivered_after_days,
        )

    def status_for(self, delivery_date: date, today: date) -> OrderStatus:
        age_days = (today - delivery_date).days
        if age_days > self.completed_after_days:
            return OrderStatus.COMPLETED
        if age_days >= self.delivered_after_days:
            return OrderStatus.DELIVERED
        return OrderStatus.PENDING


def delivery_date_for(order_type: OrderType | str, harvest_date: date) -> date:
    try:
        same_day = OrderType(order_type) in SAME_DAY_DELIVERY_TYPES
    except ValueError:
        same_day = False
    return harvest_date if same_day else harvest_date + timedelta(days=1)


# ── Backfill ────────────────────────────────────────────────

@dataclass
class BackfillResult:
    template_id: str
    created: list[Order] = field(default_factory=list)
    planned_dates: list[date] = field(default_factory=list)
    skipped_dates: list[date] = field(default_factory=list)
    next_generation_date: date | None = None
    deactivated: bool = False
    dry_run: bool = False

    @property
    def generated_count(self) -> int:
        return len(self.planned_dates)


def _ensure_template(template: Order) -> None:
    if not template.is_template:
        raise BusinessLogicError(f"Order {template.id} is not a recurring template")
    if template.recurring_frequency is None:
        raise ConfigurationError(f"Recurring template {template.id} has no frequency")


def _resolve_cursor(template: Order, from_date: date | None) -> date:
    if from_date is not None:
        return from_date
    if template.recurring_start_date is not None:
        return template.recurring_start_date
    if template.last_generated_at is not None:
        return template.last_generated_at.date() + timedelta(days=1)
    raise ConfigurationError(f"Recurring template {template.id} has no start date")


async def existing_delivery_dates(db: AsyncSession, template_id: str) -> set[date]:
    rows = await db.execute(
        select(Order.delivery_date).where(Order.parent_recurring_order_id == template_id)
    )
    return {row[0] for row in rows.all() if row[0] is not None}


def build_generated_order(
    template: Order,
    harvest_date: date,
    status: OrderStatus,
) -> Order:
    """A new order for one occurrence, copying the template's lines."""
    delivery_date = delivery_date_for(template.order_type, harvest_date)
    order = Order(
        customer_name=template.customer_name,
        order_type=template.order_type,
        status=status,
        harvest_date=harvest_date,
        delivery_date=delivery_date,
        is_recurring=False,
        parent_recurring_order_id=template.id,
        billing_frequency=template.billing_frequency,
        notes=template.notes,
    )
    order.items = [
        OrderItem(
            position=item.position,
            product_id=item.product_id,
            price_variation_id=item.price_variation_id,
            quantity=item.quantity,
            price=item.price,
        )
        for item in template.items
    ]
    order.packaging = [
        OrderPackaging(
            packaging_name=pkg.packaging_name,
            quantity=pkg.quantity,
            notes=pkg.notes,
        )
        for pkg in template.packaging
    ]
    apply_billing_period(order, delivery_date)
    return order


async def backfill(
    db: AsyncSession,
    template: Order,
    to_date: date,
    from_date: date | None = None,
    now: datetime | None = None,
    dry_run: bool = False,
    policy: InitialStatusPolicy | None = None,
) -> BackfillResult:
    """Create the template's missing orders with harvest dates up to ``to_date``.

    The walk starts at ``from_date``, else at the template start date, else
    the day after the last generation.  ``to_date`` is clamped to the
    template end date.  Nothing is written when ``dry_run`` is set.
    """
    _ensure_template(template)
    now = now or utcnow()
    today = now.date()
    policy = policy or InitialStatusPolicy.from_settings()

    cursor = _resolve_cursor(template, from_date)
    end = to_date
    if template.recurring_end_date is not None and end > template.recurring_end_date:
        end = template.recurring_end_date

    result = BackfillResult(template_id=template.id, dry_run=dry_run)
    existing = await existing_delivery_dates(db, template.id)

    while cursor <= end:
        delivery = delivery_date_for(template.order_type, cursor)
        if delivery in existing:
            result.skipped_dates.append(delivery)
        else:
            result.planned_dates.append(delivery)
            existing.add(delivery)
            if not dry_run:
                order = build_generated_order(
                    template, cursor, policy.status_for(delivery, today)
                )
                db.add(order)
                result.created.append(order)
        cursor = next_occurrence(cursor, template.recurring_frequency, template.recurring_interval)

    exhausted = (
        template.recurring_end_date is not None and cursor > template.recurring_end_date
    )
    if exhausted:
        result.next_generation_date = None
        result.deactivated = True
    elif template.next_generation_date is not None and template.next_generation_date > cursor:
        # A historical window never rewinds the template
        result.next_generation_date = template.next_generation_date
    else:
        result.next_generation_date = cursor

    if not dry_run:
        template.last_generated_at = now
        template.next_generation_date = result.next_generation_date
        if exhausted:
            template.is_recurring_active = False
        await db.flush()

    logger.info(
        "Template %s: %d generated, %d skipped%s",
        template.id,
        result.generated_count,
        len(result.skipped_dates),
        " (dry run)" if dry_run else "",
    )
    return result


# ── Scheduled run ───────────────────────────────────────────

async def _template_ids(
    session_factory: async_sessionmaker,
    template_id: str | None,
) -> list[str]:
    """Every active template, or just ``template_id`` whether paused or not."""
    async with session_factory() as db:
        query = select(Order.id).where(
            Order.is_recurring == True,  # noqa: E712
            Order.parent_recurring_order_id.is_(None),
        )
        if template_id is not None:
            query = query.where(Order.id == template_id)
        else:
            query = query.where(Order.is_recurring_active == True)  # noqa: E712
        result = await db.execute(query.order_by(Order.created_at))
        return [row[0] for row in result.all()]


async def process_recurring_orders(
    session_factory: async_sessionmaker,
    to_date: date | None = None,
    from_date: date | None = None,
    template_id: str | None = None,
    full_history: bool = False,
    dry_run: bool = False,
    now: datetime | None = None,
    policy: InitialStatusPolicy | None = None,
) -> RunSummary:
    """Backfill every active template, one transaction per template.

    Without ``from_date`` each template resumes at its next generation
    date; ``full_history`` restarts from the template start date instead.
    ``to_date`` defaults to today plus the configured horizon.
    """
    now = now or utcnow()
    today = now.date()
    to_date = to_date or today + timedelta(weeks=settings.recurring_horizon_weeks)
    policy = policy or InitialStatusPolicy.from_settings()
    summary = RunSummary(job="recurring_orders", dry_run=dry_run)

    template_ids = await _template_ids(session_factory, template_id)
    if template_id is not None and not template_ids:
        summary.record_failure(
            f"template {template_id}", ResourceNotFoundError("Recurring order template", template_id),
        )
    logger.info("Processing %d recurring templates up to %s", len(template_ids), to_date)

    for tid in template_ids:
        summary.processed += 1
        try:
            async with session_factory() as db:
                try:
                    template = await db.get(Order, tid)
                    if (
                        template.recurring_end_date is not None
                        and template.recurring_end_date < today
                        and template.next_generation_date is None
                    ):
                        template.is_recurring_active = False
                        summary.deactivated += 1
                        if not dry_run:
                            await db.commit()
                        continue

                    start = from_date
                    if start is None and not full_history:
                        start = template.next_generation_date
                    result = await backfill(
                        db, template, to_date,
                        from_date=start, now=now, dry_run=dry_run, policy=policy,
                    )
                    summary.generated += result.generated_count
                    summary.skipped += len(result.skipped_dates)
                    if result.deactivated:
                        summary.deactivated += 1
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
            logger.exception("Recurring generation failed for template %s", tid)
            summary.record_failure(f"template {tid}", exc)
        except Exception as exc:
            logger.exception("Recurring generation failed for template %s", tid)
            summary.record_failure(f"template {tid}", exc)

    logger.info(
        "Recurring run complete: %d templates, %d generated, %d skipped, %d failed",
        summary.processed, summary.generated, summary.skipped, summary.failed,
    )
    return summary


# ── Template management ─────────────────────────────────────

async def create_template(
    db: AsyncSession,
    *,
    customer_name: str,
    order_type: OrderType,
    frequency: Frequency,
    start_date: date,
    end_date: date | None = None,
    interval: int | None = None,
    billing_frequency: BillingFrequency | None = None,
    items: list[dict] | None = None,
    packaging: list[dict] | None = None,
    notes: str | None = None,
) -> Order:
    if end_date is not None and end_date < start_date:
        raise BusinessLogicError("Recurring end date is before the start date")

    template = Order(
        customer_name=customer_name,
        order_type=order_type,
        status=OrderStatus.PENDING,
        is_recurring=True,
        is_recurring_active=True,
        recurring_frequency=frequency,
        recurring_interval=interval,
        recurring_start_date=start_date,
        recurring_end_date=end_date,
        next_generation_date=start_date,
        billing_frequency=billing_frequency,
        notes=notes,
    )
    template.items = [
        OrderItem(position=idx, **item) for idx, item in enumerate(items or [])
    ]
    template.packaging = [OrderPackaging(**pkg) for pkg in packaging or []]
    apply_billing_period(template, start_date)
    db.add(template)
    await db.flush()
    return template


async def list_active_templates(db: AsyncSession) -> list[Order]:
    result = await db.execute(
        select(Order)
        .where(
            Order.is_recurring == True,  # noqa: E712
            Order.parent_recurring_order_id.is_(None),
            Order.is_recurring_active == True,  # noqa: E712
        )
        .order_by(Order.created_at)
    )
    return list(result.scalars().all())


async def get_template(db: AsyncSession, template_id: str) -> Order | None:
    template = await db.get(Order, template_id)
    if template is None or not template.is_template:
        return None
    return template


def _first_occurrence_on_or_after(template: Order, day: date) -> date | None:
    cursor = template.next_generation_date or template.recurring_start_date
    if cursor is None:
        return None
    while cursor < day:
        cursor = next_occurrence(cursor, template.recurring_frequency, template.recurring_interval)
    if template.recurring_end_date is not None and cursor > template.recurring_end_date:
        return None
    return cursor


async def pause_template(db: AsyncSession, template: Order) -> Order:
    _ensure_template(template)
    template.is_recurring_active = False
    await db.flush()
    logger.info("Paused recurring template %s", template.id)
    return template


async def resume_template(
    db: AsyncSession,
    template: Order,
    today: date | None = None,
) -> Order:
    """Reactivate a template; generation resumes at the next occurrence from today."""
    _ensure_template(template)
    today = today or utcnow().date()
    next_date = _first_occurrence_on_or_after(template, today)
    if next_date is None:
        raise BusinessLogicError(f"Recurring template {template.id} has already ended")
    template.is_recurring_active = True
    template.next_generation_date = next_date
    await db.flush()
    logger.info("Resumed recurring template %s, next occurrence %s", template.id, next_date)
    return template


async def generate_next_order(
    db: AsyncSession,
    template: Order,
    now: datetime | None = None,
    policy: InitialStatusPolicy | None = None,
) -> Order | None:
    """Materialize only the template's next occurrence (None if it already exists)."""
    _ensure_template(template)
    occurrence = template.next_generation_date or template.recurring_start_date
    if occurrence is None:
        raise ConfigurationError(f"Recurring template {template.id} has no start date")
    if template.recurring_end_date is not None and occurrence > template.recurring_end_date:
        raise BusinessLogicError(f"Recurring template {template.id} has already ended")

    result = await backfill(
        db, template, to_date=occurrence, from_date=occurrence, now=now, policy=policy,
    )
    return result.created[0] if result.created else None


async def get_upcoming_templates(
    db: AsyncSession,
    days: int = 7,
    today: date | None = None,
) -> list[Order]:
    today = today or utcnow().date()
    result = await db.execute(
        select(Order)
        .where(
            Order.is_recurring == True,  # noqa: E712
            Order.parent_recurring_order_id.is_(None),
            Order.is_recurring_active == True,  # noqa: E712
            Order.next_generation_date.is_not(None),
            Order.next_generation_date <= today + timedelta(days=days),
        )
        .order_by(Order.next_generation_date)
    )
    return list(result.scalars().all())


async def get_recurring_stats(db: AsyncSession, today: date | None = None) -> dict:
    today = today or utcnow().date()
    template_filter = (
        Order.is_recurring == True,  # noqa: E712
        Order.parent_recurring_order_id.is_(None),
    )
    counts = await db.execute(
        select(Order.is_recurring_active, func.count(Order.id))
        .where(*template_filter)
        .group_by(Order.is_recurring_active)
    )
    by_active = dict(counts.all())

    generated = await db.execute(
        select(func.count(Order.id)).where(Order.parent_recurring_order_id.is_not(None))
    )
    upcoming = await db.execute(
        select(func.count(Order.id)).where(
            *template_filter,
            Order.is_recurring_active == True,  # noqa: E712
            Order.next_generation_date.is_not(None),
            Order.next_generation_date <= today + timedelta(days=7),
        )
    )
    return {
        "active_templates": by_active.get(True, 0),
        "paused_templates": by_active.get(False, 0),
        "total_generated": generated.scalar() or 0,
        "upcoming_week": upcoming.scalar() or 0,
    }


# ── Cancellation ────────────────────────────────────────────

async def cancel_order(
    db: AsyncSession,
    order: Order,
    now: datetime | None = None,
) -> dict:
    """Cancel a concrete order and withdraw it from crop planning.

    Templates are paused, not cancelled.
    """
    from microfarm.services.crop_planning import withdraw_order

    if order.is_template:
        raise BusinessLogicError("Recurring templates are paused, not cancelled")
    if order.status == OrderStatus.CANCELLED:
        return {"order_id": order.id, "already_cancelled": True, "plans_updated": 0}
    if order.status == OrderStatus.COMPLETED:
        raise BusinessLogicError(f"Order {order.id} is already completed")

    order.status = OrderStatus.CANCELLED
    order.cancelled_at = now or utcnow()
    withdrawal = await withdraw_order(db, order.id)
    await db.flush()
    logger.info("Cancelled order %s (%d crop plans updated)", order.id, withdrawal["plans_updated"])
    return {"order_id": order.id, "already_cancelled": False, **withdrawal}
