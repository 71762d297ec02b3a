"""Billing-period assignment for generated and recurring orders.

Every order is billed inside exactly one period.  Which period depends on
how the account is billed:

    monthly     YYYY-MM            calendar month
    weekly      YYYY-Www           ISO week, Monday–Sunday
    biweekly    YYYY-Www/Www       two ISO weeks, starting on an odd week
    quarterly   YYYY-Qn            calendar quarter

The billing frequency comes from the order's own override when set, else
from the default for its order type; anything unknown bills monthly.
Strategies are looked up in a registry so new cadences plug in without
touching the callers.
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Protocol

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from microfarm.models.order import BillingFrequency, Order, OrderStatus, OrderType

logger = logging.getLogger("microfarm.billing")


@dataclass(frozen=True)
class BillingPeriod:
    label: str
    start: date
    end: date


class BillingStrategy(Protocol):
    def period_for(self, reference: date) -> BillingPeriod: ...


# ── Strategies ──────────────────────────────────────────────

class MonthlyBilling:
    def period_for(self, reference: date) -> BillingPeriod:
        last_day = calendar.monthrange(reference.year, reference.month)[1]
        return BillingPeriod(
            label=f"{reference.year:04d}-{reference.month:02d}",
            start=reference.replace(day=1),
            end=reference.replace(day=last_day),
        )


class WeeklyBilling:
    def period_for(self, reference: date) -> BillingPeriod:
        iso = reference.isocalendar()
        monday = reference - timedelta(days=reference.weekday())
        return BillingPeriod(
            label=f"{iso[0]:04d}-W{iso[1]:02d}",
            start=monday,
            end=monday + timedelta(days=6),
        )


class BiweeklyBilling:
    """Pairs of ISO weeks (1–2, 3–4, ...) within one ISO year.

    Week 53 of a long ISO year forms a one-week period on its own.
    """

    def period_for(self, reference: date) -> BillingPeriod:
        iso_year, iso_week, _ = reference.isocalendar()
        start_week = iso_week if iso_week % 2 == 1 else iso_week - 1
        start = date.fromisocalendar(iso_year, start_week, 1)
        end = start + timedelta(days=13)
        last_week = date(iso_year, 12, 28).isocalendar()[1]
        end_week = min(start_week + 1, last_week)
        if end_week == start_week:
            end = start + timedelta(days=6)
            label = f"{iso_year:04d}-W{start_week:02d}"
        else:
            label = f"{iso_year:04d}-W{start_week:02d}/W{end_week:02d}"
        return BillingPeriod(label=label, start=start, end=end)


class QuarterlyBilling:
    def period_for(self, reference: date) -> BillingPeriod:
        quarter = (reference.month - 1) // 3 + 1
        last_month = quarter * 3
        return BillingPeriod(
            label=f"{reference.year:04d}-Q{quarter}",
            start=date(reference.year, last_month - 2, 1),
            end=date(reference.year, last_month, calendar.monthrange(reference.year, last_month)[1]),
        )


# ── Registries ──────────────────────────────────────────────

BILLING_STRATEGIES: dict[BillingFrequency, BillingStrategy] = {
    BillingFrequency.MONTHLY: MonthlyBilling(),
    BillingFrequency.WEEKLY: WeeklyBilling(),
    BillingFrequency.BIWEEKLY: BiweeklyBilling(),
    BillingFrequency.QUARTERLY: QuarterlyBilling(),
}

ORDER_TYPE_BILLING: dict[OrderType, BillingFrequency] = {
    OrderType.WEBSITE: BillingFrequency.MONTHLY,
    OrderType.B2B: BillingFrequency.MONTHLY,
    OrderType.CSA_RECURRING: BillingFrequency.MONTHLY,
    OrderType.FARMERS_MARKET: BillingFrequency.WEEKLY,
    OrderType.FARMERS_MARKET_RECURRING: BillingFrequency.WEEKLY,
    OrderType.WEEKLY_BOX_RECURRING: BillingFrequency.WEEKLY,
}

DEFAULT_BILLING_FREQUENCY = BillingFrequency.MONTHLY


def register_billing_strategy(frequency: BillingFrequency, strategy: BillingStrategy) -> None:
    BILLING_STRATEGIES[frequency] = strategy


def resolve_billing_frequency(
    order_type: OrderType | str | None,
    billing_frequency: BillingFrequency | str | None = None,
) -> BillingFrequency:
    if billing_frequency is not None:
        try:
            return BillingFrequency(billing_frequency)
        except ValueError:
            logger.warning(
                "Unknown billing frequency %r, using order-type default", billing_frequency
            )
    try:
        return ORDER_TYPE_BILLING[OrderType(order_type)]
    except (ValueError, KeyError):
        return DEFAULT_BILLING_FREQUENCY


def assign_billing_period(
    order_type: OrderType | str | None,
    reference_date: date,
    billing_frequency: BillingFrequency | str | None = None,
) -> BillingPeriod:
    """Return the billing period containing ``reference_date``."""
    frequency = resolve_billing_frequency(order_type, billing_frequency)
    strategy = BILLING_STRATEGIES.get(frequency, BILLING_STRATEGIES[DEFAULT_BILLING_FREQUENCY])
    return strategy.period_for(reference_date)


def billing_reference_date(order: Order) -> date | None:
    """Delivery date for concrete orders, start date for templates."""
    if order.delivery_date is not None:
        return order.delivery_date
    if order.recurring_start_date is not None:
        return order.recurring_start_date
    return order.created_at.date() if order.created_at else None


def apply_billing_period(order: Order, reference_date: date | None = None) -> BillingPeriod | None:
    reference = reference_date or billing_reference_date(order)
    if reference is None:
        return None
    period = assign_billing_period(order.order_type, reference, order.billing_frequency)
    order.billing_period = period.label
    order.billing_period_start = period.start
    order.billing_period_end = period.end
    return period


async def backfill_billing_periods(
    db: AsyncSession,
    order_type: OrderType | None = None,
    dry_run: bool = False,
) -> dict:
    """Fill in missing billing periods on templates and generated orders."""
    query = select(Order).where(
        Order.billing_period.is_(None),
        Order.status != OrderStatus.CANCELLED,
        or_(Order.is_recurring == True, Order.parent_recurring_order_id.is_not(None)),  # noqa: E712
    )
    if order_type is not None:
        query = query.where(Order.order_type == order_type)

    orders = (await db.execute(query)).scalars().all()
    updated = 0
    skipped = 0
    by_period: dict[str, int] = {}

    for order in orders:
        reference = billing_reference_date(order)
        if reference is None:
            skipped += 1
            continue
        if dry_run:
            period = assign_billing_period(order.order_type, reference, order.billing_frequency)
        else:
            period = apply_billing_period(order, reference)
        by_period[period.label] = by_period.get(period.label, 0) + 1
        updated += 1

    if not dry_run:
        await db.flush()

    logger.info(
        "Billing backfill: %d examined, %d updated, %d skipped%s",
        len(orders), updated, skipped, " (dry run)" if dry_run else "",
    )
    return {
        "examined": len(orders),
        "updated": updated,
        "skipped": skipped,
        "by_period": by_period,
        "dry_run": dry_run,
    }
