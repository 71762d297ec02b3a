"""Billing period assignment tests."""

from datetime import date

import pytest

from microfarm.models.order import BillingFrequency, Order, OrderStatus, OrderType
from microfarm.services.billing import (
    BillingPeriod,
    apply_billing_period,
    assign_billing_period,
    backfill_billing_periods,
    register_billing_strategy,
    BILLING_STRATEGIES,
)


@pytest.mark.unit
class TestAssignBillingPeriod:

    def test_b2b_is_calendar_month(self):
        period = assign_billing_period(OrderType.B2B, date(2024, 3, 17))
        assert period == BillingPeriod("2024-03", date(2024, 3, 1), date(2024, 3, 31))

    def test_csa_is_calendar_month(self):
        assert assign_billing_period(OrderType.CSA_RECURRING, date(2024, 2, 10)).label == "2024-02"

    def test_farmers_market_recurring_is_iso_week(self):
        period = assign_billing_period(OrderType.FARMERS_MARKET_RECURRING, date(2024, 3, 17))
        assert period.label == "2024-W11"
        assert period.start == date(2024, 3, 11)
        assert period.end == date(2024, 3, 17)

    def test_weekly_box_is_iso_week(self):
        assert assign_billing_period("weekly_box_recurring", date(2024, 3, 18)).label == "2024-W12"

    def test_iso_week_year_boundary(self):
        # 2024-12-30 belongs to ISO week 1 of 2025
        period = assign_billing_period(OrderType.FARMERS_MARKET, date(2024, 12, 30))
        assert period.label == "2025-W01"
        assert period.start == date(2024, 12, 30)

    def test_quarterly_override(self):
        period = assign_billing_period(OrderType.B2B, date(2024, 5, 10), BillingFrequency.QUARTERLY)
        assert period == BillingPeriod("2024-Q2", date(2024, 4, 1), date(2024, 6, 30))

    def test_biweekly_pairs_iso_weeks(self):
        period = assign_billing_period(OrderType.B2B, date(2024, 1, 10), "biweekly")
        assert period.label == "2024-W01/W02"
        assert period.start == date(2024, 1, 1)
        assert period.end == date(2024, 1, 14)

    def test_biweekly_week_53_stands_alone(self):
        period = assign_billing_period(OrderType.B2B, date(2020, 12, 31), BillingFrequency.BIWEEKLY)
        assert period.label == "2020-W53"
        assert period.end == date(2021, 1, 3)

    def test_unknown_order_type_falls_back_to_monthly(self):
        assert assign_billing_period("wholesale", date(2024, 7, 4)).label == "2024-07"
        assert assign_billing_period(None, date(2024, 7, 4)).label == "2024-07"

    def test_unknown_override_uses_type_default(self):
        period = assign_billing_period(OrderType.FARMERS_MARKET, date(2024, 3, 17), "yearly")
        assert period.label == "2024-W11"

    def test_pure_for_identical_inputs(self):
        first = assign_billing_period(OrderType.B2B, date(2024, 3, 17))
        second = assign_billing_period(OrderType.B2B, date(2024, 3, 17))
        assert first == second

    def test_registered_strategy_is_used(self):
        class FixedBilling:
            def period_for(self, reference):
                return BillingPeriod("FIXED", reference, reference)

        original = BILLING_STRATEGIES[BillingFrequency.QUARTERLY]
        register_billing_strategy(BillingFrequency.QUARTERLY, FixedBilling())
        try:
            period = assign_billing_period(OrderType.B2B, date(2024, 1, 1), BillingFrequency.QUARTERLY)
            assert period.label == "FIXED"
        finally:
            register_billing_strategy(BillingFrequency.QUARTERLY, original)

    def test_apply_sets_order_fields(self):
        order = Order(order_type=OrderType.B2B, delivery_date=date(2024, 3, 17))
        apply_billing_period(order)
        assert order.billing_period == "2024-03"
        assert order.billing_period_start == date(2024, 3, 1)
        assert order.billing_period_end == date(2024, 3, 31)


@pytest.mark.integration
@pytest.mark.asyncio
class TestBackfillBillingPeriods:

    async def test_fills_missing_periods(self, db_session):
        template = Order(
            customer_name="Market Stall",
            order_type=OrderType.FARMERS_MARKET_RECURRING,
            is_recurring=True,
            recurring_start_date=date(2024, 3, 16),
        )
        db_session.add(template)
        await db_session.flush()
        child = Order(
            customer_name="Market Stall",
            order_type=OrderType.FARMERS_MARKET_RECURRING,
            parent_recurring_order_id=template.id,
            delivery_date=date(2024, 3, 23),
        )
        one_off = Order(customer_name="Walk-in", order_type=OrderType.WEBSITE, delivery_date=date(2024, 3, 23))
        db_session.add_all([child, one_off])
        await db_session.flush()

        summary = await backfill_billing_periods(db_session)

        assert summary["updated"] == 2
        assert template.billing_period == "2024-W11"
        assert child.billing_period == "2024-W12"
        assert one_off.billing_period is None

    async def test_dry_run_writes_nothing(self, db_session):
        template = Order(
            customer_name="Bistro",
            order_type=OrderType.B2B,
            is_recurring=True,
            recurring_start_date=date(2024, 3, 1),
        )
        db_session.add(template)
        await db_session.flush()

        summary = await backfill_billing_periods(db_session, dry_run=True)

        assert summary["updated"] == 1
        assert summary["by_period"] == {"2024-03": 1}
        assert template.billing_period is None

    async def test_cancelled_orders_are_ignored(self, db_session):
        template = Order(
            customer_name="Bistro",
            order_type=OrderType.B2B,
            status=OrderStatus.CANCELLED,
            is_recurring=True,
            recurring_start_date=date(2024, 3, 1),
        )
        db_session.add(template)
        await db_session.flush()

        summary = await backfill_billing_periods(db_session)
        assert summary["examined"] == 0
