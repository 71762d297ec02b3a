"""Recurring order generation tests."""

from datetime import date, datetime

import pytest
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from conftest import make_order, make_template
from microfarm.middleware.exceptions import BusinessLogicError
from microfarm.models.crop_plan import CropPlan, CropPlanStatus
from microfarm.models.order import Frequency, Order, OrderStatus, OrderType
from microfarm.services import recurring_orders
from microfarm.services.crop_planning import derive_for_order
from microfarm.services.recurring_orders import (
    InitialStatusPolicy,
    backfill,
    delivery_date_for,
    process_recurring_orders,
)


async def _generated(db, template) -> list[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.parent_recurring_order_id == template.id)
        .order_by(Order.delivery_date)
    )
    return list(result.scalars().all())


@pytest.mark.unit
class TestInitialStatusPolicy:

    def test_defaults(self):
        policy = InitialStatusPolicy()
        today = date(2024, 3, 15)
        assert policy.status_for(date(2024, 3, 5), today) == OrderStatus.COMPLETED
        assert policy.status_for(date(2024, 3, 12), today) == OrderStatus.DELIVERED
        assert policy.status_for(today, today) == OrderStatus.PENDING
        assert policy.status_for(date(2024, 3, 20), today) == OrderStatus.PENDING

    def test_seven_days_is_still_delivered(self):
        policy = InitialStatusPolicy()
        assert policy.status_for(date(2024, 3, 8), date(2024, 3, 15)) == OrderStatus.DELIVERED

    def test_thresholds_are_configurable(self):
        policy = InitialStatusPolicy(completed_after_days=2, delivered_after_days=1)
        assert policy.status_for(date(2024, 3, 12), date(2024, 3, 15)) == OrderStatus.COMPLETED


@pytest.mark.unit
class TestDeliveryDate:

    def test_market_delivers_same_day(self):
        assert delivery_date_for(OrderType.FARMERS_MARKET, date(2024, 3, 16)) == date(2024, 3, 16)
        assert delivery_date_for(OrderType.FARMERS_MARKET_RECURRING, date(2024, 3, 16)) == date(2024, 3, 16)

    def test_others_deliver_next_day(self):
        assert delivery_date_for(OrderType.B2B, date(2024, 3, 16)) == date(2024, 3, 17)
        assert delivery_date_for(OrderType.CSA_RECURRING, date(2024, 3, 31)) == date(2024, 4, 1)


@pytest.mark.integration
@pytest.mark.asyncio
class TestBackfill:

    async def test_weekly_window_creates_four_orders(self, db_session, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))

        result = await backfill(
            db_session, template, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1, 8, 0),
        )

        orders = await _generated(db_session, template)
        assert [o.harvest_date for o in orders] == [
            date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22),
        ]
        assert [o.delivery_date for o in orders] == [
            date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16), date(2024, 1, 23),
        ]
        assert result.generated_count == 4
        assert template.next_generation_date == date(2024, 1, 29)
        assert template.last_generated_at == datetime(2024, 1, 1, 8, 0)

    async def test_rerun_creates_no_duplicates(self, db_session, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        now = datetime(2024, 1, 1, 8, 0)

        await backfill(db_session, template, to_date=date(2024, 1, 22), now=now)
        second = await backfill(
            db_session, template, to_date=date(2024, 1, 22), from_date=date(2024, 1, 1), now=now,
        )

        orders = await _generated(db_session, template)
        assert len(orders) == 4
        assert second.generated_count == 0
        assert len(second.skipped_dates) == 4

    async def test_generated_order_copies_template(self, db_session, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 3, 17), quantity=12)

        await backfill(db_session, template, to_date=date(2024, 3, 17), now=datetime(2024, 3, 1))

        (order,) = await _generated(db_session, template)
        assert order.is_recurring is False
        assert order.parent_recurring_order_id == template.id
        assert order.order_type == OrderType.B2B
        assert len(order.items) == 1
        assert order.items[0].quantity == 12
        assert order.items[0].product_id == pea_product.id
        assert order.billing_period == "2024-03"
        assert order.billing_period_start == date(2024, 3, 1)

    async def test_market_billing_is_weekly(self, db_session, pea_product):
        template = await make_template(
            db_session, pea_product,
            order_type=OrderType.FARMERS_MARKET_RECURRING, start=date(2024, 3, 17),
        )

        await backfill(db_session, template, to_date=date(2024, 3, 17), now=datetime(2024, 3, 1))

        (order,) = await _generated(db_session, template)
        assert order.delivery_date == date(2024, 3, 17)
        assert order.billing_period == "2024-W11"

    async def test_past_deliveries_get_initial_status(self, db_session, pea_product):
        template = await make_template(
            db_session, pea_product,
            order_type=OrderType.FARMERS_MARKET_RECURRING, start=date(2024, 3, 5),
        )

        await backfill(db_session, template, to_date=date(2024, 3, 19), now=datetime(2024, 3, 15, 9))

        orders = await _generated(db_session, template)
        assert [(o.delivery_date, o.status) for o in orders] == [
            (date(2024, 3, 5), OrderStatus.COMPLETED),
            (date(2024, 3, 12), OrderStatus.DELIVERED),
            (date(2024, 3, 19), OrderStatus.PENDING),
        ]

    async def test_end_date_clamps_and_deactivates(self, db_session, pea_product):
        template = await make_template(
            db_session, pea_product, start=date(2024, 1, 1), end=date(2024, 1, 10),
        )

        result = await backfill(db_session, template, to_date=date(2024, 2, 1), now=datetime(2024, 1, 1))

        assert result.generated_count == 2
        assert result.deactivated is True
        assert template.next_generation_date is None
        assert template.is_recurring_active is False

    async def test_biweekly_interval(self, db_session, pea_product):
        template = await make_template(
            db_session, pea_product, frequency=Frequency.BIWEEKLY, start=date(2024, 1, 1),
        )

        await backfill(db_session, template, to_date=date(2024, 2, 1), now=datetime(2024, 1, 1))

        orders = await _generated(db_session, template)
        assert [o.harvest_date for o in orders] == [
            date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29),
        ]

    async def test_dry_run_writes_nothing(self, db_session, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))

        result = await backfill(
            db_session, template, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1), dry_run=True,
        )

        assert result.planned_dates == [
            date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16), date(2024, 1, 23),
        ]
        assert await _generated(db_session, template) == []
        assert template.last_generated_at is None

    async def test_historical_window_does_not_rewind(self, db_session, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        await backfill(db_session, template, to_date=date(2024, 2, 26), now=datetime(2024, 1, 1))

        await backfill(
            db_session, template, to_date=date(2024, 1, 8),
            from_date=date(2024, 1, 1), now=datetime(2024, 1, 2),
        )

        assert template.next_generation_date == date(2024, 3, 4)

    async def test_rejects_non_template(self, db_session, pea_product):
        order = await make_order(db_session, [(pea_product, 1)], delivery=date(2024, 3, 1))
        with pytest.raises(BusinessLogicError):
            await backfill(db_session, order, to_date=date(2024, 3, 1))


@pytest.mark.integration
@pytest.mark.asyncio
class TestProcessRecurringOrders:

    async def test_each_template_processed_and_failures_isolated(
        self, db_session, session_factory, pea_product
    ):
        good = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        broken = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        broken.recurring_frequency = None
        await db_session.commit()

        summary = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1),
        )

        assert summary.processed == 2
        assert summary.generated == 4
        assert summary.failed == 1
        assert broken.id in summary.errors[0]

        async with session_factory() as db:
            assert len(await _generated(db, good)) == 4
            assert await _generated(db, broken) == []

    async def test_failure_after_orders_are_flushed_rolls_back_the_template(
        self, db_session, session_factory, pea_product, monkeypatch
    ):
        good = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        broken = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        broken.customer_name = "Flaky Deli"
        await db_session.commit()
        real_backfill = recurring_orders.backfill

        async def backfill_then_fail(db, template, *args, **kwargs):
            result = await real_backfill(db, template, *args, **kwargs)
            if template.customer_name == "Flaky Deli":
                assert len(await _generated(db, template)) == 4
                raise RuntimeError("billing export failed")
            return result

        monkeypatch.setattr(recurring_orders, "backfill", backfill_then_fail)

        summary = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1),
        )

        assert summary.processed == 2
        assert summary.generated == 4
        assert summary.failed == 1
        assert "billing export failed" in summary.errors[0]
        async with session_factory() as db:
            assert len(await _generated(db, good)) == 4
            assert await _generated(db, broken) == []
            stored = await db.get(Order, broken.id)
            assert stored.last_generated_at is None

    async def test_lost_connection_aborts_the_run(
        self, db_session, session_factory, pea_product, monkeypatch
    ):
        await make_template(db_session, pea_product, start=date(2024, 1, 1))
        await db_session.commit()

        async def drop_connection(*args, **kwargs):
            raise DBAPIError(
                "SELECT 1", {}, ConnectionError("server closed the connection"),
                connection_invalidated=True,
            )

        monkeypatch.setattr(recurring_orders, "backfill", drop_connection)

        with pytest.raises(DBAPIError):
            await process_recurring_orders(
                session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1),
            )

    async def test_other_driver_errors_are_recorded(
        self, db_session, session_factory, pea_product, monkeypatch
    ):
        await make_template(db_session, pea_product, start=date(2024, 1, 1))
        await db_session.commit()

        async def bad_statement(*args, **kwargs):
            raise DBAPIError("SELECT 1", {}, ValueError("syntax error"))

        monkeypatch.setattr(recurring_orders, "backfill", bad_statement)

        summary = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1),
        )

        assert summary.failed == 1

    async def test_paused_template_runs_when_named(self, db_session, session_factory, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        template.is_recurring_active = False
        await db_session.commit()

        summary = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1),
            template_id=template.id,
        )

        assert summary.processed == 1
        assert summary.generated == 4

    async def test_unknown_template_id_is_reported(self, session_factory):
        summary = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1),
            template_id="no-such-template",
        )

        assert summary.processed == 0
        assert summary.failed == 1
        assert "no-such-template" in summary.errors[0]

    async def test_resumes_at_next_generation_date(self, db_session, session_factory, pea_product):
        await make_template(db_session, pea_product, start=date(2024, 1, 1))
        await db_session.commit()

        first = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 8), now=datetime(2024, 1, 1),
        )
        second = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 8),
        )

        assert first.generated == 2
        assert second.generated == 2
        assert second.skipped == 0

    async def test_paused_templates_are_skipped(self, db_session, session_factory, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        template.is_recurring_active = False
        await db_session.commit()

        summary = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1),
        )
        assert summary.processed == 0

    async def test_dry_run_rolls_back(self, db_session, session_factory, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        await db_session.commit()

        summary = await process_recurring_orders(
            session_factory, to_date=date(2024, 1, 22), now=datetime(2024, 1, 1), dry_run=True,
        )

        assert summary.generated == 4
        assert summary.dry_run is True
        async with session_factory() as db:
            assert await _generated(db, template) == []


@pytest.mark.integration
@pytest.mark.asyncio
class TestTemplateManagement:

    async def test_pause_and_resume_from_today(self, db_session, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))

        await recurring_orders.pause_template(db_session, template)
        assert template.is_recurring_active is False

        await recurring_orders.resume_template(db_session, template, today=date(2024, 2, 7))
        assert template.is_recurring_active is True
        assert template.next_generation_date == date(2024, 2, 12)

    async def test_resume_after_end_is_rejected(self, db_session, pea_product):
        template = await make_template(
            db_session, pea_product, start=date(2024, 1, 1), end=date(2024, 1, 31),
        )
        with pytest.raises(BusinessLogicError):
            await recurring_orders.resume_template(db_session, template, today=date(2024, 3, 1))

    async def test_generate_next_order(self, db_session, pea_product):
        template = await make_template(db_session, pea_product, start=date(2024, 1, 1))

        order = await recurring_orders.generate_next_order(
            db_session, template, now=datetime(2024, 1, 1),
        )

        assert order.harvest_date == date(2024, 1, 1)
        assert template.next_generation_date == date(2024, 1, 8)
        second = await recurring_orders.generate_next_order(
            db_session, template, now=datetime(2024, 1, 1),
        )
        assert second.harvest_date == date(2024, 1, 8)

    async def test_create_template_sets_billing_and_cursor(self, db_session, pea_product):
        template = await recurring_orders.create_template(
            db_session,
            customer_name="CSA Members",
            order_type=OrderType.CSA_RECURRING,
            frequency=Frequency.MONTHLY,
            start_date=date(2024, 4, 5),
            items=[{"product_id": pea_product.id, "quantity": 3}],
        )
        assert template.is_template
        assert template.next_generation_date == date(2024, 4, 5)
        assert template.billing_period == "2024-04"
        assert len(template.items) == 1

    async def test_stats(self, db_session, pea_product):
        active = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        paused = await make_template(db_session, pea_product, start=date(2024, 1, 1))
        paused.is_recurring_active = False
        await backfill(db_session, active, to_date=date(2024, 1, 8), now=datetime(2024, 1, 1))

        stats = await recurring_orders.get_recurring_stats(db_session, today=date(2024, 1, 10))

        assert stats == {
            "active_templates": 1,
            "paused_templates": 1,
            "total_generated": 2,
            "upcoming_week": 1,
        }


@pytest.mark.integration
@pytest.mark.asyncio
class TestCancelOrder:

    async def test_cancel_withdraws_plan_share(self, db_session, pea_product):
        first = await make_order(db_session, [(pea_product, 10)], delivery=date(2024, 3, 20))
        second = await make_order(db_session, [(pea_product, 5)], delivery=date(2024, 3, 20))
        now = datetime(2024, 3, 1)
        await derive_for_order(db_session, first, now=now)
        await derive_for_order(db_session, second, now=now)

        result = await recurring_orders.cancel_order(db_session, second, now=now)

        plan = (await db_session.execute(select(CropPlan))).scalar_one()
        assert second.status == OrderStatus.CANCELLED
        assert result["plans_updated"] == 1
        assert plan.trays_needed == 4
        assert plan.grams_needed == pytest.approx(1000)
        assert plan.status == CropPlanStatus.PLANNED

    async def test_cancelling_last_order_cancels_plan(self, db_session, pea_product):
        order = await make_order(db_session, [(pea_product, 10)], delivery=date(2024, 3, 20))
        await derive_for_order(db_session, order, now=datetime(2024, 3, 1))

        result = await recurring_orders.cancel_order(db_session, order)

        plan = (await db_session.execute(select(CropPlan))).scalar_one()
        assert plan.status == CropPlanStatus.CANCELLED
        assert result["plans_cancelled"] == 1

    async def test_templates_cannot_be_cancelled(self, db_session, pea_product):
        template = await make_template(db_session, pea_product)
        with pytest.raises(BusinessLogicError):
            await recurring_orders.cancel_order(db_session, template)
