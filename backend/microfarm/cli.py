"""Management CLI for the batch jobs.

Usage:
    python -m microfarm.cli init-db
    python -m microfarm.cli backfill-recurring [--order-id ID] [--from-date D] [--to-date D] [--dry-run]
    python -m microfarm.cli backfill-billing [--type ORDER_TYPE] [--dry-run]
    python -m microfarm.cli generate-plans [--days-ahead N] [--order-id ID] [--dry-run]
    python -m microfarm.cli process-tasks [--type crops|crop_plans]
    python -m microfarm.cli sweep
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date

from microfarm.config import settings
from microfarm.database import async_session, init_models
from microfarm.models.order import OrderType
from microfarm.models.task_schedule import ResourceType
from microfarm.services.billing import backfill_billing_periods
from microfarm.services.crop_planning import generate_plans_for_upcoming_orders
from microfarm.services.monitor import sweep
from microfarm.services.notifications import get_notifier
from microfarm.services.recurring_orders import process_recurring_orders
from microfarm.services.stage_tasks import process_due_tasks


def _print_summary(summary: dict) -> None:
    print(json.dumps(summary, indent=2, default=str))


async def cmd_init_db(args) -> int:
    await init_models()
    print("Tables created.")
    return 0


async def cmd_backfill_recurring(args) -> int:
    summary = await process_recurring_orders(
        async_session,
        to_date=args.to_date,
        from_date=args.from_date,
        template_id=args.order_id,
        full_history=args.from_date is None,
        dry_run=args.dry_run,
    )
    _print_summary(summary.as_dict())
    return 1 if summary.failed else 0


async def cmd_backfill_billing(args) -> int:
    async with async_session() as db:
        summary = await backfill_billing_periods(db, order_type=args.type, dry_run=args.dry_run)
        if not args.dry_run:
            await db.commit()
    _print_summary(summary)
    return 0


async def cmd_generate_plans(args) -> int:
    summary = await generate_plans_for_upcoming_orders(
        async_session,
        days_ahead=args.days_ahead,
        order_id=args.order_id,
        dry_run=args.dry_run,
    )
    _print_summary(summary.as_dict())
    return 1 if summary.failed else 0


async def cmd_process_tasks(args) -> int:
    summary = await process_due_tasks(
        async_session, get_notifier(), settings.recipients, resource_type=args.type,
    )
    _print_summary(summary.as_dict())
    return 1 if summary.failed else 0


async def cmd_sweep(args) -> int:
    async with async_session() as db:
        report = await sweep(db, get_notifier(), settings.recipients)
    _print_summary(report.as_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="microfarm", description="MicroFarm batch jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create all tables")
    p.set_defaults(handler=cmd_init_db)

    p = sub.add_parser("backfill-recurring", help="Generate missing recurring orders")
    p.add_argument("--order-id", help="Only this recurring template")
    p.add_argument("--from-date", type=date.fromisoformat, help="Start of the window (default: template start)")
    p.add_argument("--to-date", type=date.fromisoformat, help="End of the window (default: today + horizon)")
    p.add_argument("--dry-run", action="store_true", help="Show what would be created")
    p.set_defaults(handler=cmd_backfill_recurring)

    p = sub.add_parser("backfill-billing", help="Fill missing billing periods")
    p.add_argument("--type", type=OrderType, choices=list(OrderType), help="Only this order type")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(handler=cmd_backfill_billing)

    p = sub.add_parser("generate-plans", help="Derive crop plans for upcoming orders")
    p.add_argument("--days-ahead", type=int, default=None)
    p.add_argument("--order-id", help="Only this order")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(handler=cmd_generate_plans)

    p = sub.add_parser("process-tasks", help="Send reminders for due tasks")
    p.add_argument("--type", type=ResourceType, choices=list(ResourceType), default=None)
    p.set_defaults(handler=cmd_process_tasks)

    p = sub.add_parser("sweep", help="Run the plan/task monitor sweep")
    p.set_defaults(handler=cmd_sweep)

    return parser


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    return asyncio.run(args.handler(args))


if __name__ == "__main__":
    sys.exit(main())
