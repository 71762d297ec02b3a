"""Pydantic schemas for orders, recurring templates and generation runs."""

from datetime import date, datetime

from pydantic import BaseModel, Field

from microfarm.models.order import BillingFrequency, Frequency, OrderStatus, OrderType


class OrderItemIn(BaseModel):
    product_id: str
    price_variation_id: str | None = None
    quantity: float = Field(gt=0)
    price: float = 0.0


class PackagingIn(BaseModel):
    packaging_name: str
    quantity: int = 1
    notes: str | None = None


class TemplateCreate(BaseModel):
    customer_name: str
    order_type: OrderType
    frequency: Frequency
    start_date: date
    end_date: date | None = None
    interval: int | None = Field(default=None, ge=1)
    billing_frequency: BillingFrequency | None = None
    items: list[OrderItemIn] = []
    packaging: list[PackagingIn] = []
    notes: str | None = None


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    price_variation_id: str | None
    quantity: float
    price: float

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: str
    customer_name: str
    order_type: OrderType
    status: OrderStatus
    harvest_date: date | None
    delivery_date: date | None
    is_recurring: bool
    parent_recurring_order_id: str | None
    recurring_frequency: Frequency | None
    recurring_interval: int | None
    recurring_start_date: date | None
    recurring_end_date: date | None
    is_recurring_active: bool
    next_generation_date: date | None
    last_generated_at: datetime | None
    billing_period: str | None
    billing_period_start: date | None
    billing_period_end: date | None
    items: list[OrderItemOut] = []

    model_config = {"from_attributes": True}


class BackfillRequest(BaseModel):
    """Window for a manual backfill; omitted bounds use the defaults."""
    template_id: str | None = None
    from_date: date | None = None
    to_date: date | None = None
    dry_run: bool = False


class BackfillOut(BaseModel):
    template_id: str
    generated: int
    planned_dates: list[date]
    skipped_dates: list[date]
    next_generation_date: date | None
    deactivated: bool
    dry_run: bool


class RunSummaryOut(BaseModel):
    """Summary returned after a batch run."""
    job: str
    processed: int
    generated: int
    skipped: int
    failed: int
    deactivated: int
    notified: int
    dry_run: bool
    errors: list[str]


class RecurringStats(BaseModel):
    active_templates: int
    paused_templates: int
    total_generated: int
    upcoming_week: int


class CancelOut(BaseModel):
    order_id: str
    already_cancelled: bool
    plans_updated: int = 0
    plans_cancelled: int = 0
    tasks_deactivated: int = 0
