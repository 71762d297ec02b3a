"""Order — recurring templates and the orders generated from them.

Both live in one table:

  - a *template* has ``is_recurring=True`` and no parent; it carries the
    cadence (frequency, interval, start/end date) and the generator's
    bookkeeping (last_generated_at, next_generation_date)
  - a *generated order* has ``is_recurring=False`` and always points back
    at its template through ``parent_recurring_order_id``

Plain one-off orders (no template, not recurring) are also stored here and
flow into crop planning the same way generated orders do.

Lifecycle (generated / one-off):  pending → delivered → completed
                                   any → cancelled
"""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, Enum as SAEnum, Float, ForeignKey,
    Integer, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microfarm.database import Base
from microfarm.utils.clock import utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    WEBSITE = "website"
    B2B = "b2b"
    CSA_RECURRING = "csa_recurring"
    FARMERS_MARKET = "farmers_market"
    FARMERS_MARKET_RECURRING = "farmers_market_recurring"
    WEEKLY_BOX_RECURRING = "weekly_box_recurring"


class Frequency(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class BillingFrequency(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint(
            "parent_recurring_order_id", "delivery_date",
            name="uq_orders_parent_delivery_date",
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    order_type: Mapped[OrderType] = mapped_column(
        SAEnum(OrderType), default=OrderType.WEBSITE, nullable=False
    )
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True
    )

    # ── Dates ────────────────────────────────────────────────
    harvest_date: Mapped[date | None] = mapped_column(Date, index=True)
    delivery_date: Mapped[date | None] = mapped_column(Date, index=True)

    # ── Recurrence (templates) ───────────────────────────────
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    parent_recurring_order_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("orders.id"), index=True
    )
    recurring_frequency: Mapped[Frequency | None] = mapped_column(SAEnum(Frequency))
    # Weeks between occurrences for biweekly templates (default 2)
    recurring_interval: Mapped[int | None] = mapped_column(Integer)
    recurring_start_date: Mapped[date | None] = mapped_column(Date)
    recurring_end_date: Mapped[date | None] = mapped_column(Date)
    is_recurring_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_generated_at: Mapped[datetime | None] = mapped_column(DateTime)
    # Null once the template has run past its end date
    next_generation_date: Mapped[date | None] = mapped_column(Date, index=True)

    # ── Billing ──────────────────────────────────────────────
    # Overrides the order-type default when set (e.g. b2b billed quarterly)
    billing_frequency: Mapped[BillingFrequency | None] = mapped_column(
        SAEnum(BillingFrequency)
    )
    billing_period: Mapped[str | None] = mapped_column(String(20), index=True)
    billing_period_start: Mapped[date | None] = mapped_column(Date)
    billing_period_end: Mapped[date | None] = mapped_column(Date)

    notes: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    # ── Relationships ────────────────────────────────────────
    items = relationship(
        "OrderItem", back_populates="order", lazy="selectin",
        cascade="all, delete-orphan", order_by="OrderItem.position",
    )
    packaging = relationship(
        "OrderPackaging", back_populates="order", lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def is_template(self) -> bool:
        return self.is_recurring and self.parent_recurring_order_id is None


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    product_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("products.id"), nullable=False
    )
    price_variation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("product_variations.id")
    )
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    price: Mapped[float] = mapped_column(Float, default=0.0)

    order = relationship("Order", back_populates="items")
    product = relationship("Product", lazy="selectin")
    variation = relationship("ProductVariation", lazy="selectin")


class OrderPackaging(Base):
    __tablename__ = "order_packaging"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, index=True
    )
    packaging_name: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    notes: Mapped[str | None] = mapped_column(Text)

    order = relationship("Order", back_populates="packaging")
