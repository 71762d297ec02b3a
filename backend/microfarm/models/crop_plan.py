"""CropPlan — what has to be sown, and by when, to fill upcoming orders.

One plan exists per (recipe, expected harvest date) while it is still
``planned``; later orders for the same recipe and harvest date are folded
into it and recorded as CropPlanOrder allocations.

Lifecycle:  planned → approved → in_production → completed
            planned | approved → cancelled
"""

import enum
import uuid
from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, Enum as SAEnum, Float, ForeignKey,
    Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microfarm.database import Base
from microfarm.utils.clock import utcnow


class CropPlanStatus(str, enum.Enum):
    PLANNED = "planned"
    APPROVED = "approved"
    IN_PRODUCTION = "in_production"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Plans whose trays are not sown yet
UNSOWN_PLAN_STATUSES = (CropPlanStatus.PLANNED, CropPlanStatus.APPROVED)


class CropPlan(Base):
    __tablename__ = "crop_plans"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    recipe_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("recipes.id"), nullable=False, index=True
    )
    status: Mapped[CropPlanStatus] = mapped_column(
        SAEnum(CropPlanStatus), default=CropPlanStatus.PLANNED, nullable=False, index=True
    )

    # ── Requirement ──────────────────────────────────────────
    trays_needed: Mapped[int] = mapped_column(Integer, default=0)
    grams_needed: Mapped[float] = mapped_column(Float, default=0.0)
    grams_per_tray: Mapped[float | None] = mapped_column(Float)

    # ── Dates ────────────────────────────────────────────────
    expected_harvest_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    delivery_date: Mapped[date | None] = mapped_column(Date)
    plant_by_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    # Set for soaking recipes: soaking opens the cycle on the plant-by date
    seed_soak_date: Mapped[date | None] = mapped_column(Date)
    is_overdue: Mapped[bool] = mapped_column(Boolean, default=False)

    # {"recipe": {...}, "orders": [{"order_id", "grams", "trays"}, ...]}
    calculation_details: Mapped[dict | None] = mapped_column(JSON)
    notes: Mapped[str | None] = mapped_column(Text)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    # ── Relationships ────────────────────────────────────────
    recipe = relationship("Recipe", lazy="selectin")


class CropPlanOrder(Base):
    """Share of a plan's trays and grams contributed by one order."""

    __tablename__ = "crop_plan_orders"
    __table_args__ = (
        UniqueConstraint("crop_plan_id", "order_id", name="uq_crop_plan_orders_plan_order"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    crop_plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("crop_plans.id"), nullable=False, index=True
    )
    order_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("orders.id"), nullable=False, index=True
    )
    trays: Mapped[int] = mapped_column(Integer, default=0)
    grams: Mapped[float] = mapped_column(Float, default=0.0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
