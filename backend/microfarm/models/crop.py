"""Crop — one tray realizing a CropPlan.

A Crop moves through the grow stages of its recipe.  Each stage records the
moment the tray entered it, so the time left in the current stage is always
(stage duration from the recipe) − (now − entry timestamp).

Lifecycle:  soaking → germination → blackout → light → harvested
            (soaking and blackout are skipped when the recipe has none)

Stage changes are manual (advance / rollback); nothing here moves a crop
on its own.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from microfarm.database import Base
from microfarm.utils.clock import utcnow


class CropStage(str, enum.Enum):
    SOAKING = "soaking"
    GERMINATION = "germination"
    BLACKOUT = "blackout"
    LIGHT = "light"
    HARVESTED = "harvested"


STAGE_ORDER: list[CropStage] = [
    CropStage.SOAKING,
    CropStage.GERMINATION,
    CropStage.BLACKOUT,
    CropStage.LIGHT,
    CropStage.HARVESTED,
]


class Crop(Base):
    __tablename__ = "crops"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    crop_plan_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("crop_plans.id"), index=True
    )
    recipe_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("recipes.id"), index=True
    )
    tray_number: Mapped[str | None] = mapped_column(String(50))

    # ── Stage tracking ───────────────────────────────────────
    current_stage: Mapped[CropStage] = mapped_column(
        SAEnum(CropStage), default=CropStage.GERMINATION, nullable=False
    )
    soaking_at: Mapped[datetime | None] = mapped_column(DateTime)
    germination_at: Mapped[datetime | None] = mapped_column(DateTime)
    blackout_at: Mapped[datetime | None] = mapped_column(DateTime)
    light_at: Mapped[datetime | None] = mapped_column(DateTime)
    harvested_at: Mapped[datetime | None] = mapped_column(DateTime)

    notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    # ── Relationships ────────────────────────────────────────
    recipe = relationship("Recipe", lazy="selectin")

    def stage_entered_at(self, stage: CropStage) -> datetime | None:
        return getattr(self, f"{stage.value}_at")

    def set_stage_entered_at(self, stage: CropStage, value: datetime | None) -> None:
        setattr(self, f"{stage.value}_at", value)
