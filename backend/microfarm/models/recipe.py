"""Recipe — grow-cycle parameters for one microgreen variety.

Stage durations drive both the plant-by date of a CropPlan and the due time
of every stage task.  A recipe with no soak hours skips the soaking stage;
one with zero blackout days skips blackout.
"""

import uuid
from datetime import datetime, timedelta

from sqlalchemy import Boolean, DateTime, Float, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from microfarm.database import Base
from microfarm.models.crop import STAGE_ORDER, CropStage
from microfarm.utils.clock import utcnow


class Recipe(Base):
    __tablename__ = "recipes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    variety: Mapped[str | None] = mapped_column(String(100))

    # ── Grow cycle ───────────────────────────────────────────
    seed_soak_hours: Mapped[float] = mapped_column(Float, default=0.0)
    germination_days: Mapped[float] = mapped_column(Float, default=3.0)
    blackout_days: Mapped[float] = mapped_column(Float, default=3.0)
    light_days: Mapped[float] = mapped_column(Float, default=8.0)

    # ── Yield ────────────────────────────────────────────────
    # Harvest weight per tray; planning falls back to a configured default
    expected_yield_grams: Mapped[float | None] = mapped_column(Float)
    seed_density_grams_per_tray: Mapped[float | None] = mapped_column(Float)

    notes: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    @property
    def requires_soaking(self) -> bool:
        return (self.seed_soak_hours or 0) > 0

    def soak_lead(self) -> timedelta:
        return timedelta(hours=self.seed_soak_hours or 0)

    def total_days(self) -> float:
        """Whole grow cycle in days, soak lead included."""
        return (
            (self.germination_days or 0)
            + (self.blackout_days or 0)
            + (self.light_days or 0)
            + (self.seed_soak_hours or 0) / 24
        )

    def stages(self) -> list[CropStage]:
        skipped = set()
        if not self.requires_soaking:
            skipped.add(CropStage.SOAKING)
        if not self.blackout_days:
            skipped.add(CropStage.BLACKOUT)
        return [s for s in STAGE_ORDER if s not in skipped]

    def first_stage(self) -> CropStage:
        return self.stages()[0]

    def next_stage(self, stage: CropStage) -> CropStage | None:
        stages = self.stages()
        if stage not in stages:
            return None
        idx = stages.index(stage)
        return stages[idx + 1] if idx + 1 < len(stages) else None

    def previous_stage(self, stage: CropStage) -> CropStage | None:
        stages = self.stages()
        if stage not in stages:
            return None
        idx = stages.index(stage)
        return stages[idx - 1] if idx > 0 else None

    def stage_duration(self, stage: CropStage) -> timedelta | None:
        """Time a tray spends in ``stage``; None for the final stage."""
        if stage == CropStage.SOAKING:
            return self.soak_lead()
        if stage == CropStage.GERMINATION:
            return timedelta(days=self.germination_days or 0)
        if stage == CropStage.BLACKOUT:
            return timedelta(days=self.blackout_days or 0)
        if stage == CropStage.LIGHT:
            return timedelta(days=self.light_days or 0)
        return None
