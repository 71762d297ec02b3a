"""TaskSchedule — a dated reminder that some resource needs attention.

For crops the task says "move this tray to its next stage at next_run_at".
For crop plans it says "sow this plan by next_run_at".  The ``conditions``
payload is validated against the model registered for ``resource_type``
(see microfarm.schemas.task_conditions).

A task is never completed by the system: it stays active until the stage
change happens (and is then recomputed), or until its crop or order goes
away, at which point it is deactivated.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from microfarm.database import Base
from microfarm.utils.clock import utcnow


class ResourceType(str, enum.Enum):
    CROPS = "crops"
    CROP_PLANS = "crop_plans"


class TaskSchedule(Base):
    __tablename__ = "task_schedules"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    resource_type: Mapped[ResourceType] = mapped_column(
        SAEnum(ResourceType), nullable=False, index=True
    )
    # advance_to_light | plant_crop_plan | ...
    task_name: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Plain indexed ids (no FK): tasks outlive deleted crops as inactive rows
    crop_id: Mapped[str | None] = mapped_column(String(36), index=True)
    crop_plan_id: Mapped[str | None] = mapped_column(String(36), index=True)

    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    conditions: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
