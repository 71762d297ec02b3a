"""Pydantic schemas for crop plans, crops and their stage tasks."""

from datetime import date, datetime

from pydantic import BaseModel

from microfarm.models.crop import CropStage
from microfarm.models.crop_plan import CropPlanStatus
from microfarm.models.task_schedule import ResourceType


class CropPlanOut(BaseModel):
    id: str
    recipe_id: str
    status: CropPlanStatus
    trays_needed: int
    grams_needed: float
    grams_per_tray: float | None
    expected_harvest_date: date
    delivery_date: date | None
    plant_by_date: date
    seed_soak_date: date | None
    is_overdue: bool
    calculation_details: dict | None
    created_at: datetime

    model_config = {"from_attributes": True}


class DerivationOut(BaseModel):
    order_id: str
    skipped: bool
    created: int
    aggregated: int
    plans: list[CropPlanOut]
    errors: list[str]


class GeneratePlansRequest(BaseModel):
    days_ahead: int | None = None
    order_id: str | None = None
    dry_run: bool = False


class StartProductionRequest(BaseModel):
    planted_at: datetime | None = None
    tray_numbers: list[str] | None = None


class ScheduleRecipe(BaseModel):
    recipe_id: str
    recipe_name: str
    trays: int
    plan_ids: list[str]


class ScheduleDay(BaseModel):
    plant_by_date: date
    total_trays: int
    recipes: list[ScheduleRecipe]


class CropOut(BaseModel):
    id: str
    crop_plan_id: str | None
    recipe_id: str | None
    tray_number: str | None
    current_stage: CropStage
    soaking_at: datetime | None
    germination_at: datetime | None
    blackout_at: datetime | None
    light_at: datetime | None
    harvested_at: datetime | None

    model_config = {"from_attributes": True}


class AdvanceRequest(BaseModel):
    at: datetime | None = None
    reason: str | None = None


class RollbackRequest(BaseModel):
    target_stage: CropStage | None = None
    reason: str | None = None


class TaskOut(BaseModel):
    id: str
    resource_type: ResourceType
    task_name: str
    name: str
    crop_id: str | None
    crop_plan_id: str | None
    next_run_at: datetime
    last_run_at: datetime | None
    is_active: bool
    conditions: dict

    model_config = {"from_attributes": True}
