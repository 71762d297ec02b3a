"""Typed payloads stored in TaskSchedule.conditions.

The payload is a tagged variant: ``resource_type`` selects the model, so a
crop task can never be read with plan fields (or the other way round).
"""

from datetime import date
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class CropStageConditions(BaseModel):
    """Move one tray from ``current_stage`` to ``target_stage``."""
    resource_type: Literal["crops"] = "crops"
    crop_id: str
    crop_plan_id: str | None = None
    current_stage: str
    target_stage: str
    tray_number: str | None = None
    recipe_name: str | None = None


class PlantingConditions(BaseModel):
    """Sow the trays of an approved plan."""
    resource_type: Literal["crop_plans"] = "crop_plans"
    crop_plan_id: str
    recipe_name: str | None = None
    trays_needed: int
    plant_by_date: date


TaskConditions = Annotated[
    Union[CropStageConditions, PlantingConditions],
    Field(discriminator="resource_type"),
]

_adapter = TypeAdapter(TaskConditions)


def parse_conditions(payload: dict) -> CropStageConditions | PlantingConditions:
    """Validate a stored payload into its resource-specific model."""
    return _adapter.validate_python(payload)


def dump_conditions(conditions: CropStageConditions | PlantingConditions) -> dict:
    return conditions.model_dump(mode="json")
