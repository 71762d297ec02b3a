"""Aggregate model imports so every table registers on Base.metadata."""

from microfarm.models.recipe import Recipe  # noqa: F401
from microfarm.models.product import Product, ProductMixComponent, ProductVariation  # noqa: F401
from microfarm.models.order import (  # noqa: F401
    BillingFrequency,
    Frequency,
    Order,
    OrderItem,
    OrderPackaging,
    OrderStatus,
    OrderType,
)
from microfarm.models.crop_plan import CropPlan, CropPlanOrder, CropPlanStatus  # noqa: F401
from microfarm.models.crop import Crop, CropStage  # noqa: F401
from microfarm.models.crop_stage_history import CropStageHistory  # noqa: F401
from microfarm.models.task_schedule import ResourceType, TaskSchedule  # noqa: F401
