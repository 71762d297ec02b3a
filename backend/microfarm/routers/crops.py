"""Manual crop stage changes and the crop's current stage task.

Stage changes only ever happen here (or through the service calls behind
these endpoints); the background jobs merely remind.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from microfarm.database import get_db
from microfarm.middleware.exceptions import ResourceNotFoundError
from microfarm.models.crop import Crop
from microfarm.schemas.crop_plan import AdvanceRequest, CropOut, RollbackRequest, TaskOut
from microfarm.services import stage_tasks

router = APIRouter()


async def _crop_or_404(db: AsyncSession, crop_id: str) -> Crop:
    crop = await db.get(Crop, crop_id)
    if crop is None:
        raise ResourceNotFoundError("Crop", crop_id)
    return crop


@router.get("/{crop_id}", response_model=CropOut)
async def get_crop(crop_id: str, db: AsyncSession = Depends(get_db)):
    return await _crop_or_404(db, crop_id)


@router.get("/{crop_id}/task", response_model=TaskOut | None)
async def get_task(crop_id: str, db: AsyncSession = Depends(get_db)):
    await _crop_or_404(db, crop_id)
    return await stage_tasks.get_crop_task(db, crop_id)


@router.post("/{crop_id}/advance", response_model=CropOut)
async def advance(
    crop_id: str,
    body: AdvanceRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    crop = await _crop_or_404(db, crop_id)
    body = body or AdvanceRequest()
    return await stage_tasks.advance_stage(db, crop, at=body.at, reason=body.reason)


@router.post("/{crop_id}/rollback", response_model=CropOut)
async def rollback(
    crop_id: str,
    body: RollbackRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    crop = await _crop_or_404(db, crop_id)
    body = body or RollbackRequest()
    return await stage_tasks.rollback_stage(
        db, crop, target_stage=body.target_stage, reason=body.reason,
    )


@router.delete("/{crop_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete(crop_id: str, db: AsyncSession = Depends(get_db)):
    crop = await _crop_or_404(db, crop_id)
    await stage_tasks.delete_crop(db, crop)
