"""Order lookup and cancellation."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from microfarm.database import get_db
from microfarm.middleware.exceptions import ResourceNotFoundError
from microfarm.models.order import Order
from microfarm.schemas.order import CancelOut, OrderOut
from microfarm.services.recurring_orders import cancel_order

router = APIRouter()


async def _order_or_404(db: AsyncSession, order_id: str) -> Order:
    order = await db.get(Order, order_id)
    if order is None:
        raise ResourceNotFoundError("Order", order_id)
    return order


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(order_id: str, db: AsyncSession = Depends(get_db)):
    return await _order_or_404(db, order_id)


@router.post("/{order_id}/cancel", response_model=CancelOut)
async def cancel(order_id: str, db: AsyncSession = Depends(get_db)):
    """Cancel the order and withdraw it from its crop plans."""
    order = await _order_or_404(db, order_id)
    return await cancel_order(db, order)
