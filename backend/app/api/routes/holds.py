"""
Seat hold endpoints. A hold keeps a seat reserved for the caller while they
fill in passenger details and pay.
"""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.booking import HoldReleaseResponse, HoldRequest, HoldResponse
from app.services.seat_lock_service import acquire_hold, release_hold
from app.core.security import get_current_user_id

router = APIRouter(prefix="/holds", tags=["Seat holds"])


@router.post("", response_model=HoldResponse, status_code=status.HTTP_201_CREATED)
async def acquire_hold_endpoint(
    hold_data: HoldRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Hold a seat for HOLD_DURATION_MINUTES. Re-requesting your own seat extends
    the hold; picking another seat on the same train and date releases the old one.
    409 if the seat is booked or held by someone else.
    """
    return await acquire_hold(db, hold_data.seat_id, hold_data.train_id, hold_data.travel_date, user_id)


@router.delete("", response_model=HoldReleaseResponse)
async def release_hold_endpoint(
    seat_id: int = Query(...),
    train_id: int = Query(...),
    travel_date: date = Query(...),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    released = await release_hold(db, seat_id, train_id, travel_date, user_id)
    return HoldReleaseResponse(released=released)
