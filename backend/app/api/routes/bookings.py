"""
Booking endpoints: create a pending booking for a held seat, list and look up
bookings for the dashboard and the confirmation page.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.booking import BookingCreate, BookingResponse, BookingSummaryResponse
from app.services.booking_service import (
    create_booking, get_booking, get_booking_by_reference, get_booking_summary, list_user_bookings,
)
from app.core.security import get_current_user_id

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking_endpoint(
    booking_data: BookingCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a pending booking. The caller must currently hold the seat
    (POST /holds); the fare is computed from the seat's class and the route.
    """
    return await create_booking(
        db,
        user_id=user_id,
        passenger_id=booking_data.passenger_id,
        seat_id=booking_data.seat_id,
        train_id=booking_data.train_id,
        travel_date=booking_data.travel_date,
    )


@router.get("", response_model=list[BookingResponse])
async def list_bookings_endpoint(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """All bookings of the authenticated user, newest first."""
    return await list_user_bookings(db, user_id)


@router.get("/summary", response_model=BookingSummaryResponse)
async def booking_summary_endpoint(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await get_booking_summary(db, user_id)


@router.get("/reference/{reference}", response_model=BookingResponse)
async def get_booking_by_reference_endpoint(
    reference: str,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await get_booking_by_reference(db, reference, user_id)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking_endpoint(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await get_booking(db, booking_id, user_id=user_id)
