from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.passenger import PassengerCreate, PassengerResponse
from app.services.passenger_service import list_passengers, register_passenger
from app.core.security import get_current_user_id

router = APIRouter(prefix="/passengers", tags=["Passengers"])


@router.get("", response_model=list[PassengerResponse])
async def list_passengers_endpoint(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await list_passengers(db, user_id)


@router.post("", response_model=PassengerResponse, status_code=status.HTTP_201_CREATED)
async def register_passenger_endpoint(
    passenger_data: PassengerCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Save a passenger; an ID number already on the account updates that passenger."""
    return await register_passenger(db, user_id, passenger_data)
