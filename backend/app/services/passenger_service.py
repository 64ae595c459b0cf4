"""
Passengers saved on a user account.

Registering a passenger whose ID number the user already saved returns the
existing record with its contact details refreshed, so the booking form can
be resubmitted freely.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.models.passenger import Passenger
from app.schemas.passenger import PassengerCreate

logger = get_logger(__name__)


async def _find_passenger(db: AsyncSession, user_id: int, id_number: str) -> Optional[Passenger]:
    result = await db.execute(
        select(Passenger).where(Passenger.user_id == user_id, Passenger.id_number == id_number)
    )
    return result.scalar_one_or_none()


def _refresh_contact(passenger: Passenger, data: PassengerCreate) -> None:
    passenger.full_name = data.full_name
    passenger.phone = data.phone or passenger.phone
    passenger.email = data.email or passenger.email


async def register_passenger(db: AsyncSession, user_id: int, data: PassengerCreate) -> Passenger:
    passenger = await _find_passenger(db, user_id, data.id_number)

    if passenger:
        _refresh_contact(passenger, data)
        logger.info("passenger_reused", passenger_id=passenger.id, user_id=user_id)
    else:
        passenger = Passenger(
            user_id=user_id,
            full_name=data.full_name,
            id_number=data.id_number,
            phone=data.phone,
            email=data.email,
        )
        db.add(passenger)
        try:
            await db.flush()
            logger.info("passenger_registered", passenger_id=passenger.id, user_id=user_id)
        except IntegrityError:
            # The same form was submitted twice at once; the other insert won
            await db.rollback()
            passenger = await _find_passenger(db, user_id, data.id_number)
            if passenger is None:
                raise
            _refresh_contact(passenger, data)
            logger.info("passenger_reused", passenger_id=passenger.id, user_id=user_id)

    await db.commit()
    await db.refresh(passenger)
    return passenger


async def list_passengers(db: AsyncSession, user_id: int) -> list[Passenger]:
    result = await db.execute(
        select(Passenger).where(Passenger.user_id == user_id).order_by(Passenger.full_name)
    )
    return list(result.scalars().all())


async def get_passenger(db: AsyncSession, user_id: int, passenger_id: int) -> Passenger:
    result = await db.execute(
        select(Passenger).where(Passenger.id == passenger_id, Passenger.user_id == user_id)
    )
    passenger = result.scalar_one_or_none()
    if not passenger:
        raise NotFoundError(f"Passenger {passenger_id} not found")
    return passenger
