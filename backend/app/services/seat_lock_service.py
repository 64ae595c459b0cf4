"""
Seat Lock Manager: time-boxed exclusive holds on a seat during checkout.

CONCURRENCY STRATEGY: one row per key + conditional writes
=========================================================

Problem:
  Two users click the same seat at the same moment. A read ("is there an active
  hold?") followed by a write ("insert my hold") lets both of them through.

Solution:
  seat_holds has a UNIQUE constraint on (seat_id, train_id, travel_date), so a
  key has at most one row. Acquisition is:

  1. UPDATE seat_holds SET user_id = :me, expires_at = :new
     WHERE <key> AND (expires_at <= :now OR user_id = :me)
     -> takes over a lapsed hold or extends our own, atomically.
  2. If no row matched, INSERT a new hold. If another transaction holds the
     key, the unique constraint rejects the insert -> ConflictError.

  The database serializes competing writers on the same row or index entry, so
  exactly one of two concurrent acquirers wins. Expiry is never swept here:
  every reader compares expires_at with "now".
"""

from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.core.logging import get_logger
from app.core.metrics import record_hold_attempt, record_hold_release
from app.core.timeutils import as_utc, utcnow
from app.models.booking import Booking, BookingStatus
from app.models.seat_hold import SeatHold
from app.models.train import Seat, TrainClass
from app.services.change_feed import change_feed, seat_channel

logger = get_logger(__name__)
settings = get_settings()


def is_active(hold: Optional[SeatHold], now: Optional[datetime] = None) -> bool:
    """A hold counts only while now < expires_at, whenever it was created."""
    if hold is None:
        return False
    now = as_utc(now) if now else utcnow()
    return now < as_utc(hold.expires_at)


def _key_filter(seat_id: int, train_id: int, travel_date: date):
    return (
        SeatHold.seat_id == seat_id,
        SeatHold.train_id == train_id,
        SeatHold.travel_date == travel_date,
    )


async def publish_seat_update(
    train_id: int,
    travel_date: date,
    seat_id: int,
    status: str,
) -> None:
    """Viewer-neutral: clients learn which hold is theirs from the HTTP seat map."""
    await change_feed.publish(
        seat_channel(train_id, travel_date),
        {
            "type": "seat_update",
            "train_id": train_id,
            "travel_date": travel_date.isoformat(),
            "seat_id": seat_id,
            "status": status,
        },
    )


async def ensure_seat_on_train(db: AsyncSession, seat_id: int, train_id: int) -> Seat:
    result = await db.execute(
        select(Seat)
        .join(TrainClass, Seat.train_class_id == TrainClass.id)
        .where(Seat.id == seat_id, TrainClass.train_id == train_id)
    )
    seat = result.scalar_one_or_none()
    if seat is None:
        raise NotFoundError(f"Seat {seat_id} not found on train {train_id}")
    return seat


async def has_confirmed_booking(
    db: AsyncSession, seat_id: int, train_id: int, travel_date: date
) -> bool:
    result = await db.execute(
        select(
            exists().where(
                Booking.seat_id == seat_id,
                Booking.train_id == train_id,
                Booking.travel_date == travel_date,
                Booking.status == BookingStatus.CONFIRMED.value,
            )
        )
    )
    return bool(result.scalar())


async def get_active_hold(
    db: AsyncSession,
    seat_id: int,
    train_id: int,
    travel_date: date,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[SeatHold]:
    now = as_utc(now) if now else utcnow()
    query = select(SeatHold).where(*_key_filter(seat_id, train_id, travel_date), SeatHold.expires_at > now)
    if user_id is not None:
        query = query.where(SeatHold.user_id == user_id)
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def list_active_holds(
    db: AsyncSession, train_id: int, travel_date: date, now: Optional[datetime] = None
) -> list[SeatHold]:
    now = as_utc(now) if now else utcnow()
    result = await db.execute(
        select(SeatHold).where(
            SeatHold.train_id == train_id,
            SeatHold.travel_date == travel_date,
            SeatHold.expires_at > now,
        )
    )
    return list(result.scalars().all())


async def acquire_hold(
    db: AsyncSession,
    seat_id: int,
    train_id: int,
    travel_date: date,
    user_id: int,
    now: Optional[datetime] = None,
) -> SeatHold:
    """
    Hold a seat for HOLD_DURATION_MINUTES.

    Any other seat the user holds on the same train and date is released in the
    same transaction; if the new hold is rejected that release is rolled back too.
    """
    now = as_utc(now) if now else utcnow()
    if travel_date < now.date():
        raise ValidationError("Travel date is in the past")

    await ensure_seat_on_train(db, seat_id, train_id)

    if await has_confirmed_booking(db, seat_id, train_id, travel_date):
        record_hold_attempt("conflict")
        logger.info("seat_hold_rejected", seat_id=seat_id, train_id=train_id, reason="booked")
        raise ConflictError("Seat is no longer available", seat_id=seat_id)

    expires_at = now + timedelta(minutes=settings.HOLD_DURATION_MINUTES)

    released = await db.execute(
        delete(SeatHold)
        .where(
            SeatHold.user_id == user_id,
            SeatHold.train_id == train_id,
            SeatHold.travel_date == travel_date,
            SeatHold.seat_id != seat_id,
        )
        .returning(SeatHold.seat_id)
        .execution_options(synchronize_session=False)
    )
    released_seat_ids = list(released.scalars().all())

    takeover = await db.execute(
        update(SeatHold)
        .where(
            *_key_filter(seat_id, train_id, travel_date),
            or_(SeatHold.expires_at <= now, SeatHold.user_id == user_id),
        )
        .values(user_id=user_id, locked_at=now, expires_at=expires_at)
        .execution_options(synchronize_session=False)
    )

    if takeover.rowcount == 0:
        db.add(
            SeatHold(
                seat_id=seat_id,
                train_id=train_id,
                travel_date=travel_date,
                user_id=user_id,
                locked_at=now,
                expires_at=expires_at,
            )
        )
        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            record_hold_attempt("conflict")
            logger.info("seat_hold_rejected", seat_id=seat_id, train_id=train_id, reason="held")
            raise ConflictError("Seat is no longer available", seat_id=seat_id)

    # A confirm may have committed after the first check; holds on a sold seat must not survive
    if await has_confirmed_booking(db, seat_id, train_id, travel_date):
        await db.rollback()
        record_hold_attempt("conflict")
        logger.info("seat_hold_rejected", seat_id=seat_id, train_id=train_id, reason="booked")
        raise ConflictError("Seat is no longer available", seat_id=seat_id)

    await db.commit()
    hold = await get_active_hold(db, seat_id, train_id, travel_date, user_id=user_id, now=now)

    record_hold_attempt("acquired" if takeover.rowcount == 0 else "extended")
    logger.info(
        "seat_hold_acquired",
        seat_id=seat_id,
        train_id=train_id,
        travel_date=str(travel_date),
        user_id=user_id,
        expires_at=expires_at.isoformat(),
    )

    for released_seat_id in released_seat_ids:
        record_hold_release("user")
        await publish_seat_update(train_id, travel_date, released_seat_id, "available")
    await publish_seat_update(train_id, travel_date, seat_id, "locked")
    return hold


async def discard_hold(
    db: AsyncSession, seat_id: int, train_id: int, travel_date: date, user_id: Optional[int] = None
) -> bool:
    """Delete holds on the key inside the caller's transaction; only user_id's when given."""
    query = delete(SeatHold).where(*_key_filter(seat_id, train_id, travel_date))
    if user_id is not None:
        query = query.where(SeatHold.user_id == user_id)
    result = await db.execute(query.execution_options(synchronize_session=False))
    return result.rowcount > 0


async def release_hold(
    db: AsyncSession, seat_id: int, train_id: int, travel_date: date, user_id: int
) -> bool:
    """Idempotent: releasing a hold you do not have is a no-op."""
    released = await discard_hold(db, seat_id, train_id, travel_date, user_id)
    await db.commit()

    if released:
        record_hold_release("user")
        logger.info("seat_hold_released", seat_id=seat_id, train_id=train_id, user_id=user_id)
        await publish_seat_update(train_id, travel_date, seat_id, "available")
    return released
