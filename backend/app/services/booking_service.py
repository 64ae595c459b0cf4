"""
Booking lifecycle: create a pending booking, then finalize it exactly once.

CONCURRENCY STRATEGY: compare-and-swap on status
================================================

Problem:
  The payment webhook and the client's status poll can both learn the outcome
  of the same payment and race to finalize the same booking. A read of the
  status followed by an unconditional write lets both of them "win", and lets a
  late failure overwrite an earlier confirmation.

Solution:
  UPDATE bookings SET status = :target WHERE id = :id AND status = 'pending'

  - rows_affected == 1 -> we performed the transition. In the same transaction a
    confirm deletes every hold on the seat and a cancel deletes the owner's hold.
  - rows_affected == 0 -> someone already finalized it. Same target: no-op.
    Different target: AlreadyFinalizedError; nothing is overwritten.

  A partial unique index (status = 'confirmed') on (seat, train, date) is the
  final safety net against two confirmed bookings for one seat. The confirm
  UPDATE runs in a SAVEPOINT; when a racing confirm trips the index, or the
  seat was already confirmed for someone else, the booking is cancelled
  instead and a seat conflict is reported.
"""

import enum
import secrets
import string
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.exceptions import AlreadyFinalizedError, ConflictError, NotFoundError
from app.core.logging import get_logger
from app.core.metrics import (
    pending_bookings_swept, record_booking_attempt, record_finalization, record_hold_release,
)
from app.core.timeutils import as_utc, utcnow
from app.models.booking import Booking, BookingStatus
from app.models.passenger import Passenger
from app.models.train import Train
from app.services.seat_lock_service import (
    discard_hold, ensure_seat_on_train, get_active_hold, has_confirmed_booking, publish_seat_update,
)

logger = get_logger(__name__)
settings = get_settings()

REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


class PaymentOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TARGET_STATUS = {
    PaymentOutcome.SUCCEEDED: BookingStatus.CONFIRMED,
    PaymentOutcome.FAILED: BookingStatus.CANCELLED,
}


@dataclass
class FinalizeResult:
    booking: Booking
    changed: bool
    seat_conflict: bool = False


def generate_booking_reference(now: Optional[datetime] = None) -> str:
    """KR + last 8 digits of the epoch millis + 4 random characters."""
    now = now or utcnow()
    millis = str(int(now.timestamp() * 1000))[-8:]
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(4))
    return f"KR{millis}{suffix}"


async def get_booking(db: AsyncSession, booking_id: int, user_id: Optional[int] = None) -> Booking:
    query = select(Booking).where(Booking.id == booking_id)
    if user_id is not None:
        query = query.where(Booking.user_id == user_id)
    result = await db.execute(query.execution_options(populate_existing=True))
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError(f"Booking {booking_id} not found")
    return booking


async def get_booking_by_reference(db: AsyncSession, reference: str, user_id: int) -> Booking:
    result = await db.execute(
        select(Booking).where(Booking.booking_reference == reference, Booking.user_id == user_id)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError(f"Booking {reference} not found")
    return booking


async def list_user_bookings(db: AsyncSession, user_id: int) -> list[Booking]:
    result = await db.execute(
        select(Booking)
        .where(Booking.user_id == user_id)
        .order_by(Booking.created_at.desc(), Booking.id.desc())
    )
    return list(result.scalars().all())


async def get_booking_summary(db: AsyncSession, user_id: int, today: Optional[date] = None) -> dict:
    """Dashboard figures: all bookings, upcoming confirmed trips, amount spent on confirmed trips."""
    today = today or utcnow().date()
    total = await db.scalar(select(func.count(Booking.id)).where(Booking.user_id == user_id))
    upcoming = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.user_id == user_id,
            Booking.status == BookingStatus.CONFIRMED.value,
            Booking.travel_date > today,
        )
    )
    spent = await db.scalar(
        select(func.coalesce(func.sum(Booking.total_amount), 0)).where(
            Booking.user_id == user_id,
            Booking.status == BookingStatus.CONFIRMED.value,
        )
    )
    return {"total_bookings": total or 0, "upcoming_trips": upcoming or 0, "total_spent": spent or 0}


async def _pending_booking(
    db: AsyncSession, user_id: int, seat_id: int, train_id: int, travel_date: date
) -> Optional[Booking]:
    return await db.scalar(
        select(Booking).where(
            Booking.user_id == user_id,
            Booking.seat_id == seat_id,
            Booking.train_id == train_id,
            Booking.travel_date == travel_date,
            Booking.status == BookingStatus.PENDING.value,
        )
    )


async def create_booking(
    db: AsyncSession,
    user_id: int,
    passenger_id: int,
    seat_id: int,
    train_id: int,
    travel_date: date,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Create a pending booking for a seat the caller currently holds.

    Re-submitting the same checkout returns the caller's existing pending
    booking for the seat instead of creating a second one.
    """
    now = as_utc(now) if now else utcnow()

    train = await db.get(Train, train_id)
    if not train or not train.is_active:
        raise NotFoundError(f"Train {train_id} not found")
    seat = await ensure_seat_on_train(db, seat_id, train_id)
    train_class = next(c for c in train.classes if c.id == seat.train_class_id)

    passenger = await db.scalar(
        select(Passenger).where(Passenger.id == passenger_id, Passenger.user_id == user_id)
    )
    if not passenger:
        raise NotFoundError(f"Passenger {passenger_id} not found")

    if await has_confirmed_booking(db, seat_id, train_id, travel_date):
        record_booking_attempt("conflict")
        raise ConflictError("Seat is no longer available", seat_id=seat_id)

    hold = await get_active_hold(db, seat_id, train_id, travel_date, user_id=user_id, now=now)
    if hold is None:
        record_booking_attempt("conflict")
        logger.warning("booking_rejected_no_hold", seat_id=seat_id, train_id=train_id, user_id=user_id)
        raise ConflictError("Your hold on this seat has expired. Please select the seat again.", seat_id=seat_id)

    existing = await _pending_booking(db, user_id, seat_id, train_id, travel_date)
    if existing:
        logger.info("booking_resubmitted", booking_id=existing.id, user_id=user_id)
        return existing

    booking = Booking(
        booking_reference=generate_booking_reference(now),
        user_id=user_id,
        passenger_id=passenger.id,
        train_id=train_id,
        seat_id=seat_id,
        travel_date=travel_date,
        class_type=train_class.class_type,
        total_amount=train_class.fare_for(train.route.distance_km),
        status=BookingStatus.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    db.add(booking)
    try:
        await db.flush()
    except IntegrityError:
        # A concurrent submit of the same checkout inserted first
        await db.rollback()
        existing = await _pending_booking(db, user_id, seat_id, train_id, travel_date)
        if existing is None:
            raise
        logger.info("booking_resubmitted", booking_id=existing.id, user_id=user_id)
        return existing
    await db.commit()
    booking = await get_booking(db, booking.id)

    record_booking_attempt("success")
    logger.info(
        "booking_created",
        booking_id=booking.id,
        reference=booking.booking_reference,
        user_id=user_id,
        seat_id=seat_id,
        train_id=train_id,
        travel_date=str(travel_date),
        amount=booking.total_amount,
    )
    return booking


async def apply_finalize(
    db: AsyncSession,
    booking_id: int,
    outcome: PaymentOutcome,
    now: Optional[datetime] = None,
) -> FinalizeResult:
    """
    Perform the terminal transition inside the caller's transaction.

    The caller commits and then calls publish_finalized().
    """
    now = as_utc(now) if now else utcnow()
    booking = await get_booking(db, booking_id)
    seat_id, train_id, travel_date = booking.seat_id, booking.train_id, booking.travel_date
    owner_id = booking.user_id
    target = TARGET_STATUS[PaymentOutcome(outcome)]

    seat_conflict = False
    if target == BookingStatus.CONFIRMED and booking.status == BookingStatus.PENDING:
        # Someone else's booking for this seat got confirmed first
        if await has_confirmed_booking(db, seat_id, train_id, travel_date):
            target = BookingStatus.CANCELLED
            seat_conflict = True

    try:
        async with db.begin_nested():
            result = await _transition(db, booking_id, target, now)
    except IntegrityError:
        # A concurrent confirm for the same seat committed after our pre-check
        logger.warning("booking_confirm_lost_race", booking_id=booking_id, seat_id=seat_id)
        target = BookingStatus.CANCELLED
        seat_conflict = True
        result = await _transition(db, booking_id, target, now)

    if result.rowcount == 0:
        booking = await get_booking(db, booking_id)
        if booking.status == target.value:
            record_finalization("duplicate")
            logger.info("booking_finalize_duplicate", booking_id=booking_id, status=booking.status)
            return FinalizeResult(booking=booking, changed=False)
        record_finalization("rejected")
        logger.warning(
            "booking_already_finalized",
            booking_id=booking_id,
            current_status=booking.status,
            requested=target.value,
        )
        raise AlreadyFinalizedError(
            f"Booking {booking_id} is already {booking.status}",
            current_status=booking.status,
            booking_id=booking_id,
        )

    if target == BookingStatus.CONFIRMED:
        # The seat is sold: nobody else may keep holding it
        await discard_hold(db, seat_id, train_id, travel_date)
    else:
        await discard_hold(db, seat_id, train_id, travel_date, owner_id)
    booking = await get_booking(db, booking_id)

    record_finalization("conflict" if seat_conflict else target.value)
    logger.info(
        "booking_finalized",
        booking_id=booking_id,
        status=booking.status,
        outcome=PaymentOutcome(outcome).value,
        seat_conflict=seat_conflict,
    )
    return FinalizeResult(booking=booking, changed=True, seat_conflict=seat_conflict)


async def _transition(db: AsyncSession, booking_id: int, target: BookingStatus, now: datetime):
    return await db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING.value)
        .values(status=target.value, updated_at=now)
        .execution_options(synchronize_session=False)
    )


async def publish_finalized(result: FinalizeResult) -> None:
    if not result.changed:
        return
    booking = result.booking
    record_hold_release("finalized")
    status = "booked" if booking.status == BookingStatus.CONFIRMED else "available"
    await publish_seat_update(booking.train_id, booking.travel_date, booking.seat_id, status)


async def finalize_booking(
    db: AsyncSession,
    booking_id: int,
    outcome: PaymentOutcome,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Move a pending booking to confirmed (succeeded) or cancelled (failed).

    Idempotent for a repeated outcome; AlreadyFinalizedError for a conflicting
    one. Raises ConflictError, after cancelling the booking, when the seat was
    confirmed for another booking in the meantime.
    """
    result = await apply_finalize(db, booking_id, outcome, now=now)
    await db.commit()
    await publish_finalized(result)

    if result.seat_conflict:
        raise ConflictError("Seat is no longer available", booking_id=booking_id)
    return result.booking


async def expire_stale_bookings(db: AsyncSession, now: Optional[datetime] = None) -> list[int]:
    """
    Cancel pending bookings that were abandoned at checkout.

    A booking is abandoned when it is older than PENDING_BOOKING_TIMEOUT_MINUTES
    and its owner no longer holds the seat. Its payments are left alone: an STK
    prompt can still be answered, and a payment that completes afterwards is
    recorded for refund by the reconciliation handler.
    """
    now = as_utc(now) if now else utcnow()
    cutoff = now - timedelta(minutes=settings.PENDING_BOOKING_TIMEOUT_MINUTES)

    result = await db.execute(
        select(Booking).where(
            Booking.status == BookingStatus.PENDING.value,
            Booking.created_at <= cutoff,
        )
    )
    candidates = list(result.scalars().all())

    expired: list[Booking] = []
    for booking in candidates:
        hold = await get_active_hold(
            db, booking.seat_id, booking.train_id, booking.travel_date, user_id=booking.user_id, now=now
        )
        if hold is not None:
            continue

        cancelled = await db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == BookingStatus.PENDING.value)
            .values(status=BookingStatus.CANCELLED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if cancelled.rowcount == 0:
            continue
        await discard_hold(db, booking.seat_id, booking.train_id, booking.travel_date, booking.user_id)
        expired.append(booking)

    await db.commit()

    for booking in expired:
        pending_bookings_swept.inc()
        logger.info("pending_booking_expired", booking_id=booking.id, reference=booking.booking_reference)
        await publish_seat_update(booking.train_id, booking.travel_date, booking.seat_id, "available")

    return [booking.id for booking in expired]
