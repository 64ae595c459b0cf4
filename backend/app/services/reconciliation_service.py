"""
Payment reconciliation: initiate an STK push and apply its outcome to the
payment and booking exactly once.

The outcome reaches us two ways, and they race:
  1. the gateway POSTs to our callback URL (handle_callback)
  2. the checkout page polls us and we ask the gateway (poll_status)

Both go through _apply_result(), which does a compare-and-swap on the payment
(status = 'pending' -> terminal) and then finalizes the booking in the same
transaction. The loser of the race sees a terminal payment and returns it
unchanged.

Result codes: 0 -> completed, 1032 -> cancelled by the payer, anything else ->
failed. Only 0 confirms the booking.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.exceptions import (
    AlreadyFinalizedError, ConflictError, NotFoundError, UpstreamError, ValidationError,
)
from app.core.logging import get_logger
from app.core.metrics import record_payment_initiation, record_status_poll
from app.core.timeutils import as_utc, utcnow
from app.infrastructure.mpesa import (
    CANCELLED_BY_USER_RESULT_CODE, SUCCESS_RESULT_CODE, format_phone_number, parse_callback,
)
from app.models.booking import Booking
from app.models.payment import Payment, PaymentStatus
from app.services.booking_service import (
    FinalizeResult, PaymentOutcome, apply_finalize, get_booking, publish_finalized,
)
from app.services.change_feed import change_feed, payment_channel
from app.services.interfaces.payment_gateway import PaymentGateway
from app.services.seat_lock_service import get_active_hold

logger = get_logger(__name__)
settings = get_settings()

MESSAGES = {
    PaymentStatus.COMPLETED: "Payment completed successfully",
    PaymentStatus.CANCELLED: "Payment was cancelled on your phone",
    PaymentStatus.FAILED: "Payment was declined or failed. Please try again.",
    PaymentStatus.PENDING: "Payment is still being processed, please wait",
}
SEAT_LOST_MESSAGE = "Seat is no longer available. Your payment will be refunded."


@dataclass
class PaymentInitiation:
    booking_id: int
    checkout_request_id: Optional[str] = None
    message: str = ""
    demo: bool = False


@dataclass
class ReconciliationResult:
    checkout_request_id: str
    payment_status: str
    booking_id: int
    booking_status: str
    receipt_number: Optional[str] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    applied: bool = False
    refund_required: bool = False

    @property
    def message(self) -> str:
        if self.refund_required:
            return SEAT_LOST_MESSAGE
        return MESSAGES[PaymentStatus(self.payment_status)]


def payment_status_for(result_code: int) -> PaymentStatus:
    if result_code == SUCCESS_RESULT_CODE:
        return PaymentStatus.COMPLETED
    if result_code == CANCELLED_BY_USER_RESULT_CODE:
        return PaymentStatus.CANCELLED
    return PaymentStatus.FAILED


def _result_from(payment: Payment, booking: Booking, applied: bool = False) -> ReconciliationResult:
    return ReconciliationResult(
        checkout_request_id=payment.checkout_request_id,
        payment_status=payment.status,
        booking_id=booking.id,
        booking_status=booking.status,
        receipt_number=payment.receipt_number,
        result_code=payment.result_code,
        result_desc=payment.result_desc,
        applied=applied,
        refund_required=bool((payment.extra or {}).get("refund_required")),
    )


async def get_payment(
    db: AsyncSession, checkout_request_id: str, user_id: Optional[int] = None
) -> Payment:
    query = select(Payment).where(Payment.checkout_request_id == checkout_request_id)
    if user_id is not None:
        query = query.join(Booking, Payment.booking_id == Booking.id).where(Booking.user_id == user_id)
    result = await db.execute(query.execution_options(populate_existing=True))
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFoundError(f"Payment {checkout_request_id} not found")
    return payment


@asynccontextmanager
async def _store_guard(db: AsyncSession, checkout_request_id: str):
    """Surface database failures while reconciling as UpstreamError; nothing is half-applied."""
    try:
        yield
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("payment_store_failed", checkout_request_id=checkout_request_id, error=str(e))
        raise UpstreamError("Payment store is unavailable") from e


async def initiate_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: int,
    booking_id: int,
    phone_number: str,
) -> PaymentInitiation:
    """Send an STK push for a pending booking and record the pending payment."""
    booking = await get_booking(db, booking_id, user_id=user_id)
    if booking.is_terminal:
        raise ValidationError(f"Booking is {booking.status}, not awaiting payment")

    hold = await get_active_hold(
        db, booking.seat_id, booking.train_id, booking.travel_date, user_id=user_id
    )
    if hold is None:
        raise ConflictError("Your hold on this seat has expired. Please select the seat again.")

    phone = format_phone_number(phone_number)

    if not gateway.configured:
        record_payment_initiation("demo")
        logger.warning("mpesa_not_configured", booking_id=booking_id)
        return PaymentInitiation(
            booking_id=booking_id,
            message="M-Pesa is not configured. Using demo mode.",
            demo=True,
        )

    try:
        response = await gateway.stk_push(
            phone_number=phone,
            amount=booking.total_amount,
            account_reference=booking.booking_reference,
            description=f"{settings.MPESA_TRANSACTION_DESC_PREFIX} - {booking.booking_reference}",
        )
    except Exception:
        record_payment_initiation("failed")
        raise

    payment = Payment(
        booking_id=booking.id,
        amount=booking.total_amount,
        payment_method="mpesa",
        checkout_request_id=response.checkout_request_id,
        status=PaymentStatus.PENDING.value,
        phone_number=phone,
        extra={
            "checkout_request_id": response.checkout_request_id,
            "merchant_request_id": response.merchant_request_id,
        },
    )
    db.add(payment)
    await db.commit()

    record_payment_initiation("sent")
    logger.info(
        "payment_initiated",
        booking_id=booking.id,
        checkout_request_id=response.checkout_request_id,
        amount=booking.total_amount,
    )
    return PaymentInitiation(
        booking_id=booking.id,
        checkout_request_id=response.checkout_request_id,
        message=response.customer_message or "Payment request sent to your phone",
    )


async def _apply_result(
    db: AsyncSession,
    payment: Payment,
    result_code: int,
    result_desc: str,
    receipt_number: Optional[str] = None,
    details: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> ReconciliationResult:
    now = as_utc(now) if now else utcnow()
    status = payment_status_for(result_code)
    extra = {**(payment.extra or {}), **(details or {}), "result_desc": result_desc}

    swapped = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
        .values(
            status=status.value,
            result_code=str(result_code),
            result_desc=result_desc,
            receipt_number=receipt_number,
            extra=extra,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    if swapped.rowcount == 0:
        # Nothing was written; end the transaction without expiring loaded objects
        await db.commit()
        payment = await get_payment(db, payment.checkout_request_id)
        booking = await get_booking(db, payment.booking_id)
        logger.info(
            "payment_result_duplicate",
            checkout_request_id=payment.checkout_request_id,
            status=payment.status,
        )
        return _result_from(payment, booking)

    outcome = PaymentOutcome.SUCCEEDED if status == PaymentStatus.COMPLETED else PaymentOutcome.FAILED
    finalized: Optional[FinalizeResult] = None
    refund_required = False
    try:
        finalized = await apply_finalize(db, payment.booking_id, outcome, now=now)
        refund_required = finalized.seat_conflict
    except AlreadyFinalizedError as e:
        # Booking was cancelled (swept or failed attempt) before this payment landed
        refund_required = status == PaymentStatus.COMPLETED
        logger.warning(
            "payment_for_finalized_booking",
            checkout_request_id=payment.checkout_request_id,
            booking_id=payment.booking_id,
            booking_status=e.current_status,
        )

    if refund_required:
        await db.execute(
            update(Payment)
            .where(Payment.id == payment.id)
            .values(extra={**extra, "refund_required": True})
            .execution_options(synchronize_session=False)
        )

    await db.commit()

    if finalized is not None:
        await publish_finalized(finalized)

    payment = await get_payment(db, payment.checkout_request_id)
    booking = await get_booking(db, payment.booking_id)
    result = _result_from(payment, booking, applied=True)

    logger.info(
        "payment_result_applied",
        checkout_request_id=payment.checkout_request_id,
        payment_status=payment.status,
        booking_id=booking.id,
        booking_status=booking.status,
        receipt_number=payment.receipt_number,
        refund_required=result.refund_required,
    )
    await change_feed.publish(
        payment_channel(payment.checkout_request_id),
        {
            "type": "payment_result",
            "checkout_request_id": payment.checkout_request_id,
            "payment_status": payment.status,
            "booking_status": booking.status,
        },
    )
    return result


async def handle_callback(db: AsyncSession, payload: Any) -> ReconciliationResult:
    """
    Validate a Daraja STK callback body and apply its outcome.

    Raises ValidationError for a malformed body, NotFoundError for an unknown
    correlation id and UpstreamError when the store fails; the receiver logs
    all three and still acknowledges.
    """
    callback = parse_callback(payload)
    async with _store_guard(db, callback.checkout_request_id):
        payment = await get_payment(db, callback.checkout_request_id)

        details = {}
        if callback.succeeded:
            details = {
                "mpesa_receipt_number": callback.receipt_number,
                "transaction_date": callback.transaction_date,
                "paid_phone_number": callback.phone_number,
                "paid_amount": callback.amount,
            }
            if callback.amount is not None and int(round(callback.amount)) != payment.amount:
                logger.warning(
                    "payment_amount_mismatch",
                    checkout_request_id=payment.checkout_request_id,
                    expected=payment.amount,
                    received=callback.amount,
                )

        return await _apply_result(
            db,
            payment,
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            receipt_number=callback.receipt_number,
            details=details,
        )


async def poll_status(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: int,
    checkout_request_id: str,
) -> ReconciliationResult:
    """Ask the gateway for an outcome we have not heard about yet and apply it."""
    payment = await get_payment(db, checkout_request_id, user_id=user_id)
    if payment.is_terminal:
        booking = await get_booking(db, payment.booking_id)
        result = _result_from(payment, booking)
        record_status_poll(result.payment_status)
        return result

    response = await gateway.query_stk_status(checkout_request_id)
    if response.is_processing:
        booking = await get_booking(db, payment.booking_id)
        record_status_poll(PaymentStatus.PENDING.value)
        return _result_from(payment, booking)

    async with _store_guard(db, checkout_request_id):
        result = await _apply_result(
            db,
            payment,
            result_code=response.result_code,
            result_desc=response.result_desc,
            receipt_number=response.receipt_number,
            details={"mpesa_receipt_number": response.receipt_number} if response.receipt_number else None,
        )
    record_status_poll(result.payment_status)
    return result


async def await_outcome(
    db: AsyncSession, user_id: int, checkout_request_id: str, timeout: float
) -> ReconciliationResult:
    """
    Wait up to timeout seconds for the payment to reach a terminal state.

    Subscribes before reading so an outcome published in between is not missed.
    """
    async with change_feed.subscribe(payment_channel(checkout_request_id)) as queue:
        payment = await get_payment(db, checkout_request_id, user_id=user_id)
        if not payment.is_terminal and timeout > 0:
            try:
                async with asyncio.timeout(timeout):
                    await queue.get()
            except TimeoutError:
                pass
            payment = await get_payment(db, checkout_request_id, user_id=user_id)

    booking = await get_booking(db, payment.booking_id)
    return _result_from(payment, booking)
