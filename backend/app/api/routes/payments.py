"""
M-Pesa payment endpoints: initiate an STK push, poll its status, and receive
the gateway's asynchronous callback.
"""

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.payment import (
    CallbackAck, PaymentStatusRequest, PaymentStatusResponse, StkPushRequest, StkPushResponse,
)
from app.infrastructure.mpesa import get_payment_gateway
from app.services.interfaces.payment_gateway import PaymentGateway
from app.services.reconciliation_service import (
    ReconciliationResult, await_outcome, handle_callback, initiate_payment, poll_status,
)
from app.core.config import get_settings
from app.core.exceptions import NotFoundError, UpstreamError, ValidationError
from app.core.metrics import record_callback
from app.core.security import get_current_user_id
from app.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()
router = APIRouter(prefix="/payments/mpesa", tags=["Payments"])


def _status_response(result: ReconciliationResult) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        checkout_request_id=result.checkout_request_id,
        payment_status=result.payment_status,
        booking_id=result.booking_id,
        booking_status=result.booking_status,
        message=result.message,
        receipt_number=result.receipt_number,
        result_code=result.result_code,
        result_desc=result.result_desc,
        refund_required=result.refund_required,
    )


@router.post("/stk-push", response_model=StkPushResponse)
async def stk_push_endpoint(
    request_data: StkPushRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Send a payment prompt to the payer's phone for a pending booking.
    The amount is always the booking's fare.
    """
    initiation = await initiate_payment(
        db, gateway, user_id, request_data.booking_id, request_data.phone_number
    )
    return StkPushResponse(
        success=True,
        message=initiation.message,
        booking_id=initiation.booking_id,
        checkout_request_id=initiation.checkout_request_id,
        demo=initiation.demo,
    )


@router.post("/status", response_model=PaymentStatusResponse)
async def payment_status_endpoint(
    request_data: PaymentStatusRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Current outcome of a payment. A payment the gateway is still processing
    reports pending; with wait_seconds > 0 the request waits that long for
    the callback to settle it first.
    """
    result = await poll_status(db, gateway, user_id, request_data.checkout_request_id)
    if result.payment_status == "pending" and request_data.wait_seconds > 0:
        result = await await_outcome(
            db, user_id, request_data.checkout_request_id, request_data.wait_seconds
        )
    return _status_response(result)


@router.post("/callback", response_model=CallbackAck)
async def callback_endpoint(
    request: Request,
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Daraja result callback. The gateway always gets an acknowledgement;
    malformed, unknown or unauthenticated payloads are logged and ignored.
    """
    if settings.MPESA_CALLBACK_TOKEN and not secrets.compare_digest(
        token or "", settings.MPESA_CALLBACK_TOKEN
    ):
        record_callback("rejected")
        logger.warning("mpesa_callback_rejected", reason="token_mismatch")
        return CallbackAck()

    try:
        payload = await request.json()
    except ValueError:
        record_callback("invalid")
        logger.warning("mpesa_callback_invalid", error="body is not JSON")
        return CallbackAck()

    try:
        result = await handle_callback(db, payload)
    except ValidationError as e:
        record_callback("invalid")
        logger.warning("mpesa_callback_invalid", error=e.message)
    except NotFoundError as e:
        record_callback("unknown")
        logger.warning("mpesa_callback_unknown_payment", error=e.message)
    except UpstreamError as e:
        record_callback("error")
        logger.error("mpesa_callback_failed", error=e.message)
    else:
        record_callback("applied" if result.applied else "duplicate")
        logger.info(
            "mpesa_callback_processed",
            checkout_request_id=result.checkout_request_id,
            payment_status=result.payment_status,
            booking_status=result.booking_status,
        )
    return CallbackAck()
