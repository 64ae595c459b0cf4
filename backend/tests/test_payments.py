"""
Tests for M-Pesa payment initiation and reconciliation.

The gateway is the in-memory FakeGateway from conftest; callbacks are posted
the way Daraja posts them.
"""

import asyncio
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.api.routes import payments as payments_routes
from app.services import booking_service, reconciliation_service
from app.core.timeutils import utcnow
from app.db.session import AsyncSessionLocal
from app.models import Booking, Payment, SeatHold
from app.services.booking_service import PaymentOutcome, create_booking, expire_stale_bookings, finalize_booking
from app.services.change_feed import change_feed, payment_channel
from app.services.interfaces.payment_gateway import StkQueryResponse
from app.services.reconciliation_service import await_outcome, handle_callback, poll_status
from app.services.seat_lock_service import acquire_hold

CALLBACK_URL = "/api/v1/payments/mpesa/callback"


def stk_callback(checkout_request_id: str, result_code: int = 0, receipt: str = "R1", amount: int = 1200) -> dict:
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": {
            0: "The service request is processed successfully.",
            1032: "Request cancelled by user",
        }.get(result_code, "The balance is insufficient for the transaction"),
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261018102115},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


async def _checkout(client, db_session, catalog, user_id, passenger_id, travel_date, headers, seat_index=0, now=None):
    """Hold a seat, create the booking and send the STK push; returns (booking_id, checkout_request_id)."""
    seat_id, train_id = catalog["seat_ids"][seat_index], catalog["train_id"]
    await acquire_hold(db_session, seat_id, train_id, travel_date, user_id, now=now)
    booking = await create_booking(db_session, user_id, passenger_id, seat_id, train_id, travel_date, now=now)
    booking_id = booking.id

    response = await client.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"booking_id": booking_id, "phone_number": "0712345678"},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return booking_id, response.json()["checkout_request_id"]


async def _state(db_session, booking_id: int, checkout_request_id: str):
    booking = await db_session.get(Booking, booking_id, populate_existing=True)
    payment = await db_session.scalar(
        select(Payment)
        .where(Payment.checkout_request_id == checkout_request_id)
        .execution_options(populate_existing=True)
    )
    return booking, payment


@pytest.mark.asyncio
async def test_stk_push_records_pending_payment(
    client: AsyncClient, db_session, gateway, catalog, test_user, passenger, auth_headers, travel_date
):
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, test_user.id, passenger.id, travel_date, auth_headers
    )

    assert gateway.pushes[0]["phone_number"] == "254712345678"
    assert gateway.pushes[0]["amount"] == 1200
    assert gateway.pushes[0]["description"].startswith("Kututa Railway - KR")

    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert booking.status == "pending"
    assert payment.status == "pending"
    assert payment.amount == 1200
    assert payment.extra["merchant_request_id"] == f"MR_{checkout_request_id}"


@pytest.mark.asyncio
async def test_stk_push_demo_mode_when_gateway_not_configured(
    client: AsyncClient, db_session, gateway, catalog, test_user, passenger, auth_headers, travel_date
):
    gateway.is_configured = False
    seat_id, train_id, user_id = catalog["seat_ids"][0], catalog["train_id"], test_user.id
    await acquire_hold(db_session, seat_id, train_id, travel_date, user_id)
    booking = await create_booking(db_session, user_id, passenger.id, seat_id, train_id, travel_date)

    response = await client.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"booking_id": booking.id, "phone_number": "0712345678"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["demo"] is True
    assert data["checkout_request_id"] is None
    assert gateway.pushes == []


@pytest.mark.asyncio
async def test_stk_push_rejects_bad_phone_number(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    seat_id, train_id, user_id = catalog["seat_ids"][0], catalog["train_id"], test_user.id
    await acquire_hold(db_session, seat_id, train_id, travel_date, user_id)
    booking = await create_booking(db_session, user_id, passenger.id, seat_id, train_id, travel_date)

    response = await client.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"booking_id": booking.id, "phone_number": "12345-67890"},
        headers=auth_headers,
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_stk_push_requires_a_live_hold(
    client: AsyncClient, db_session, gateway, catalog, test_user, passenger, auth_headers, travel_date
):
    t0 = utcnow() - timedelta(minutes=11)
    seat_id, train_id, user_id = catalog["seat_ids"][0], catalog["train_id"], test_user.id
    await acquire_hold(db_session, seat_id, train_id, travel_date, user_id, now=t0)
    booking = await create_booking(db_session, user_id, passenger.id, seat_id, train_id, travel_date, now=t0)

    response = await client.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"booking_id": booking.id, "phone_number": "0712345678"},
        headers=auth_headers,
    )
    assert response.status_code == 409
    assert gateway.pushes == []


@pytest.mark.asyncio
async def test_stk_push_for_finalized_booking_is_rejected(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    seat_id, train_id, user_id = catalog["seat_ids"][0], catalog["train_id"], test_user.id
    await acquire_hold(db_session, seat_id, train_id, travel_date, user_id)
    booking = await create_booking(db_session, user_id, passenger.id, seat_id, train_id, travel_date)
    await finalize_booking(db_session, booking.id, PaymentOutcome.FAILED)

    response = await client.post(
        "/api/v1/payments/mpesa/stk-push",
        json={"booking_id": booking.id, "phone_number": "0712345678"},
        headers=auth_headers,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_successful_callback_confirms_booking_once(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, test_user.id, passenger.id, travel_date, auth_headers
    )

    response = await client.post(CALLBACK_URL, json=stk_callback(checkout_request_id, 0, receipt="R1"))
    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert booking.status == "confirmed"
    assert payment.status == "completed"
    assert payment.receipt_number == "R1"
    assert payment.result_code == "0"
    assert payment.extra["mpesa_receipt_number"] == "R1"
    assert await db_session.scalar(select(SeatHold).where(SeatHold.seat_id == catalog["seat_ids"][0])) is None

    # Daraja retries deliveries; a duplicate changes nothing
    duplicate = await handle_callback(db_session, stk_callback(checkout_request_id, 0, receipt="R1"))
    assert duplicate.applied is False
    assert duplicate.payment_status == "completed"
    assert duplicate.booking_status == "confirmed"

    response = await client.post(CALLBACK_URL, json=stk_callback(checkout_request_id, 1))
    assert response.json()["ResultCode"] == 0
    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert (booking.status, payment.status) == ("confirmed", "completed")


@pytest.mark.asyncio
async def test_user_cancelled_and_declined_are_reported_differently(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    user_id, passenger_id = test_user.id, passenger.id
    _, cancelled_id = await _checkout(
        client, db_session, catalog, user_id, passenger_id, travel_date, auth_headers, seat_index=0
    )
    await client.post(CALLBACK_URL, json=stk_callback(cancelled_id, 1032))

    _, declined_id = await _checkout(
        client, db_session, catalog, user_id, passenger_id, travel_date, auth_headers, seat_index=1
    )
    await client.post(CALLBACK_URL, json=stk_callback(declined_id, 1))

    cancelled = await client.post(
        "/api/v1/payments/mpesa/status", json={"checkout_request_id": cancelled_id}, headers=auth_headers
    )
    declined = await client.post(
        "/api/v1/payments/mpesa/status", json={"checkout_request_id": declined_id}, headers=auth_headers
    )

    assert cancelled.json()["payment_status"] == "cancelled"
    assert cancelled.json()["booking_status"] == "cancelled"
    assert "cancelled" in cancelled.json()["message"]
    assert declined.json()["payment_status"] == "failed"
    assert declined.json()["booking_status"] == "cancelled"
    assert "declined" in declined.json()["message"]
    assert cancelled.json()["message"] != declined.json()["message"]


@pytest.mark.asyncio
async def test_callback_with_unknown_or_malformed_payload_is_acknowledged(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, test_user.id, passenger.id, travel_date, auth_headers
    )

    payloads = [
        stk_callback("ws_CO_UNKNOWN", 0),
        {"Body": {}},
        {"Body": {"stkCallback": {"CheckoutRequestID": checkout_request_id, "ResultCode": "zero"}}},
        # Success without a receipt is not trusted
        {"Body": {"stkCallback": {"CheckoutRequestID": checkout_request_id, "ResultCode": 0}}},
    ]
    for payload in payloads:
        response = await client.post(CALLBACK_URL, json=payload)
        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    response = await client.post(
        CALLBACK_URL, content=b"not json", headers={"Content-Type": "application/json"}
    )
    assert response.json()["ResultCode"] == 0

    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert (booking.status, payment.status) == ("pending", "pending")


@pytest.mark.asyncio
async def test_callback_with_wrong_token_is_ignored(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date, monkeypatch
):
    monkeypatch.setattr(payments_routes.settings, "MPESA_CALLBACK_TOKEN", "s3cret")
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, test_user.id, passenger.id, travel_date, auth_headers
    )

    response = await client.post(CALLBACK_URL, params={"token": "guess"}, json=stk_callback(checkout_request_id))
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert payment.status == "pending"

    await client.post(CALLBACK_URL, params={"token": "s3cret"}, json=stk_callback(checkout_request_id))
    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert (booking.status, payment.status) == ("confirmed", "completed")


@pytest.mark.asyncio
async def test_poll_reports_pending_while_gateway_is_processing(
    client: AsyncClient, db_session, gateway, catalog, test_user, passenger, auth_headers, travel_date
):
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, test_user.id, passenger.id, travel_date, auth_headers
    )

    response = await client.post(
        "/api/v1/payments/mpesa/status",
        json={"checkout_request_id": checkout_request_id},
        headers=auth_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["payment_status"] == "pending"
    assert data["booking_status"] == "pending"
    assert "still being processed" in data["message"]
    assert gateway.queries == [checkout_request_id]


@pytest.mark.asyncio
async def test_poll_applies_gateway_result_and_late_callback_is_a_noop(
    client: AsyncClient, db_session, gateway, catalog, test_user, passenger, auth_headers, travel_date
):
    user_id = test_user.id
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, user_id, passenger.id, travel_date, auth_headers
    )
    gateway.query_results[checkout_request_id] = StkQueryResponse(
        checkout_request_id=checkout_request_id,
        result_code=0,
        result_desc="The service request is processed successfully.",
        receipt_number="R2",
    )

    result = await poll_status(db_session, gateway, user_id, checkout_request_id)
    assert result.applied is True
    assert (result.payment_status, result.booking_status) == ("completed", "confirmed")
    assert result.receipt_number == "R2"

    late = await handle_callback(db_session, stk_callback(checkout_request_id, 0, receipt="R2"))
    assert late.applied is False

    # Terminal payments are answered from the database
    again = await poll_status(db_session, gateway, user_id, checkout_request_id)
    assert again.payment_status == "completed"
    assert gateway.queries == [checkout_request_id]


@pytest.mark.asyncio
async def test_status_of_another_users_payment_is_not_found(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, other_auth_headers, travel_date
):
    _, checkout_request_id = await _checkout(
        client, db_session, catalog, test_user.id, passenger.id, travel_date, auth_headers
    )
    response = await client.post(
        "/api/v1/payments/mpesa/status",
        json={"checkout_request_id": checkout_request_id},
        headers=other_auth_headers,
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_payment_after_booking_was_swept_requires_refund(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    user_id, passenger_id = test_user.id, passenger.id
    t0 = utcnow() - timedelta(minutes=9)
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, user_id, passenger_id, travel_date, auth_headers, now=t0
    )
    assert await expire_stale_bookings(db_session, now=t0 + timedelta(minutes=20)) == [booking_id]

    result = await handle_callback(db_session, stk_callback(checkout_request_id, 0, receipt="R9"))
    assert result.payment_status == "completed"
    assert result.booking_status == "cancelled"
    assert result.refund_required is True
    assert "refunded" in result.message

    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert payment.receipt_number == "R9"
    assert payment.extra["refund_required"] is True


@pytest.mark.asyncio
async def test_paid_after_seat_was_confirmed_for_someone_else(
    client: AsyncClient, db_session, catalog, test_user, other_user, passenger, other_passenger,
    auth_headers, other_auth_headers, travel_date
):
    user_a, user_b = test_user.id, other_user.id
    passenger_a, passenger_b = passenger.id, other_passenger.id
    t0 = utcnow() - timedelta(minutes=9)

    booking_a, checkout_a = await _checkout(
        client, db_session, catalog, user_a, passenger_a, travel_date, auth_headers, now=t0
    )
    # A's hold lapses a minute from now; two minutes from now B takes the seat over and pays first
    booking_b, checkout_b = await _checkout(
        client, db_session, catalog, user_b, passenger_b, travel_date, other_auth_headers,
        now=utcnow() + timedelta(minutes=2),
    )
    await client.post(CALLBACK_URL, json=stk_callback(checkout_b, 0, receipt="RB"))
    await client.post(CALLBACK_URL, json=stk_callback(checkout_a, 0, receipt="RA"))

    booking, payment = await _state(db_session, booking_a, checkout_a)
    assert booking.status == "cancelled"
    assert payment.status == "completed"
    assert payment.extra["refund_required"] is True

    response = await client.post(
        "/api/v1/payments/mpesa/status", json={"checkout_request_id": checkout_a}, headers=auth_headers
    )
    assert response.json()["message"] == "Seat is no longer available. Your payment will be refunded."

    booking, payment = await _state(db_session, booking_b, checkout_b)
    assert (booking.status, payment.status) == ("confirmed", "completed")


@pytest.mark.asyncio
async def test_callbacks_racing_for_one_seat_are_both_acknowledged(
    client: AsyncClient, db_session, catalog, test_user, other_user, passenger, other_passenger,
    auth_headers, other_auth_headers, travel_date, monkeypatch
):
    """Neither confirm sees the other; the unique index rejects the second and it is refunded."""
    user_a, user_b = test_user.id, other_user.id
    passenger_a, passenger_b = passenger.id, other_passenger.id
    t0 = utcnow() - timedelta(minutes=9)

    booking_a, checkout_a = await _checkout(
        client, db_session, catalog, user_a, passenger_a, travel_date, auth_headers, now=t0
    )
    booking_b, checkout_b = await _checkout(
        client, db_session, catalog, user_b, passenger_b, travel_date, other_auth_headers,
        now=utcnow() + timedelta(minutes=2),
    )

    async def seat_looks_free(*args):
        return False

    monkeypatch.setattr(booking_service, "has_confirmed_booking", seat_looks_free)

    for checkout_request_id, receipt in ((checkout_b, "RB"), (checkout_a, "RA")):
        response = await client.post(CALLBACK_URL, json=stk_callback(checkout_request_id, 0, receipt=receipt))
        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    booking, payment = await _state(db_session, booking_a, checkout_a)
    assert booking.status == "cancelled"
    assert payment.status == "completed"
    assert payment.receipt_number == "RA"
    assert payment.extra["refund_required"] is True

    booking, payment = await _state(db_session, booking_b, checkout_b)
    assert (booking.status, payment.status) == ("confirmed", "completed")
    assert "refund_required" not in payment.extra


@pytest.mark.asyncio
async def test_callback_is_acknowledged_when_the_store_fails(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date, monkeypatch
):
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, test_user.id, passenger.id, travel_date, auth_headers
    )

    async def database_locked(*args, **kwargs):
        raise OperationalError("UPDATE bookings", {}, Exception("database is locked"))

    with monkeypatch.context() as patched:
        patched.setattr(reconciliation_service, "apply_finalize", database_locked)
        response = await client.post(CALLBACK_URL, json=stk_callback(checkout_request_id, 0, receipt="R1"))

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    # The payment write was rolled back with the failed finalize
    assert (booking.status, payment.status) == ("pending", "pending")

    # Daraja redelivers; the retry applies cleanly
    response = await client.post(CALLBACK_URL, json=stk_callback(checkout_request_id, 0, receipt="R1"))
    assert response.json()["ResultCode"] == 0
    booking, payment = await _state(db_session, booking_id, checkout_request_id)
    assert (booking.status, payment.status) == ("confirmed", "completed")


@pytest.mark.asyncio
async def test_await_outcome_wakes_on_callback(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    user_id = test_user.id
    booking_id, checkout_request_id = await _checkout(
        client, db_session, catalog, user_id, passenger.id, travel_date, auth_headers
    )

    async def deliver_when_subscribed():
        while change_feed.subscriber_count(payment_channel(checkout_request_id)) == 0:
            await asyncio.sleep(0.01)
        await client.post(CALLBACK_URL, json=stk_callback(checkout_request_id, 0))

    async def wait_in_own_session():
        async with AsyncSessionLocal() as db:
            return await await_outcome(db, user_id, checkout_request_id, timeout=5)

    waiter = asyncio.create_task(wait_in_own_session())
    await deliver_when_subscribed()
    result = await waiter

    assert result.payment_status == "completed"
    assert result.booking_status == "confirmed"


@pytest.mark.asyncio
async def test_await_outcome_times_out_as_pending(
    client: AsyncClient, db_session, catalog, test_user, passenger, auth_headers, travel_date
):
    user_id = test_user.id
    _, checkout_request_id = await _checkout(
        client, db_session, catalog, user_id, passenger.id, travel_date, auth_headers
    )
    result = await await_outcome(db_session, user_id, checkout_request_id, timeout=0.05)
    assert result.payment_status == "pending"
    assert change_feed.subscriber_count(payment_channel(checkout_request_id)) == 0
