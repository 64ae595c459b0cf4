"""
Tests for the Daraja client against a mocked HTTP transport.
"""

import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from app.core.config import Settings
from app.core.exceptions import UpstreamError, ValidationError
from app.infrastructure.mpesa import (
    MpesaClient, daraja_timestamp, format_phone_number, parse_callback, stk_password,
)

BASE_URL = "https://sandbox.safaricom.co.ke"


def make_settings(**overrides) -> Settings:
    values = {
        "MPESA_CONSUMER_KEY": "key",
        "MPESA_CONSUMER_SECRET": "secret",
        "MPESA_BUSINESS_SHORT_CODE": "174379",
        "MPESA_PASSKEY": "passkey",
        "MPESA_CALLBACK_URL": "https://rail.example.com/api/v1/payments/mpesa/callback",
    }
    values.update(overrides)
    return Settings(**values)


class DarajaStub:
    """Routes requests to canned Daraja answers and keeps what it received."""

    def __init__(self, query_answer=None, push_answer=None):
        self.requests: list[httpx.Request] = []
        self.query_answer = query_answer or {
            "ResponseCode": "0",
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }
        self.push_answer = push_answer or {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": "3599"})
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            return httpx.Response(200, json=self.push_answer)
        if request.url.path == "/mpesa/stkpushquery/v1/query":
            return httpx.Response(200, json=self.query_answer)
        return httpx.Response(404, json={"errorMessage": "not found"})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def make_client(stub, **overrides) -> MpesaClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(stub), base_url=BASE_URL)
    return MpesaClient(settings=make_settings(**overrides), http_client=http_client)


@pytest.mark.parametrize("raw, expected", [
    ("0712345678", "254712345678"),
    ("+254 712 345 678", "254712345678"),
    ("254712345678", "254712345678"),
    ("712345678", "254712345678"),
])
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


@pytest.mark.parametrize("raw", ["", "12345", "07123456789", "2557123456789"])
def test_format_phone_number_rejects_garbage(raw):
    with pytest.raises(ValidationError):
        format_phone_number(raw)


def test_timestamp_is_east_africa_time():
    assert daraja_timestamp(datetime(2026, 10, 18, 7, 0, 5, tzinfo=timezone.utc)) == "20261018100005"


def test_stk_password():
    password = stk_password("174379", "passkey", "20261018100005")
    assert base64.b64decode(password).decode() == "174379passkey20261018100005"


@pytest.mark.asyncio
async def test_stk_push_sends_signed_request():
    stub = DarajaStub()
    client = make_client(stub)

    response = await client.stk_push("0712345678", 1200, "KR12345678ABCD", "Kututa Railway - KR12345678ABCD")

    assert response.checkout_request_id == "ws_CO_191220191020363925"
    assert response.merchant_request_id == "29115-34620561-1"
    assert stub.paths() == ["/oauth/v1/generate", "/mpesa/stkpush/v1/processrequest"]

    push = stub.requests[1]
    assert push.headers["Authorization"] == "Bearer token-1"
    body = json.loads(push.content)
    assert body["BusinessShortCode"] == "174379"
    assert body["Amount"] == 1200
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["PartyB"] == "174379"
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["AccountReference"] == "KR12345678ABCD"
    assert base64.b64decode(body["Password"]).decode() == f"174379passkey{body['Timestamp']}"
    await client.aclose()


@pytest.mark.asyncio
async def test_access_token_is_reused():
    stub = DarajaStub()
    client = make_client(stub)

    await client.stk_push("0712345678", 100, "REF1", "desc")
    await client.query_stk_status("ws_CO_191220191020363925")

    assert stub.paths().count("/oauth/v1/generate") == 1
    await client.aclose()


@pytest.mark.asyncio
async def test_rejected_stk_push_raises_upstream_error():
    stub = DarajaStub(push_answer={"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})
    client = make_client(stub)

    with pytest.raises(UpstreamError) as exc_info:
        await client.stk_push("0712345678", 1, "REF1", "desc")
    assert "Invalid Amount" in exc_info.value.message
    await client.aclose()


@pytest.mark.asyncio
async def test_query_while_processing():
    stub = DarajaStub(query_answer={
        "requestId": "1",
        "errorCode": "500.001.1001",
        "errorMessage": "The transaction is being processed",
    })
    client = make_client(stub)

    result = await client.query_stk_status("ws_CO_1")
    assert result.is_processing
    assert result.result_code is None
    await client.aclose()


@pytest.mark.asyncio
async def test_query_reports_result_code():
    stub = DarajaStub(query_answer={
        "ResponseCode": "0",
        "ResultCode": "1032",
        "ResultDesc": "Request cancelled by user",
    })
    client = make_client(stub)

    result = await client.query_stk_status("ws_CO_1")
    assert not result.is_processing
    assert result.result_code == 1032
    assert result.result_desc == "Request cancelled by user"
    await client.aclose()


@pytest.mark.asyncio
async def test_network_failure_raises_upstream_error():
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(unreachable)
    with pytest.raises(UpstreamError):
        await client.stk_push("0712345678", 100, "REF1", "desc")
    await client.aclose()


def test_configured_requires_every_credential():
    assert make_settings().mpesa_configured
    assert not make_settings(MPESA_PASSKEY="").mpesa_configured
    assert make_settings(MPESA_ENVIRONMENT="production").mpesa_base_url == "https://api.safaricom.co.ke"


def test_parse_successful_callback():
    result = parse_callback({"Body": {"stkCallback": {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_1",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 1200.00},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "Balance"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254708374149},
        ]},
    }}})

    assert result.succeeded
    assert result.receipt_number == "NLJ7RT61SV"
    assert result.amount == 1200.0
    assert result.transaction_date == "20191219102115"
    assert result.phone_number == "254708374149"


def test_parse_failed_callback_needs_no_metadata():
    result = parse_callback({"Body": {"stkCallback": {
        "CheckoutRequestID": "ws_CO_1", "ResultCode": "1032", "ResultDesc": "Request cancelled by user",
    }}})
    assert not result.succeeded
    assert result.result_code == 1032
    assert result.receipt_number is None


@pytest.mark.parametrize("payload", [
    None,
    [],
    {"Body": {"stkCallback": {"ResultCode": 0}}},
    {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": True}}},
    {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1", "ResultCode": 0,
                              "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1}]}}}},
])
def test_parse_callback_rejects_malformed_payloads(payload):
    with pytest.raises(ValidationError):
        parse_callback(payload)
