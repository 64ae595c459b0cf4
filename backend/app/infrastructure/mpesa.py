"""
Safaricom Daraja (M-Pesa Express / STK push) client.

Three calls are used:
  GET  /oauth/v1/generate?grant_type=client_credentials   -> bearer token
  POST /mpesa/stkpush/v1/processrequest                   -> CheckoutRequestID
  POST /mpesa/stkpushquery/v1/query                       -> ResultCode for a CheckoutRequestID

The outcome also arrives asynchronously on our callback URL; parse_callback()
validates that payload before anything trusts it.

Password = base64(BusinessShortCode + Passkey + Timestamp), Timestamp is
YYYYMMDDHHMMSS in East Africa Time.
"""

import asyncio
import base64
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx

from app.core.config import Settings, get_settings
from app.core.exceptions import UpstreamError, ValidationError
from app.core.logging import get_logger
from app.core.metrics import gateway_latency
from app.services.interfaces.payment_gateway import PaymentGateway, StkPushResponse, StkQueryResponse

logger = get_logger(__name__)

EAT = timezone(timedelta(hours=3))

# Daraja answers a status query with this error while the payer has not responded yet
STILL_PROCESSING_ERROR_CODE = "500.001.1001"

SUCCESS_RESULT_CODE = 0
CANCELLED_BY_USER_RESULT_CODE = 1032


def format_phone_number(phone: str) -> str:
    """Normalize 07XXXXXXXX, 7XXXXXXXX, +2547XXXXXXXX to 2547XXXXXXXX."""
    cleaned = re.sub(r"\D", "", phone or "")

    if cleaned.startswith("254") and len(cleaned) == 12:
        return cleaned
    if cleaned.startswith("0") and len(cleaned) == 10:
        return "254" + cleaned[1:]
    if len(cleaned) == 9:
        return "254" + cleaned

    raise ValidationError("Invalid phone number format")


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(EAT)
    return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def stk_password(short_code: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


@dataclass
class CallbackResult:
    checkout_request_id: str
    result_code: int
    result_desc: str
    merchant_request_id: Optional[str] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None
    amount: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE


def _parse_result_code(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("ResultCode must be numeric")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError("ResultCode must be numeric")


def parse_callback(payload: Any) -> CallbackResult:
    """
    Validate an STK callback body:

        {"Body": {"stkCallback": {
            "MerchantRequestID": "...", "CheckoutRequestID": "...",
            "ResultCode": 0, "ResultDesc": "...",
            "CallbackMetadata": {"Item": [{"Name": "MpesaReceiptNumber", "Value": "..."}, ...]}
        }}}

    CallbackMetadata is only present on success.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object")
    body = payload.get("Body")
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        raise ValidationError("Missing Body.stkCallback")

    checkout_request_id = callback.get("CheckoutRequestID")
    if not isinstance(checkout_request_id, str) or not checkout_request_id:
        raise ValidationError("Missing CheckoutRequestID")

    result = CallbackResult(
        checkout_request_id=checkout_request_id,
        result_code=_parse_result_code(callback.get("ResultCode")),
        result_desc=str(callback.get("ResultDesc") or ""),
        merchant_request_id=callback.get("MerchantRequestID"),
    )
    if not result.succeeded:
        return result

    metadata = callback.get("CallbackMetadata")
    items = metadata.get("Item") if isinstance(metadata, dict) else None
    if not isinstance(items, list):
        raise ValidationError("Successful callback without CallbackMetadata")

    values = {
        item.get("Name"): item.get("Value")
        for item in items
        if isinstance(item, dict) and "Name" in item
    }
    receipt = values.get("MpesaReceiptNumber")
    if not receipt:
        raise ValidationError("Successful callback without MpesaReceiptNumber")

    result.receipt_number = str(receipt)
    if values.get("TransactionDate") is not None:
        result.transaction_date = str(values["TransactionDate"])
    if values.get("PhoneNumber") is not None:
        result.phone_number = str(values["PhoneNumber"])
    if values.get("Amount") is not None:
        try:
            result.amount = float(values["Amount"])
        except (TypeError, ValueError):
            raise ValidationError("Amount must be numeric")
    return result


class MpesaClient(PaymentGateway):
    """Daraja client over a shared httpx.AsyncClient; access tokens are cached until shortly before expiry."""

    TOKEN_REFRESH_MARGIN_SECONDS = 60

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.mpesa_base_url,
            timeout=httpx.Timeout(self.settings.MPESA_TIMEOUT_SECONDS),
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return self.settings.mpesa_configured

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> httpx.Response:
        start = time.perf_counter()
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("mpesa_request_failed", operation=operation, error=str(e))
            raise UpstreamError("Payment gateway is unavailable") from e
        finally:
            gateway_latency.labels(operation=operation).observe(time.perf_counter() - start)

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            logger.error("mpesa_invalid_response", operation=operation, status_code=response.status_code)
            raise UpstreamError("Payment gateway returned an unreadable response") from e
        if not isinstance(data, dict):
            raise UpstreamError("Payment gateway returned an unexpected response")
        return data

    async def access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            response = await self._request(
                "token",
                "GET",
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.settings.MPESA_CONSUMER_KEY, self.settings.MPESA_CONSUMER_SECRET),
            )
            data = self._json(response, "token")
            if response.status_code >= 400 or not data.get("access_token"):
                logger.error("mpesa_token_failed", status_code=response.status_code)
                raise UpstreamError("Failed to generate M-Pesa access token")

            expires_in = int(data.get("expires_in") or 3599)
            self._token = data["access_token"]
            self._token_expires_at = time.monotonic() + max(expires_in - self.TOKEN_REFRESH_MARGIN_SECONDS, 0)
            return self._token

    def _signed_body(self) -> dict:
        timestamp = daraja_timestamp()
        short_code = self.settings.MPESA_BUSINESS_SHORT_CODE
        return {
            "BusinessShortCode": short_code,
            "Password": stk_password(short_code, self.settings.MPESA_PASSKEY, timestamp),
            "Timestamp": timestamp,
        }

    async def stk_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> StkPushResponse:
        token = await self.access_token()
        phone = format_phone_number(phone_number)
        body = self._signed_body()
        body.update(
            TransactionType="CustomerPayBillOnline",
            Amount=int(round(amount)),
            PartyA=phone,
            PartyB=self.settings.MPESA_BUSINESS_SHORT_CODE,
            PhoneNumber=phone,
            CallBackURL=self.settings.MPESA_CALLBACK_URL,
            AccountReference=account_reference,
            TransactionDesc=description,
        )

        response = await self._request(
            "stk_push",
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "stk_push")

        if response.status_code >= 400 or str(data.get("ResponseCode")) != "0":
            message = data.get("errorMessage") or data.get("ResponseDescription") or "STK push failed"
            logger.warning(
                "mpesa_stk_push_rejected",
                status_code=response.status_code,
                response_code=data.get("ResponseCode"),
                error=message,
            )
            raise UpstreamError(message)

        logger.info(
            "mpesa_stk_push_sent",
            checkout_request_id=data.get("CheckoutRequestID"),
            reference=account_reference,
        )
        return StkPushResponse(
            checkout_request_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=str(data.get("ResponseCode")),
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", ""),
        )

    async def query_stk_status(self, checkout_request_id: str) -> StkQueryResponse:
        token = await self.access_token()
        body = self._signed_body()
        body["CheckoutRequestID"] = checkout_request_id

        response = await self._request(
            "stk_query",
            "POST",
            "/mpesa/stkpushquery/v1/query",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "stk_query")

        if data.get("errorCode") == STILL_PROCESSING_ERROR_CODE:
            return StkQueryResponse(checkout_request_id=checkout_request_id, raw=data)

        if response.status_code >= 400 or str(data.get("ResponseCode")) != "0":
            message = data.get("errorMessage") or data.get("ResponseDescription") or "Query failed"
            logger.warning("mpesa_stk_query_failed", status_code=response.status_code, error=message)
            raise UpstreamError(message)

        try:
            result_code = _parse_result_code(data.get("ResultCode"))
        except ValidationError as e:
            raise UpstreamError("Payment gateway returned no ResultCode") from e

        return StkQueryResponse(
            checkout_request_id=checkout_request_id,
            result_code=result_code,
            result_desc=data.get("ResultDesc", ""),
            receipt_number=data.get("MpesaReceiptNumber"),
            raw=data,
        )


_gateway: Optional[MpesaClient] = None


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the process-wide gateway client."""
    global _gateway
    if _gateway is None:
        _gateway = MpesaClient()
    return _gateway


async def close_payment_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
