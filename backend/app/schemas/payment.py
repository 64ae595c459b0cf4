"""
Pydantic schemas for the M-Pesa payment endpoints.
"""

from typing import Optional
from pydantic import BaseModel, Field


class StkPushRequest(BaseModel):
    booking_id: int
    phone_number: str = Field(..., min_length=9, max_length=20)


class StkPushResponse(BaseModel):
    success: bool
    message: str
    booking_id: int
    checkout_request_id: Optional[str] = None
    demo: bool = False


class PaymentStatusRequest(BaseModel):
    checkout_request_id: str = Field(..., min_length=1)
    wait_seconds: float = Field(default=0, ge=0, le=30)


class PaymentStatusResponse(BaseModel):
    checkout_request_id: str
    payment_status: str
    booking_id: int
    booking_status: str
    message: str
    receipt_number: Optional[str] = None
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    refund_required: bool = False

    model_config = {"from_attributes": True}


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"
