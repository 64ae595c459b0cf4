from app.schemas.user import UserCreate, UserResponse, UserLogin, Token
from app.schemas.catalog import (
    StationResponse, TrainResponse, TrainSearchResponse, SeatMapResponse, SeatStatus,
)
from app.schemas.passenger import PassengerCreate, PassengerResponse
from app.schemas.booking import (
    HoldRequest, HoldResponse, BookingCreate, BookingResponse, BookingSummaryResponse,
)
from app.schemas.payment import (
    StkPushRequest, StkPushResponse, PaymentStatusRequest, PaymentStatusResponse, CallbackAck,
)

__all__ = [
    "UserCreate", "UserResponse", "UserLogin", "Token",
    "StationResponse", "TrainResponse", "TrainSearchResponse", "SeatMapResponse", "SeatStatus",
    "PassengerCreate", "PassengerResponse",
    "HoldRequest", "HoldResponse", "BookingCreate", "BookingResponse", "BookingSummaryResponse",
    "StkPushRequest", "StkPushResponse", "PaymentStatusRequest", "PaymentStatusResponse", "CallbackAck",
]
