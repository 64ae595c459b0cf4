from app.models.user import User
from app.models.station import Station, Route
from app.models.train import Train, TrainClass, Seat, ClassType
from app.models.passenger import Passenger
from app.models.seat_hold import SeatHold
from app.models.booking import Booking, BookingStatus
from app.models.payment import Payment, PaymentStatus

__all__ = [
    "User", "Station", "Route", "Train", "TrainClass", "Seat", "ClassType",
    "Passenger", "SeatHold", "Booking", "BookingStatus", "Payment", "PaymentStatus",
]
