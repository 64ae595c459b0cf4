"""
Booking model representing a passenger's reservation of one seat on one train
for one travel date.

Key design decisions:
- Status moves pending -> confirmed or pending -> cancelled, exactly once;
  rows are never deleted.
- Partial unique index on (seat_id, train_id, travel_date) WHERE status =
  'confirmed' makes a second confirmed booking for the same seat impossible,
  whatever the application does.
- A second partial unique index allows one pending booking per user per seat,
  so a double-submitted checkout cannot create two.
"""

import enum

from sqlalchemy import (
    CheckConstraint, Column, Date, ForeignKey, Index, Integer, String, text,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    booking_reference = Column(String(20), unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    passenger_id = Column(Integer, ForeignKey("passengers.id"), nullable=False)
    train_id = Column(Integer, ForeignKey("trains.id"), nullable=False)
    seat_id = Column(Integer, ForeignKey("seats.id"), nullable=False)
    travel_date = Column(Date, nullable=False)
    class_type = Column(String(20), nullable=False)
    total_amount = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)

    user = relationship("User", back_populates="bookings")
    passenger = relationship("Passenger", lazy="selectin")
    payments = relationship("Payment", back_populates="booking", order_by="Payment.id")

    __table_args__ = (
        CheckConstraint("total_amount > 0", name="check_booking_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'cancelled')", name="check_booking_status"
        ),
        Index(
            "uq_bookings_confirmed_seat",
            "seat_id", "train_id", "travel_date",
            unique=True,
            postgresql_where=text("status = 'confirmed'"),
            sqlite_where=text("status = 'confirmed'"),
        ),
        Index(
            "uq_bookings_pending_checkout",
            "user_id", "seat_id", "train_id", "travel_date",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_bookings_train_date_status", "train_id", "travel_date", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != BookingStatus.PENDING

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, ref={self.booking_reference}, status={self.status})>"
