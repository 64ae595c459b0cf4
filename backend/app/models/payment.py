"""
Payment model: one attempt to collect a booking's amount through the gateway.

checkout_request_id is the gateway correlation id; asynchronous results are
matched back to the payment through it.
"""

import enum

from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    payment_method = Column(String(20), nullable=False, default="mpesa")
    checkout_request_id = Column(String(100), unique=True, index=True, nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    phone_number = Column(String(20), nullable=True)
    receipt_number = Column(String(50), nullable=True)
    result_code = Column(String(20), nullable=True)
    result_desc = Column(String(255), nullable=True)
    extra = Column(JSON, nullable=False, default=dict)

    booking = relationship("Booking", back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount > 0", name="check_payment_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')", name="check_payment_status"
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status != PaymentStatus.PENDING

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, checkout={self.checkout_request_id}, status={self.status})>"
