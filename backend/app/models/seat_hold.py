"""
SeatHold model: a short-lived exclusive claim on a seat during checkout.

Key design decisions:
- Unique constraint on (seat_id, train_id, travel_date): there is at most one
  row per key, so there is at most one active hold per key. A lapsed row is
  taken over with a conditional UPDATE rather than deleted and re-inserted.
- Expiry is a timestamp comparison done by readers; nothing deletes lapsed rows
  on a timer.
"""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, UniqueConstraint

from app.db.base import Base
from app.core.timeutils import utcnow


class SeatHold(Base):
    __tablename__ = "seat_holds"

    id = Column(Integer, primary_key=True, index=True)
    seat_id = Column(Integer, ForeignKey("seats.id"), nullable=False)
    train_id = Column(Integer, ForeignKey("trains.id"), nullable=False)
    travel_date = Column(Date, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    locked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("seat_id", "train_id", "travel_date", name="uq_seat_hold_key"),
        # Seat map reads every hold for one train on one day
        Index("ix_seat_holds_train_date", "train_id", "travel_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<SeatHold(seat={self.seat_id}, train={self.train_id}, date={self.travel_date}, "
            f"user={self.user_id}, expires_at={self.expires_at})>"
        )
