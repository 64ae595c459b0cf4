"""
Trains, their classes and the physical seats in each class.

Seats are seeded once and never change; availability lives in seat_holds and
bookings, keyed by (seat, train, travel date).
"""

import enum

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Float, ForeignKey, Integer, String, Time, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class ClassType(str, enum.Enum):
    ECONOMY = "economy"
    FIRST_CLASS = "first_class"
    BUSINESS = "business"


class Train(Base, TimestampMixin):
    __tablename__ = "trains"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    number = Column(String(20), unique=True, index=True, nullable=False)
    route_id = Column(Integer, ForeignKey("routes.id"), nullable=False, index=True)
    departure_time = Column(Time, nullable=False)
    arrival_time = Column(Time, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    route = relationship("Route", lazy="selectin")
    classes = relationship("TrainClass", back_populates="train", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Train(id={self.id}, number={self.number})>"


class TrainClass(Base, TimestampMixin):
    __tablename__ = "train_classes"

    id = Column(Integer, primary_key=True, index=True)
    train_id = Column(Integer, ForeignKey("trains.id"), nullable=False, index=True)
    class_type = Column(String(20), nullable=False)
    total_seats = Column(Integer, nullable=False)
    price_per_km = Column(Float, nullable=False)

    train = relationship("Train", back_populates="classes")
    seats = relationship("Seat", back_populates="train_class")

    __table_args__ = (
        UniqueConstraint("train_id", "class_type", name="uq_train_class_type"),
        CheckConstraint("total_seats > 0", name="check_train_class_seats_positive"),
        CheckConstraint(
            "class_type IN ('economy', 'first_class', 'business')", name="check_train_class_type"
        ),
    )

    def fare_for(self, distance_km: int) -> int:
        # M-Pesa only accepts whole amounts
        return int(round(self.price_per_km * distance_km))

    def __repr__(self) -> str:
        return f"<TrainClass(id={self.id}, train={self.train_id}, type={self.class_type})>"


class Seat(Base, TimestampMixin):
    __tablename__ = "seats"

    id = Column(Integer, primary_key=True, index=True)
    train_class_id = Column(Integer, ForeignKey("train_classes.id"), nullable=False, index=True)
    seat_number = Column(String(10), nullable=False)
    is_window = Column(Boolean, default=False, nullable=False)

    train_class = relationship("TrainClass", back_populates="seats")

    __table_args__ = (
        UniqueConstraint("train_class_id", "seat_number", name="uq_seat_number_per_class"),
    )

    def __repr__(self) -> str:
        return f"<Seat(id={self.id}, number={self.seat_number})>"
