from sqlalchemy import Column, Integer, String, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class Passenger(Base, TimestampMixin):
    """A traveller saved by a user account and reusable across bookings."""

    __tablename__ = "passengers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    id_number = Column(String(50), nullable=False)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)

    user = relationship("User", back_populates="passengers")

    __table_args__ = (
        UniqueConstraint("user_id", "id_number", name="uq_passenger_id_number_per_user"),
    )

    def __repr__(self) -> str:
        return f"<Passenger(id={self.id}, user={self.user_id})>"
