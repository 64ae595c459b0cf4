"""
Stations and the routes that connect them.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class Station(Base, TimestampMixin):
    __tablename__ = "stations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    code = Column(String(10), unique=True, index=True, nullable=False)
    city = Column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<Station(id={self.id}, code={self.code})>"


class Route(Base, TimestampMixin):
    __tablename__ = "routes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    origin_station_id = Column(Integer, ForeignKey("stations.id"), nullable=False, index=True)
    destination_station_id = Column(Integer, ForeignKey("stations.id"), nullable=False, index=True)
    distance_km = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    origin = relationship("Station", foreign_keys=[origin_station_id], lazy="selectin")
    destination = relationship("Station", foreign_keys=[destination_station_id], lazy="selectin")

    __table_args__ = (
        CheckConstraint("distance_km > 0", name="check_route_distance_positive"),
        CheckConstraint("origin_station_id <> destination_station_id", name="check_route_distinct_stations"),
    )

    def __repr__(self) -> str:
        return f"<Route(id={self.id}, name={self.name})>"
