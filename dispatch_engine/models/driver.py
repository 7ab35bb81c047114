import uuid
from datetime import datetime
from sqlalchemy import String, Float, Integer, Boolean, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from dispatch_engine.database import Base, UTCDateTime, enum_type, utcnow
from dispatch_engine.schemas.schemas import VehicleClassEnum


class Driver(Base):
    __tablename__ = "drivers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    vehicle_class: Mapped[VehicleClassEnum] = mapped_column(
        enum_type(VehicleClassEnum, 20), nullable=False, default=VehicleClassEnum.standard
    )
    rating: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    completed_trips: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), onupdate=utcnow
    )


class DriverLocation(Base):
    """Live presence record. `available` is only ever flipped by compare-and-swap."""

    __tablename__ = "driver_locations"

    driver_id: Mapped[str] = mapped_column(String, ForeignKey("drivers.id"), primary_key=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    vehicle_class: Mapped[VehicleClassEnum] = mapped_column(enum_type(VehicleClassEnum, 20), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_driver_locations_search", "online", "available", "verified", "vehicle_class"),
        Index("idx_driver_locations_lat_lng", "lat", "lng"),
    )
