import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Float, Numeric, Boolean, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from dispatch_engine.database import Base, UTCDateTime, enum_type, utcnow
from dispatch_engine.schemas.schemas import (
    PriorityEnum, RequestStatusEnum, ServiceTypeEnum, VehicleClassEnum,
)


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    requester_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dest_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dest_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_zone_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dest_zone_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    service_type: Mapped[ServiceTypeEnum] = mapped_column(enum_type(ServiceTypeEnum, 20), nullable=False)
    vehicle_class: Mapped[VehicleClassEnum] = mapped_column(enum_type(VehicleClassEnum, 20), nullable=False)
    priority: Mapped[PriorityEnum] = mapped_column(
        enum_type(PriorityEnum, 10), nullable=False, default=PriorityEnum.normal
    )

    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    surge_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    surge_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # Agreed price once bound to a driver (surge price, or the winning offer)
    final_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(5), nullable=False, default="CDF")

    # pending | bidding | bidding_closed | dispatching | accepted | in_progress |
    # completed | no_drivers_available | cancelled | cancelled_by_client
    status: Mapped[RequestStatusEnum] = mapped_column(
        enum_type(RequestStatusEnum), nullable=False, default=RequestStatusEnum.pending, index=True
    )
    assigned_driver_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("drivers.id"), nullable=True, index=True
    )

    bidding: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    budget_ceiling: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    bidding_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), onupdate=utcnow
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_requests_requester_status", "requester_id", "status"),
    )

    @property
    def price(self) -> Decimal:
        return self.final_price if self.final_price is not None else self.surge_price
