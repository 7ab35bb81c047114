import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Float, Integer, Boolean, Numeric, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from dispatch_engine.database import Base, UTCDateTime, enum_type, utcnow
from dispatch_engine.schemas.schemas import (
    CancellationActionEnum, CancelledByEnum, RequestStatusEnum,
)


class CancellationRecord(Base):
    """Audit row, one per cancellation. Only the collected amounts are filled in afterwards."""

    __tablename__ = "cancellation_records"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id: Mapped[str] = mapped_column(String, ForeignKey("service_requests.id"), nullable=False, index=True)
    requester_id: Mapped[str] = mapped_column(String, nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String, ForeignKey("drivers.id"), nullable=True)
    cancelled_by: Mapped[CancelledByEnum] = mapped_column(enum_type(CancelledByEnum, 20), nullable=False)
    status_at_cancellation: Mapped[RequestStatusEnum] = mapped_column(enum_type(RequestStatusEnum), nullable=False)

    driver_distance_km: Mapped[float | None] = mapped_column(Float, nullable=True)
    driver_was_near: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    suspicious: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    near_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # none | charged | banned
    action_taken: Mapped[CancellationActionEnum] = mapped_column(
        enum_type(CancellationActionEnum, 20), nullable=False, default=CancellationActionEnum.none
    )
    charge_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    compensation_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())

    __table_args__ = (
        Index("idx_cancellations_requester_window", "requester_id", "driver_was_near", "created_at"),
    )
