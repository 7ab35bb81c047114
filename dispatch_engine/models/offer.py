import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column
from dispatch_engine.database import Base, UTCDateTime, enum_type, utcnow
from dispatch_engine.schemas.schemas import OfferStatusEnum


class Offer(Base):
    __tablename__ = "offers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id: Mapped[str] = mapped_column(String, ForeignKey("service_requests.id"), nullable=False)
    driver_id: Mapped[str] = mapped_column(String, ForeignKey("drivers.id"), nullable=False, index=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    eta_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # pending | accepted | rejected | expired | withdrawn
    status: Mapped[OfferStatusEnum] = mapped_column(
        enum_type(OfferStatusEnum, 20), nullable=False, default=OfferStatusEnum.pending
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, server_default=func.now(), onupdate=utcnow
    )

    __table_args__ = (
        Index("idx_offers_request_status_price", "request_id", "status", "price"),
    )
