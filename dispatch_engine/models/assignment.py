import uuid
from datetime import datetime
from sqlalchemy import String, ForeignKey, Index, func, text
from sqlalchemy.orm import Mapped, mapped_column
from dispatch_engine.database import Base, UTCDateTime, enum_type, utcnow
from dispatch_engine.schemas.schemas import AssignmentStatusEnum

_PENDING = text("status = 'pending'")
_ACTIVE = text("status IN ('pending', 'accepted')")


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id: Mapped[str] = mapped_column(String, ForeignKey("service_requests.id"), nullable=False, index=True)
    driver_id: Mapped[str] = mapped_column(String, ForeignKey("drivers.id"), nullable=False, index=True)
    # pending | accepted | rejected | timed_out | cancelled | completed
    status: Mapped[AssignmentStatusEnum] = mapped_column(
        enum_type(AssignmentStatusEnum, 20), nullable=False, default=AssignmentStatusEnum.pending
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    responded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        # One open attempt per request, one live binding per driver
        Index(
            "uq_assignments_pending_request", "request_id", unique=True,
            postgresql_where=_PENDING, sqlite_where=_PENDING,
        ),
        Index(
            "uq_assignments_active_driver", "driver_id", unique=True,
            postgresql_where=_ACTIVE, sqlite_where=_ACTIVE,
        ),
    )
