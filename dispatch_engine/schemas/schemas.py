from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ServiceTypeEnum(str, Enum):
    taxi = "taxi"
    delivery = "delivery"


class VehicleClassEnum(str, Enum):
    moto = "moto"
    eco = "eco"
    standard = "standard"
    premium = "premium"
    truck = "truck"


class PriorityEnum(str, Enum):
    normal = "normal"
    high = "high"
    urgent = "urgent"


class RequestStatusEnum(str, Enum):
    pending = "pending"
    bidding = "bidding"
    bidding_closed = "bidding_closed"
    dispatching = "dispatching"
    accepted = "accepted"
    in_progress = "in_progress"
    completed = "completed"
    no_drivers_available = "no_drivers_available"
    cancelled = "cancelled"
    cancelled_by_client = "cancelled_by_client"


class AssignmentStatusEnum(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    timed_out = "timed_out"
    cancelled = "cancelled"
    completed = "completed"


class OfferStatusEnum(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    expired = "expired"
    withdrawn = "withdrawn"


class CancelledByEnum(str, Enum):
    requester = "requester"
    driver = "driver"


class CancellationActionEnum(str, Enum):
    none = "none"
    charged = "charged"
    banned = "banned"


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class RequestCreateRequest(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dest_lat: float = Field(..., ge=-90, le=90)
    dest_lng: float = Field(..., ge=-180, le=180)
    service_type: ServiceTypeEnum = ServiceTypeEnum.taxi
    vehicle_class: VehicleClassEnum = VehicleClassEnum.standard
    priority: PriorityEnum = PriorityEnum.normal
    bidding: bool = False
    budget_ceiling: Optional[Decimal] = Field(default=None, gt=0)


class RequestResponse(BaseModel):
    id: str
    requester_id: str
    status: RequestStatusEnum
    service_type: ServiceTypeEnum
    vehicle_class: VehicleClassEnum
    priority: PriorityEnum
    distance_km: float
    estimated_price: Decimal
    surge_multiplier: float
    surge_price: Decimal
    final_price: Optional[Decimal] = None
    currency: str
    pickup_zone_id: Optional[str] = None
    dest_zone_id: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    bidding: bool
    budget_ceiling: Optional[Decimal] = None
    bidding_deadline: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class CancellationRecordResponse(BaseModel):
    id: str
    request_id: str
    cancelled_by: CancelledByEnum
    driver_distance_km: Optional[float] = None
    driver_was_near: bool
    suspicious: bool
    near_count: int
    action_taken: CancellationActionEnum
    charge_amount: Decimal
    compensation_amount: Decimal
    created_at: datetime

    model_config = {"from_attributes": True}


class CancelResponse(BaseModel):
    request: RequestResponse
    cancellation: Optional[CancellationRecordResponse] = None


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class DriverCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., min_length=10, max_length=20)
    vehicle_class: VehicleClassEnum = VehicleClassEnum.standard


class DriverResponse(BaseModel):
    id: str
    name: str
    phone: str
    vehicle_class: VehicleClassEnum
    rating: float
    completed_trips: int
    verified: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


class AssignmentResponse(BaseModel):
    id: str
    request_id: str
    driver_id: str
    status: AssignmentStatusEnum
    created_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class DriverCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Offer schemas
# ---------------------------------------------------------------------------

class OfferCreateRequest(BaseModel):
    request_id: str
    price: Decimal = Field(..., gt=0)
    message: Optional[str] = Field(default=None, max_length=500)
    eta_minutes: Optional[int] = Field(default=None, ge=0)


class OfferResponse(BaseModel):
    id: str
    request_id: str
    driver_id: str
    price: Decimal
    message: Optional[str] = None
    eta_minutes: Optional[int] = None
    status: OfferStatusEnum
    created_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class OfferBoardResponse(BaseModel):
    request_id: str
    bidding_deadline: Optional[datetime] = None
    count: int
    best_price: Optional[Decimal] = None
    average_price: Optional[Decimal] = None
    offers: list[OfferResponse]


# ---------------------------------------------------------------------------
# Zone schemas
# ---------------------------------------------------------------------------

class ZoneLocateResponse(BaseModel):
    zone_id: Optional[str] = None
    zone_name: Optional[str] = None
    surge_multiplier: float
