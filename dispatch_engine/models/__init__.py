from dispatch_engine.models.driver import Driver, DriverLocation
from dispatch_engine.models.request import ServiceRequest
from dispatch_engine.models.assignment import Assignment
from dispatch_engine.models.offer import Offer
from dispatch_engine.models.cancellation import CancellationRecord
from dispatch_engine.models.requester import Requester

__all__ = [
    "Driver", "DriverLocation", "ServiceRequest", "Assignment",
    "Offer", "CancellationRecord", "Requester",
]
