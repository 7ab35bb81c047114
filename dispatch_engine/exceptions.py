"""
Domain errors surfaced to callers. Each maps to one HTTP status in main.py.
"""
from fastapi import status


class DispatchError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "dispatch_error"


class InvalidRequest(DispatchError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_request"


class UnsupportedVehicleClass(DispatchError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "unsupported_vehicle_class"


class InvalidOffer(DispatchError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_offer"


class RequesterBanned(DispatchError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "requester_banned"


class RequestNotFound(DispatchError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "request_not_found"


class RequestAlreadyResolved(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "request_already_resolved"


class OfferNoLongerAvailable(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "offer_no_longer_available"


class AssignmentNoLongerAvailable(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    code = "assignment_no_longer_available"
