"""Domain exceptions for ride and booking management.

Each error carries a stable ``code`` and an HTTP ``status_code`` so the API
layer can render specific guidance to the user without inspecting messages.
"""

from typing import Any, Dict, Optional


class RideShareError(Exception):
    """Base class for all errors raised by the ride-share core."""
    code = "error"
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.extra}


class ValidationError(RideShareError):
    """Raised when input is malformed (bad seat counts, past departure time...)."""
    code = "validation_error"
    status_code = 422
    default_message = "Invalid input"


class AuthorizationError(RideShareError):
    """Raised when the actor has no rights over the target ride or booking."""
    code = "not_authorized"
    status_code = 403
    default_message = "You are not allowed to perform this action"


class InvalidStateError(RideShareError):
    """Raised when an operation is illegal for the current ride or booking status."""
    code = "invalid_state"
    status_code = 409
    default_message = "This action is not possible in the current state"


class InsufficientSeatsError(RideShareError):
    """Raised when the requested seats exceed what is available at commit time."""
    code = "insufficient_seats"
    status_code = 409

    def __init__(self, seats_available: int, seats_requested: int):
        if seats_available <= 0:
            message = "This ride is fully booked"
        elif seats_available == 1:
            message = "Only 1 seat left"
        else:
            message = f"Only {seats_available} seats left"
        super().__init__(
            message,
            seats_available=seats_available,
            seats_requested=seats_requested,
        )


class SelfBookingError(RideShareError):
    code = "self_booking"
    status_code = 409
    default_message = "Driver cannot book own ride"


class DuplicateBookingError(RideShareError):
    code = "duplicate_booking"
    status_code = 409
    default_message = "You already booked this ride"


class NotFoundError(RideShareError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"
