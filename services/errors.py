"""
Typed failures raised by the reservation core.

The routing layer turns each one into a response using ``http_status``;
nothing in the core depends on HTTP.
"""


class ParkingError(Exception):
    """Base for every recoverable reservation failure."""

    code = "parking_error"
    http_status = 400
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        payload = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.retryable:
            payload["retryable"] = True
        return payload


class ValidationError(ParkingError):
    code = "validation_error"


class InvalidTimeWindow(ValidationError):
    code = "invalid_time_window"


class NoAvailableSlot(ParkingError):
    code = "no_available_slot"
    http_status = 409


class ReservationNotFound(ParkingError):
    code = "reservation_not_found"
    http_status = 404


class SlotNotFound(ParkingError):
    code = "slot_not_found"
    http_status = 404


class InvalidStateTransition(ParkingError):
    code = "invalid_state_transition"
    http_status = 409


class CheckInWindowViolation(ParkingError):
    code = "check_in_window_violation"
    http_status = 422


class SlotAlreadyOccupied(ParkingError):
    code = "slot_already_occupied"
    http_status = 409


class ConcurrentConflict(ParkingError):
    """A conditional write lost the race. Safe to retry."""

    code = "concurrent_conflict"
    http_status = 409
    retryable = True


class PaymentRecordError(ParkingError):
    code = "payment_record_error"
    http_status = 500


class DuplicateKey(ParkingError):
    code = "duplicate_key"
    http_status = 409
