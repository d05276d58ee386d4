class BookingError(ValueError):
    """Base for every business failure raised by the booking engine.

    Subclasses carry a stable ``code`` so callers can tell "slot just became
    full" apart from "employee just became busy" or "hold expired".
    """

    code = "booking_error"
    http_status = 400

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.context:
            data["context"] = self.context
        return data


class ValidationError(BookingError):
    code = "validation_error"
    http_status = 400


class NotFound(BookingError):
    code = "not_found"
    http_status = 404


class InvalidSlot(BookingError):
    """No active template covers the requested scope."""

    code = "invalid_slot"
    http_status = 404


class CapacityExceeded(BookingError):
    code = "capacity_exceeded"
    http_status = 409


class LockExpired(BookingError):
    code = "lock_expired"
    http_status = 409


class LockMismatch(BookingError):
    code = "lock_mismatch"
    http_status = 403


class EmployeeUnavailable(BookingError):
    code = "employee_unavailable"
    http_status = 409


class TransientConflict(BookingError):
    code = "transient_conflict"
    http_status = 503
