"""Error taxonomy shared by the scheduling services and the HTTP layer."""


class BookingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingError):
    status_code = 400


class ConflictError(BookingError):
    """The request is well formed but clashes with existing bookings or booking rules."""

    status_code = 400


class NotFoundError(BookingError):
    status_code = 404


class UnauthorizedError(BookingError):
    status_code = 403


class ExternalServiceError(BookingError):
    """The calendar provider failed or returned an unusable response."""

    status_code = 502
