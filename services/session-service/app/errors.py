"""Domain errors raised by the session components and rendered by the API."""


class SessionServiceError(Exception):
    status_code = 500
    detail = "Internal server error"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class ValidationFailed(SessionServiceError):
    status_code = 400
    detail = "Invalid request"


class CallerUnknown(SessionServiceError):
    status_code = 401
    detail = "Missing caller identity"


class NotParticipant(SessionServiceError):
    status_code = 403
    detail = "Caller is not allowed to perform this action"


class BookingNotFound(SessionServiceError):
    status_code = 404
    detail = "Booking not found"


class ExtensionNotFound(SessionServiceError):
    status_code = 404
    detail = "Extension request not found"


class ExtensionConflict(SessionServiceError):
    status_code = 409
    detail = "Extension request is not pending"


class BookingEnded(SessionServiceError):
    status_code = 409
    detail = "Booking has already ended"


class AlreadySettled(SessionServiceError):
    status_code = 409
    detail = "Booking has already been finalized"


class SettlementWriteFailed(SessionServiceError):
    status_code = 500
    detail = "Failed to record settlement"


class PaymentError(Exception):
    """Payment capability unreachable or rejected the call."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
