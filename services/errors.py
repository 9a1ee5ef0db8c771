"""
Error kinds raised by the booking core.

Each error carries an internal ``message`` (logged) and a short
``public_message`` that is safe to show to customers. Routes never catch
these; the handler registered in ``app.py`` renders them.
"""


class BookingError(Exception):
    status_code = 500
    public_message = "Something went wrong"
    retryable = False

    def __init__(self, message=None, public_message=None, details=None):
        self.message = message or self.public_message
        if public_message:
            self.public_message = public_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code(self):
        return self.__class__.__name__

    def to_dict(self):
        body = {"error": self.public_message, "code": self.code, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(BookingError):
    status_code = 404
    public_message = "Not found"


class ValidationError(BookingError):
    status_code = 400
    public_message = "Invalid request"


class Conflict(BookingError):
    """Overlapping window or a lost concurrent update; caller may re-fetch and retry."""
    status_code = 409
    public_message = "Dates unavailable"
    retryable = True


class Forbidden(BookingError):
    status_code = 403
    public_message = "Not allowed"


class InvalidTransition(BookingError):
    status_code = 400
    public_message = "Booking cannot be changed now"


class CancellationWindowClosed(InvalidTransition):
    public_message = "Booking cannot be cancelled now"


class InvalidSignature(BookingError):
    status_code = 400
    public_message = "Payment could not be verified"


class AmountMismatch(BookingError):
    status_code = 400
    public_message = "Payment could not be verified"


class UpstreamTimeout(BookingError):
    status_code = 503
    public_message = "Service temporarily unavailable, please retry"
    retryable = True
