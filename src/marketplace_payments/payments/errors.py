"""Payment errors carrying the HTTP status they are reported with."""


class PaymentError(Exception):
    """Base error for payment request handling. Serialized as {"error": message}."""

    status_code = 400

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class PaymentValidationError(PaymentError):
    status_code = 400


class AuthenticationError(PaymentError):
    status_code = 401


class PermissionDeniedError(PaymentError):
    status_code = 403


class NotFoundError(PaymentError):
    status_code = 404


class ConflictError(PaymentError):
    status_code = 409


class DatabaseError(PaymentError):
    """A write failed after the request was validated."""

    status_code = 500
