class PaymentError(Exception):
    """Base class for payment-flow failures surfaced to callers."""


class ValidationError(PaymentError):
    """Missing or invalid request fields. Never retried."""


class ConflictError(ValidationError):
    def __init__(self, message, transaction_id=None):
        super().__init__(message)
        self.transaction_id = transaction_id


class NotFoundError(PaymentError): pass


class PersistenceError(PaymentError):
    """A record-store write failed."""


class ConfigurationError(PaymentError): pass


class AuthError(PaymentError):
    """No gateway bearer token could be obtained."""


class TransientError(PaymentError):
    """Network failure, 5xx or a not-yet-final status. Safe to retry."""


class GatewayError(PaymentError):
    """Non-transient rejection from the gateway."""

    def __init__(self, message, status=None, body=None):
        super().__init__(message)
        self.status = status
        self.body = body
