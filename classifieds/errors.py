"""Payment pipeline error taxonomy.

Each error carries the HTTP status it maps to; create_app() registers a
single JSON handler for PaymentError so blueprints can simply let these
propagate.

- ValidationError          — bad client input, 400
- InvalidPurposeError      — unknown purpose value, 400
- ConfigurationError       — prices / credentials unset, 500 (operator fix)
- GatewayUnavailableError  — processor unreachable or unconfigured, 503
- GatewayRequestError      — processor rejected the request, 502
- SignatureInvalidError    — webhook failed verification, 400
- TransactionNotFoundError — unknown transaction id, 404
"""


class PaymentError(Exception):
    """Base class for every error raised by the payment pipeline."""

    status_code = 500

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {"error": self.message, "code": type(self).__name__}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(PaymentError):
    status_code = 400


class InvalidPurposeError(ValidationError):
    pass


class ConfigurationError(PaymentError):
    status_code = 500


class GatewayUnavailableError(PaymentError):
    status_code = 503


class GatewayRequestError(PaymentError):
    status_code = 502


class SignatureInvalidError(PaymentError):
    status_code = 400


class TransactionNotFoundError(PaymentError):
    status_code = 404
