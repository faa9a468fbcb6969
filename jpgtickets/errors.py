"""
Error taxonomy for the payment handlers.

Every error carries the HTTP status it maps to at the API boundary. Nothing
here is retried internally: a 5xx tells the caller (the provider's webhook
redelivery, or the client's status poll) to try again later.
"""


class PaymentError(Exception):
    status_code = 500

    def __init__(self, message: str = "", *, status_code: int | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(PaymentError):
    status_code = 500


class ValidationError(PaymentError):
    status_code = 400


class InvalidSignature(ValidationError):
    status_code = 401


class NotFound(PaymentError):
    status_code = 404


class ParticipationNotFound(NotFound):
    pass


class TournamentNotFound(NotFound):
    pass


class PersistenceError(PaymentError):
    status_code = 500


# ----------------------------
# Gateway failures
# ----------------------------
class GatewayError(PaymentError):
    pass


class ChargeNotFound(GatewayError, NotFound):
    status_code = 404


class GatewayUnavailable(GatewayError):
    status_code = 503


class GatewayUnauthorized(GatewayError, ConfigurationError):
    status_code = 500


class GatewayRejected(GatewayError, ValidationError):
    status_code = 400
