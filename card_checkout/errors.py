"""Failure taxonomy shared by the tokenizer, relay and authorization engine.

Every error carries a stable ``kind`` string. Authorization failures are
reported through ``AuthorizationResult.error_kind`` using the same strings,
so a persisted session and a raised exception describe a failure the same way.
"""


class CheckoutError(Exception):
    kind = "CheckoutError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class ConfigError(CheckoutError):
    kind = "ConfigError"


class InitTimeoutError(CheckoutError):
    kind = "InitTimeoutError"


class TokenExtractionError(CheckoutError):
    kind = "TokenExtractionError"

    def __init__(self, message: str = "", raw=None):
        super().__init__(message)
        self.raw = raw


class MissingTokenError(CheckoutError):
    kind = "MissingTokenError"


class InvalidAmountError(CheckoutError):
    kind = "InvalidAmountError"


class GatewayRejected(CheckoutError):
    kind = "GatewayRejected"

    def __init__(self, message: str = "", status: int = None, body=None):
        super().__init__(message)
        self.status = status
        self.body = body


class GatewayConnectionError(CheckoutError):
    # Reported as "ConnectionError"; renamed here so the builtin stays usable.
    kind = "ConnectionError"


class NoChargeToRefundError(CheckoutError):
    kind = "NoChargeToRefundError"


class NotFoundError(CheckoutError):
    kind = "NotFoundError"


class ValidationError(CheckoutError):
    kind = "ValidationError"
