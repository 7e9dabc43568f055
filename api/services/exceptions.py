"""Billing domain exceptions."""


class BillingError(Exception):
    """Base for every error raised by the billing services."""


class ConfigurationError(BillingError):
    """Required credentials or settings are missing."""


class StoreError(BillingError):
    """The subscription store could not complete an operation."""


class GatewayError(BillingError):
    """The payment gateway failed or rejected a request."""

    def __init__(self, message: str, retryable: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class GatewayNotConfigured(GatewayError):
    def __init__(self, message: str = "Payment gateway is not configured"):
        super().__init__(message, retryable=False)


class SignatureError(BillingError):
    """A gateway signature did not match."""


class TrialError(BillingError):
    pass


class SubscriptionNotFound(BillingError):
    pass


class CouponError(BillingError):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ReconciliationError(BillingError):
    pass
