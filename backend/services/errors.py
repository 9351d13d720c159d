"""Error taxonomy for accounts, billing and reconciliation.

Every error carries an ``error_code`` and the HTTP status the API renders it
with (see the BillingError handler in server.py). Entitlement denial is not
an error; it is returned as a normal decision.
"""
from typing import Optional


class BillingError(Exception):
    error_code = "BILLING_ERROR"
    status_code = 500

    def __init__(self, message: str, *, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class ValidationError(BillingError):
    """Bad input. Raised before any external call or write."""
    error_code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationFailed(BillingError):
    error_code = "AUTHENTICATION_FAILED"
    status_code = 401


class AccountNotFound(BillingError):
    error_code = "ACCOUNT_NOT_FOUND"
    status_code = 404


class ConfigurationError(BillingError):
    """Missing provider configuration, e.g. no plan/price id for a tier."""
    error_code = "BILLING_NOT_CONFIGURED"
    status_code = 503


class ConcurrencyConflict(BillingError):
    """Account version changed between read and write."""
    error_code = "CONCURRENCY_CONFLICT"
    status_code = 409


class ProviderError(BillingError):
    """Failure reported by, or while talking to, a payment provider."""
    error_code = "PROVIDER_ERROR"
    status_code = 502
    kind = "error"

    def __init__(self, message: str, *, provider: Optional[str] = None, error_code: Optional[str] = None):
        super().__init__(message, error_code=error_code)
        self.provider = provider


class ProviderRejected(ProviderError):
    """Provider refused the request (card declined, invalid plan, ...)."""
    error_code = "PROVIDER_REJECTED"
    status_code = 402
    kind = "rejected"


class ProviderTimeout(ProviderError):
    error_code = "PROVIDER_TIMEOUT"
    status_code = 504
    kind = "timeout"


class ProviderUnavailable(ProviderError):
    error_code = "PROVIDER_UNAVAILABLE"
    status_code = 502
    kind = "unavailable"


class SignatureVerificationFailed(ProviderError):
    error_code = "INVALID_SIGNATURE"
    status_code = 400
    kind = "signature"
