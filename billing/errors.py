"""Error taxonomy for the payment core.

Every error carries a stable ``code`` (see ``errors.ERROR_CODE_MAP``) and the
HTTP status the API layer answers with. Messages are safe to show to clients:
they never contain gateway credentials or expected signatures.
"""

from __future__ import annotations

from typing import Any, Optional


class BillingError(RuntimeError):
    code: str = "BILLING_ERROR"
    status_code: int = 400

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})


class ConfigurationError(BillingError):
    code = "GATEWAY_NOT_CONFIGURED"
    status_code = 500


class ValidationError(BillingError):
    code = "VALIDATION_FAILED"
    status_code = 400


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(BillingError):
    code = "CONFLICT"
    status_code = 409


class ActiveSubscriptionExists(ConflictError):
    code = "ACTIVE_SUBSCRIPTION_EXISTS"


class NoNewAddons(ConflictError):
    code = "NO_NEW_ADDONS"


class AuthenticationRequired(BillingError):
    code = "UNAUTHORIZED"
    status_code = 401


class AdminRequired(BillingError):
    code = "NOT_ADMIN"
    status_code = 403


class SignatureMismatch(BillingError):
    code = "SIGNATURE_MISMATCH"
    status_code = 400


class GatewayError(BillingError):
    code = "GATEWAY_ERROR"
    status_code = 502


class GatewayTimeout(GatewayError):
    code = "GATEWAY_TIMEOUT"
    status_code = 504


class AlreadyFinalized(BillingError):
    """Verification hit a payment that was cancelled or failed before it could be paid."""

    code = "PAYMENT_ALREADY_FINALIZED"
    status_code = 409

    def __init__(self, message: str, *, status: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, details={"status": status, **dict(details or {})})
        self.status = status
