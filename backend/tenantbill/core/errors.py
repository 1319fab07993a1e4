from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base domain error. Carries a stable code and the HTTP status it maps to."""

    code = "billing_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class ValidationError(BillingError):
    code = "validation_error"
    status_code = 400


class NoDefaultPaymentMethodError(ValidationError):
    code = "no_default_payment_method"


class NotFoundError(BillingError):
    code = "not_found"
    status_code = 404


class BillingPermissionError(BillingError):
    code = "forbidden"
    status_code = 403


class ConflictError(BillingError):
    code = "conflict"
    status_code = 409


class GatewayError(BillingError):
    """Permanent gateway failure that is neither a decline nor retryable."""

    code = "gateway_error"
    status_code = 502
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: Optional[Dict[str, Any]] = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.http_status = http_status


class GatewayDeclinedError(GatewayError):
    code = "card_declined"
    status_code = 402


class GatewayTransientError(GatewayError):
    code = "gateway_unavailable"
    status_code = 503
    retryable = True


class WebhookSignatureError(BillingError):
    code = "invalid_signature"
    status_code = 400
