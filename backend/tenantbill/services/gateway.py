from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tenantbill.core.config import GatewayConfig
from tenantbill.core.errors import (
    GatewayDeclinedError,
    GatewayError,
    GatewayTransientError,
    WebhookSignatureError,
)
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import PaymentStatus

DECLINE_CODES = frozenset(
    {
        "card_declined",
        "declined",
        "insufficient_funds",
        "expired_card",
        "incorrect_cvc",
        "invalid_card",
        "card_not_supported",
        "fraud_suspected",
        "three_ds_failed",
    }
)

TRANSIENT_HTTP_STATUSES = frozenset({408, 409, 425, 429})

_PAID_STATUSES = {"successful", "completed", "captured", "paid", "succeeded"}
_PENDING_STATUSES = {"pending", "authorized", "awaiting", "processing"}


def charge_outcome(status: str | None) -> PaymentStatus:
    """Map a raw gateway charge status onto the local payment status."""
    normalized = (status or "").lower()
    if normalized in _PAID_STATUSES:
        return PaymentStatus.SUCCESS
    if normalized in _PENDING_STATUSES:
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


@dataclass
class CardDetails:
    cardholder: str
    card_number: str
    exp_month: str
    exp_year: str
    cvv: str

    def as_payload(self) -> dict[str, Any]:
        return {
            "cardholder": self.cardholder,
            "card_number": self.card_number,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "cvv": self.cvv,
            "three_ds": {"enabled": True},
        }


@dataclass
class TokenResult:
    id: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChargeResult:
    id: str
    status: str
    amount: int
    currency: str
    transaction_id: str | None = None
    failure_reason: str | None = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def outcome(self) -> PaymentStatus:
        return charge_outcome(self.status)


@dataclass
class RemoteSubscription:
    id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


class GatewayClient:
    """HTTP client for the payment gateway REST API.

    Every failure is translated into the gateway error taxonomy: declines are
    permanent, transport errors and 5xx answers are transient and retried with
    exponential backoff up to ``config.max_retries`` attempts.
    """

    def __init__(
        self,
        config: GatewayConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not config.base_url:
            raise GatewayError("Gateway base URL is not configured.", code="gateway_not_configured")
        self.config = config
        self._client = httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"Bearer {config.secret}",
                "Content-Type": "application/json",
            },
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GatewayClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            response = self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayTransientError(f"Gateway timed out: {method} {path}") from exc
        except httpx.RequestError as exc:
            raise GatewayTransientError(f"Could not reach the gateway: {exc}") from exc

        if response.status_code >= 400:
            raise self._translate_error(response)

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(
                "Gateway returned an unreadable response.",
                details={"body": response.text[:200]},
                http_status=response.status_code,
            ) from exc

    def _translate_error(self, response: httpx.Response) -> GatewayError:
        try:
            payload = response.json()
        except ValueError:
            payload = {"message": response.text[:200]}
        if not isinstance(payload, dict):
            payload = {"message": str(payload)[:200]}

        status_code = response.status_code
        code = str(payload.get("code") or payload.get("error") or "").lower()
        message = str(payload.get("message") or payload.get("detail") or f"Gateway error {status_code}")
        details = {"gateway_status": status_code, "gateway_code": code or None}

        if status_code >= 500 or status_code in TRANSIENT_HTTP_STATUSES:
            return GatewayTransientError(message, details=details, http_status=status_code)
        if status_code == 402 or code in DECLINE_CODES:
            details["decline_code"] = code or "card_declined"
            return GatewayDeclinedError(message, details=details, http_status=status_code)
        if status_code in (401, 403):
            return GatewayError(
                "Gateway rejected the service credentials.",
                code="gateway_auth_failed",
                details=details,
                http_status=status_code,
            )
        if status_code == 404:
            return GatewayError(message, code="gateway_not_found", details=details, http_status=status_code)
        return GatewayError(message, details=details, http_status=status_code)

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.config.retry_wait_seconds, max=30),
            retry=retry_if_exception_type(GatewayTransientError),
            before_sleep=lambda state: logger.warning(
                "Gateway call retrying method=%s path=%s attempt=%s error=%s",
                method,
                path,
                state.attempt_number,
                state.outcome.exception() if state.outcome else None,
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._send(method, path, json=json, idempotency_key=idempotency_key)
        raise GatewayTransientError(f"Gateway call did not complete: {method} {path}")  # pragma: no cover

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def tokenize(self, card: CardDetails, *, email: str, usage: str = "recurring") -> TokenResult:
        logger.info("Creating gateway token usage=%s last4=%s", usage, card.card_number[-4:])
        data = self._request(
            "POST",
            "/tokens",
            json={
                "payment_type": "card",
                "type": usage,
                "email": email,
                "data": card.as_payload(),
            },
            idempotency_key=str(uuid.uuid4()),
        )
        return TokenResult(id=str(data["id"]), raw=data)

    def charge(
        self,
        token_id: str,
        amount: int,
        *,
        currency: str | None = None,
        metadata: Optional[Dict[str, str]] = None,
        descriptor: str | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeResult:
        currency = currency or self.config.currency
        logger.info("Creating charge amount=%s currency=%s metadata=%s", amount, currency, metadata)
        data = self._request(
            "POST",
            "/charges",
            json={
                "transaction_token_id": token_id,
                "amount": amount,
                "currency": currency,
                "capture": True,
                "descriptor": descriptor,
                "metadata": metadata or {},
            },
            idempotency_key=idempotency_key or str(uuid.uuid4()),
        )
        result = self._charge_result(data, amount, currency)
        logger.info("Charge created charge_id=%s status=%s", result.id, result.status)
        return result

    def get_charge(self, charge_id: str) -> ChargeResult:
        data = self._request("GET", f"/charges/{charge_id}")
        return self._charge_result(data, int(data.get("amount") or 0), data.get("currency") or self.config.currency)

    def refund(
        self,
        charge_id: str,
        amount: int | None = None,
        *,
        reason: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"currency": self.config.currency}
        if amount:
            payload["amount"] = amount
        if reason:
            payload["reason"] = reason
        logger.info("Requesting refund charge_id=%s amount=%s", charge_id, amount or "full")
        return self._request(
            "POST",
            f"/charges/{charge_id}/refunds",
            json=payload,
            idempotency_key=f"refund-{charge_id}-{amount or 'full'}",
        )

    def create_remote_subscription(
        self,
        token_id: str,
        amount: int,
        *,
        period: str = "month",
        start_on: str | None = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: str | None = None,
    ) -> RemoteSubscription:
        payload: dict[str, Any] = {
            "transaction_token_id": token_id,
            "amount": amount,
            "currency": self.config.currency,
            "period": period,
            "metadata": metadata or {},
        }
        if start_on:
            payload["start_on"] = start_on
        data = self._request(
            "POST",
            "/subscriptions",
            json=payload,
            idempotency_key=idempotency_key or str(uuid.uuid4()),
        )
        logger.info("Remote subscription created external_id=%s", data.get("id"))
        return RemoteSubscription(id=str(data["id"]), status=str(data.get("status") or ""), raw=data)

    def update_remote_subscription(
        self,
        subscription_id: str,
        *,
        amount: int | None = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RemoteSubscription:
        payload: dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = amount
        if metadata:
            payload["metadata"] = metadata
        data = self._request("PATCH", f"/subscriptions/{subscription_id}", json=payload)
        return RemoteSubscription(id=subscription_id, status=str(data.get("status") or ""), raw=data)

    def cancel_remote_subscription(self, subscription_id: str) -> RemoteSubscription:
        logger.info("Canceling remote subscription external_id=%s", subscription_id)
        data = self._request("DELETE", f"/subscriptions/{subscription_id}")
        return RemoteSubscription(id=subscription_id, status=str(data.get("status") or "canceled"), raw=data)

    def _charge_result(self, data: dict[str, Any], amount: int, currency: str) -> ChargeResult:
        error = data.get("error") or {}
        failure_reason = data.get("failure_reason")
        if not failure_reason and isinstance(error, dict):
            failure_reason = error.get("message") or error.get("code")
        return ChargeResult(
            id=str(data["id"]),
            status=str(data.get("status") or "pending"),
            amount=int(data.get("amount") or amount),
            currency=str(data.get("currency") or currency),
            transaction_id=data.get("transaction_id"),
            failure_reason=failure_reason,
            raw=data,
        )


def sign_webhook_payload(raw_body: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header value for a webhook body (used by senders and tests)."""
    t = str(int(timestamp if timestamp is not None else time.time()))
    signed_payload = t.encode("utf-8") + b"." + raw_body
    digest = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={t},v1={digest}"


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> None:
    """Check ``t=<unix>,v1=<hmac-sha256 hex of "t.body">`` against the shared secret.

    Raises WebhookSignatureError on any mismatch. A missing secret rejects
    every request.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured.")
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature.")

    parts: dict[str, str] = {}
    for item in signature_header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key] = value
    t = parts.get("t")
    v1 = parts.get("v1")
    if not t or not v1:
        raise WebhookSignatureError("Invalid signature header.")

    try:
        timestamp = int(t)
    except ValueError as exc:
        raise WebhookSignatureError("Invalid signature timestamp.") from exc

    signed_payload = t.encode("utf-8") + b"." + raw_body
    computed = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(computed, v1):
        raise WebhookSignatureError("Signature mismatch.")

    current = time.time() if now is None else now
    if tolerance_seconds and abs(int(current) - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Timestamp outside tolerance.")
