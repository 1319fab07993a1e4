from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tenantbill.core.config import GatewayConfig
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import (
    Invoice,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookOutcome,
)
from tenantbill.services.billing import BillingService
from tenantbill.services.gateway import verify_webhook_signature


class WebhookEventType(str, Enum):
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription.invoice.payment_succeeded"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.invoice.payment_failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "WebhookEventType":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class WebhookPayload(BaseModel):
    id: str
    type: str
    created: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> WebhookEventType:
        return WebhookEventType.parse(self.type)

    @property
    def occurred_at(self) -> datetime | None:
        if self.created is None:
            return None
        return datetime.fromtimestamp(self.created, tz=timezone.utc).replace(tzinfo=None)

    @property
    def charge_id(self) -> str | None:
        if self.kind in (WebhookEventType.CHARGE_SUCCEEDED, WebhookEventType.CHARGE_FAILED):
            value = self.data.get("id")
        else:
            value = self.data.get("charge_id")
        return str(value) if value else None


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    event_id: str | None = None


class WebhookReconciler:
    """Applies gateway-reported outcomes to local billing state.

    Signature verification happens before anything is written. Every verified
    event is recorded once by ``event_id``; processing failures are logged and
    stored on the event instead of being raised to the HTTP layer.
    """

    def __init__(
        self,
        session: Session,
        config: GatewayConfig | None = None,
        *,
        billing: BillingService | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.billing = billing or BillingService(session)

    def handle(self, raw_body: bytes, signature_header: str | None, *, now: float | None = None) -> WebhookResult:
        if self.config is None:
            raise RuntimeError("WebhookReconciler.handle needs the gateway configuration")
        verify_webhook_signature(
            raw_body,
            signature_header,
            self.config.webhook_secret,
            tolerance_seconds=self.config.webhook_tolerance_seconds,
            now=now,
        )

        try:
            payload = WebhookPayload.model_validate(json.loads(raw_body))
        except (ValueError, PayloadValidationError) as exc:
            logger.error("Unreadable webhook body error=%s", exc)
            return WebhookResult(outcome=WebhookOutcome.ERROR)

        event = self._record(payload)
        if event is None:
            logger.info("Duplicate webhook delivery event_id=%s type=%s", payload.id, payload.type)
            return WebhookResult(outcome=WebhookOutcome.DUPLICATE, event_id=payload.id)

        outcome = self._process(event, payload)
        return WebhookResult(outcome=outcome, event_id=payload.id)

    def replay_unmatched(self, charge_id: str) -> int:
        """Re-run events that arrived before their charge id was known locally."""
        events = self.session.exec(
            select(WebhookEvent)
            .where(
                WebhookEvent.charge_id == charge_id,
                WebhookEvent.outcome == WebhookOutcome.UNMATCHED.value,
            )
            .order_by(WebhookEvent.created_at)
        ).all()
        replayed = 0
        for event in events:
            payload = WebhookPayload.model_validate(event.payload or {})
            logger.info("Replaying webhook event_id=%s charge_id=%s", event.event_id, charge_id)
            if self._process(event, payload) == WebhookOutcome.PROCESSED:
                replayed += 1
        return replayed

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------
    def _record(self, payload: WebhookPayload) -> WebhookEvent | None:
        existing = self.session.exec(select(WebhookEvent).where(WebhookEvent.event_id == payload.id)).first()
        if existing is not None:
            # Events that failed while processing are retried on redelivery.
            return existing if existing.outcome == WebhookOutcome.ERROR.value else None

        event = WebhookEvent(
            event_id=payload.id,
            event_type=payload.type,
            charge_id=payload.charge_id,
            outcome=WebhookOutcome.IGNORED.value,
            payload=payload.model_dump(),
        )
        try:
            self.session.add(event)
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return None
        self.session.refresh(event)
        return event

    def _process(self, event: WebhookEvent, payload: WebhookPayload) -> WebhookOutcome:
        event_id = event.event_id
        try:
            outcome = self._dispatch(payload)
            event.outcome = outcome.value
            event.error = None
            event.processed_at = datetime.utcnow()
            self.session.add(event)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.exception("Webhook processing failed event_id=%s type=%s", event_id, payload.type)
            event = self.session.exec(select(WebhookEvent).where(WebhookEvent.event_id == event_id)).one()
            event.outcome = WebhookOutcome.ERROR.value
            event.error = str(exc)[:500]
            event.processed_at = datetime.utcnow()
            self.session.add(event)
            self.session.commit()
            return WebhookOutcome.ERROR
        logger.info(
            "Webhook processed event_id=%s type=%s charge_id=%s outcome=%s",
            event_id,
            payload.type,
            payload.charge_id,
            outcome.value,
        )
        return outcome

    def _dispatch(self, payload: WebhookPayload) -> WebhookOutcome:
        kind = payload.kind
        if kind is WebhookEventType.CHARGE_SUCCEEDED:
            return self._apply_charge(payload, PaymentStatus.SUCCESS)
        elif kind is WebhookEventType.CHARGE_FAILED:
            return self._apply_charge(payload, PaymentStatus.FAILED)
        elif kind is WebhookEventType.SUBSCRIPTION_PAYMENT_SUCCEEDED:
            return self._subscription_payment_succeeded(payload)
        elif kind is WebhookEventType.SUBSCRIPTION_PAYMENT_FAILED:
            return self._subscription_payment_failed(payload)
        else:
            logger.info("Ignoring webhook event type=%s event_id=%s", payload.type, payload.id)
            return WebhookOutcome.IGNORED

    # ------------------------------------------------------------------
    # Charge events
    # ------------------------------------------------------------------
    def _apply_charge(self, payload: WebhookPayload, outcome: PaymentStatus) -> WebhookOutcome:
        charge_id = payload.charge_id
        if not charge_id:
            logger.warning("Charge event without charge id event_id=%s", payload.id)
            return WebhookOutcome.IGNORED

        invoice = self.billing.ledger.find_by_charge_id(charge_id, for_update=True)
        if invoice is None:
            invoice = self._match_by_metadata(payload.data.get("metadata") or {})
        if invoice is None:
            logger.warning("Charge event for unknown charge charge_id=%s event_id=%s", charge_id, payload.id)
            return WebhookOutcome.UNMATCHED

        self.billing.apply_charge_result(
            invoice,
            charge_id=charge_id,
            outcome=outcome,
            transaction_id=payload.data.get("transaction_id"),
            failure_reason=self._failure_reason(payload.data),
            paid_at=payload.occurred_at,
        )
        return WebhookOutcome.PROCESSED

    def _match_by_metadata(self, metadata: dict[str, Any]) -> Invoice | None:
        try:
            invoice_id = UUID(str(metadata.get("invoice_id")))
        except ValueError:
            return None
        invoice = self.billing.ledger.lock(invoice_id)
        if invoice is None or invoice.external_charge_id is not None:
            return None
        if str(invoice.organization_id) != str(metadata.get("organization_id")):
            logger.warning("Charge metadata organization mismatch invoice_id=%s", invoice_id)
            return None
        return invoice

    @staticmethod
    def _failure_reason(data: dict[str, Any]) -> str | None:
        reason = data.get("failure_reason")
        error = data.get("error")
        if not reason and isinstance(error, dict):
            reason = error.get("message") or error.get("code")
        return reason

    # ------------------------------------------------------------------
    # Subscription events
    # ------------------------------------------------------------------
    def _remote_subscription(self, payload: WebhookPayload) -> Subscription | None:
        external_id = payload.data.get("subscription_id")
        if not external_id:
            return None
        return self.session.exec(
            select(Subscription)
            .where(Subscription.external_subscription_id == str(external_id))
            .with_for_update()
        ).first()

    def _subscription_payment_failed(self, payload: WebhookPayload) -> WebhookOutcome:
        subscription = self._remote_subscription(payload)
        if subscription is None:
            logger.warning("Subscription event for unknown subscription event_id=%s", payload.id)
            return WebhookOutcome.UNMATCHED
        if subscription.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
            subscription.status = SubscriptionStatus.PAST_DUE.value
            subscription.touch()
            self.session.add(subscription)
            self.session.flush()
            logger.warning(
                "Subscription past due after gateway payment failure subscription_id=%s",
                subscription.id,
            )
        return WebhookOutcome.PROCESSED

    def _subscription_payment_succeeded(self, payload: WebhookPayload) -> WebhookOutcome:
        subscription = self._remote_subscription(payload)
        if subscription is None:
            logger.warning("Subscription event for unknown subscription event_id=%s", payload.id)
            return WebhookOutcome.UNMATCHED

        charge_id = payload.charge_id
        if charge_id:
            ledger = self.billing.ledger
            invoice = ledger.find_by_charge_id(charge_id, for_update=True)
            if invoice is None:
                invoice = ledger.oldest_outstanding_for_subscription(subscription.id)
            if invoice is not None:
                self.billing.apply_charge_result(
                    invoice,
                    charge_id=charge_id,
                    outcome=PaymentStatus.SUCCESS,
                    transaction_id=payload.data.get("transaction_id"),
                    paid_at=payload.occurred_at,
                )

        if subscription.status == SubscriptionStatus.PAST_DUE.value:
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.touch()
            self.session.add(subscription)
            self.session.flush()
            logger.info("Subscription active after gateway payment subscription_id=%s", subscription.id)
        return WebhookOutcome.PROCESSED
