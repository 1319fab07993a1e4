from __future__ import annotations

import pytest
from fastapi import status
from sqlmodel import select

from tenantbill.core.config import settings
from tenantbill.core.errors import GatewayTransientError
from tenantbill.models.billing import (
    Invoice,
    InvoiceStatus,
    PaymentHistory,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    WebhookOutcome,
)
from tenantbill.services.billing import BillingService
from tenantbill.services.gateway import sign_webhook_payload
from tenantbill.services.subscriptions import SubscriptionService
from tests.conftest import WEBHOOK_SECRET, charge_event, make_organization, make_payment_method, signed_webhook

WEBHOOK_URL = f"{settings.api_v1_str}/billing/webhook"


def _post(client, event, **kwargs):
    raw, headers = signed_webhook(event, **kwargs)
    return client.post(WEBHOOK_URL, content=raw, headers=headers)


def _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway):
    make_payment_method(db_session, organization)
    fake_gateway.charge_status = "pending"
    attempt = BillingService(db_session, gateway).charge_tokens(organization.id, plans["token-standard"].id)
    assert attempt.outcome == PaymentStatus.PENDING
    return attempt.invoice.id, attempt.charge_id


def _events(session) -> list[WebhookEvent]:
    session.expire_all()
    return list(session.exec(select(WebhookEvent).order_by(WebhookEvent.created_at)).all())


def _payments(session, invoice_id) -> list[PaymentHistory]:
    return list(session.exec(select(PaymentHistory).where(PaymentHistory.invoice_id == invoice_id)).all())


def test_charge_succeeded_is_idempotent(client, db_session, organization, plans, gateway, fake_gateway):
    invoice_id, charge_id = _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway)

    first = _post(client, charge_event("charge.succeeded", charge_id, transaction_id="tx_1"))
    second = _post(client, charge_event("charge.succeeded", charge_id, transaction_id="tx_1"))

    assert first.status_code == status.HTTP_200_OK
    assert first.json()["status"] == WebhookOutcome.PROCESSED.value
    assert second.json()["status"] == WebhookOutcome.PROCESSED.value

    db_session.expire_all()
    invoice = db_session.get(Invoice, invoice_id)
    assert invoice.status == InvoiceStatus.PAID.value
    [payment] = _payments(db_session, invoice_id)
    assert payment.status == PaymentStatus.SUCCESS.value
    assert payment.external_transaction_id == "tx_1"


def test_late_failure_never_reverts_a_payment(client, db_session, organization, plans, gateway, fake_gateway):
    invoice_id, charge_id = _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway)

    _post(client, charge_event("charge.succeeded", charge_id))
    _post(client, charge_event("charge.failed", charge_id, failure_reason="insufficient funds"))

    db_session.expire_all()
    assert db_session.get(Invoice, invoice_id).status == InvoiceStatus.PAID.value
    [payment] = _payments(db_session, invoice_id)
    assert payment.status == PaymentStatus.SUCCESS.value
    assert payment.failure_reason is None


def test_charge_failed_marks_pending_payment(client, db_session, organization, plans, gateway, fake_gateway):
    invoice_id, charge_id = _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway)

    resp = _post(client, charge_event("charge.failed", charge_id, error={"code": "card_declined", "message": "Declined"}))

    assert resp.json()["status"] == WebhookOutcome.PROCESSED.value
    db_session.expire_all()
    assert db_session.get(Invoice, invoice_id).status == InvoiceStatus.SENT.value
    [payment] = _payments(db_session, invoice_id)
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason == "Declined"


def test_duplicate_event_id(client, db_session, organization, plans, gateway, fake_gateway):
    _, charge_id = _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway)
    event = charge_event("charge.succeeded", charge_id, event_id="evt_same")

    assert _post(client, event).json()["status"] == WebhookOutcome.PROCESSED.value
    again = _post(client, event)

    assert again.status_code == status.HTTP_200_OK
    assert again.json() == {"status": WebhookOutcome.DUPLICATE.value, "event_id": "evt_same"}
    assert len(_events(db_session)) == 1


def test_unknown_event_type_is_acknowledged(client, db_session):
    resp = _post(client, {"id": "evt_misc", "type": "customer.updated", "data": {"id": "cus_1"}})

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["status"] == WebhookOutcome.IGNORED.value
    [event] = _events(db_session)
    assert event.event_type == "customer.updated"


def test_bad_signature_changes_nothing(client, db_session, organization, plans, gateway, fake_gateway):
    invoice_id, charge_id = _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway)

    resp = _post(client, charge_event("charge.succeeded", charge_id), secret="whsec_wrong")

    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    assert resp.json()["detail"]["code"] == "invalid_signature"
    assert _events(db_session) == []
    assert db_session.get(Invoice, invoice_id).status == InvoiceStatus.SENT.value


def test_missing_signature_is_rejected(client, db_session):
    resp = client.post(WEBHOOK_URL, content=b'{"id":"evt_1","type":"charge.succeeded","data":{}}')

    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    assert _events(db_session) == []


def test_missing_secret_fails_closed(client, db_session, monkeypatch):
    monkeypatch.setattr(settings, "gateway_webhook_secret", None)

    resp = _post(client, charge_event("charge.succeeded", "ch_any"))

    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    assert _events(db_session) == []


def test_unreadable_body_is_acknowledged_as_error(client):
    raw = b"not json"
    resp = client.post(WEBHOOK_URL, content=raw, headers={"X-Gateway-Signature": sign_webhook_payload(raw, WEBHOOK_SECRET)})

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["status"] == WebhookOutcome.ERROR.value


def test_metadata_fallback_attaches_charge(client, db_session, organization, plans, gateway, fake_gateway):
    make_payment_method(db_session, organization)
    fake_gateway.fail_with = 503
    fake_gateway.fail_times = 5
    with pytest.raises(GatewayTransientError):
        BillingService(db_session, gateway).charge_tokens(organization.id, plans["token-standard"].id)
    [invoice] = db_session.exec(select(Invoice)).all()
    assert invoice.external_charge_id is None

    resp = _post(
        client,
        charge_event(
            "charge.succeeded",
            "ch_from_webhook",
            metadata={"invoice_id": str(invoice.id), "organization_id": str(organization.id)},
        ),
    )

    assert resp.json()["status"] == WebhookOutcome.PROCESSED.value
    db_session.expire_all()
    invoice = db_session.get(Invoice, invoice.id)
    assert invoice.status == InvoiceStatus.PAID.value
    assert invoice.external_charge_id == "ch_from_webhook"


def test_metadata_for_another_organization_is_unmatched(client, db_session, organization, plans, gateway, fake_gateway):
    invoice_id, _ = _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway)
    other = make_organization(db_session, "Other Salon")

    resp = _post(
        client,
        charge_event(
            "charge.succeeded",
            "ch_unknown",
            metadata={"invoice_id": str(invoice_id), "organization_id": str(other.id)},
        ),
    )

    assert resp.json()["status"] == WebhookOutcome.UNMATCHED.value
    db_session.expire_all()
    assert db_session.get(Invoice, invoice_id).status == InvoiceStatus.SENT.value


def test_unmatched_event_is_replayed_after_charge(client, db_session, organization, plans, gateway, fake_gateway):
    early = _post(client, charge_event("charge.succeeded", "ch_early", event_id="evt_early"))
    assert early.json()["status"] == WebhookOutcome.UNMATCHED.value

    make_payment_method(db_session, organization)
    fake_gateway.charge_id = "ch_early"
    fake_gateway.charge_status = "pending"
    attempt = BillingService(db_session, gateway).charge_tokens(organization.id, plans["token-standard"].id)

    db_session.expire_all()
    invoice = db_session.get(Invoice, attempt.invoice.id)
    assert invoice.status == InvoiceStatus.PAID.value
    [event] = _events(db_session)
    assert event.outcome == WebhookOutcome.PROCESSED.value


def test_processing_error_is_retried_on_redelivery(client, db_session, organization, plans, gateway, fake_gateway, monkeypatch):
    invoice_id, charge_id = _pending_token_purchase(db_session, organization, plans, gateway, fake_gateway)
    event = charge_event("charge.succeeded", charge_id, event_id="evt_retry")

    def broken(self, *args, **kwargs):
        raise RuntimeError("lock timeout")

    original = BillingService.apply_charge_result
    monkeypatch.setattr(BillingService, "apply_charge_result", broken)
    first = _post(client, event)
    assert first.status_code == status.HTTP_200_OK
    assert first.json()["status"] == WebhookOutcome.ERROR.value
    [stored] = _events(db_session)
    assert stored.error == "lock timeout"

    monkeypatch.setattr(BillingService, "apply_charge_result", original)
    second = _post(client, event)

    assert second.json()["status"] == WebhookOutcome.PROCESSED.value
    db_session.expire_all()
    assert db_session.get(Invoice, invoice_id).status == InvoiceStatus.PAID.value


def _remote_subscription(db_session, organization, plans, gateway, monkeypatch) -> Subscription:
    monkeypatch.setattr(settings, "billing_remote_subscriptions", True)
    make_payment_method(db_session, organization)
    return SubscriptionService(db_session, gateway).create_subscription(organization.id, plans["standard"].id)


def test_remote_payment_failure_then_success(client, db_session, organization, plans, gateway, monkeypatch):
    subscription = _remote_subscription(db_session, organization, plans, gateway, monkeypatch)
    external_id = subscription.external_subscription_id

    failed = _post(
        client,
        {
            "id": "evt_sub_failed",
            "type": "subscription.invoice.payment_failed",
            "data": {"subscription_id": external_id},
        },
    )
    assert failed.json()["status"] == WebhookOutcome.PROCESSED.value
    db_session.expire_all()
    assert db_session.get(Subscription, subscription.id).status == SubscriptionStatus.PAST_DUE.value

    succeeded = _post(
        client,
        {
            "id": "evt_sub_ok",
            "type": "subscription.invoice.payment_succeeded",
            "data": {"subscription_id": external_id, "charge_id": "ch_remote_1"},
        },
    )
    assert succeeded.json()["status"] == WebhookOutcome.PROCESSED.value

    db_session.expire_all()
    assert db_session.get(Subscription, subscription.id).status == SubscriptionStatus.ACTIVE.value
    invoice = db_session.exec(select(Invoice).where(Invoice.subscription_id == subscription.id)).one()
    assert invoice.status == InvoiceStatus.PAID.value
    assert invoice.external_charge_id == "ch_remote_1"


def test_subscription_event_for_unknown_subscription(client):
    resp = _post(
        client,
        {"id": "evt_sub_x", "type": "subscription.invoice.payment_failed", "data": {"subscription_id": "gsub_nope"}},
    )
    assert resp.json()["status"] == WebhookOutcome.UNMATCHED.value
