from __future__ import annotations

import re
from datetime import datetime, timedelta

import pytest

from tenantbill.core.config import settings
from tenantbill.core.errors import ConflictError, ValidationError
from tenantbill.models.billing import InvoiceStatus, InvoiceType, PaymentStatus
from tenantbill.services.invoices import InvoiceLedger, line_item
from tenantbill.utils.money import compute_tax, round_half_up


def _invoice(ledger, organization, *, amount=9800, due_in_days=7, status=InvoiceStatus.SENT, invoice_type=InvoiceType.SUBSCRIPTION):
    now = datetime.utcnow()
    return ledger.create(
        organization_id=organization.id,
        invoice_type=invoice_type,
        items=[line_item("standard plan", amount)],
        issue_date=now,
        due_date=now + timedelta(days=due_in_days),
        status=status,
    )


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(4100.4) == 4100
    assert compute_tax(9800, 0.1) == 980
    assert compute_tax(995, 0.1) == 100
    assert compute_tax(9800, 0) == 0


def test_create_computes_totals_and_number(db_session, organization, monkeypatch):
    monkeypatch.setattr(settings, "billing_tax_rate", 0.1)
    ledger = InvoiceLedger(db_session)
    invoice = ledger.create(
        organization_id=organization.id,
        invoice_type=InvoiceType.ONE_TIME,
        items=[line_item("setup", 1000), line_item("extra seat", 500, quantity=3)],
        due_date=datetime.utcnow() + timedelta(days=7),
    )
    db_session.commit()

    assert invoice.subtotal == 2500
    assert invoice.tax == 250
    assert invoice.total == 2750
    assert invoice.currency == "JPY"
    assert re.fullmatch(r"INV-\d{8}-[A-Z0-9]{6}", invoice.invoice_number)


def test_create_requires_items(db_session, organization):
    with pytest.raises(ValidationError):
        InvoiceLedger(db_session).create(
            organization_id=organization.id,
            invoice_type=InvoiceType.TOKEN,
            items=[],
            due_date=datetime.utcnow(),
        )


def test_paid_transition_stamps_paid_at_and_is_monotonic(db_session, organization):
    ledger = InvoiceLedger(db_session)
    invoice = _invoice(ledger, organization)

    assert ledger.update_status(invoice, InvoiceStatus.PAID) is True
    assert invoice.paid_at is not None
    assert ledger.update_status(invoice, InvoiceStatus.PAID) is False
    with pytest.raises(ConflictError):
        ledger.update_status(invoice, InvoiceStatus.CANCELED)
    with pytest.raises(ConflictError):
        ledger.update_status(invoice, InvoiceStatus.SENT)


def test_canceled_invoice_can_still_be_paid(db_session, organization):
    ledger = InvoiceLedger(db_session)
    invoice = _invoice(ledger, organization)
    ledger.update_status(invoice, InvoiceStatus.CANCELED)

    assert ledger.update_status(invoice, InvoiceStatus.PAID) is True


def test_aggregations(db_session, organization):
    ledger = InvoiceLedger(db_session)
    paid = _invoice(ledger, organization, amount=9800)
    ledger.update_status(paid, InvoiceStatus.PAID)
    _invoice(ledger, organization, amount=980, invoice_type=InvoiceType.TOKEN, due_in_days=-2)
    _invoice(ledger, organization, amount=18000, status=InvoiceStatus.DRAFT)
    db_session.commit()

    assert ledger.total_by_organization(organization.id, InvoiceStatus.PAID) == 9800
    assert ledger.total_by_organization(organization.id, InvoiceStatus.SENT) == 980
    assert ledger.total_by_organization(organization.id, InvoiceStatus.PAID, types=[InvoiceType.TOKEN]) == 0
    assert [i.total for i in ledger.find_overdue(organization_id=organization.id)] == [980]
    assert sorted(i.total for i in ledger.find_pending_by_organization(organization.id)) == [980, 18000]
    assert len(list(ledger.list_for_organization(organization.id, limit=2))) == 2
    assert [i.total for i in ledger.list_for_organization(organization.id, status=InvoiceStatus.DRAFT)] == [18000]


def test_find_by_charge_id(db_session, organization):
    ledger = InvoiceLedger(db_session)
    invoice = _invoice(ledger, organization)
    ledger.update(invoice, external_charge_id="ch_lookup")
    db_session.commit()

    assert ledger.find_by_charge_id("ch_lookup").id == invoice.id
    assert ledger.find_by_charge_id("ch_missing") is None


def test_payment_transitions_never_leave_success(db_session, organization):
    ledger = InvoiceLedger(db_session)
    invoice = _invoice(ledger, organization)
    payment = ledger.record_payment(invoice, status=PaymentStatus.PENDING, charge_id="ch_1")

    assert ledger.update_payment_status(payment, PaymentStatus.SUCCESS) is True
    assert ledger.update_payment_status(payment, PaymentStatus.FAILED, failure_reason="late decline") is False
    assert payment.status == PaymentStatus.SUCCESS.value
    assert payment.failure_reason is None


def test_failed_payment_can_later_succeed(db_session, organization):
    ledger = InvoiceLedger(db_session)
    invoice = _invoice(ledger, organization)
    payment = ledger.record_payment(invoice, status=PaymentStatus.PENDING, charge_id="ch_2")

    ledger.update_payment_status(payment, PaymentStatus.FAILED, failure_reason="insufficient funds")
    assert payment.failure_reason == "insufficient funds"
    assert ledger.update_payment_status(payment, PaymentStatus.SUCCESS, transaction_id="tx_9") is True
    assert payment.external_transaction_id == "tx_9"
    db_session.commit()

    assert ledger.count_payments(organization.id, PaymentStatus.SUCCESS) == 1
    assert [p.id for p in ledger.payments_for_invoice(invoice.id)] == [payment.id]
