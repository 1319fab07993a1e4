from __future__ import annotations

import secrets
import string
from datetime import datetime
from enum import Enum
from typing import Iterable, Sequence
from uuid import UUID

from sqlmodel import Session, func, select

from tenantbill.core.config import settings
from tenantbill.core.errors import BillingPermissionError, ConflictError, NotFoundError, ValidationError
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    PaymentHistory,
    PaymentStatus,
)
from tenantbill.utils.money import compute_tax

# Allowed target -> source statuses. A confirmed payment wins over a cancellation.
_INVOICE_TRANSITIONS: dict[str, set[str]] = {
    InvoiceStatus.SENT.value: {InvoiceStatus.DRAFT.value},
    InvoiceStatus.PAID.value: {InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value, InvoiceStatus.CANCELED.value},
    InvoiceStatus.CANCELED.value: {InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value},
}

_PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    PaymentStatus.SUCCESS.value: {PaymentStatus.PENDING.value, PaymentStatus.FAILED.value},
    PaymentStatus.FAILED.value: {PaymentStatus.PENDING.value},
}


class InvoiceSortField(str, Enum):
    CREATED_AT = "created_at"
    TOTAL = "total"
    DUE_DATE = "due_date"
    STATUS = "status"


def _invoice_number(now: datetime) -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(6))
    return f"INV-{now:%Y%m%d}-{suffix}"


def line_item(description: str, unit_price: int, quantity: int = 1) -> dict:
    if unit_price < 0 or quantity < 1:
        raise ValidationError("Invalid invoice line item.")
    return {
        "description": description,
        "unit_price": unit_price,
        "quantity": quantity,
        "amount": unit_price * quantity,
    }


class InvoiceLedger:
    """Persistence and aggregation for invoices and their payment attempts.

    Methods add and flush but never commit; the calling service owns the
    transaction so that an invoice and its payment row change together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------
    def create(
        self,
        *,
        organization_id: UUID,
        invoice_type: InvoiceType,
        items: Sequence[dict],
        due_date: datetime,
        issue_date: datetime | None = None,
        status: InvoiceStatus = InvoiceStatus.SENT,
        subscription_id: UUID | None = None,
        payment_method_id: UUID | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        details: dict | None = None,
    ) -> Invoice:
        if not items:
            raise ValidationError("An invoice needs at least one line item.")
        issued = issue_date or datetime.utcnow()
        subtotal = sum(int(item["amount"]) for item in items)
        tax = compute_tax(subtotal, settings.billing_tax_rate)
        invoice = Invoice(
            invoice_number=_invoice_number(issued),
            organization_id=organization_id,
            subscription_id=subscription_id,
            payment_method_id=payment_method_id,
            type=invoice_type.value,
            status=status.value,
            items=list(items),
            subtotal=subtotal,
            tax=tax,
            total=subtotal + tax,
            currency=settings.billing_currency,
            issue_date=issued,
            due_date=due_date,
            period_start=period_start,
            period_end=period_end,
            details=details or {},
        )
        self.session.add(invoice)
        self.session.flush()
        logger.info(
            "Invoice created invoice_id=%s organization_id=%s type=%s total=%s",
            invoice.id,
            organization_id,
            invoice.type,
            invoice.total,
        )
        return invoice

    def get(self, invoice_id: UUID) -> Invoice | None:
        return self.session.get(Invoice, invoice_id)

    def get_for_organization(self, organization_id: UUID, invoice_id: UUID) -> Invoice:
        invoice = self.get(invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found.", details={"invoice_id": str(invoice_id)})
        if invoice.organization_id != organization_id:
            raise BillingPermissionError("Invoice belongs to another organization.")
        return invoice

    def update(self, invoice: Invoice, **fields: object) -> Invoice:
        for name, value in fields.items():
            setattr(invoice, name, value)
        invoice.touch()
        self.session.add(invoice)
        self.session.flush()
        return invoice

    def update_status(
        self,
        invoice: Invoice,
        status: InvoiceStatus,
        *,
        paid_at: datetime | None = None,
    ) -> bool:
        """Move an invoice to ``status``. Returns False when it is already there."""
        if invoice.status == status.value:
            return False
        allowed_from = _INVOICE_TRANSITIONS.get(status.value, set())
        if invoice.status not in allowed_from:
            raise ConflictError(
                f"Invoice cannot move from {invoice.status} to {status.value}.",
                details={"invoice_id": str(invoice.id)},
            )
        invoice.status = status.value
        if status == InvoiceStatus.PAID:
            invoice.paid_at = paid_at or datetime.utcnow()
        invoice.touch()
        self.session.add(invoice)
        self.session.flush()
        logger.info("Invoice status changed invoice_id=%s status=%s", invoice.id, invoice.status)
        return True

    def find_by_charge_id(self, charge_id: str, *, for_update: bool = False) -> Invoice | None:
        statement = select(Invoice).where(Invoice.external_charge_id == charge_id)
        if for_update:
            statement = statement.with_for_update()
        return self.session.exec(statement).first()

    def lock(self, invoice_id: UUID) -> Invoice | None:
        """Reload an invoice holding a row lock where the database supports it."""
        return self.session.exec(
            select(Invoice).where(Invoice.id == invoice_id).with_for_update()
        ).first()

    def list_for_organization(
        self,
        organization_id: UUID,
        *,
        limit: int | None = None,
        status: InvoiceStatus | None = None,
    ) -> Iterable[Invoice]:
        statement = select(Invoice).where(Invoice.organization_id == organization_id)
        if status:
            statement = statement.where(Invoice.status == status.value)
        statement = statement.order_by(Invoice.issue_date.desc(), Invoice.created_at.desc())
        if limit:
            statement = statement.limit(limit)
        return self.session.exec(statement).all()

    def search(
        self,
        *,
        organization_id: UUID | None = None,
        status: InvoiceStatus | None = None,
        invoice_type: InvoiceType | None = None,
        issued_from: datetime | None = None,
        issued_to: datetime | None = None,
        sort_by: InvoiceSortField = InvoiceSortField.CREATED_AT,
        descending: bool = True,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Invoice], int]:
        """Filtered page of invoices across organizations, with the unpaged match count."""
        conditions = []
        if organization_id:
            conditions.append(Invoice.organization_id == organization_id)
        if status:
            conditions.append(Invoice.status == status.value)
        if invoice_type:
            conditions.append(Invoice.type == invoice_type.value)
        if issued_from:
            conditions.append(Invoice.issue_date >= issued_from)
        if issued_to:
            conditions.append(Invoice.issue_date <= issued_to)

        count_statement = select(func.count()).select_from(Invoice)
        statement = select(Invoice)
        for condition in conditions:
            count_statement = count_statement.where(condition)
            statement = statement.where(condition)

        column = getattr(Invoice, sort_by.value)
        statement = statement.order_by(column.desc() if descending else column.asc(), Invoice.id)
        invoices = list(self.session.exec(statement.offset(offset).limit(limit)).all())
        return invoices, int(self.session.exec(count_statement).one() or 0)

    def find_overdue(self, *, now: datetime | None = None, organization_id: UUID | None = None) -> list[Invoice]:
        statement = select(Invoice).where(
            Invoice.status == InvoiceStatus.SENT.value,
            Invoice.due_date < (now or datetime.utcnow()),
        )
        if organization_id:
            statement = statement.where(Invoice.organization_id == organization_id)
        return list(self.session.exec(statement.order_by(Invoice.due_date)).all())

    def find_pending_by_organization(self, organization_id: UUID) -> list[Invoice]:
        return list(
            self.session.exec(
                select(Invoice).where(
                    Invoice.organization_id == organization_id,
                    Invoice.status.in_([InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value]),
                )
            ).all()
        )

    def oldest_outstanding_for_subscription(self, subscription_id: UUID) -> Invoice | None:
        return self.session.exec(
            select(Invoice)
            .where(
                Invoice.subscription_id == subscription_id,
                Invoice.type == InvoiceType.SUBSCRIPTION.value,
                Invoice.status == InvoiceStatus.SENT.value,
                Invoice.external_charge_id.is_(None),
            )
            .order_by(Invoice.issue_date)
        ).first()

    def totals_by_status(
        self,
        *,
        start: datetime,
        end: datetime,
        organization_id: UUID | None = None,
    ) -> dict[str, int]:
        """Invoice totals per status for invoices issued in [start, end)."""
        statement = select(Invoice.status, func.coalesce(func.sum(Invoice.total), 0)).where(
            Invoice.issue_date >= start,
            Invoice.issue_date < end,
        )
        if organization_id:
            statement = statement.where(Invoice.organization_id == organization_id)
        rows = self.session.exec(statement.group_by(Invoice.status)).all()
        return {status: int(total or 0) for status, total in rows}

    def total_by_organization(
        self,
        organization_id: UUID,
        status: InvoiceStatus,
        *,
        types: Sequence[InvoiceType] | None = None,
    ) -> int:
        statement = select(func.coalesce(func.sum(Invoice.total), 0)).where(
            Invoice.organization_id == organization_id,
            Invoice.status == status.value,
        )
        if types:
            statement = statement.where(Invoice.type.in_([t.value for t in types]))
        return int(self.session.exec(statement).one() or 0)

    # ------------------------------------------------------------------
    # Payment history
    # ------------------------------------------------------------------
    def record_payment(
        self,
        invoice: Invoice,
        *,
        status: PaymentStatus,
        charge_id: str | None = None,
        transaction_id: str | None = None,
        failure_reason: str | None = None,
        payment_method_id: UUID | None = None,
    ) -> PaymentHistory:
        payment = PaymentHistory(
            organization_id=invoice.organization_id,
            invoice_id=invoice.id,
            payment_method_id=payment_method_id or invoice.payment_method_id,
            amount=invoice.total,
            status=status.value,
            failure_reason=failure_reason,
            external_charge_id=charge_id,
            external_transaction_id=transaction_id,
        )
        self.session.add(payment)
        self.session.flush()
        logger.info(
            "Payment recorded invoice_id=%s charge_id=%s status=%s",
            invoice.id,
            charge_id,
            payment.status,
        )
        return payment

    def update_payment_status(
        self,
        payment: PaymentHistory,
        status: PaymentStatus,
        *,
        failure_reason: str | None = None,
        transaction_id: str | None = None,
    ) -> bool:
        """Conditional payment transition; success is terminal."""
        if payment.status == status.value:
            return False
        if payment.status not in _PAYMENT_TRANSITIONS.get(status.value, set()):
            logger.info(
                "Ignoring payment transition payment_id=%s from=%s to=%s",
                payment.id,
                payment.status,
                status.value,
            )
            return False
        payment.status = status.value
        if status == PaymentStatus.FAILED:
            payment.failure_reason = failure_reason or "Unknown error"
        else:
            payment.failure_reason = None
        if transaction_id:
            payment.external_transaction_id = transaction_id
        payment.touch()
        self.session.add(payment)
        self.session.flush()
        return True

    def find_payment_by_charge_id(self, charge_id: str, *, for_update: bool = False) -> PaymentHistory | None:
        statement = select(PaymentHistory).where(PaymentHistory.external_charge_id == charge_id)
        if for_update:
            statement = statement.with_for_update()
        return self.session.exec(statement).first()

    def payments_for_invoice(self, invoice_id: UUID) -> list[PaymentHistory]:
        return list(
            self.session.exec(
                select(PaymentHistory)
                .where(PaymentHistory.invoice_id == invoice_id)
                .order_by(PaymentHistory.created_at)
            ).all()
        )

    def count_payments(
        self,
        organization_id: UUID | None,
        status: PaymentStatus,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        statement = select(func.count()).select_from(PaymentHistory).where(PaymentHistory.status == status.value)
        if organization_id:
            statement = statement.where(PaymentHistory.organization_id == organization_id)
        if start:
            statement = statement.where(PaymentHistory.created_at >= start)
        if end:
            statement = statement.where(PaymentHistory.created_at < end)
        return int(self.session.exec(statement).one() or 0)
