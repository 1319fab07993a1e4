from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tenantbill.core.config import settings
from tenantbill.core.errors import GatewayDeclinedError, GatewayError, NotFoundError, ValidationError
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import (
    BillingCycle,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    PaymentHistory,
    PaymentMethod,
    PaymentStatus,
    Plan,
    PlanKind,
    Subscription,
    SubscriptionStatus,
    SummaryPeriod,
)
from tenantbill.models.organization import Organization
from tenantbill.services.gateway import GatewayClient
from tenantbill.services.invoices import InvoiceLedger, InvoiceSortField, line_item
from tenantbill.services.payment_methods import PaymentMethodService
from tenantbill.services.plans import PlanService
from tenantbill.utils.dates import add_months, month_start
from tenantbill.utils.money import round_half_up


def period_bounds(period: SummaryPeriod, now: datetime) -> tuple[datetime, datetime]:
    """Half-open [start, end) range of calendar months for a reporting period."""
    current = month_start(now)
    if period == SummaryPeriod.LAST_MONTH:
        return add_months(current, -1), current
    if period == SummaryPeriod.LAST_3_MONTHS:
        return add_months(current, -2), add_months(current)
    if period == SummaryPeriod.LAST_6_MONTHS:
        return add_months(current, -5), add_months(current)
    if period == SummaryPeriod.LAST_YEAR:
        this_year = current.replace(month=1)
        return this_year.replace(year=this_year.year - 1), this_year
    return current, add_months(current)


def _percent(part: int, whole: int) -> float:
    return round(part * 100 / whole, 2) if whole else 0.0


@dataclass
class ChargeAttempt:
    invoice: Invoice
    outcome: PaymentStatus
    charge_id: str | None = None
    payment: PaymentHistory | None = None
    duplicate: bool = False


@dataclass
class InvoiceDetail:
    invoice: Invoice
    organization_name: str | None
    payments: list[PaymentHistory] = field(default_factory=list)


@dataclass
class InvoicePage:
    invoices: list[Invoice]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class BillingService:
    """Charges invoices through the gateway and applies charge outcomes.

    ``apply_charge_result`` is the single write path into invoice and payment
    status. The synchronous API path and the webhook reconciler both go
    through it, so applying the same outcome twice changes nothing and a
    paid invoice is never moved back.
    """

    def __init__(self, session: Session, gateway: GatewayClient | None = None) -> None:
        self.session = session
        self.gateway = gateway
        self.ledger = InvoiceLedger(session)

    # ------------------------------------------------------------------
    # Outcome application
    # ------------------------------------------------------------------
    def apply_charge_result(
        self,
        invoice: Invoice,
        *,
        charge_id: str | None,
        outcome: PaymentStatus,
        transaction_id: str | None = None,
        failure_reason: str | None = None,
        paid_at: datetime | None = None,
        payment_method_id: UUID | None = None,
    ) -> bool:
        """Idempotently fold a charge outcome into the invoice and its payment row.

        Does not commit. Returns True when anything changed.
        """
        changed = False
        if charge_id and invoice.external_charge_id is None:
            self.ledger.update(invoice, external_charge_id=charge_id)
            changed = True

        payment = self.ledger.find_payment_by_charge_id(charge_id, for_update=True) if charge_id else None
        if payment is None:
            self.ledger.record_payment(
                invoice,
                status=outcome,
                charge_id=charge_id,
                transaction_id=transaction_id,
                failure_reason=failure_reason,
                payment_method_id=payment_method_id,
            )
            changed = True
        else:
            changed = (
                self.ledger.update_payment_status(
                    payment,
                    outcome,
                    failure_reason=failure_reason,
                    transaction_id=transaction_id,
                )
                or changed
            )

        if outcome == PaymentStatus.SUCCESS and invoice.status != InvoiceStatus.PAID.value:
            self.ledger.update_status(invoice, InvoiceStatus.PAID, paid_at=paid_at)
            self._reactivate_subscription(invoice)
            changed = True
        elif outcome == PaymentStatus.FAILED:
            logger.warning(
                "Charge failed invoice_id=%s charge_id=%s reason=%s",
                invoice.id,
                charge_id,
                failure_reason,
            )
        return changed

    def _reactivate_subscription(self, invoice: Invoice) -> None:
        if not invoice.subscription_id:
            return
        subscription = self.session.get(Subscription, invoice.subscription_id)
        if subscription and subscription.status == SubscriptionStatus.PAST_DUE.value:
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.touch()
            self.session.add(subscription)
            self.session.flush()
            logger.info(
                "Subscription reactivated after payment subscription_id=%s invoice_id=%s",
                subscription.id,
                invoice.id,
            )

    # ------------------------------------------------------------------
    # Charging
    # ------------------------------------------------------------------
    def charge_invoice(
        self,
        invoice: Invoice,
        payment_method: PaymentMethod,
        *,
        idempotency_key: str | None = None,
        descriptor: str | None = None,
    ) -> ChargeAttempt:
        """Charge a committed invoice and apply the immediate gateway answer.

        A decline is recorded as a failed payment and raised as
        ``GatewayDeclinedError``, whether the gateway refused the request or
        accepted it with a failed status. Transient and other gateway errors
        leave the invoice ``sent`` and propagate; the webhook path settles it
        later.
        """
        if self.gateway is None:
            raise RuntimeError("BillingService.charge_invoice needs a gateway client")
        invoice_id = invoice.id
        organization_id = invoice.organization_id
        try:
            result = self.gateway.charge(
                payment_method.gateway_token_id or "",
                invoice.total,
                currency=invoice.currency,
                metadata={
                    "invoice_id": str(invoice_id),
                    "organization_id": str(organization_id),
                    "invoice_type": invoice.type,
                },
                descriptor=descriptor,
                idempotency_key=idempotency_key or f"invoice-{invoice_id}",
            )
        except GatewayDeclinedError as exc:
            logger.warning(
                "Charge declined invoice_id=%s organization_id=%s code=%s",
                invoice_id,
                organization_id,
                exc.details.get("decline_code"),
            )
            self.ledger.record_payment(
                invoice,
                status=PaymentStatus.FAILED,
                failure_reason=exc.message,
                payment_method_id=payment_method.id,
            )
            self.session.commit()
            raise
        except GatewayError as exc:
            logger.error(
                "Charge not completed invoice_id=%s organization_id=%s code=%s error=%s",
                invoice_id,
                organization_id,
                exc.code,
                exc.message,
            )
            raise

        try:
            locked = self.ledger.lock(invoice_id) or invoice
            existing = self.ledger.find_by_charge_id(result.id)
            if existing is not None and existing.id != locked.id:
                return self._discard_duplicate(locked, existing, result.id)
            self.apply_charge_result(
                locked,
                charge_id=result.id,
                outcome=result.outcome,
                transaction_id=result.transaction_id,
                failure_reason=result.failure_reason,
                payment_method_id=payment_method.id,
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.ledger.find_by_charge_id(result.id)
            if existing is None or existing.id == invoice_id:
                raise
            locked = self.ledger.lock(invoice_id) or invoice
            return self._discard_duplicate(locked, existing, result.id)

        self.session.refresh(locked)
        payment = self.ledger.find_payment_by_charge_id(result.id)
        logger.info(
            "Charge applied invoice_id=%s charge_id=%s outcome=%s",
            invoice_id,
            result.id,
            result.outcome.value,
        )
        self._replay_unmatched(result.id)
        if result.outcome == PaymentStatus.FAILED:
            raise GatewayDeclinedError(
                result.failure_reason or "The charge failed.",
                details={"charge_id": result.id, "decline_code": result.status},
            )
        return ChargeAttempt(invoice=locked, outcome=result.outcome, charge_id=result.id, payment=payment)

    def _discard_duplicate(self, invoice: Invoice, existing: Invoice, charge_id: str) -> ChargeAttempt:
        if invoice.type != InvoiceType.TOKEN.value or existing.organization_id != invoice.organization_id:
            invoice_id, existing_id = invoice.id, existing.id
            self.session.rollback()
            logger.error(
                "Charge id already recorded on another invoice invoice_id=%s existing_invoice_id=%s charge_id=%s",
                invoice_id,
                existing_id,
                charge_id,
            )
            raise GatewayError(
                "The gateway returned a charge already recorded on another invoice.",
                code="duplicate_charge",
                details={"charge_id": charge_id, "invoice_id": str(invoice_id)},
            )
        logger.warning(
            "Duplicate charge id; canceling invoice invoice_id=%s existing_invoice_id=%s charge_id=%s",
            invoice.id,
            existing.id,
            charge_id,
        )
        if invoice.status in (InvoiceStatus.DRAFT.value, InvoiceStatus.SENT.value):
            self.ledger.update_status(invoice, InvoiceStatus.CANCELED)
            details = dict(invoice.details or {})
            details["duplicate_of"] = str(existing.id)
            self.ledger.update(invoice, details=details)
        self.session.commit()
        self.session.refresh(existing)
        payment = self.ledger.find_payment_by_charge_id(charge_id)
        outcome = PaymentStatus(payment.status) if payment else PaymentStatus.PENDING
        return ChargeAttempt(
            invoice=existing,
            outcome=outcome,
            charge_id=charge_id,
            payment=payment,
            duplicate=True,
        )

    def _replay_unmatched(self, charge_id: str) -> None:
        # Imported here; the reconciler depends on this service.
        from tenantbill.services.webhooks import WebhookReconciler

        WebhookReconciler(self.session, billing=self).replay_unmatched(charge_id)

    # ------------------------------------------------------------------
    # Token purchase
    # ------------------------------------------------------------------
    def charge_tokens(
        self,
        organization_id: UUID,
        plan_id: UUID,
        payment_method_id: UUID | None = None,
        idempotency_key: str | None = None,
    ) -> ChargeAttempt:
        plan = PlanService(self.session).get_active_plan(plan_id, PlanKind.TOKEN_PACK)
        payment_method = PaymentMethodService(self.session).resolve(organization_id, payment_method_id)

        now = datetime.utcnow()
        try:
            invoice = self.ledger.create(
                organization_id=organization_id,
                invoice_type=InvoiceType.TOKEN,
                items=[line_item(f"Token pack {plan.name} ({plan.token_amount:,} tokens)", plan.price)],
                issue_date=now,
                due_date=now,
                payment_method_id=payment_method.id,
                details={"token_amount": plan.token_amount, "plan_id": str(plan.id)},
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(invoice)
        logger.info(
            "Token purchase started organization_id=%s invoice_id=%s plan_id=%s",
            organization_id,
            invoice.id,
            plan.id,
        )
        return self.charge_invoice(
            invoice,
            payment_method,
            idempotency_key=idempotency_key,
            descriptor="Token purchase",
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_invoices(
        self,
        organization_id: UUID,
        *,
        limit: int | None = None,
        status: InvoiceStatus | None = None,
    ) -> Iterable[Invoice]:
        return self.ledger.list_for_organization(organization_id, limit=limit, status=status)

    def get_invoice(self, organization_id: UUID, invoice_id: UUID) -> Invoice:
        return self.ledger.get_for_organization(organization_id, invoice_id)

    def list_payments(self, organization_id: UUID, invoice_id: UUID) -> list[PaymentHistory]:
        invoice = self.ledger.get_for_organization(organization_id, invoice_id)
        return self.ledger.payments_for_invoice(invoice.id)

    def get_billing_summary(self, organization_id: UUID, now: datetime | None = None) -> dict[str, object]:
        now = now or datetime.utcnow()
        start = month_start(now)
        end = add_months(start)

        subscription_revenue = self.ledger.total_by_organization(
            organization_id,
            InvoiceStatus.PAID,
            types=[InvoiceType.SUBSCRIPTION, InvoiceType.ONE_TIME],
        )
        token_revenue = self.ledger.total_by_organization(
            organization_id, InvoiceStatus.PAID, types=[InvoiceType.TOKEN]
        )
        overdue = self.ledger.find_overdue(now=now, organization_id=organization_id)

        return {
            "organization_id": organization_id,
            "currency": settings.billing_currency,
            "total_revenue": self.ledger.total_by_organization(organization_id, InvoiceStatus.PAID),
            "subscription_revenue": subscription_revenue,
            "token_revenue": token_revenue,
            "outstanding_amount": self.ledger.total_by_organization(organization_id, InvoiceStatus.SENT),
            "overdue_amount": sum(invoice.total for invoice in overdue),
            "overdue_count": len(overdue),
            "pending_invoices": len(self.ledger.find_pending_by_organization(organization_id)),
            "successful_payments_this_month": self.ledger.count_payments(
                organization_id, PaymentStatus.SUCCESS, start=start, end=end
            ),
            "failed_payments_this_month": self.ledger.count_payments(
                organization_id, PaymentStatus.FAILED, start=start, end=end
            ),
        }

    # ------------------------------------------------------------------
    # Platform administration (every organization)
    # ------------------------------------------------------------------
    def monthly_recurring_revenue(self, organization_id: UUID | None = None) -> int:
        statement = (
            select(Plan.price, Plan.billing_cycle)
            .join(Subscription, Subscription.plan_id == Plan.id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
        )
        if organization_id:
            statement = statement.where(Subscription.organization_id == organization_id)
        total = 0
        for price, cycle in self.session.exec(statement).all():
            total += round_half_up(price / 12) if cycle == BillingCycle.YEARLY.value else price
        return total

    def get_platform_summary(
        self,
        period: SummaryPeriod = SummaryPeriod.CURRENT_MONTH,
        organization_id: UUID | None = None,
        now: datetime | None = None,
    ) -> dict[str, object]:
        """Revenue and collection figures for invoices issued in ``period``.

        Growth compares paid amounts with the preceding period spanning
        the same number of months. Overdue figures are current, not limited to the period.
        """
        now = now or datetime.utcnow()
        start, end = period_bounds(period, now)
        totals = self.ledger.totals_by_status(start=start, end=end, organization_id=organization_id)
        span = (end.year - start.year) * 12 + end.month - start.month
        previous = self.ledger.totals_by_status(
            start=add_months(start, -span), end=start, organization_id=organization_id
        )
        paid = totals.get(InvoiceStatus.PAID.value, 0)
        previous_paid = previous.get(InvoiceStatus.PAID.value, 0)

        payments = {
            status: self.ledger.count_payments(organization_id, status, start=start, end=end)
            for status in PaymentStatus
        }
        attempts = sum(payments.values())
        overdue = self.ledger.find_overdue(now=now, organization_id=organization_id)
        logger.info(
            "Platform billing summary period=%s organization_id=%s paid=%s attempts=%s",
            period.value,
            organization_id,
            paid,
            attempts,
        )
        return {
            "period": period,
            "period_start": start,
            "period_end": end,
            "organization_id": organization_id,
            "currency": settings.billing_currency,
            "paid_amount": paid,
            "outstanding_amount": totals.get(InvoiceStatus.SENT.value, 0),
            "overdue_amount": sum(invoice.total for invoice in overdue),
            "overdue_count": len(overdue),
            "monthly_recurring_revenue": self.monthly_recurring_revenue(organization_id),
            "growth_rate": _percent(paid - previous_paid, previous_paid),
            "payment_success_rate": _percent(payments[PaymentStatus.SUCCESS], attempts),
            "successful_payments": payments[PaymentStatus.SUCCESS],
            "failed_payments": payments[PaymentStatus.FAILED],
            "pending_payments": payments[PaymentStatus.PENDING],
        }

    def search_invoices(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        status: InvoiceStatus | None = None,
        invoice_type: InvoiceType | None = None,
        organization_id: UUID | None = None,
        issued_from: datetime | None = None,
        issued_to: datetime | None = None,
        sort_by: InvoiceSortField = InvoiceSortField.CREATED_AT,
        descending: bool = True,
    ) -> InvoicePage:
        if page < 1 or limit < 1:
            raise ValidationError("Page and limit must be positive.", details={"page": page, "limit": limit})
        if issued_from and issued_to and issued_to < issued_from:
            raise ValidationError("The end date must not be before the start date.")
        invoices, total = self.ledger.search(
            organization_id=organization_id,
            status=status,
            invoice_type=invoice_type,
            issued_from=issued_from,
            issued_to=issued_to,
            sort_by=sort_by,
            descending=descending,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return InvoicePage(invoices=invoices, total=total, page=page, limit=limit)

    def get_invoice_detail(self, invoice_id: UUID) -> InvoiceDetail:
        invoice = self.ledger.get(invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found.", details={"invoice_id": str(invoice_id)})
        organization = self.session.get(Organization, invoice.organization_id)
        return InvoiceDetail(
            invoice=invoice,
            organization_name=organization.name if organization else None,
            payments=self.ledger.payments_for_invoice(invoice.id),
        )
