from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tenantbill.core.config import settings
from tenantbill.core.errors import (
    BillingPermissionError,
    ConflictError,
    GatewayDeclinedError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import (
    OPEN_SUBSCRIPTION_STATUSES,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    PaymentMethod,
    Plan,
    PlanKind,
    Subscription,
    SubscriptionStatus,
)
from tenantbill.services.billing import BillingService
from tenantbill.services.gateway import GatewayClient
from tenantbill.services.invoices import line_item
from tenantbill.services.payment_methods import PaymentMethodService
from tenantbill.services.plans import PlanService
from tenantbill.utils.dates import add_months, days_remaining
from tenantbill.utils.money import round_half_up

PRORATION_PERIOD_DAYS = 30

_RENEWABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


def prorated_amount(old_price: int, new_price: int, remaining_days: int) -> int:
    """Price difference for the rest of the period, on a 30-day month."""
    return round_half_up((new_price - old_price) * remaining_days / PRORATION_PERIOD_DAYS)


@dataclass
class RenewalReport:
    renewed: list[UUID] = field(default_factory=list)
    canceled: list[UUID] = field(default_factory=list)
    past_due: list[UUID] = field(default_factory=list)
    failed: list[UUID] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.renewed) + len(self.canceled) + len(self.past_due)


class SubscriptionService:
    def __init__(
        self,
        session: Session,
        gateway: GatewayClient | None = None,
        billing: BillingService | None = None,
    ) -> None:
        self.session = session
        self.gateway = gateway
        self.billing = billing or BillingService(session, gateway)
        self.plans = PlanService(session)
        self.payment_methods = PaymentMethodService(session, gateway)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_subscription(self, organization_id: UUID) -> Subscription | None:
        """Current open subscription, falling back to the most recent one."""
        open_subscription = self._find_open(organization_id)
        if open_subscription:
            return open_subscription
        return self.session.exec(
            select(Subscription)
            .where(Subscription.organization_id == organization_id)
            .order_by(Subscription.created_at.desc())
        ).first()

    def get_owned(self, subscription_id: UUID, organization_id: UUID) -> Subscription:
        subscription = self.session.get(Subscription, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found.", details={"subscription_id": str(subscription_id)})
        if subscription.organization_id != organization_id:
            raise BillingPermissionError("Subscription belongs to another organization.")
        return subscription

    def get_plan_details(self, plan: Plan) -> dict[str, Any]:
        return PlanService.plan_details(plan, settings.billing_currency)

    def _find_open(self, organization_id: UUID) -> Subscription | None:
        return self.session.exec(
            select(Subscription).where(
                Subscription.organization_id == organization_id,
                Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES),
            )
        ).first()

    def _lock(self, subscription_id: UUID) -> Subscription | None:
        return self.session.exec(
            select(Subscription).where(Subscription.id == subscription_id).with_for_update()
        ).first()

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------
    def create_subscription(
        self,
        organization_id: UUID,
        plan_id: UUID,
        payment_method_id: UUID | None = None,
        trial_days: int | None = None,
        details: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Subscription:
        now = now or datetime.utcnow()
        trial_days = trial_days or 0
        if trial_days < 0 or trial_days > settings.billing_max_trial_days:
            raise ValidationError(
                f"Trial length must be between 0 and {settings.billing_max_trial_days} days.",
                details={"trial_days": trial_days},
            )

        plan = self.plans.get_active_plan(plan_id, PlanKind.SUBSCRIPTION)
        payment_method = self.payment_methods.resolve(organization_id, payment_method_id)
        if self._find_open(organization_id):
            logger.warning("Subscription already open organization_id=%s", organization_id)
            raise ConflictError(
                "The organization already has an active subscription.",
                details={"organization_id": str(organization_id)},
            )

        meta = dict(details or {})
        meta.setdefault("plan", plan.name)
        meta["payment_method_id"] = str(payment_method.id)

        if trial_days:
            trial_end = now + timedelta(days=trial_days)
            subscription = Subscription(
                organization_id=organization_id,
                plan_id=plan.id,
                status=SubscriptionStatus.TRIALING.value,
                current_period_start=now,
                current_period_end=trial_end,
                trial_ends_at=trial_end,
                details=meta,
            )
        else:
            subscription = Subscription(
                organization_id=organization_id,
                plan_id=plan.id,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_start=now,
                current_period_end=add_months(now),
                details=meta,
            )

        invoice: Invoice | None = None
        try:
            self.session.add(subscription)
            self.session.flush()
            if subscription.status == SubscriptionStatus.ACTIVE.value:
                invoice = self._issue_period_invoice(subscription, plan, payment_method, now=now)
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(
                "The organization already has an active subscription.",
                details={"organization_id": str(organization_id)},
            ) from exc
        self.session.refresh(subscription)
        logger.info(
            "Subscription created subscription_id=%s organization_id=%s plan=%s status=%s",
            subscription.id,
            organization_id,
            plan.name,
            subscription.status,
        )

        if invoice is None:
            return subscription

        if settings.billing_remote_subscriptions:
            try:
                self._start_remote(subscription, plan, payment_method)
            except GatewayDeclinedError as exc:
                self._abort_creation(subscription, invoice, reason=exc.code)
                raise
            return subscription

        try:
            self.billing.charge_invoice(invoice, payment_method, descriptor=f"Subscription {plan.name}")
        except GatewayError as exc:
            if not exc.retryable:
                self._abort_creation(subscription, invoice, reason=exc.code)
                raise
            logger.warning(
                "Initial charge pending confirmation subscription_id=%s invoice_id=%s",
                subscription.id,
                invoice.id,
            )
        self.session.refresh(subscription)
        return subscription

    def _abort_creation(self, subscription: Subscription, invoice: Invoice, reason: str) -> None:
        invoice = self.billing.ledger.lock(invoice.id) or invoice
        subscription = self._lock(subscription.id) or subscription
        now = datetime.utcnow()
        if invoice.status != InvoiceStatus.PAID.value:
            self.billing.ledger.update_status(invoice, InvoiceStatus.CANCELED)
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.canceled_at = now
            subscription.touch(now)
            self.session.add(subscription)
        self.session.commit()
        logger.warning(
            "Subscription creation aborted subscription_id=%s invoice_id=%s reason=%s",
            subscription.id,
            invoice.id,
            reason,
        )

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------
    def change_plan(
        self,
        subscription_id: UUID,
        organization_id: UUID,
        new_plan_id: UUID,
        now: datetime | None = None,
    ) -> Subscription:
        now = now or datetime.utcnow()
        subscription = self.get_owned(subscription_id, organization_id)
        if subscription.status == SubscriptionStatus.CANCELED.value:
            raise ConflictError("Canceled subscriptions cannot change plan.")
        if subscription.plan_id == new_plan_id:
            raise ConflictError("The subscription is already on this plan.")

        new_plan = self.plans.get_active_plan(new_plan_id, PlanKind.SUBSCRIPTION)
        old_plan = self.plans.get_plan(subscription.plan_id)
        upgrade = new_plan.price > old_plan.price

        amount = 0
        payment_method: PaymentMethod | None = None
        if upgrade:
            payment_method = self.payment_methods.require_default(organization_id)
            amount = prorated_amount(
                old_plan.price,
                new_plan.price,
                days_remaining(subscription.current_period_end, now),
            )

        if subscription.external_subscription_id and self.gateway is not None:
            self.gateway.update_remote_subscription(
                subscription.external_subscription_id,
                amount=new_plan.price,
                metadata={"plan": new_plan.name},
            )

        invoice = None
        try:
            subscription = self._lock(subscription.id) or subscription
            subscription.plan_id = new_plan.id
            meta = dict(subscription.details or {})
            meta["plan"] = new_plan.name
            meta["previous_plan"] = old_plan.name
            subscription.details = meta
            subscription.touch(now)
            self.session.add(subscription)
            self.session.flush()
            if amount > 0 and payment_method is not None:
                invoice = self.billing.ledger.create(
                    organization_id=organization_id,
                    invoice_type=InvoiceType.ONE_TIME,
                    items=[line_item(f"Upgrade {old_plan.name} to {new_plan.name} (prorated)", amount)],
                    issue_date=now,
                    due_date=now + timedelta(days=settings.billing_upgrade_due_days),
                    subscription_id=subscription.id,
                    payment_method_id=payment_method.id,
                    period_start=now,
                    period_end=subscription.current_period_end,
                    details={
                        "kind": "upgrade",
                        "from_plan": old_plan.name,
                        "to_plan": new_plan.name,
                    },
                )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(subscription)
        logger.info(
            "Subscription plan changed subscription_id=%s from=%s to=%s direction=%s prorated=%s",
            subscription.id,
            old_plan.name,
            new_plan.name,
            "upgrade" if upgrade else "downgrade",
            amount,
        )

        if invoice is not None and payment_method is not None:
            try:
                self.billing.charge_invoice(invoice, payment_method, descriptor="Plan upgrade")
            except GatewayError as exc:
                if not exc.retryable:
                    raise
                logger.warning(
                    "Upgrade charge pending confirmation subscription_id=%s invoice_id=%s",
                    subscription.id,
                    invoice.id,
                )
            self.session.refresh(subscription)
        return subscription

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------
    def cancel_subscription(
        self,
        subscription_id: UUID,
        organization_id: UUID,
        cancel_at_period_end: bool = True,
        now: datetime | None = None,
    ) -> Subscription:
        subscription = self.get_owned(subscription_id, organization_id)
        if subscription.status == SubscriptionStatus.CANCELED.value:
            raise ConflictError("Subscription is already canceled.")

        if cancel_at_period_end:
            subscription.cancel_at_period_end = True
            subscription.touch(now)
            self.session.add(subscription)
            self.session.commit()
            self.session.refresh(subscription)
            logger.info("Subscription set to cancel at period end subscription_id=%s", subscription.id)
            return subscription

        self._cancel_remote(subscription)
        self._mark_canceled(subscription, now or datetime.utcnow())
        self.session.commit()
        self.session.refresh(subscription)
        logger.info("Subscription canceled subscription_id=%s organization_id=%s", subscription.id, organization_id)
        return subscription

    def _mark_canceled(self, subscription: Subscription, now: datetime) -> None:
        subscription.status = SubscriptionStatus.CANCELED.value
        subscription.canceled_at = now
        subscription.touch(now)
        self.session.add(subscription)
        self.session.flush()

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------
    def find_expiring(self, now: datetime, within_days: int | None = None) -> list[Subscription]:
        window = settings.billing_renewal_window_days if within_days is None else within_days
        cutoff = now + timedelta(days=window)
        return list(
            self.session.exec(
                select(Subscription)
                .where(
                    Subscription.status.in_(_RENEWABLE_STATUSES),
                    Subscription.current_period_end <= cutoff,
                )
                .order_by(Subscription.current_period_end)
            ).all()
        )

    def renew(self, subscription_id: UUID, now: datetime | None = None) -> SubscriptionStatus | None:
        """Advance one subscription into its next period.

        Returns the resulting status, or None when the subscription was no
        longer renewable by the time it was locked.
        """
        now = now or datetime.utcnow()
        subscription = self._lock(subscription_id)
        if subscription is None or subscription.status not in _RENEWABLE_STATUSES:
            self.session.rollback()
            return None

        if subscription.cancel_at_period_end:
            self._cancel_remote(subscription)
            self._mark_canceled(subscription, now)
            self.session.commit()
            logger.info("Subscription expired at period end subscription_id=%s", subscription.id)
            return SubscriptionStatus.CANCELED

        plan = self.plans.get_plan(subscription.plan_id)
        payment_method = self.payment_methods.find_default(subscription.organization_id)
        converting_trial = subscription.status == SubscriptionStatus.TRIALING.value

        period_start = subscription.current_period_end
        period_end = add_months(period_start)
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.touch(now)
        self.session.add(subscription)
        self.session.flush()
        invoice = self._issue_period_invoice(subscription, plan, payment_method, now=now)
        self.session.commit()
        logger.info(
            "Subscription renewed subscription_id=%s period_end=%s trial_converted=%s invoice_id=%s",
            subscription.id,
            period_end.isoformat(),
            converting_trial,
            invoice.id,
        )

        if subscription.external_subscription_id:
            # The gateway charges remote subscriptions; subscription.invoice.* events settle the invoice.
            return SubscriptionStatus.ACTIVE

        if payment_method is None:
            self._mark_past_due(subscription.id, "no default payment method")
            return SubscriptionStatus.PAST_DUE

        if converting_trial and settings.billing_remote_subscriptions:
            self._start_remote(subscription, plan, payment_method)
            return SubscriptionStatus.ACTIVE

        try:
            self.billing.charge_invoice(invoice, payment_method, descriptor=f"Subscription {plan.name}")
        except GatewayDeclinedError:
            self._mark_past_due(subscription.id, "renewal charge declined")
            return SubscriptionStatus.PAST_DUE
        except GatewayError as exc:
            if not exc.retryable:
                # The period has already advanced; the open invoice stays `sent` for a later payment.
                self._mark_past_due(subscription.id, f"renewal charge rejected code={exc.code}")
                return SubscriptionStatus.PAST_DUE
            logger.warning(
                "Renewal charge pending confirmation subscription_id=%s invoice_id=%s",
                subscription.id,
                invoice.id,
            )
        return SubscriptionStatus.ACTIVE

    def process_expiring_subscriptions(self, now: datetime | None = None) -> RenewalReport:
        """Renew every subscription due within the renewal window.

        Each subscription commits on its own; a failure is logged and the
        sweep moves on.
        """
        now = now or datetime.utcnow()
        report = RenewalReport()
        candidates = [subscription.id for subscription in self.find_expiring(now)]
        logger.info("Renewal sweep started candidates=%s", len(candidates))
        for subscription_id in candidates:
            try:
                result = self.renew(subscription_id, now=now)
            except Exception:
                self.session.rollback()
                logger.exception("Renewal failed subscription_id=%s", subscription_id)
                report.failed.append(subscription_id)
                continue
            if result == SubscriptionStatus.CANCELED:
                report.canceled.append(subscription_id)
            elif result == SubscriptionStatus.PAST_DUE:
                report.past_due.append(subscription_id)
            elif result == SubscriptionStatus.ACTIVE:
                report.renewed.append(subscription_id)
        logger.info(
            "Renewal sweep finished renewed=%s canceled=%s past_due=%s failed=%s",
            len(report.renewed),
            len(report.canceled),
            len(report.past_due),
            len(report.failed),
        )
        return report

    def _mark_past_due(self, subscription_id: UUID, reason: str) -> None:
        subscription = self._lock(subscription_id)
        if subscription and subscription.status == SubscriptionStatus.ACTIVE.value:
            subscription.status = SubscriptionStatus.PAST_DUE.value
            subscription.touch()
            self.session.add(subscription)
            logger.warning("Subscription past due subscription_id=%s reason=%s", subscription_id, reason)
        self.session.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _issue_period_invoice(
        self,
        subscription: Subscription,
        plan: Plan,
        payment_method: PaymentMethod | None,
        *,
        now: datetime,
    ) -> Invoice:
        period_start = subscription.current_period_start
        period_end = subscription.current_period_end
        return self.billing.ledger.create(
            organization_id=subscription.organization_id,
            invoice_type=InvoiceType.SUBSCRIPTION,
            items=[
                line_item(
                    f"{plan.name} plan ({period_start:%Y-%m-%d} - {period_end:%Y-%m-%d})",
                    plan.price,
                )
            ],
            issue_date=now,
            due_date=now + timedelta(days=settings.billing_invoice_due_days),
            subscription_id=subscription.id,
            payment_method_id=payment_method.id if payment_method else None,
            period_start=period_start,
            period_end=period_end,
            details={"plan_id": str(plan.id), "plan": plan.name},
        )

    def _start_remote(self, subscription: Subscription, plan: Plan, payment_method: PaymentMethod) -> None:
        if self.gateway is None:
            raise RuntimeError("Remote subscriptions need a gateway client")
        remote = self.gateway.create_remote_subscription(
            payment_method.gateway_token_id or "",
            plan.price,
            metadata={
                "organization_id": str(subscription.organization_id),
                "subscription_id": str(subscription.id),
                "plan": plan.name,
            },
            idempotency_key=f"subscription-{subscription.id}",
        )
        subscription.external_subscription_id = remote.id
        subscription.touch()
        self.session.add(subscription)
        self.session.commit()
        self.session.refresh(subscription)
        logger.info(
            "Remote subscription attached subscription_id=%s external_id=%s",
            subscription.id,
            remote.id,
        )

    def _cancel_remote(self, subscription: Subscription) -> None:
        if not subscription.external_subscription_id:
            return
        if self.gateway is None:
            raise RuntimeError("Canceling a remote subscription needs a gateway client")
        self.gateway.cancel_remote_subscription(subscription.external_subscription_id)
