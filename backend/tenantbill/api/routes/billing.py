from __future__ import annotations

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from sqlmodel import Session

from tenantbill.api.deps import get_db, get_gateway, http_error, require_roles
from tenantbill.core.config import settings
from tenantbill.core.errors import BillingError, WebhookSignatureError
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import InvoiceStatus, WebhookOutcome
from tenantbill.models.user import User, UserRole
from tenantbill.schemas.billing import (
    BillingSummaryRead,
    InvoiceRead,
    PaymentMethodCreate,
    PaymentMethodRead,
    PaymentRead,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionUpdate,
    TokenPurchaseCreate,
    TokenPurchaseRead,
    WebhookAck,
)
from tenantbill.services.billing import BillingService
from tenantbill.services.gateway import CardDetails, GatewayClient
from tenantbill.services.payment_methods import PaymentMethodService
from tenantbill.services.subscriptions import SubscriptionService
from tenantbill.services.webhooks import WebhookReconciler

router = APIRouter(prefix="/billing", tags=["billing"])

_MANAGERS = (UserRole.ADMIN,)


# ---------------------------------------------------------------------------
# Payment methods
# ---------------------------------------------------------------------------
@router.post("/token", response_model=PaymentMethodRead, status_code=status.HTTP_201_CREATED)
def create_payment_method(
    payload: PaymentMethodCreate,
    session: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> PaymentMethodRead:
    card = CardDetails(
        cardholder=payload.cardholder,
        card_number=payload.card_number,
        exp_month=payload.exp_month,
        exp_year=payload.exp_year,
        cvv=payload.cvv,
    )
    try:
        method = PaymentMethodService(session, gateway).create(
            current_user.organization_id,
            card,
            email=payload.email,
            is_default=payload.is_default,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return PaymentMethodRead.model_validate(method)


@router.get("/payment-methods", response_model=List[PaymentMethodRead])
def list_payment_methods(
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> List[PaymentMethodRead]:
    methods = PaymentMethodService(session).list_payment_methods(current_user.organization_id)
    return [PaymentMethodRead.model_validate(method) for method in methods]


@router.post("/payment-methods/{payment_method_id}/default", response_model=PaymentMethodRead)
def set_default_payment_method(
    payment_method_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> PaymentMethodRead:
    try:
        method = PaymentMethodService(session).set_default(payment_method_id, current_user.organization_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return PaymentMethodRead.model_validate(method)


@router.delete("/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment_method(
    payment_method_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> Response:
    try:
        PaymentMethodService(session).delete(payment_method_id, current_user.organization_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------
@router.post("/subscription", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    session: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> SubscriptionRead:
    try:
        subscription = SubscriptionService(session, gateway).create_subscription(
            current_user.organization_id,
            payload.plan_id,
            payment_method_id=payload.payment_method_id,
            trial_days=payload.trial_days,
            details=payload.metadata,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return SubscriptionRead.model_validate(subscription)


@router.get("/subscription", response_model=SubscriptionRead)
def get_subscription(
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*_MANAGERS, UserRole.STYLIST)),
) -> SubscriptionRead:
    subscription = SubscriptionService(session).get_subscription(current_user.organization_id)
    if not subscription:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return SubscriptionRead.model_validate(subscription)


@router.patch("/subscription/{subscription_id}", response_model=SubscriptionRead)
def change_subscription_plan(
    subscription_id: UUID,
    payload: SubscriptionUpdate,
    session: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> SubscriptionRead:
    try:
        subscription = SubscriptionService(session, gateway).change_plan(
            subscription_id,
            current_user.organization_id,
            payload.plan_id,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return SubscriptionRead.model_validate(subscription)


@router.delete("/subscription/{subscription_id}", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: UUID,
    cancel_at_period_end: bool = Query(default=True),
    session: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> SubscriptionRead:
    try:
        subscription = SubscriptionService(session, gateway).cancel_subscription(
            subscription_id,
            current_user.organization_id,
            cancel_at_period_end=cancel_at_period_end,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return SubscriptionRead.model_validate(subscription)


# ---------------------------------------------------------------------------
# Token purchase, invoices, summary
# ---------------------------------------------------------------------------
@router.post("/charge-tokens", response_model=TokenPurchaseRead, status_code=status.HTTP_201_CREATED)
def charge_tokens(
    payload: TokenPurchaseCreate,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    session: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> TokenPurchaseRead:
    try:
        attempt = BillingService(session, gateway).charge_tokens(
            current_user.organization_id,
            payload.plan_id,
            payment_method_id=payload.payment_method_id,
            idempotency_key=idempotency_key,
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return TokenPurchaseRead(
        invoice=InvoiceRead.model_validate(attempt.invoice),
        payment_status=attempt.outcome,
        charge_id=attempt.charge_id,
        duplicate=attempt.duplicate,
    )


@router.get("/invoices", response_model=List[InvoiceRead])
def list_invoices(
    limit: int | None = Query(default=None, ge=1, le=200),
    invoice_status: InvoiceStatus | None = Query(default=None, alias="status"),
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> List[InvoiceRead]:
    invoices = BillingService(session).list_invoices(
        current_user.organization_id,
        limit=limit,
        status=invoice_status,
    )
    return [InvoiceRead.model_validate(invoice) for invoice in invoices]


@router.get("/invoices/{invoice_id}/payments", response_model=List[PaymentRead])
def list_invoice_payments(
    invoice_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> List[PaymentRead]:
    try:
        payments = BillingService(session).list_payments(current_user.organization_id, invoice_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return [PaymentRead.model_validate(payment) for payment in payments]


@router.get("/summary", response_model=BillingSummaryRead)
def get_billing_summary(
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(*_MANAGERS)),
) -> BillingSummaryRead:
    data = BillingService(session).get_billing_summary(current_user.organization_id)
    return BillingSummaryRead.model_validate(data)


# ---------------------------------------------------------------------------
# Gateway webhook
# ---------------------------------------------------------------------------
@router.post("/webhook", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def gateway_webhook(request: Request, session: Session = Depends(get_db)) -> WebhookAck:
    """Signature failures are rejected with 400; every other outcome is acknowledged."""
    raw_body = await request.body()
    signature = request.headers.get("X-Gateway-Signature")
    reconciler = WebhookReconciler(session, settings.gateway_config())
    try:
        result = reconciler.handle(raw_body, signature)
    except WebhookSignatureError as exc:
        logger.warning("Webhook rejected reason=%s", exc.message)
        raise http_error(exc) from exc
    except Exception:
        session.rollback()
        logger.exception("Webhook handling failed")
        return WebhookAck(status=WebhookOutcome.ERROR)
    return WebhookAck(status=result.outcome, event_id=result.event_id)
