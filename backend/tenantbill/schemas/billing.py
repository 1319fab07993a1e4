from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from tenantbill.models.billing import BillingCycle, PaymentStatus, PlanKind, SummaryPeriod, WebhookOutcome
from tenantbill.schemas.common import IDModel, Timestamped


class PlanBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    kind: PlanKind = PlanKind.SUBSCRIPTION
    price: int = Field(ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    features: list[str] = Field(default_factory=list)
    max_stylists: int | None = None
    max_clients: int | None = None
    monthly_tokens: int | None = None
    token_amount: int | None = None
    display_order: int = 0


class PlanCreate(PlanBase):
    pass


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    price: int | None = Field(default=None, ge=0)
    billing_cycle: BillingCycle | None = None
    features: list[str] | None = None
    max_stylists: int | None = None
    max_clients: int | None = None
    monthly_tokens: int | None = None
    token_amount: int | None = None
    is_active: bool | None = None
    display_order: int | None = None


class PlanRead(IDModel, Timestamped):
    name: str
    kind: str
    price: int
    billing_cycle: str
    features: list[str]
    max_stylists: int | None
    max_clients: int | None
    monthly_tokens: int | None
    token_amount: int | None
    is_active: bool
    display_order: int


class PaymentMethodCreate(BaseModel):
    cardholder: str = Field(min_length=1, max_length=120)
    card_number: str = Field(min_length=12, max_length=23)
    exp_month: str = Field(pattern=r"^(0?[1-9]|1[0-2])$")
    exp_year: str = Field(pattern=r"^\d{2}(\d{2})?$")
    cvv: str = Field(pattern=r"^\d{3,4}$")
    email: EmailStr
    is_default: bool = False

    @field_validator("card_number")
    @classmethod
    def _digits_only(cls, value: str) -> str:
        digits = value.replace(" ", "").replace("-", "")
        if not digits.isdigit():
            raise ValueError("Card number must contain digits only")
        return digits


class PaymentMethodRead(IDModel, Timestamped):
    organization_id: UUID
    type: str
    last4: str | None
    brand: str | None
    expiry_month: int | None
    expiry_year: int | None
    cardholder: str | None
    is_default: bool


class SubscriptionCreate(BaseModel):
    plan_id: UUID
    payment_method_id: UUID | None = None
    trial_days: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] | None = None


class SubscriptionUpdate(BaseModel):
    plan_id: UUID


class SubscriptionRead(IDModel, Timestamped):
    organization_id: UUID
    plan_id: UUID
    status: str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    trial_ends_at: datetime | None
    canceled_at: datetime | None
    external_subscription_id: str | None


class InvoiceRead(IDModel, Timestamped):
    invoice_number: str
    organization_id: UUID
    subscription_id: UUID | None
    payment_method_id: UUID | None
    type: str
    status: str
    items: list[dict[str, Any]]
    subtotal: int
    tax: int
    total: int
    currency: str
    issue_date: datetime
    due_date: datetime
    paid_at: datetime | None
    period_start: datetime | None
    period_end: datetime | None
    external_charge_id: str | None
    details: dict[str, Any] | None = None


class PaymentRead(IDModel, Timestamped):
    invoice_id: UUID
    payment_method_id: UUID | None
    amount: int
    status: str
    failure_reason: str | None
    external_charge_id: str | None


class TokenPurchaseCreate(BaseModel):
    plan_id: UUID
    payment_method_id: UUID | None = None


class TokenPurchaseRead(BaseModel):
    invoice: InvoiceRead
    payment_status: PaymentStatus
    charge_id: str | None = None
    duplicate: bool = False


class BillingSummaryRead(BaseModel):
    organization_id: UUID
    currency: str
    total_revenue: int
    subscription_revenue: int
    token_revenue: int
    outstanding_amount: int
    overdue_amount: int
    overdue_count: int
    pending_invoices: int
    successful_payments_this_month: int
    failed_payments_this_month: int


class WebhookAck(BaseModel):
    status: WebhookOutcome
    event_id: str | None = None


class InvoiceDetailRead(InvoiceRead):
    organization_name: str | None = None
    payments: list[PaymentRead] = Field(default_factory=list)


class InvoicePageRead(BaseModel):
    items: list[InvoiceRead]
    total: int
    page: int
    pages: int
    limit: int


class PlatformSummaryRead(BaseModel):
    period: SummaryPeriod
    period_start: datetime
    period_end: datetime
    organization_id: UUID | None = None
    currency: str
    paid_amount: int
    outstanding_amount: int
    overdue_amount: int
    overdue_count: int
    monthly_recurring_revenue: int
    growth_rate: float
    payment_success_rate: float
    successful_payments: int
    failed_payments: int
    pending_payments: int
