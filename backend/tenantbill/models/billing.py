from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, Index, text
from sqlmodel import Field

from tenantbill.models.base import TimestampedModel, UUIDModel


class PlanKind(str, Enum):
    SUBSCRIPTION = "subscription"
    TOKEN_PACK = "token_pack"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    ONE_TIME = "one_time"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK = "bank"


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


OPEN_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
)


class InvoiceType(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one-time"
    TOKEN = "token"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    CANCELED = "canceled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class SummaryPeriod(str, Enum):
    CURRENT_MONTH = "current_month"
    LAST_MONTH = "last_month"
    LAST_3_MONTHS = "last_3_months"
    LAST_6_MONTHS = "last_6_months"
    LAST_YEAR = "last_year"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"
    ERROR = "error"


class Plan(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "plans"

    name: str
    kind: str = Field(default=PlanKind.SUBSCRIPTION.value, index=True)
    price: int
    billing_cycle: str = Field(default=BillingCycle.MONTHLY.value)
    features: list[str] = Field(default_factory=list, sa_type=JSON)
    # -1 means unlimited
    max_stylists: int | None = Field(default=None)
    max_clients: int | None = Field(default=None)
    monthly_tokens: int | None = Field(default=None)
    token_amount: int | None = Field(default=None)
    is_active: bool = Field(default=True, index=True)
    display_order: int = Field(default=0)


class PaymentMethod(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payment_methods"
    __table_args__ = (
        Index(
            "uq_payment_methods_single_default",
            "organization_id",
            unique=True,
            sqlite_where=text("is_default = 1"),
            postgresql_where=text("is_default"),
        ),
    )

    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    type: str = Field(default=PaymentMethodType.CARD.value)
    last4: str | None = Field(default=None, max_length=4)
    brand: str | None = Field(default=None)
    expiry_month: int | None = Field(default=None)
    expiry_year: int | None = Field(default=None)
    cardholder: str | None = Field(default=None)
    is_default: bool = Field(default=False)
    gateway_token_id: str | None = Field(default=None, unique=True, index=True)


class Subscription(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_single_open",
            "organization_id",
            unique=True,
            sqlite_where=text("status != 'canceled'"),
            postgresql_where=text("status != 'canceled'"),
        ),
    )

    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    plan_id: UUID = Field(foreign_key="plans.id")
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, index=True)
    current_period_start: datetime
    current_period_end: datetime = Field(index=True)
    cancel_at_period_end: bool = Field(default=False)
    trial_ends_at: datetime | None = Field(default=None)
    canceled_at: datetime | None = Field(default=None)
    external_subscription_id: str | None = Field(default=None, unique=True, index=True)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)


class Invoice(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "invoices"

    invoice_number: str = Field(unique=True, index=True)
    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    subscription_id: UUID | None = Field(default=None, foreign_key="subscriptions.id", index=True)
    payment_method_id: UUID | None = Field(default=None, foreign_key="payment_methods.id", ondelete="SET NULL")
    type: str = Field(default=InvoiceType.SUBSCRIPTION.value)
    status: str = Field(default=InvoiceStatus.DRAFT.value, index=True)
    items: list[dict] = Field(default_factory=list, sa_type=JSON)
    subtotal: int = Field(default=0)
    tax: int = Field(default=0)
    total: int = Field(default=0)
    currency: str = Field(default="JPY")
    issue_date: datetime
    due_date: datetime = Field(index=True)
    paid_at: datetime | None = Field(default=None)
    period_start: datetime | None = Field(default=None)
    period_end: datetime | None = Field(default=None)
    # Idempotency key for payment application
    external_charge_id: str | None = Field(default=None, unique=True, index=True)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)


class PaymentHistory(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "payment_history"

    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    invoice_id: UUID = Field(foreign_key="invoices.id", index=True)
    payment_method_id: UUID | None = Field(default=None, foreign_key="payment_methods.id", ondelete="SET NULL")
    amount: int
    status: str = Field(default=PaymentStatus.PENDING.value, index=True)
    failure_reason: str | None = Field(default=None)
    external_charge_id: str | None = Field(default=None, unique=True, index=True)
    external_transaction_id: str | None = Field(default=None, index=True)


class WebhookEvent(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "webhook_events"

    event_id: str = Field(unique=True, index=True)
    event_type: str = Field(index=True)
    charge_id: str | None = Field(default=None, index=True)
    outcome: str = Field(default=WebhookOutcome.PROCESSED.value, index=True)
    payload: dict | None = Field(default_factory=dict, sa_type=JSON)
    error: str | None = Field(default=None)
    processed_at: datetime | None = Field(default=None)
