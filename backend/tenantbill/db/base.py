# noqa: F401 to ensure models are imported for metadata
from tenantbill.models.billing import (
    Invoice,
    PaymentHistory,
    PaymentMethod,
    Plan,
    Subscription,
    WebhookEvent,
)
from tenantbill.models.organization import Organization
from tenantbill.models.user import User

__all__ = [
    "Invoice",
    "PaymentHistory",
    "PaymentMethod",
    "Plan",
    "Subscription",
    "WebhookEvent",
    "Organization",
    "User",
]
