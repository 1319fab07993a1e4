from tenantbill.services.billing import BillingService
from tenantbill.services.gateway import GatewayClient
from tenantbill.services.invoices import InvoiceLedger
from tenantbill.services.payment_methods import PaymentMethodService
from tenantbill.services.plans import PlanService
from tenantbill.services.subscriptions import SubscriptionService
from tenantbill.services.webhooks import WebhookReconciler

__all__ = [
    "BillingService",
    "GatewayClient",
    "InvoiceLedger",
    "PaymentMethodService",
    "PlanService",
    "SubscriptionService",
    "WebhookReconciler",
]
