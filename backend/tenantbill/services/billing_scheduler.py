from datetime import datetime

from sqlmodel import Session

from tenantbill.core.config import settings
from tenantbill.core.logging_setup import logger
from tenantbill.services.gateway import GatewayClient
from tenantbill.services.subscriptions import RenewalReport, SubscriptionService

# Periodic renewal of subscriptions whose period ends inside the renewal window


def run_renewal_sweep(
    session: Session,
    gateway: GatewayClient | None = None,
    now: datetime | None = None,
) -> RenewalReport:
    owns_gateway = gateway is None
    client = gateway or GatewayClient(settings.gateway_config())
    try:
        report = SubscriptionService(session, client).process_expiring_subscriptions(now=now)
    finally:
        if owns_gateway:
            client.close()
    if report.failed:
        logger.warning("Renewal sweep had failures count=%s ids=%s", len(report.failed), report.failed)
    return report
