from __future__ import annotations

from datetime import datetime

import pytest
from fastapi import status
from sqlmodel import select

from tenantbill.core.config import settings
from tenantbill.core.errors import ConflictError, GatewayDeclinedError, NoDefaultPaymentMethodError
from tenantbill.models.billing import Invoice, InvoiceStatus, InvoiceType, SubscriptionStatus
from tenantbill.services.subscriptions import SubscriptionService, prorated_amount
from tenantbill.utils.dates import add_months, days_remaining
from tests.conftest import auth_headers, make_payment_method

JAN_1 = datetime(2025, 1, 1)
JAN_17 = datetime(2025, 1, 17)


def _one_time_invoices(session, organization_id) -> list[Invoice]:
    session.expire_all()
    return list(
        session.exec(
            select(Invoice).where(
                Invoice.organization_id == organization_id,
                Invoice.type == InvoiceType.ONE_TIME.value,
            )
        ).all()
    )


@pytest.fixture()
def standard_subscription(db_session, organization, plans, gateway):
    make_payment_method(db_session, organization)
    return SubscriptionService(db_session, gateway).create_subscription(
        organization.id, plans["standard"].id, now=JAN_1
    )


def test_calendar_helpers():
    assert add_months(datetime(2025, 1, 31)) == datetime(2025, 2, 28)
    assert add_months(datetime(2024, 1, 31)) == datetime(2024, 2, 29)
    assert add_months(datetime(2025, 12, 15)) == datetime(2026, 1, 15)
    assert days_remaining(datetime(2025, 2, 1), JAN_17) == 15
    assert days_remaining(datetime(2025, 2, 1), datetime(2025, 1, 31, 12)) == 1
    assert days_remaining(datetime(2025, 2, 1), datetime(2025, 2, 3)) == 0


def test_prorated_amount_rounds_half_up():
    assert prorated_amount(9800, 18000, 15) == 4100
    assert prorated_amount(9800, 18000, 0) == 0
    assert prorated_amount(1000, 1001, 15) == 1


def test_upgrade_invoices_prorated_difference(db_session, organization, plans, gateway, fake_gateway, standard_subscription):
    subscription = SubscriptionService(db_session, gateway).change_plan(
        standard_subscription.id, organization.id, plans["professional"].id, now=JAN_17
    )

    assert subscription.plan_id == plans["professional"].id
    assert subscription.details["previous_plan"] == "standard"
    assert subscription.current_period_end == datetime(2025, 2, 1)

    [invoice] = _one_time_invoices(db_session, organization.id)
    assert invoice.total == 4100
    assert invoice.status == InvoiceStatus.PAID.value
    assert invoice.subscription_id == subscription.id
    assert invoice.due_date == datetime(2025, 1, 18)
    assert invoice.details["kind"] == "upgrade"
    assert [c["amount"] for c in fake_gateway.charge_calls()] == [9800, 4100]


def test_downgrade_issues_no_invoice(db_session, organization, plans, gateway, fake_gateway):
    make_payment_method(db_session, organization)
    service = SubscriptionService(db_session, gateway)
    subscription = service.create_subscription(organization.id, plans["professional"].id, now=JAN_1)

    subscription = service.change_plan(subscription.id, organization.id, plans["standard"].id, now=JAN_17)

    assert subscription.plan_id == plans["standard"].id
    assert _one_time_invoices(db_session, organization.id) == []
    assert len(fake_gateway.charge_calls()) == 1


def test_upgrade_without_default_method_changes_nothing(db_session, organization, plans, gateway, standard_subscription):
    service = SubscriptionService(db_session, gateway)
    method = service.payment_methods.find_default(organization.id)
    method.is_default = False
    db_session.add(method)
    db_session.commit()

    with pytest.raises(NoDefaultPaymentMethodError):
        service.change_plan(standard_subscription.id, organization.id, plans["professional"].id, now=JAN_17)

    db_session.refresh(standard_subscription)
    assert standard_subscription.plan_id == plans["standard"].id
    assert _one_time_invoices(db_session, organization.id) == []


def test_upgrade_decline_keeps_plan_and_leaves_invoice_open(
    db_session, organization, plans, gateway, fake_gateway, standard_subscription
):
    fake_gateway.decline = True
    service = SubscriptionService(db_session, gateway)

    with pytest.raises(GatewayDeclinedError):
        service.change_plan(standard_subscription.id, organization.id, plans["professional"].id, now=JAN_17)

    db_session.refresh(standard_subscription)
    assert standard_subscription.plan_id == plans["professional"].id
    assert standard_subscription.status == SubscriptionStatus.ACTIVE.value
    [invoice] = _one_time_invoices(db_session, organization.id)
    assert invoice.status == InvoiceStatus.SENT.value


def test_same_plan_is_a_conflict(db_session, organization, plans, gateway, standard_subscription):
    with pytest.raises(ConflictError):
        SubscriptionService(db_session, gateway).change_plan(
            standard_subscription.id, organization.id, plans["standard"].id
        )


def test_change_plan_endpoint(client, organization, admin_user, plans, standard_subscription):
    resp = client.patch(
        f"{settings.api_v1_str}/billing/subscription/{standard_subscription.id}",
        json={"plan_id": str(plans["enterprise"].id)},
        headers=auth_headers(admin_user),
    )
    assert resp.status_code == status.HTTP_200_OK, resp.text
    assert resp.json()["plan_id"] == str(plans["enterprise"].id)
