from __future__ import annotations

import pytest
from fastapi import status
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from tenantbill.core.config import settings
from tenantbill.core.errors import BillingPermissionError, NoDefaultPaymentMethodError
from tenantbill.models.billing import PaymentMethod
from tenantbill.models.user import UserRole
from tenantbill.services.gateway import CardDetails
from tenantbill.services.payment_methods import PaymentMethodService, detect_card_brand
from tests.conftest import auth_headers, make_organization, make_payment_method, make_user


def _card(number: str = "4242424242424242") -> CardDetails:
    return CardDetails(cardholder="TARO YAMADA", card_number=number, exp_month="12", exp_year="2030", cvv="123")


def _defaults(session, organization_id) -> list[PaymentMethod]:
    return session.exec(
        select(PaymentMethod).where(
            PaymentMethod.organization_id == organization_id,
            PaymentMethod.is_default.is_(True),
        )
    ).all()


@pytest.mark.parametrize(
    ("number", "brand"),
    [
        ("4111 1111 1111 1111", "visa"),
        ("5555555555554444", "mastercard"),
        ("378282246310005", "amex"),
        ("3530111333300000", "jcb"),
        ("30569309025904", "diners"),
        ("6011111111111117", "unknown"),
    ],
)
def test_detect_card_brand(number, brand):
    assert detect_card_brand(number) == brand


def test_first_method_becomes_default(db_session, organization, gateway, fake_gateway):
    service = PaymentMethodService(db_session, gateway)
    method = service.create(organization.id, _card(), email="owner@salon.test")

    assert method.is_default is True
    assert method.last4 == "4242"
    assert method.brand == "visa"
    assert method.gateway_token_id.startswith("tok_")
    token_calls = [body for verb, path, body in fake_gateway.calls if path == "/tokens"]
    assert token_calls[0]["email"] == "owner@salon.test"


def test_new_default_clears_previous(db_session, organization, gateway):
    service = PaymentMethodService(db_session, gateway)
    first = service.create(organization.id, _card(), email="owner@salon.test")
    second = service.create(organization.id, _card("5555555555554444"), email="owner@salon.test")
    assert second.is_default is False

    third = service.create(organization.id, _card("378282246310005"), email="owner@salon.test", is_default=True)
    db_session.refresh(first)

    assert third.is_default is True
    assert first.is_default is False
    assert [m.id for m in _defaults(db_session, organization.id)] == [third.id]


def test_set_default_keeps_single_default(db_session, organization, gateway):
    service = PaymentMethodService(db_session, gateway)
    first = service.create(organization.id, _card(), email="owner@salon.test")
    second = service.create(organization.id, _card("5555555555554444"), email="owner@salon.test")

    service.set_default(second.id, organization.id)
    db_session.refresh(first)

    assert first.is_default is False
    assert service.find_default(organization.id).id == second.id
    assert len(_defaults(db_session, organization.id)) == 1


def test_deleting_default_promotes_oldest_remaining(db_session, organization, gateway):
    service = PaymentMethodService(db_session, gateway)
    first = service.create(organization.id, _card(), email="owner@salon.test")
    second = service.create(organization.id, _card("5555555555554444"), email="owner@salon.test")
    service.create(organization.id, _card("378282246310005"), email="owner@salon.test")

    service.delete(first.id, organization.id)

    assert service.find_default(organization.id).id == second.id
    assert len(list(service.list_payment_methods(organization.id))) == 2


def test_deleting_last_method_leaves_no_default(db_session, organization, gateway):
    service = PaymentMethodService(db_session, gateway)
    only = service.create(organization.id, _card(), email="owner@salon.test")
    service.delete(only.id, organization.id)

    assert service.find_default(organization.id) is None
    with pytest.raises(NoDefaultPaymentMethodError):
        service.require_default(organization.id)


def test_cross_organization_access_is_rejected(db_session, organization, gateway):
    other = make_organization(db_session, "Other Salon")
    foreign = make_payment_method(db_session, other)

    with pytest.raises(BillingPermissionError):
        PaymentMethodService(db_session).set_default(foreign.id, organization.id)


def test_database_rejects_second_default(db_session, organization):
    make_payment_method(db_session, organization, is_default=True)
    with pytest.raises(IntegrityError):
        make_payment_method(db_session, organization, is_default=True)
    db_session.rollback()


def test_register_card_endpoint(client, admin_user):
    payload = {
        "cardholder": "TARO YAMADA",
        "card_number": "4242 4242 4242 4242",
        "exp_month": "12",
        "exp_year": "2030",
        "cvv": "123",
        "email": "owner@salon-example.com",
    }
    resp = client.post(f"{settings.api_v1_str}/billing/token", json=payload, headers=auth_headers(admin_user))
    assert resp.status_code == status.HTTP_201_CREATED, resp.text
    body = resp.json()
    assert body["is_default"] is True
    assert body["last4"] == "4242"
    assert "gateway_token_id" not in body

    listed = client.get(f"{settings.api_v1_str}/billing/payment-methods", headers=auth_headers(admin_user))
    assert [m["id"] for m in listed.json()] == [body["id"]]


def test_payment_method_endpoints_require_manager_role(client, db_session, organization):
    stylist = make_user(db_session, organization, UserRole.STYLIST)
    resp = client.get(f"{settings.api_v1_str}/billing/payment-methods", headers=auth_headers(stylist))
    assert resp.status_code == status.HTTP_403_FORBIDDEN


def test_delete_endpoint(client, db_session, organization, admin_user):
    method_id = make_payment_method(db_session, organization).id
    resp = client.delete(
        f"{settings.api_v1_str}/billing/payment-methods/{method_id}",
        headers=auth_headers(admin_user),
    )
    assert resp.status_code == status.HTTP_204_NO_CONTENT
    db_session.expire_all()
    assert db_session.get(PaymentMethod, method_id) is None
