from __future__ import annotations

import itertools
import json
import os
import uuid
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine

from tenantbill.api.deps import get_db, get_gateway
from tenantbill.core.config import GatewayConfig, settings
from tenantbill.main import app
from tenantbill.models.billing import PaymentMethod, Plan
from tenantbill.models.organization import Organization
from tenantbill.models.user import User, UserRole
from tenantbill.services.gateway import GatewayClient, sign_webhook_payload
from tenantbill.services.plans import PlanService
from tenantbill.utils.security import create_access_token

WEBHOOK_SECRET = "whsec_testsecret"


class FakeGateway:
    """In-memory stand-in for the gateway REST API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.charge_status = "successful"
        self.charge_id: str | None = None
        self.decline = False
        self.fail_with: int | None = None
        self.fail_times = 0
        self.idempotency_keys: list[str | None] = []
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.calls.append((request.method, request.url.path, body))
        self.idempotency_keys.append(request.headers.get("Idempotency-Key"))

        if self.fail_with and self.fail_times > 0:
            self.fail_times -= 1
            return httpx.Response(self.fail_with, json={"message": "upstream unavailable"})

        path = request.url.path
        if request.method == "POST" and path == "/tokens":
            return httpx.Response(201, json={"id": f"tok_{next(self._ids)}"})
        if request.method == "POST" and path == "/charges":
            if self.decline:
                return httpx.Response(402, json={"code": "card_declined", "message": "Card was declined"})
            charge_id = self.charge_id or f"ch_{next(self._ids)}"
            return httpx.Response(
                201,
                json={
                    "id": charge_id,
                    "status": self.charge_status,
                    "amount": body.get("amount"),
                    "currency": body.get("currency"),
                    "metadata": body.get("metadata"),
                },
            )
        if request.method == "POST" and path.endswith("/refunds"):
            return httpx.Response(201, json={"id": f"rf_{next(self._ids)}", "status": "pending"})
        if request.method == "POST" and path == "/subscriptions":
            return httpx.Response(201, json={"id": f"gsub_{next(self._ids)}", "status": "current"})
        if path.startswith("/subscriptions/"):
            status = "canceled" if request.method == "DELETE" else "current"
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "status": status})
        if request.method == "GET" and path.startswith("/charges/"):
            return httpx.Response(
                200,
                json={"id": path.rsplit("/", 1)[-1], "status": self.charge_status, "amount": 980, "currency": "JPY"},
            )
        return httpx.Response(404, json={"message": "not found"})

    def charge_calls(self) -> list[dict[str, Any]]:
        return [body for method, path, body in self.calls if method == "POST" and path == "/charges"]


def gateway_config(**overrides: Any) -> GatewayConfig:
    values: dict[str, Any] = {
        "base_url": "https://gateway.test",
        "secret": "sk_test",
        "webhook_secret": WEBHOOK_SECRET,
        "timeout_seconds": 5.0,
        "max_retries": 3,
        "retry_wait_seconds": 0.0,
    }
    values.update(overrides)
    return GatewayConfig(**values)


@pytest.fixture()
def db_engine(tmp_path):
    test_database_url = os.getenv("TEST_DATABASE_URL")
    if not test_database_url:
        db_path = tmp_path / f"test_{uuid.uuid4().hex}.db"
        test_database_url = f"sqlite:///{db_path}"

    engine = create_engine(test_database_url, connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(bind=engine)

    def override_dependency():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = override_dependency

    yield engine

    app.dependency_overrides.pop(get_db, None)
    SQLModel.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def db_session(db_engine) -> Session:
    with Session(db_engine) as session:
        yield session


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def gateway(fake_gateway) -> GatewayClient:
    client = GatewayClient(gateway_config(), transport=httpx.MockTransport(fake_gateway.handler))
    yield client
    client.close()


@pytest.fixture()
def webhook_secret(monkeypatch) -> str:
    monkeypatch.setattr(settings, "gateway_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "gateway_webhook_tolerance_seconds", 300)
    return WEBHOOK_SECRET


@pytest.fixture()
def client(db_engine, gateway, webhook_secret) -> TestClient:
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture()
def plans(db_session) -> dict[str, Plan]:
    return {plan.name: plan for plan in PlanService(db_session).ensure_default_plans()}


@pytest.fixture()
def organization(db_session) -> Organization:
    return make_organization(db_session)


@pytest.fixture()
def admin_user(db_session, organization) -> User:
    return make_user(db_session, organization, UserRole.ADMIN)


def make_organization(session: Session, name: str = "Salon Test") -> Organization:
    organization = Organization(name=name, slug=f"salon-{uuid.uuid4().hex[:8]}")
    session.add(organization)
    session.commit()
    session.refresh(organization)
    return organization


def make_user(session: Session, organization: Organization, role: UserRole = UserRole.ADMIN) -> User:
    user = User(
        organization_id=organization.id,
        email=f"{uuid.uuid4().hex[:8]}@salon.test",
        full_name="Test User",
        profile=role.value,
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def make_payment_method(
    session: Session,
    organization: Organization,
    *,
    is_default: bool = True,
    token: str | None = None,
) -> PaymentMethod:
    method = PaymentMethod(
        organization_id=organization.id,
        last4="4242",
        brand="visa",
        expiry_month=12,
        expiry_year=2030,
        cardholder="TARO YAMADA",
        is_default=is_default,
        gateway_token_id=token or f"tok_{uuid.uuid4().hex[:8]}",
    )
    session.add(method)
    session.commit()
    session.refresh(method)
    return method


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(str(user.id), str(user.organization_id))
    return {"Authorization": f"Bearer {token}"}


def signed_webhook(event: dict[str, Any], secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
    raw = json.dumps(event).encode("utf-8")
    return raw, {"X-Gateway-Signature": sign_webhook_payload(raw, secret), "Content-Type": "application/json"}


def charge_event(
    event_type: str,
    charge_id: str,
    *,
    event_id: str | None = None,
    metadata: dict[str, str] | None = None,
    **data: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": charge_id, "metadata": metadata or {}}
    payload.update(data)
    return {"id": event_id or f"evt_{uuid.uuid4().hex[:12]}", "type": event_type, "created": 1760000000, "data": payload}
