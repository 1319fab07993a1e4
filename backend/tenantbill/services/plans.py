from __future__ import annotations

from typing import Any, Iterable, Mapping
from uuid import UUID

from sqlmodel import Session, select

from tenantbill.core.errors import NotFoundError, ValidationError
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import BillingCycle, Plan, PlanKind

UNLIMITED = -1

_DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "name": "standard",
        "kind": PlanKind.SUBSCRIPTION.value,
        "price": 9800,
        "billing_cycle": BillingCycle.MONTHLY.value,
        "max_stylists": 3,
        "max_clients": 300,
        "monthly_tokens": 2_000_000,
        "features": ["basic_support"],
        "display_order": 1,
    },
    {
        "name": "professional",
        "kind": PlanKind.SUBSCRIPTION.value,
        "price": 18000,
        "billing_cycle": BillingCycle.MONTHLY.value,
        "max_stylists": 10,
        "max_clients": UNLIMITED,
        "monthly_tokens": 5_000_000,
        "features": ["standard_support"],
        "display_order": 2,
    },
    {
        "name": "enterprise",
        "kind": PlanKind.SUBSCRIPTION.value,
        "price": 36000,
        "billing_cycle": BillingCycle.MONTHLY.value,
        "max_stylists": UNLIMITED,
        "max_clients": UNLIMITED,
        "monthly_tokens": UNLIMITED,
        "features": ["premium_support"],
        "display_order": 3,
    },
    {
        "name": "token-standard",
        "kind": PlanKind.TOKEN_PACK.value,
        "price": 980,
        "billing_cycle": BillingCycle.ONE_TIME.value,
        "token_amount": 1_000_000,
        "display_order": 10,
    },
    {
        "name": "token-premium",
        "kind": PlanKind.TOKEN_PACK.value,
        "price": 8000,
        "billing_cycle": BillingCycle.ONE_TIME.value,
        "token_amount": 10_000_000,
        "display_order": 11,
    },
)

_LIMIT_FIELDS = ("max_stylists", "max_clients", "monthly_tokens")


def _valid_limit(value: int | None) -> bool:
    return value is not None and (value > 0 or value == UNLIMITED)


def validate_plan_fields(data: Mapping[str, Any]) -> None:
    """Kind-specific checks shared by create and update."""
    kind = data.get("kind")
    if kind not in {k.value for k in PlanKind}:
        raise ValidationError("Unknown plan kind.", details={"kind": kind})
    price = data.get("price")
    if price is None or price < 0:
        raise ValidationError("Plan price must be zero or positive.")
    if kind == PlanKind.SUBSCRIPTION.value:
        missing = [name for name in _LIMIT_FIELDS if not _valid_limit(data.get(name))]
        if missing:
            raise ValidationError(
                "Subscription plans require stylist, client and token limits.",
                details={"fields": missing},
            )
        if data.get("billing_cycle") == BillingCycle.ONE_TIME.value:
            raise ValidationError("Subscription plans must bill monthly or yearly.")
    else:
        token_amount = data.get("token_amount")
        if not token_amount or token_amount <= 0:
            raise ValidationError("Token packs require a positive token amount.")


class PlanService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_plans(self, kind: PlanKind | None = None, *, include_inactive: bool = False) -> Iterable[Plan]:
        statement = select(Plan)
        if kind:
            statement = statement.where(Plan.kind == kind.value)
        if not include_inactive:
            statement = statement.where(Plan.is_active.is_(True))
        return self.session.exec(statement.order_by(Plan.display_order, Plan.price)).all()

    def find_active_by_kind(self, kind: PlanKind) -> Iterable[Plan]:
        return self.list_plans(kind)

    def get_plan(self, plan_id: UUID) -> Plan:
        plan = self.session.get(Plan, plan_id)
        if not plan:
            raise NotFoundError("Plan not found.", details={"plan_id": str(plan_id)})
        return plan

    def get_active_plan(self, plan_id: UUID, kind: PlanKind) -> Plan:
        plan = self.get_plan(plan_id)
        if not plan.is_active:
            raise ValidationError("Plan is not available.", details={"plan_id": str(plan_id)})
        if plan.kind != kind.value:
            raise ValidationError(
                f"Plan is not a {kind.value} plan.",
                details={"plan_id": str(plan_id), "kind": plan.kind},
            )
        return plan

    def create_plan(self, data: Mapping[str, Any]) -> Plan:
        payload = dict(data)
        validate_plan_fields(payload)
        plan = Plan(**payload)
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        logger.info("Plan created plan_id=%s name=%s kind=%s", plan.id, plan.name, plan.kind)
        return plan

    def update_plan(self, plan_id: UUID, data: Mapping[str, Any]) -> Plan:
        plan = self.get_plan(plan_id)
        changes = {key: value for key, value in data.items() if key != "kind"}
        merged = plan.model_dump()
        merged.update(changes)
        validate_plan_fields(merged)
        for field, value in changes.items():
            setattr(plan, field, value)
        plan.touch()
        self.session.add(plan)
        self.session.commit()
        self.session.refresh(plan)
        logger.info("Plan updated plan_id=%s fields=%s", plan.id, sorted(changes))
        return plan

    def deactivate_plan(self, plan_id: UUID) -> Plan:
        plan = self.get_plan(plan_id)
        if plan.is_active:
            plan.is_active = False
            plan.touch()
            self.session.add(plan)
            self.session.commit()
            self.session.refresh(plan)
            logger.info("Plan deactivated plan_id=%s", plan.id)
        return plan

    def ensure_default_plans(self) -> list[Plan]:
        """Idempotently create the default catalog."""
        existing = {p.name for p in self.session.exec(select(Plan)).all()}
        created: list[Plan] = []
        for spec in _DEFAULT_PLANS:
            if spec["name"] in existing:
                continue
            plan = Plan(**spec)
            self.session.add(plan)
            created.append(plan)
        if created:
            self.session.commit()
            for plan in created:
                self.session.refresh(plan)
            logger.info("Default plans seeded count=%s", len(created))
        return list(self.list_plans())

    @staticmethod
    def plan_details(plan: Plan, currency: str) -> dict[str, Any]:
        return {
            "name": plan.name,
            "price": plan.price,
            "currency": currency,
            "features": {
                "max_stylists": plan.max_stylists,
                "max_clients": plan.max_clients,
                "monthly_tokens": plan.monthly_tokens,
                "features": list(plan.features or []),
            },
        }
