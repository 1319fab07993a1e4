from __future__ import annotations

import re
from typing import Iterable
from uuid import UUID

from sqlmodel import Session, select

from tenantbill.core.errors import BillingPermissionError, NoDefaultPaymentMethodError, NotFoundError
from tenantbill.core.logging_setup import logger
from tenantbill.models.billing import PaymentMethod, PaymentMethodType
from tenantbill.services.gateway import CardDetails, GatewayClient

_BRAND_PATTERNS = (
    ("visa", re.compile(r"^4")),
    ("mastercard", re.compile(r"^5[1-5]")),
    ("amex", re.compile(r"^3[47]")),
    ("jcb", re.compile(r"^35")),
    ("diners", re.compile(r"^30[0-5]")),
)


def detect_card_brand(card_number: str) -> str:
    digits = re.sub(r"\s", "", card_number)
    for brand, pattern in _BRAND_PATTERNS:
        if pattern.match(digits):
            return brand
    return "unknown"


class PaymentMethodService:
    """Tokenized payment instruments with a single default per organization."""

    def __init__(self, session: Session, gateway: GatewayClient | None = None) -> None:
        self.session = session
        self.gateway = gateway

    def list_payment_methods(self, organization_id: UUID) -> Iterable[PaymentMethod]:
        return self.session.exec(
            select(PaymentMethod)
            .where(PaymentMethod.organization_id == organization_id)
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        ).all()

    def get(self, payment_method_id: UUID, organization_id: UUID) -> PaymentMethod:
        method = self.session.get(PaymentMethod, payment_method_id)
        if not method:
            raise NotFoundError("Payment method not found.", details={"payment_method_id": str(payment_method_id)})
        if method.organization_id != organization_id:
            raise BillingPermissionError("Payment method belongs to another organization.")
        return method

    def find_default(self, organization_id: UUID) -> PaymentMethod | None:
        return self.session.exec(
            select(PaymentMethod).where(
                PaymentMethod.organization_id == organization_id,
                PaymentMethod.is_default.is_(True),
            )
        ).first()

    def require_default(self, organization_id: UUID) -> PaymentMethod:
        method = self.find_default(organization_id)
        if not method:
            logger.warning("No default payment method organization_id=%s", organization_id)
            raise NoDefaultPaymentMethodError(
                "No default payment method is set for this organization.",
                details={"organization_id": str(organization_id)},
            )
        return method

    def resolve(self, organization_id: UUID, payment_method_id: UUID | None) -> PaymentMethod:
        """Explicit method when given, otherwise the organization default."""
        if payment_method_id:
            return self.get(payment_method_id, organization_id)
        return self.require_default(organization_id)

    def create(
        self,
        organization_id: UUID,
        card: CardDetails,
        *,
        email: str,
        is_default: bool = False,
    ) -> PaymentMethod:
        if self.gateway is None:
            raise RuntimeError("PaymentMethodService.create needs a gateway client")
        logger.info("Creating payment method organization_id=%s", organization_id)
        token = self.gateway.tokenize(card, email=email)

        has_methods = self.session.exec(
            select(PaymentMethod.id).where(PaymentMethod.organization_id == organization_id)
        ).first()
        make_default = is_default or has_methods is None

        method = PaymentMethod(
            organization_id=organization_id,
            type=PaymentMethodType.CARD.value,
            last4=card.card_number[-4:],
            brand=detect_card_brand(card.card_number),
            expiry_month=int(card.exp_month),
            expiry_year=int(card.exp_year),
            cardholder=card.cardholder,
            is_default=False,
            gateway_token_id=token.id,
        )
        try:
            self.session.add(method)
            self.session.flush()
            if make_default:
                self._assign_default(method)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.error("Failed to store payment method organization_id=%s", organization_id)
            raise
        self.session.refresh(method)
        logger.info(
            "Payment method created payment_method_id=%s organization_id=%s last4=%s default=%s",
            method.id,
            organization_id,
            method.last4,
            method.is_default,
        )
        return method

    def set_default(self, payment_method_id: UUID, organization_id: UUID) -> PaymentMethod:
        method = self.get(payment_method_id, organization_id)
        if method.is_default:
            return method
        try:
            self._assign_default(method)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(method)
        logger.info("Default payment method set payment_method_id=%s organization_id=%s", method.id, organization_id)
        return method

    def delete(self, payment_method_id: UUID, organization_id: UUID) -> None:
        method = self.get(payment_method_id, organization_id)
        was_default = method.is_default
        try:
            self.session.delete(method)
            self.session.flush()
            if was_default:
                successor = self.session.exec(
                    select(PaymentMethod)
                    .where(PaymentMethod.organization_id == organization_id)
                    .order_by(PaymentMethod.created_at, PaymentMethod.id)
                ).first()
                if successor:
                    successor.is_default = True
                    successor.touch()
                    self.session.add(successor)
                    logger.info(
                        "Promoted payment method payment_method_id=%s organization_id=%s",
                        successor.id,
                        organization_id,
                    )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("Payment method deleted payment_method_id=%s", payment_method_id)

    def _assign_default(self, method: PaymentMethod) -> None:
        # Clear siblings first so the partial unique index never sees two defaults.
        siblings = self.session.exec(
            select(PaymentMethod).where(
                PaymentMethod.organization_id == method.organization_id,
                PaymentMethod.is_default.is_(True),
                PaymentMethod.id != method.id,
            )
        ).all()
        for sibling in siblings:
            sibling.is_default = False
            sibling.touch()
            self.session.add(sibling)
        self.session.flush()
        method.is_default = True
        method.touch()
        self.session.add(method)
        self.session.flush()
