from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from tenantbill.api.deps import get_db, http_error, require_roles
from tenantbill.core.errors import BillingError
from tenantbill.models.billing import InvoiceStatus, InvoiceType, SummaryPeriod
from tenantbill.models.user import User, UserRole
from tenantbill.schemas.billing import (
    InvoiceDetailRead,
    InvoicePageRead,
    InvoiceRead,
    PaymentRead,
    PlatformSummaryRead,
)
from tenantbill.services.billing import BillingService
from tenantbill.services.invoices import InvoiceSortField

router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])

# Cross-organization reads; organization owners do not pass.
_platform_admin = require_roles(UserRole.SUPER_ADMIN, owner_passes=False)


@router.get("/summary", response_model=PlatformSummaryRead)
def get_platform_summary(
    period: SummaryPeriod = Query(default=SummaryPeriod.CURRENT_MONTH),
    organization_id: UUID | None = Query(default=None),
    session: Session = Depends(get_db),
    current_user: User = Depends(_platform_admin),
) -> PlatformSummaryRead:
    data = BillingService(session).get_platform_summary(period, organization_id=organization_id)
    return PlatformSummaryRead.model_validate(data)


@router.get("/invoices", response_model=InvoicePageRead)
def search_invoices(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    invoice_status: InvoiceStatus | None = Query(default=None, alias="status"),
    invoice_type: InvoiceType | None = Query(default=None, alias="type"),
    organization_id: UUID | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    sort_by: InvoiceSortField = Query(default=InvoiceSortField.CREATED_AT),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    session: Session = Depends(get_db),
    current_user: User = Depends(_platform_admin),
) -> InvoicePageRead:
    try:
        result = BillingService(session).search_invoices(
            page=page,
            limit=limit,
            status=invoice_status,
            invoice_type=invoice_type,
            organization_id=organization_id,
            issued_from=start_date,
            issued_to=end_date,
            sort_by=sort_by,
            descending=sort_order == "desc",
        )
    except BillingError as exc:
        raise http_error(exc) from exc
    return InvoicePageRead(
        items=[InvoiceRead.model_validate(invoice) for invoice in result.invoices],
        total=result.total,
        page=result.page,
        pages=result.pages,
        limit=result.limit,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceDetailRead)
def get_invoice_detail(
    invoice_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(_platform_admin),
) -> InvoiceDetailRead:
    try:
        detail = BillingService(session).get_invoice_detail(invoice_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return InvoiceDetailRead(
        **InvoiceRead.model_validate(detail.invoice).model_dump(),
        organization_name=detail.organization_name,
        payments=[PaymentRead.model_validate(payment) for payment in detail.payments],
    )
