from __future__ import annotations

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from tenantbill.api.deps import get_db, http_error, require_roles
from tenantbill.core.errors import BillingError
from tenantbill.models.billing import PlanKind
from tenantbill.models.user import User, UserRole
from tenantbill.schemas.billing import PlanCreate, PlanRead, PlanUpdate
from tenantbill.services.plans import PlanService

router = APIRouter(prefix="/billing", tags=["plans"])


@router.get("/plans", response_model=List[PlanRead])
def list_plans(kind: PlanKind | None = None, session: Session = Depends(get_db)) -> List[PlanRead]:
    service = PlanService(session)
    plans = service.find_active_by_kind(kind) if kind else service.list_plans()
    return [PlanRead.model_validate(plan) for plan in plans]


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanCreate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
) -> PlanRead:
    try:
        plan = PlanService(session).create_plan(payload.model_dump(mode="json"))
    except BillingError as exc:
        raise http_error(exc) from exc
    return PlanRead.model_validate(plan)


@router.patch("/plans/{plan_id}", response_model=PlanRead)
def update_plan(
    plan_id: UUID,
    payload: PlanUpdate,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
) -> PlanRead:
    try:
        plan = PlanService(session).update_plan(plan_id, payload.model_dump(mode="json", exclude_unset=True))
    except BillingError as exc:
        raise http_error(exc) from exc
    return PlanRead.model_validate(plan)


@router.delete("/plans/{plan_id}", response_model=PlanRead)
def deactivate_plan(
    plan_id: UUID,
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
) -> PlanRead:
    try:
        plan = PlanService(session).deactivate_plan(plan_id)
    except BillingError as exc:
        raise http_error(exc) from exc
    return PlanRead.model_validate(plan)


@router.post("/seed-plans", response_model=List[PlanRead], status_code=status.HTTP_201_CREATED)
def seed_default_plans(
    session: Session = Depends(get_db),
    current_user: User = Depends(require_roles(UserRole.SUPER_ADMIN)),
) -> List[PlanRead]:
    plans = PlanService(session).ensure_default_plans()
    if not plans:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Plan catalog is empty")
    return [PlanRead.model_validate(plan) for plan in plans]
