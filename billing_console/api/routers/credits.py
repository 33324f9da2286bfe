from __future__ import annotations

from datetime import date
from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from billing_console.api.deps import HANDLED_ERRORS, Claims, handle_billing_error, require_perm
from billing_console.domain.models import (
    AuditAction,
    CreditAdjustRequest,
    CreditCreate,
    CreditLedgerEntryRead,
    CreditRead,
    CreditStatus,
    CreditSummaryRead,
)
from billing_console.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from billing_console.infra.audit import audit_request
from billing_console.services.credit_engine import CreditService

router = APIRouter()


def get_credit_service() -> CreditService:
    return CreditService()


Service = Annotated[CreditService, Depends(get_credit_service)]


@router.post(
    "/customers/{customer_id}/credits",
    response_model=CreditRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_credit(
    customer_id: str,
    payload: CreditCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> CreditRead:
    try:
        row = service.create_credit(customer_id, payload, actor_id=claims["sub"])
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    audit_request(
        request,
        AuditAction.CREATE,
        "credits",
        row.id,
        detail={"customer_id": customer_id, "amount": str(row.total_amount)},
    )
    return CreditRead.model_validate(row)


@router.get(
    "/customers/{customer_id}/credits",
    response_model=list[CreditRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_credits(customer_id: str, service: Service, credit_status: CreditStatus | None = None) -> list[CreditRead]:
    return [CreditRead.model_validate(item) for item in service.list_credits(customer_id, status=credit_status)]


@router.get(
    "/customers/{customer_id}/credits/summary",
    response_model=CreditSummaryRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def credit_summary(customer_id: str, service: Service) -> CreditSummaryRead:
    try:
        return service.credit_summary(customer_id)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/credits/{credit_id}",
    response_model=CreditRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_credit(credit_id: str, service: Service) -> CreditRead:
    try:
        return CreditRead.model_validate(service.get_credit(credit_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/credits/{credit_id}/ledger",
    response_model=list[CreditLedgerEntryRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_ledger(credit_id: str, service: Service) -> list[CreditLedgerEntryRead]:
    try:
        return [CreditLedgerEntryRead.model_validate(item) for item in service.list_ledger(credit_id)]
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/credits/{credit_id}:adjust",
    response_model=CreditRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def adjust_credit(credit_id: str, payload: CreditAdjustRequest, claims: Claims, service: Service) -> CreditRead:
    try:
        return CreditRead.model_validate(service.adjust_credit(credit_id, payload, actor_id=claims["sub"]))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/credits/{credit_id}:cancel",
    response_model=CreditRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def cancel_credit(credit_id: str, claims: Claims, service: Service) -> CreditRead:
    try:
        return CreditRead.model_validate(service.cancel_credit(credit_id, actor_id=claims["sub"]))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/credits:expire",
    response_model=list[CreditRead],
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def expire_credits(as_of: date, claims: Claims, service: Service) -> list[CreditRead]:
    return [CreditRead.model_validate(item) for item in service.expire_credits(as_of, actor_id=claims["sub"])]
