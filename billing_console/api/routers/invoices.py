from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request

from billing_console.api.deps import HANDLED_ERRORS, Claims, handle_billing_error, require_perm
from billing_console.domain.models import (
    AuditAction,
    ConfigSnapshotRead,
    InvoiceDetailRead,
    InvoiceRead,
    InvoiceStatusUpdate,
)
from billing_console.domain.permissions import PERM_BILLING_LOCK, PERM_BILLING_READ, PERM_BILLING_WRITE
from billing_console.domain.state_machine import InvoiceStatus
from billing_console.infra.audit import audit_request
from billing_console.services.invoice_service import InvoiceService

router = APIRouter()


def get_invoice_service() -> InvoiceService:
    return InvoiceService()


Service = Annotated[InvoiceService, Depends(get_invoice_service)]


@router.get(
    "",
    response_model=list[InvoiceRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_invoices(
    service: Service,
    billing_month: str | None = None,
    customer_id: str | None = None,
    invoice_run_id: str | None = None,
    invoice_status: InvoiceStatus | None = None,
) -> list[InvoiceRead]:
    rows = service.list_invoices(
        billing_month=billing_month,
        customer_id=customer_id,
        invoice_run_id=invoice_run_id,
        status=invoice_status,
    )
    return [InvoiceRead.model_validate(item) for item in rows]


@router.get(
    "/{invoice_id}",
    response_model=InvoiceDetailRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_invoice(invoice_id: str, service: Service) -> InvoiceDetailRead:
    try:
        return service.get_invoice_detail(invoice_id)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/{invoice_id}/config-snapshot",
    response_model=ConfigSnapshotRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_config_snapshot(invoice_id: str, service: Service) -> ConfigSnapshotRead:
    try:
        return ConfigSnapshotRead.model_validate(service.get_config_snapshot(invoice_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/{invoice_id}:lock",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_LOCK))],
)
def lock_invoice(invoice_id: str, claims: Claims, service: Service) -> InvoiceRead:
    try:
        row = service.lock_invoice(invoice_id, actor_id=claims["sub"])
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    return InvoiceRead.model_validate(row)


@router.post(
    "/{invoice_id}:status",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_status(
    invoice_id: str,
    payload: InvoiceStatusUpdate,
    request: Request,
    service: Service,
) -> InvoiceRead:
    try:
        row = service.transition_status(invoice_id, payload.status)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    audit_request(request, AuditAction.UPDATE, "invoices", row.id, detail={"status": str(row.status)})
    return InvoiceRead.model_validate(row)


@router.get(
    "/{invoice_id}/presentation",
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_presentation(invoice_id: str, request: Request, service: Service) -> dict[str, Any]:
    try:
        presentation = service.build_presentation(invoice_id)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    audit_request(request, AuditAction.EXPORT, "invoices", invoice_id)
    return presentation
