from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from billing_console.api.deps import HANDLED_ERRORS, Claims, handle_billing_error, require_perm
from billing_console.domain.models import InvoiceRunCreate, InvoiceRunRead, RunValidationRead
from billing_console.domain.permissions import PERM_BILLING_READ, PERM_BILLING_RUN
from billing_console.domain.state_machine import InvoiceRunState
from billing_console.services.invoice_run_service import InvoiceRunService

router = APIRouter()


def get_invoice_run_service() -> InvoiceRunService:
    return InvoiceRunService()


Service = Annotated[InvoiceRunService, Depends(get_invoice_run_service)]


@router.get(
    "/validate",
    response_model=RunValidationRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def validate_run(billing_month: str, service: Service, target_customer_id: str | None = None) -> RunValidationRead:
    try:
        return service.validate_run(billing_month, target_customer_id)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "",
    response_model=InvoiceRunRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_RUN))],
)
def create_run(
    payload: InvoiceRunCreate,
    response: Response,
    claims: Claims,
    service: Service,
) -> InvoiceRunRead:
    try:
        run, created = service.create_run(payload, actor_id=claims["sub"])
        if created and payload.execute_now:
            run = service.execute_run(run.id, actor_id=claims["sub"])
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    if not created:
        response.status_code = status.HTTP_200_OK
    return InvoiceRunRead.model_validate(run)


@router.post(
    "/{run_id}:execute",
    response_model=InvoiceRunRead,
    dependencies=[Depends(require_perm(PERM_BILLING_RUN))],
)
def execute_run(run_id: str, claims: Claims, service: Service) -> InvoiceRunRead:
    try:
        run = service.execute_run(run_id, actor_id=claims["sub"])
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    return InvoiceRunRead.model_validate(run)


@router.get(
    "",
    response_model=list[InvoiceRunRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_runs(
    service: Service,
    billing_month: str | None = None,
    run_status: InvoiceRunState | None = None,
) -> list[InvoiceRunRead]:
    rows = service.list_runs(billing_month=billing_month, status=run_status)
    return [InvoiceRunRead.model_validate(item) for item in rows]


@router.get(
    "/{run_id}",
    response_model=InvoiceRunRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_run(run_id: str, service: Service) -> InvoiceRunRead:
    try:
        return InvoiceRunRead.model_validate(service.get_run(run_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
