from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from billing_console.api.deps import HANDLED_ERRORS, handle_billing_error, require_perm
from billing_console.domain.models import (
    AuditAction,
    BindingCreate,
    BindingRead,
    CustomerCreate,
    CustomerRead,
    CustomerStatus,
    CustomerUpdate,
    ProjectCreate,
    ProjectRead,
)
from billing_console.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from billing_console.infra.audit import audit_request
from billing_console.services.customer_service import CustomerService

router = APIRouter()


def get_customer_service() -> CustomerService:
    return CustomerService()


Service = Annotated[CustomerService, Depends(get_customer_service)]


@router.post(
    "/customers",
    response_model=CustomerRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_customer(payload: CustomerCreate, request: Request, service: Service) -> CustomerRead:
    try:
        row = service.create_customer(payload)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    audit_request(request, AuditAction.CREATE, "customers", row.id)
    return CustomerRead.model_validate(row)


@router.get(
    "/customers",
    response_model=list[CustomerRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_customers(service: Service, status_filter: CustomerStatus | None = None) -> list[CustomerRead]:
    return [CustomerRead.model_validate(item) for item in service.list_customers(status=status_filter)]


@router.get(
    "/customers/{customer_id}",
    response_model=CustomerRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_customer(customer_id: str, service: Service) -> CustomerRead:
    try:
        return CustomerRead.model_validate(service.get_customer(customer_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.patch(
    "/customers/{customer_id}",
    response_model=CustomerRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def update_customer(customer_id: str, payload: CustomerUpdate, service: Service) -> CustomerRead:
    try:
        return CustomerRead.model_validate(service.update_customer(customer_id, payload))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/projects",
    response_model=ProjectRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_project(payload: ProjectCreate, service: Service) -> ProjectRead:
    try:
        return ProjectRead.model_validate(service.create_project(payload))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/projects",
    response_model=list[ProjectRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_projects(service: Service) -> list[ProjectRead]:
    return [ProjectRead.model_validate(item) for item in service.list_projects()]


@router.post(
    "/customers/{customer_id}/bindings",
    response_model=BindingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def bind_project(
    customer_id: str,
    payload: BindingCreate,
    request: Request,
    service: Service,
) -> BindingRead:
    try:
        row = service.bind_project(customer_id, payload)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    audit_request(
        request,
        AuditAction.CREATE,
        "customer_project_bindings",
        row.id,
        detail={"customer_id": customer_id, "project_id": row.project_id},
    )
    return BindingRead.model_validate(row)


@router.get(
    "/customers/{customer_id}/bindings",
    response_model=list[BindingRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_bindings(customer_id: str, service: Service) -> list[BindingRead]:
    try:
        return [BindingRead.model_validate(item) for item in service.list_bindings(customer_id)]
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.delete(
    "/customers/{customer_id}/bindings/{binding_id}",
    response_model=BindingRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def deactivate_binding(customer_id: str, binding_id: str, service: Service) -> BindingRead:
    try:
        return BindingRead.model_validate(service.deactivate_binding(customer_id, binding_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
