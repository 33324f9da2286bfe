from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from billing_console.api.deps import HANDLED_ERRORS, handle_billing_error, require_perm
from billing_console.domain.models import AnalyticsMonthRead, CustomerSnapshotRead
from billing_console.domain.permissions import PERM_ANALYTICS_READ, PERM_BILLING_RUN
from billing_console.services.analytics_service import AnalyticsService

router = APIRouter()


def get_analytics_service() -> AnalyticsService:
    return AnalyticsService()


Service = Annotated[AnalyticsService, Depends(get_analytics_service)]


@router.get(
    "/months/{billing_month}",
    response_model=AnalyticsMonthRead,
    dependencies=[Depends(require_perm(PERM_ANALYTICS_READ))],
)
def get_month(billing_month: str, service: Service, invoice_run_id: str | None = None) -> AnalyticsMonthRead:
    return service.month(billing_month, invoice_run_id=invoice_run_id)


@router.get(
    "/customers/{customer_id}",
    response_model=list[CustomerSnapshotRead],
    dependencies=[Depends(require_perm(PERM_ANALYTICS_READ))],
)
def customer_history(customer_id: str, service: Service, limit: int = 12) -> list[CustomerSnapshotRead]:
    return [CustomerSnapshotRead.model_validate(item) for item in service.customer_history(customer_id, limit=limit)]


@router.post(
    "/months/{billing_month}:rebuild",
    dependencies=[Depends(require_perm(PERM_BILLING_RUN))],
)
def rebuild_month(billing_month: str, service: Service) -> dict[str, object]:
    try:
        generated = service.rebuild_for_month(billing_month)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    return {"billing_month": billing_month, "runs": [item.invoice_run_id for item in generated]}
