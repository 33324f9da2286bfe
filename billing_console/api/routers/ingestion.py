from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, status

from billing_console.adapters.registry import create_adapter_from_env
from billing_console.api.deps import HANDLED_ERRORS, Claims, handle_billing_error, require_perm
from billing_console.domain.models import (
    IngestionBatchRead,
    IngestionRequest,
    IngestionResultRead,
    ProviderType,
)
from billing_console.domain.permissions import PERM_BILLING_READ, PERM_INGESTION_WRITE
from billing_console.services.ingestion_service import IngestionService

router = APIRouter()


def get_ingestion_service() -> IngestionService:
    return IngestionService()


Service = Annotated[IngestionService, Depends(get_ingestion_service)]


@router.post(
    "/batches",
    response_model=IngestionResultRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_INGESTION_WRITE))],
)
async def ingest(
    payload: IngestionRequest,
    claims: Claims,
    service: Service,
) -> IngestionResultRead:
    try:
        adapter = create_adapter_from_env(payload.provider, rows=payload.rows)
        batch, created = await service.ingest_from_adapter(
            adapter,
            payload.month,
            payload.account_ids,
            actor_id=claims["sub"],
        )
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    return IngestionResultRead(batch=IngestionBatchRead.model_validate(batch), created=created)


@router.get(
    "/batches",
    response_model=list[IngestionBatchRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_batches(
    service: Service,
    month: str | None = None,
    provider: ProviderType | None = None,
) -> list[IngestionBatchRead]:
    return [IngestionBatchRead.model_validate(item) for item in service.list_batches(month=month, provider=provider)]


@router.get(
    "/batches/{batch_id}",
    response_model=IngestionBatchRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_batch(batch_id: str, service: Service) -> IngestionBatchRead:
    try:
        return IngestionBatchRead.model_validate(service.get_batch(batch_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
