from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from billing_console.adapters.base import (
    AdapterFetchError,
    BillingSourceAdapter,
    FetchLineItemsResult,
    NormalizedLineItem,
)
from billing_console.domain.models import IngestionBatch, LineItem, ProviderType, SourceType
from billing_console.domain.periods import parse_billing_month
from billing_console.infra.db import get_engine
from billing_console.infra.events import INGESTION_BATCH_CREATED, event_bus
from billing_console.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _line_item_row(batch_id: str, item: NormalizedLineItem) -> LineItem:
    return LineItem(
        ingestion_batch_id=batch_id,
        provider=item.provider,
        source_type=item.source_type,
        account_id=item.account_id,
        subaccount_id=item.subaccount_id,
        resource_id=item.resource_id,
        product_id=item.product_id,
        meter_id=item.meter_id,
        usage_amount=item.usage_amount,
        usage_unit=item.usage_unit,
        cost=item.cost,
        list_cost=item.list_cost,
        currency=item.currency,
        usage_start_time=item.usage_start_time,
        usage_end_time=item.usage_end_time,
        invoice_month=item.invoice_month,
        region=item.region,
        tags=dict(item.tags),
        raw_payload=dict(item.raw_payload),
    )


class IngestionService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _find_batch(
        session: Session,
        provider: ProviderType,
        source_type: SourceType,
        month: str,
        checksum: str,
    ) -> IngestionBatch | None:
        return session.exec(
            select(IngestionBatch)
            .where(IngestionBatch.provider == provider)
            .where(IngestionBatch.source_type == source_type)
            .where(IngestionBatch.invoice_month == month)
            .where(IngestionBatch.checksum == checksum)
        ).first()

    async def ingest_from_adapter(
        self,
        adapter: BillingSourceAdapter,
        month: str,
        account_ids: list[str] | None = None,
        *,
        actor_id: str | None = None,
    ) -> tuple[IngestionBatch, bool]:
        """Fetch one month from ``adapter`` and persist it as a batch.

        Returns ``(batch, created)``. Identical source data (same checksum) maps
        to the batch written the first time and ``created`` is False.
        """
        try:
            parse_billing_month(month)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        result = await adapter.fetch_line_items(month, account_ids)
        if result.row_count == 0 or not result.line_items:
            raise AdapterFetchError(f"{adapter.provider} returned no line items for {month}")
        return self.store_result(adapter.provider, adapter.source_type, month, result, actor_id=actor_id)

    def store_result(
        self,
        provider: ProviderType,
        source_type: SourceType,
        month: str,
        result: FetchLineItemsResult,
        *,
        actor_id: str | None = None,
    ) -> tuple[IngestionBatch, bool]:
        with self._session() as session:
            existing = self._find_batch(session, provider, source_type, month, result.checksum)
            if existing is not None:
                logger.info("ingestion batch %s already holds checksum %s", existing.id, result.checksum)
                return existing, False

            batch = IngestionBatch(
                provider=provider,
                source_type=source_type,
                invoice_month=month,
                row_count=result.row_count,
                checksum=result.checksum,
                source_metadata=dict(result.source_metadata),
                created_by=actor_id,
            )
            session.add(batch)
            try:
                session.flush()
                session.add_all([_line_item_row(batch.id, item) for item in result.line_items])
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._find_batch(session, provider, source_type, month, result.checksum)
                if existing is None:
                    raise
                return existing, False
            session.refresh(batch)

        logger.info(
            "ingested %s rows for %s %s into batch %s",
            batch.row_count,
            provider,
            month,
            batch.id,
        )
        event_bus.emit(
            INGESTION_BATCH_CREATED,
            {
                "batch_id": batch.id,
                "provider": str(provider),
                "source_type": str(source_type),
                "invoice_month": month,
                "row_count": batch.row_count,
                "checksum": batch.checksum,
            },
            correlation_id=batch.id,
            actor_id=actor_id,
        )
        return batch, True

    def list_batches(self, *, month: str | None = None, provider: ProviderType | None = None) -> list[IngestionBatch]:
        with self._session() as session:
            statement = select(IngestionBatch)
            if month is not None:
                statement = statement.where(IngestionBatch.invoice_month == month)
            if provider is not None:
                statement = statement.where(IngestionBatch.provider == provider)
            return sorted(session.exec(statement).all(), key=lambda item: item.created_at, reverse=True)

    def get_batch(self, batch_id: str) -> IngestionBatch:
        with self._session() as session:
            row = session.get(IngestionBatch, batch_id)
            if row is None:
                raise NotFoundError("ingestion batch not found")
            return row

    def list_line_items(self, batch_id: str, *, limit: int = 500) -> list[LineItem]:
        with self._session() as session:
            if session.get(IngestionBatch, batch_id) is None:
                raise NotFoundError("ingestion batch not found")
            rows = session.exec(
                select(LineItem).where(LineItem.ingestion_batch_id == batch_id).limit(limit)
            ).all()
            return list(rows)
