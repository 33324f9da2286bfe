from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

from billing_console.adapters.base import (
    AccountRef,
    AdapterConfigError,
    FetchLineItemsResult,
    NormalizedLineItem,
    build_fetch_result,
    parse_timestamp,
    to_decimal,
)
from billing_console.domain.models import ProviderType, SourceType
from billing_console.domain.periods import month_dates, parse_billing_month
from billing_console.infra.cache import TtlCache

logger = logging.getLogger(__name__)


class BigQueryRunner(Protocol):
    async def query(self, sql: str) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class GcpBigQueryConfig:
    project_id: str
    dataset_id: str
    table_name: str
    billing_account_ids: tuple[str, ...] = ()

    @property
    def table_ref(self) -> str:
        return f"{self.project_id}.{self.dataset_id}.{self.table_name}"


def _label_map(labels: Any, prefix: str = "") -> dict[str, str]:
    tags: dict[str, str] = {}
    for label in labels or []:
        if isinstance(label, Mapping) and "key" in label:
            tags[f"{prefix}{label['key']}"] = str(label.get("value", ""))
    return tags


def _quote_list(values: list[str]) -> str:
    return ", ".join("'" + value.replace("'", "") + "'" for value in values)


class GcpBigQueryAdapter:
    def __init__(
        self,
        config: GcpBigQueryConfig,
        runner: BigQueryRunner,
        *,
        cache: TtlCache | None = None,
    ) -> None:
        self.provider = ProviderType.GCP
        self.source_type = SourceType.BIGQUERY_EXPORT
        self._config = config
        self._runner = runner
        self._cache = cache

    def build_query(self, month: str, account_ids: list[str] | None = None) -> str:
        year, month_num = parse_billing_month(month)
        start, end = month_dates(month)
        clauses = [
            "SELECT billing_account_id, service, sku, usage_start_time, usage_end_time, project,",
            "labels, location, resource, usage, cost, currency, credits, invoice, cost_type",
            f"FROM `{self._config.table_ref}`",
            f"WHERE invoice.month = '{year}{month_num:02d}'",
            f"AND usage_start_time >= TIMESTAMP('{start.isoformat()}')",
            f"AND usage_start_time < TIMESTAMP('{end.isoformat()}') + INTERVAL 1 DAY",
        ]
        if account_ids:
            clauses.append(f"AND billing_account_id IN ({_quote_list(account_ids)})")
        clauses.append("ORDER BY usage_start_time")
        return "\n".join(clauses)

    def normalize_row(self, row: Mapping[str, Any], month: str) -> NormalizedLineItem:
        project = row.get("project") or {}
        service = row.get("service") or {}
        sku = row.get("sku") or {}
        usage = row.get("usage") or {}
        location = row.get("location") or {}
        resource = row.get("resource") or {}

        tags = _label_map(row.get("labels"))
        tags.update(_label_map(project.get("labels"), prefix="project_"))

        cost = to_decimal(row.get("cost"))
        credits_total = sum(
            (to_decimal(credit.get("amount")) for credit in row.get("credits") or []),
            Decimal("0"),
        )
        return NormalizedLineItem(
            provider=self.provider,
            source_type=self.source_type,
            account_id=str(row["billing_account_id"]),
            subaccount_id=project.get("id") or None,
            resource_id=resource.get("name") or None,
            product_id=str(service.get("id", "")),
            meter_id=str(sku.get("id", "")),
            usage_amount=to_decimal(usage.get("amount")),
            usage_unit=usage.get("unit") or "unknown",
            cost=cost,
            list_cost=cost - credits_total if credits_total != 0 else None,
            currency=str(row.get("currency") or "USD"),
            usage_start_time=parse_timestamp(row.get("usage_start_time")),
            usage_end_time=parse_timestamp(row.get("usage_end_time")),
            invoice_month=month,
            region=location.get("region") or None,
            tags=tags,
            raw_payload=dict(row),
        )

    async def fetch_line_items(
        self,
        month: str,
        account_ids: list[str] | None = None,
    ) -> FetchLineItemsResult:
        selected = account_ids or list(self._config.billing_account_ids)
        sql = self.build_query(month, selected)
        rows = await self._runner.query(sql)
        items = [self.normalize_row(row, month) for row in rows]
        start, end = month_dates(month)
        metadata: dict[str, Any] = {
            "query": sql,
            "source": self._config.table_ref,
            "data_range": {"start": start.isoformat(), "end": end.isoformat()},
            "billing_account_ids": selected,
        }
        if not rows:
            metadata["warnings"] = ["No billing data found for the specified period"]
        return build_fetch_result(items, metadata)

    async def validate_connection(self) -> bool:
        try:
            await self._runner.query(f"SELECT 1 FROM `{self._config.table_ref}` LIMIT 1")
        except Exception:
            logger.warning("BigQuery connection check failed for %s", self._config.table_ref, exc_info=True)
            return False
        return True

    async def list_accounts(self) -> list[AccountRef]:
        cache_key = f"gcp:accounts:{self._config.table_ref}"
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return [AccountRef(id=item["id"], name=item["name"]) for item in cached]
        rows = await self._runner.query(
            "SELECT DISTINCT billing_account_id AS id, billing_account_id AS name "
            f"FROM `{self._config.table_ref}` "
            "WHERE _PARTITIONTIME >= TIMESTAMP_SUB(CURRENT_TIMESTAMP(), INTERVAL 90 DAY)"
        )
        accounts = [AccountRef(id=str(row["id"]), name=str(row["name"])) for row in rows]
        if self._cache is not None:
            self._cache.set(cache_key, [{"id": item.id, "name": item.name} for item in accounts])
        return accounts


def gcp_config_from_values(
    project_id: str,
    dataset_id: str,
    table_name: str,
    account_ids: str = "",
) -> GcpBigQueryConfig:
    if not (project_id and dataset_id and table_name):
        raise AdapterConfigError(
            "Missing GCP billing configuration: set GCP_BILLING_PROJECT_ID, "
            "GCP_BILLING_DATASET and GCP_BILLING_TABLE"
        )
    return GcpBigQueryConfig(
        project_id=project_id,
        dataset_id=dataset_id,
        table_name=table_name,
        billing_account_ids=tuple(item.strip() for item in account_ids.split(",") if item.strip()),
    )
