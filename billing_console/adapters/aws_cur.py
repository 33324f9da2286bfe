from __future__ import annotations

import asyncio
import csv
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from billing_console.adapters.base import (
    AccountRef,
    AdapterConfigError,
    AdapterFetchError,
    FetchLineItemsResult,
    NormalizedLineItem,
    build_fetch_result,
    parse_timestamp,
    to_decimal,
)
from billing_console.domain.models import ProviderType, SourceType
from billing_console.domain.periods import month_dates, parse_billing_month

logger = logging.getLogger(__name__)

TAG_PREFIXES = ("resource_tags_user_", "resource_tags_")


@dataclass(frozen=True)
class AwsCurConfig:
    export_dir: Path
    athena_database: str = ""
    athena_table: str = ""
    payer_account_ids: tuple[str, ...] = ()


def _resource_tags(row: Mapping[str, Any]) -> dict[str, str]:
    tags: dict[str, str] = {}
    for key, value in row.items():
        if not value:
            continue
        for prefix in TAG_PREFIXES:
            if key.startswith(prefix):
                tags[key[len(prefix) :]] = str(value)
                break
    return tags


class AwsCurAdapter:
    """Reads Cost and Usage Report CSV exports laid out as ``<export_dir>/<YYYY-MM>/*.csv``."""

    def __init__(self, config: AwsCurConfig) -> None:
        self.provider = ProviderType.AWS
        self.source_type = SourceType.CUR
        self._config = config

    def _month_files(self, month: str) -> list[Path]:
        directory = self._config.export_dir / month
        if not directory.is_dir():
            return []
        return sorted(directory.glob("*.csv"))

    def _read_rows(self, month: str) -> list[dict[str, str]]:
        rows: list[dict[str, str]] = []
        for path in self._month_files(month):
            try:
                with path.open(newline="", encoding="utf-8") as handle:
                    rows.extend(csv.DictReader(handle))
            except OSError as exc:
                raise AdapterFetchError(f"failed to read CUR export {path}") from exc
        return rows

    def normalize_row(self, row: Mapping[str, Any], month: str) -> NormalizedLineItem:
        effective_cost = row.get("savings_plan_savings_plan_effective_cost") or row.get(
            "line_item_unblended_cost"
        )
        on_demand = row.get("pricing_public_on_demand_cost")
        return NormalizedLineItem(
            provider=self.provider,
            source_type=self.source_type,
            account_id=str(row.get("bill_payer_account_id") or ""),
            subaccount_id=row.get("line_item_usage_account_id") or None,
            resource_id=row.get("line_item_resource_id") or None,
            product_id=str(row.get("line_item_product_code") or ""),
            meter_id=str(row.get("line_item_usage_type") or ""),
            usage_amount=to_decimal(row.get("line_item_usage_amount")),
            usage_unit=row.get("pricing_unit") or "unknown",
            cost=to_decimal(effective_cost),
            list_cost=to_decimal(on_demand) if on_demand else None,
            currency=str(row.get("line_item_currency_code") or "USD"),
            usage_start_time=parse_timestamp(row.get("line_item_usage_start_date")),
            usage_end_time=parse_timestamp(row.get("line_item_usage_end_date")),
            invoice_month=month,
            region=row.get("product_region") or None,
            tags=_resource_tags(row),
            raw_payload=dict(row),
        )

    async def fetch_line_items(
        self,
        month: str,
        account_ids: list[str] | None = None,
    ) -> FetchLineItemsResult:
        parse_billing_month(month)
        selected = account_ids or list(self._config.payer_account_ids)
        rows = await asyncio.to_thread(self._read_rows, month)
        if selected:
            rows = [row for row in rows if row.get("bill_payer_account_id") in selected]
        items = [self.normalize_row(row, month) for row in rows]
        start, end = month_dates(month)
        return build_fetch_result(
            items,
            {
                "source": str(self._config.export_dir / month),
                "data_range": {"start": start.isoformat(), "end": end.isoformat()},
                "payer_account_ids": selected,
                "cur_version": "2.0",
            },
        )

    async def validate_connection(self) -> bool:
        if not self._config.export_dir.is_dir():
            logger.warning("CUR export directory %s is not readable", self._config.export_dir)
            return False
        return True

    async def list_accounts(self) -> list[AccountRef]:
        if not self._config.export_dir.is_dir():
            return []
        accounts: set[str] = set()
        for month_dir in sorted(path for path in self._config.export_dir.iterdir() if path.is_dir()):
            rows = await asyncio.to_thread(self._read_rows, month_dir.name)
            accounts.update(row["bill_payer_account_id"] for row in rows if row.get("bill_payer_account_id"))
        return [AccountRef(id=account_id, name=account_id) for account_id in sorted(accounts)]

    def build_athena_query(self, month: str, payer_account_ids: list[str] | None = None) -> str:
        year, month_num = parse_billing_month(month)
        clauses = [
            "SELECT identity_line_item_id, bill_payer_account_id, line_item_usage_account_id,",
            "line_item_usage_start_date, line_item_usage_end_date, line_item_product_code,",
            "line_item_usage_type, line_item_resource_id, line_item_usage_amount,",
            "line_item_currency_code, line_item_unblended_cost, product_region, pricing_unit,",
            "pricing_public_on_demand_cost, savings_plan_savings_plan_effective_cost",
            f'FROM "{self._config.athena_database}"."{self._config.athena_table}"',
            f"WHERE bill_billing_period_start_date = DATE '{year}-{month_num:02d}-01'",
        ]
        if payer_account_ids:
            quoted = ", ".join(f"'{item}'" for item in payer_account_ids)
            clauses.append(f"AND bill_payer_account_id IN ({quoted})")
        clauses.append("ORDER BY line_item_usage_start_date")
        return "\n".join(clauses)


def aws_config_from_values(
    export_dir: str,
    athena_database: str = "",
    athena_table: str = "",
    payer_account_ids: str = "",
) -> AwsCurConfig:
    if not export_dir:
        raise AdapterConfigError("Missing AWS CUR configuration: set AWS_CUR_EXPORT_DIR")
    return AwsCurConfig(
        export_dir=Path(export_dir),
        athena_database=athena_database,
        athena_table=athena_table,
        payer_account_ids=tuple(item.strip() for item in payer_account_ids.split(",") if item.strip()),
    )
