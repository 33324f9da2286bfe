from __future__ import annotations

import asyncio
import csv
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from billing_console.adapters.base import (
    AccountRef,
    AdapterFetchError,
    FetchLineItemsResult,
    NormalizedLineItem,
    build_fetch_result,
    parse_timestamp,
    to_decimal,
)
from billing_console.domain.models import ProviderType, SourceType

REQUIRED_FIELDS = ("account_id", "product_id", "meter_id", "cost", "usage_start_time")


class CustomRowsAdapter:
    """Operator-supplied rows already in the normalized column layout.

    Rows come either from memory or from ``<base_path>/<YYYY-MM>.json`` /
    ``<base_path>/<YYYY-MM>.csv``.
    """

    def __init__(
        self,
        *,
        rows: list[Mapping[str, Any]] | None = None,
        base_path: Path | None = None,
    ) -> None:
        self.provider = ProviderType.CUSTOM
        self.source_type = SourceType.MANUAL_UPLOAD
        self._rows = [dict(row) for row in rows] if rows is not None else None
        self._base_path = base_path

    def _load_rows(self, month: str) -> list[dict[str, Any]]:
        if self._rows is not None:
            return self._rows
        if self._base_path is None:
            return []
        json_path = self._base_path / f"{month}.json"
        csv_path = self._base_path / f"{month}.csv"
        try:
            if json_path.is_file():
                payload = json.loads(json_path.read_text(encoding="utf-8"))
                if not isinstance(payload, list):
                    raise AdapterFetchError(f"{json_path} must contain a JSON array")
                return [dict(row) for row in payload]
            if csv_path.is_file():
                with csv_path.open(newline="", encoding="utf-8") as handle:
                    return list(csv.DictReader(handle))
        except (OSError, json.JSONDecodeError) as exc:
            raise AdapterFetchError(f"failed to load custom billing rows for {month}") from exc
        return []

    def normalize_row(self, row: Mapping[str, Any], month: str) -> NormalizedLineItem:
        missing = [name for name in REQUIRED_FIELDS if row.get(name) in (None, "")]
        if missing:
            raise AdapterFetchError(f"custom row missing fields: {', '.join(missing)}")
        usage_start = parse_timestamp(row["usage_start_time"])
        usage_end = parse_timestamp(row.get("usage_end_time") or row["usage_start_time"])
        tags = row.get("tags") or {}
        if isinstance(tags, str):
            tags = json.loads(tags) if tags.strip() else {}
        list_cost = row.get("list_cost")
        return NormalizedLineItem(
            provider=self.provider,
            source_type=self.source_type,
            account_id=str(row["account_id"]),
            subaccount_id=row.get("subaccount_id") or None,
            resource_id=row.get("resource_id") or None,
            product_id=str(row["product_id"]),
            meter_id=str(row["meter_id"]),
            usage_amount=to_decimal(row.get("usage_amount")),
            usage_unit=str(row.get("usage_unit") or "unit"),
            cost=to_decimal(row["cost"]),
            list_cost=to_decimal(list_cost) if list_cost not in (None, "") else None,
            currency=str(row.get("currency") or "USD"),
            usage_start_time=usage_start,
            usage_end_time=usage_end,
            invoice_month=month,
            region=row.get("region") or None,
            tags=dict(tags),
            raw_payload={key: str(value) for key, value in row.items()},
        )

    async def fetch_line_items(
        self,
        month: str,
        account_ids: list[str] | None = None,
    ) -> FetchLineItemsResult:
        rows = await asyncio.to_thread(self._load_rows, month)
        if account_ids:
            rows = [row for row in rows if str(row.get("account_id")) in account_ids]
        items = [self.normalize_row(row, month) for row in rows]
        return build_fetch_result(
            items,
            {
                "source": str(self._base_path) if self._base_path is not None else "inline",
                "account_ids": account_ids or [],
            },
        )

    async def validate_connection(self) -> bool:
        if self._rows is not None:
            return True
        return self._base_path is not None and self._base_path.is_dir()

    async def list_accounts(self) -> list[AccountRef]:
        rows = self._rows or []
        accounts = sorted({str(row["account_id"]) for row in rows if row.get("account_id")})
        return [AccountRef(id=account_id, name=account_id) for account_id in accounts]
