from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from billing_console.domain.models import ProviderType, SourceType
from billing_console.domain.money import canonical_decimal
from billing_console.domain.periods import as_utc, iso_utc_ms


class AdapterError(Exception):
    pass


class AdapterConfigError(AdapterError):
    pass


class AdapterFetchError(AdapterError):
    pass


@dataclass(frozen=True)
class AccountRef:
    id: str
    name: str


@dataclass
class NormalizedLineItem:
    provider: ProviderType
    source_type: SourceType
    account_id: str
    product_id: str
    meter_id: str
    usage_amount: Decimal
    usage_unit: str
    cost: Decimal
    currency: str
    usage_start_time: datetime
    usage_end_time: datetime
    invoice_month: str
    subaccount_id: str | None = None
    resource_id: str | None = None
    list_cost: Decimal | None = None
    region: str | None = None
    tags: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchLineItemsResult:
    line_items: list[NormalizedLineItem]
    row_count: int
    checksum: str
    source_metadata: dict[str, Any] = field(default_factory=dict)


class BillingSourceAdapter(Protocol):
    provider: ProviderType
    source_type: SourceType

    async def fetch_line_items(
        self,
        month: str,
        account_ids: list[str] | None = None,
    ) -> FetchLineItemsResult: ...

    async def validate_connection(self) -> bool: ...

    async def list_accounts(self) -> list[AccountRef]: ...


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise AdapterFetchError(f"invalid numeric value: {value!r}") from exc


def _sort_key(item: NormalizedLineItem) -> tuple[str, str, str, str]:
    canonical = "|".join(
        [item.account_id, item.product_id, item.meter_id, iso_utc_ms(item.usage_start_time)]
    )
    # ties on the canonical key are ordered by the remaining hashed fields
    return (
        canonical,
        item.subaccount_id or "",
        canonical_decimal(item.usage_amount),
        canonical_decimal(item.cost),
    )


def compute_line_items_checksum(line_items: Iterable[NormalizedLineItem]) -> str:
    digest = hashlib.sha256()
    for item in sorted(line_items, key=_sort_key):
        digest.update(
            "|".join(
                [
                    item.account_id,
                    item.subaccount_id or "",
                    item.product_id,
                    item.meter_id,
                    canonical_decimal(item.usage_amount),
                    canonical_decimal(item.cost),
                    iso_utc_ms(item.usage_start_time),
                ]
            ).encode()
        )
    return digest.hexdigest()


def build_fetch_result(
    line_items: list[NormalizedLineItem],
    source_metadata: Mapping[str, Any],
) -> FetchLineItemsResult:
    return FetchLineItemsResult(
        line_items=line_items,
        row_count=len(line_items),
        checksum=compute_line_items_checksum(line_items),
        source_metadata=dict(source_metadata),
    )


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, Mapping) and "value" in value:
        return parse_timestamp(value["value"])
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str) and value:
        text = value.strip().replace("Z", "+00:00")
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise AdapterFetchError(f"invalid timestamp: {value!r}") from exc
    raise AdapterFetchError(f"missing timestamp: {value!r}")
