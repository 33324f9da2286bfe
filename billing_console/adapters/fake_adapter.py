from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from hashlib import sha1

from billing_console.adapters.base import (
    AccountRef,
    AdapterFetchError,
    FetchLineItemsResult,
    NormalizedLineItem,
    build_fetch_result,
)
from billing_console.domain.models import ProviderType, SourceType
from billing_console.domain.periods import month_window


@dataclass(frozen=True)
class FakeSku:
    product_id: str
    meter_id: str
    usage_unit: str = "hour"


DEFAULT_FAKE_SKUS = (
    FakeSku("compute-engine", "vm-n2-standard-4"),
    FakeSku("cloud-storage", "standard-storage", "gibibyte month"),
    FakeSku("bigquery", "analysis-bytes", "tebibyte"),
)


class FakeBillingAdapter:
    """Deterministic provider used for demos and tests.

    Every (account, project, sku, day) tuple yields the same usage and cost on
    every call, so repeated fetches of a month produce the same checksum.
    """

    def __init__(
        self,
        *,
        projects_by_account: dict[str, list[str]] | None = None,
        skus: tuple[FakeSku, ...] = DEFAULT_FAKE_SKUS,
        days_per_month: int = 1,
        currency: str = "USD",
        provider: ProviderType = ProviderType.GCP,
        fail_with: str | None = None,
        connected: bool = True,
    ) -> None:
        self.provider = provider
        self.source_type = SourceType.SIMULATED
        self._projects_by_account = projects_by_account or {"fake-billing-001": ["fake-project-a"]}
        self._skus = skus
        self._days_per_month = max(days_per_month, 1)
        self._currency = currency
        self._fail_with = fail_with
        self._connected = connected

    def _seed(self, *parts: str) -> int:
        digest = sha1("|".join(parts).encode(), usedforsecurity=False).hexdigest()
        return int(digest[:8], 16)

    async def fetch_line_items(
        self,
        month: str,
        account_ids: list[str] | None = None,
    ) -> FetchLineItemsResult:
        if self._fail_with is not None:
            raise AdapterFetchError(self._fail_with)

        month_start, month_end = month_window(month)
        selected = account_ids or sorted(self._projects_by_account)
        items: list[NormalizedLineItem] = []
        for account_id in selected:
            for project_id in self._projects_by_account.get(account_id, []):
                for sku in self._skus:
                    for day in range(self._days_per_month):
                        usage_start = month_start + timedelta(days=day)
                        if usage_start >= month_end:
                            break
                        seed = self._seed(account_id, project_id, sku.meter_id, month, str(day))
                        usage_amount = Decimal(seed % 10_000) / Decimal(10)
                        cost = (Decimal(seed % 500_000) / Decimal(100)).quantize(Decimal("0.01"))
                        items.append(
                            NormalizedLineItem(
                                provider=self.provider,
                                source_type=self.source_type,
                                account_id=account_id,
                                subaccount_id=project_id,
                                product_id=sku.product_id,
                                meter_id=sku.meter_id,
                                usage_amount=usage_amount,
                                usage_unit=sku.usage_unit,
                                cost=cost,
                                list_cost=cost,
                                currency=self._currency,
                                usage_start_time=usage_start,
                                usage_end_time=usage_start + timedelta(days=1),
                                invoice_month=month,
                                region="us-central1",
                                raw_payload={"seed": seed, "simulated": True},
                            )
                        )
        return build_fetch_result(
            items,
            {
                "source": "fake://billing",
                "accounts": selected,
                "data_range": {"start": month_start.isoformat(), "end": month_end.isoformat()},
            },
        )

    async def validate_connection(self) -> bool:
        return self._connected

    async def list_accounts(self) -> list[AccountRef]:
        return [AccountRef(id=account_id, name=account_id) for account_id in sorted(self._projects_by_account)]
