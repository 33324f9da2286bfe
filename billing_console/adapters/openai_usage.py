from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import httpx

from billing_console.adapters.base import (
    AccountRef,
    AdapterConfigError,
    AdapterFetchError,
    FetchLineItemsResult,
    NormalizedLineItem,
    build_fetch_result,
    to_decimal,
)
from billing_console.domain.models import ProviderType, SourceType
from billing_console.domain.periods import month_window

logger = logging.getLogger(__name__)

ONE_MILLION = Decimal(1_000_000)
USAGE_PATH = "/organization/usage"


@dataclass(frozen=True)
class ModelPrice:
    input: Decimal
    output: Decimal
    cached_input: Decimal | None = None


def _price(input_: str, output: str, cached: str | None = None) -> ModelPrice:
    return ModelPrice(Decimal(input_), Decimal(output), Decimal(cached) if cached is not None else None)


# USD per one million tokens
MODEL_PRICES: dict[str, ModelPrice] = {
    "gpt-4o": _price("2.50", "10.00", "1.25"),
    "gpt-4o-2024-11-20": _price("2.50", "10.00", "1.25"),
    "gpt-4o-2024-08-06": _price("2.50", "10.00", "1.25"),
    "gpt-4o-2024-05-13": _price("5.00", "15.00"),
    "gpt-4o-mini": _price("0.15", "0.60", "0.075"),
    "gpt-4o-mini-2024-07-18": _price("0.15", "0.60", "0.075"),
    "gpt-4-turbo": _price("10.00", "30.00"),
    "gpt-4": _price("30.00", "60.00"),
    "gpt-4-32k": _price("60.00", "120.00"),
    "gpt-3.5-turbo": _price("0.50", "1.50"),
    "gpt-3.5-turbo-instruct": _price("1.50", "2.00"),
    "o1": _price("15.00", "60.00", "7.50"),
    "o1-mini": _price("3.00", "12.00", "1.50"),
    "o3-mini": _price("1.10", "4.40", "0.55"),
    "text-embedding-3-small": _price("0.02", "0"),
    "text-embedding-3-large": _price("0.13", "0"),
    "text-embedding-ada-002": _price("0.10", "0"),
}
UNKNOWN_MODEL_PRICE = ModelPrice(Decimal("0"), Decimal("0"))


@dataclass(frozen=True)
class OpenAiUsageConfig:
    api_key: str
    organization_id: str
    project_id: str | None = None
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: float = 30.0


class OpenAiUsageAdapter:
    def __init__(
        self,
        config: OpenAiUsageConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = ProviderType.OPENAI
        self.source_type = SourceType.USAGE_API
        self._config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.base_url,
            headers={
                "Authorization": f"Bearer {self._config.api_key}",
                "OpenAI-Organization": self._config.organization_id,
            },
            timeout=self._config.timeout_seconds,
            transport=self._transport,
        )

    async def _fetch_buckets(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        buckets: list[dict[str, Any]] = []
        params: dict[str, str] = {
            "start_time": str(int(start.timestamp())),
            "end_time": str(int(end.timestamp())),
            "bucket_width": "1d",
            "group_by": "project_id,model",
        }
        if self._config.project_id:
            params["project_ids"] = self._config.project_id

        async with self._client() as client:
            next_page: str | None = None
            while True:
                page_params = dict(params)
                if next_page:
                    page_params["page"] = next_page
                try:
                    response = await client.get(USAGE_PATH, params=page_params)
                    response.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    raise AdapterFetchError(
                        f"OpenAI API error: {exc.response.status_code} - {exc.response.text}"
                    ) from exc
                except httpx.HTTPError as exc:
                    raise AdapterFetchError(f"OpenAI API request failed: {exc}") from exc
                body = response.json()
                buckets.extend(body.get("data") or [])
                next_page = body.get("next_page") if body.get("has_more") else None
                if not next_page:
                    break
        return buckets

    def normalize_buckets(self, buckets: list[dict[str, Any]], month: str) -> list[NormalizedLineItem]:
        items: list[NormalizedLineItem] = []
        for bucket in buckets:
            usage_start = datetime.fromtimestamp(bucket["start_time"], tz=UTC)
            usage_end = datetime.fromtimestamp(bucket["end_time"], tz=UTC)
            for result in bucket.get("results") or []:
                model = str(result.get("model") or "unknown")
                price = MODEL_PRICES.get(model, UNKNOWN_MODEL_PRICE)
                input_tokens = to_decimal(result.get("input_tokens"))
                cached_tokens = to_decimal(result.get("input_cached_tokens"))
                output_tokens = to_decimal(result.get("output_tokens"))
                requests = to_decimal(result.get("num_model_requests"))

                cached_rate = price.cached_input if price.cached_input is not None else price.input
                input_cost = (input_tokens - cached_tokens) / ONE_MILLION * price.input
                input_cost += cached_tokens / ONE_MILLION * cached_rate
                output_cost = output_tokens / ONE_MILLION * price.output

                common: dict[str, Any] = {
                    "provider": self.provider,
                    "source_type": self.source_type,
                    "account_id": self._config.organization_id,
                    "subaccount_id": result.get("project_id") or None,
                    "product_id": model,
                    "currency": "USD",
                    "usage_start_time": usage_start,
                    "usage_end_time": usage_end,
                    "invoice_month": month,
                    "tags": {"batch": "true"} if result.get("batch") else {},
                }
                raw = {**result, "bucket_start_time": bucket["start_time"], "bucket_end_time": bucket["end_time"]}

                if input_tokens > 0:
                    items.append(
                        NormalizedLineItem(
                            meter_id="input_tokens",
                            usage_amount=input_tokens,
                            usage_unit="tokens",
                            cost=input_cost,
                            list_cost=input_cost,
                            raw_payload={**raw, "token_type": "input", "pricing_per_million": str(price.input)},
                            **common,
                        )
                    )
                if output_tokens > 0:
                    items.append(
                        NormalizedLineItem(
                            meter_id="output_tokens",
                            usage_amount=output_tokens,
                            usage_unit="tokens",
                            cost=output_cost,
                            list_cost=output_cost,
                            raw_payload={**raw, "token_type": "output", "pricing_per_million": str(price.output)},
                            **common,
                        )
                    )
                if requests > 0:
                    items.append(
                        NormalizedLineItem(
                            meter_id="api_requests",
                            usage_amount=requests,
                            usage_unit="requests",
                            cost=Decimal("0"),
                            raw_payload={**raw, "metric_type": "requests"},
                            **common,
                        )
                    )
        return items

    async def fetch_line_items(
        self,
        month: str,
        account_ids: list[str] | None = None,
    ) -> FetchLineItemsResult:
        start, next_month = month_window(month)
        end = next_month - timedelta(seconds=1)
        buckets = await self._fetch_buckets(start, end)
        items = self.normalize_buckets(buckets, month)
        return build_fetch_result(
            items,
            {
                "source": f"{self._config.base_url}{USAGE_PATH}",
                "data_range": {"start": start.isoformat(), "end": end.isoformat()},
                "organization_id": self._config.organization_id,
                "project_id": self._config.project_id,
                "buckets_processed": len(buckets),
            },
        )

    async def validate_connection(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get(USAGE_PATH, params={"start_time": "0", "limit": "1"})
        except httpx.HTTPError:
            logger.warning("OpenAI usage API connection check failed", exc_info=True)
            return False
        return response.is_success

    async def list_accounts(self) -> list[AccountRef]:
        return [AccountRef(id=self._config.organization_id, name="Organization")]


def openai_config_from_values(
    api_key: str,
    organization_id: str,
    project_id: str = "",
    base_url: str = "https://api.openai.com/v1",
    timeout_seconds: float = 30.0,
) -> OpenAiUsageConfig:
    if not (api_key and organization_id):
        raise AdapterConfigError(
            "Missing OpenAI configuration: set OPENAI_ADMIN_API_KEY and OPENAI_ORGANIZATION_ID"
        )
    return OpenAiUsageConfig(
        api_key=api_key,
        organization_id=organization_id,
        project_id=project_id or None,
        base_url=base_url.rstrip("/"),
        timeout_seconds=timeout_seconds,
    )
