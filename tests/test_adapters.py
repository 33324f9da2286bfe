from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from pathlib import Path
from typing import Any

import httpx
import pytest

from billing_console.adapters.aws_cur import AwsCurAdapter, AwsCurConfig, aws_config_from_values
from billing_console.adapters.base import AdapterConfigError, AdapterFetchError
from billing_console.adapters.custom_adapter import CustomRowsAdapter
from billing_console.adapters.fake_adapter import FakeBillingAdapter
from billing_console.adapters.gcp_bigquery import GcpBigQueryAdapter, GcpBigQueryConfig
from billing_console.adapters.openai_usage import OpenAiUsageAdapter, OpenAiUsageConfig
from billing_console.adapters.registry import create_adapter_from_env
from billing_console.domain.models import ProviderType, SourceType
from billing_console.infra.cache import MemoryTtlCache


def test_fake_adapter_is_deterministic() -> None:
    adapter = FakeBillingAdapter(projects_by_account={"acct-1": ["proj-a", "proj-b"]}, days_per_month=3)
    first = asyncio.run(adapter.fetch_line_items("2026-09"))
    second = asyncio.run(adapter.fetch_line_items("2026-09"))

    assert first.row_count == 2 * 3 * 3
    assert first.checksum == second.checksum
    assert [item.cost for item in first.line_items] == [item.cost for item in second.line_items]
    assert all(item.source_type == SourceType.SIMULATED for item in first.line_items)


def test_fake_adapter_checksum_changes_with_month() -> None:
    adapter = FakeBillingAdapter()
    september = asyncio.run(adapter.fetch_line_items("2026-09"))
    october = asyncio.run(adapter.fetch_line_items("2026-10"))
    assert september.checksum != october.checksum


def test_fake_adapter_can_fail() -> None:
    adapter = FakeBillingAdapter(fail_with="quota exceeded")
    with pytest.raises(AdapterFetchError, match="quota exceeded"):
        asyncio.run(adapter.fetch_line_items("2026-09"))


def test_custom_rows_are_normalized() -> None:
    adapter = CustomRowsAdapter(
        rows=[
            {
                "account_id": "acct-1",
                "subaccount_id": "proj-a",
                "product_id": "compute",
                "meter_id": "vm-core-hours",
                "cost": "12.50",
                "usage_amount": "5",
                "usage_start_time": "2026-09-02T10:00:00Z",
                "tags": json.dumps({"team": "data"}),
            }
        ]
    )
    result = asyncio.run(adapter.fetch_line_items("2026-09"))

    assert result.row_count == 1
    item = result.line_items[0]
    assert item.provider == ProviderType.CUSTOM
    assert item.cost == Decimal("12.50")
    assert item.usage_end_time == item.usage_start_time
    assert item.tags == {"team": "data"}
    assert item.invoice_month == "2026-09"


def test_custom_rows_missing_fields_are_rejected() -> None:
    adapter = CustomRowsAdapter(rows=[{"account_id": "acct-1", "cost": "1"}])
    with pytest.raises(AdapterFetchError, match="product_id"):
        asyncio.run(adapter.fetch_line_items("2026-09"))


def test_custom_rows_load_from_month_file(tmp_path: Path) -> None:
    (tmp_path / "2026-09.csv").write_text(
        "account_id,product_id,meter_id,cost,usage_start_time\n"
        "acct-1,storage,standard-gb,3.25,2026-09-05T00:00:00Z\n",
        encoding="utf-8",
    )
    adapter = CustomRowsAdapter(base_path=tmp_path)

    result = asyncio.run(adapter.fetch_line_items("2026-09"))
    assert result.row_count == 1
    assert result.line_items[0].meter_id == "standard-gb"
    assert asyncio.run(adapter.fetch_line_items("2026-10")).row_count == 0


def test_checksum_ignores_row_order() -> None:
    rows = [
        {"account_id": "a", "product_id": "p", "meter_id": "m1", "cost": "1", "usage_start_time": "2026-09-01T00:00:00Z"},
        {"account_id": "a", "product_id": "p", "meter_id": "m2", "cost": "2", "usage_start_time": "2026-09-01T00:00:00Z"},
    ]
    forward = asyncio.run(CustomRowsAdapter(rows=rows).fetch_line_items("2026-09"))
    backward = asyncio.run(CustomRowsAdapter(rows=list(reversed(rows))).fetch_line_items("2026-09"))
    assert forward.checksum == backward.checksum


def test_checksum_ignores_order_of_rows_sharing_a_key() -> None:
    shared = {"account_id": "a", "product_id": "p", "meter_id": "m", "usage_start_time": "2026-09-01T00:00:00Z"}
    rows = [
        {**shared, "subaccount_id": "proj-1", "cost": "1.50"},
        {**shared, "subaccount_id": "proj-2", "cost": "2.25"},
        {**shared, "subaccount_id": "proj-2", "cost": "0.75"},
    ]
    forward = asyncio.run(CustomRowsAdapter(rows=rows).fetch_line_items("2026-09"))
    backward = asyncio.run(CustomRowsAdapter(rows=list(reversed(rows))).fetch_line_items("2026-09"))
    assert forward.checksum == backward.checksum


class _FakeRunner:
    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.queries: list[str] = []

    async def query(self, sql: str) -> list[dict[str, Any]]:
        self.queries.append(sql)
        return self.rows


def test_gcp_adapter_normalizes_export_rows() -> None:
    runner = _FakeRunner(
        [
            {
                "billing_account_id": "0000-AAAA",
                "service": {"id": "6F81-5844-456A", "description": "Compute Engine"},
                "sku": {"id": "CP-COMPUTEENGINE-VMIMAGE", "description": "VM"},
                "usage_start_time": "2026-09-01T00:00:00Z",
                "usage_end_time": "2026-09-01T01:00:00Z",
                "project": {"id": "proj-a", "labels": [{"key": "env", "value": "prod"}]},
                "labels": [{"key": "team", "value": "data"}],
                "location": {"region": "europe-west1"},
                "usage": {"amount": 3600, "unit": "seconds"},
                "cost": 10.5,
                "currency": "EUR",
                "credits": [{"amount": -0.5}],
            }
        ]
    )
    adapter = GcpBigQueryAdapter(GcpBigQueryConfig("billing-proj", "exports", "gcp_billing"), runner)

    result = asyncio.run(adapter.fetch_line_items("2026-09", ["0000-AAAA"]))

    assert "invoice.month = '202609'" in runner.queries[0]
    assert "billing_account_id IN ('0000-AAAA')" in runner.queries[0]
    item = result.line_items[0]
    assert item.subaccount_id == "proj-a"
    assert item.meter_id == "CP-COMPUTEENGINE-VMIMAGE"
    assert item.cost == Decimal("10.5")
    assert item.list_cost == Decimal("11.0")
    assert item.tags == {"team": "data", "project_env": "prod"}
    assert item.region == "europe-west1"


def test_gcp_adapter_warns_on_empty_month_and_caches_accounts() -> None:
    runner = _FakeRunner([])
    cache = MemoryTtlCache()
    adapter = GcpBigQueryAdapter(GcpBigQueryConfig("p", "d", "t"), runner, cache=cache)

    result = asyncio.run(adapter.fetch_line_items("2026-09"))
    assert result.source_metadata["warnings"]

    runner.rows = [{"id": "0000-AAAA", "name": "0000-AAAA"}]
    first = asyncio.run(adapter.list_accounts())
    runner.rows = []
    second = asyncio.run(adapter.list_accounts())
    assert [item.id for item in first] == ["0000-AAAA"]
    assert second == first


def test_openai_adapter_pages_and_prices_tokens() -> None:
    pages = {
        None: {
            "data": [
                {
                    "start_time": 1788220800,
                    "end_time": 1788307200,
                    "results": [
                        {
                            "model": "gpt-4o-mini",
                            "project_id": "proj_123",
                            "input_tokens": 2_000_000,
                            "input_cached_tokens": 0,
                            "output_tokens": 1_000_000,
                            "num_model_requests": 42,
                        }
                    ],
                }
            ],
            "has_more": True,
            "next_page": "page-2",
        },
        "page-2": {"data": [], "has_more": False},
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=pages[request.url.params.get("page")])

    adapter = OpenAiUsageAdapter(
        OpenAiUsageConfig(api_key="sk-admin", organization_id="org-1"),
        transport=httpx.MockTransport(handler),
    )
    result = asyncio.run(adapter.fetch_line_items("2026-09"))

    assert len(seen) == 2
    assert seen[0].headers["Authorization"] == "Bearer sk-admin"
    by_meter = {item.meter_id: item for item in result.line_items}
    assert by_meter["input_tokens"].cost == Decimal("0.30")
    assert by_meter["output_tokens"].cost == Decimal("0.60")
    assert by_meter["api_requests"].cost == 0
    assert by_meter["input_tokens"].subaccount_id == "proj_123"


def test_openai_adapter_surfaces_http_errors() -> None:
    adapter = OpenAiUsageAdapter(
        OpenAiUsageConfig(api_key="bad", organization_id="org-1"),
        transport=httpx.MockTransport(lambda request: httpx.Response(401, text="invalid key")),
    )
    with pytest.raises(AdapterFetchError, match="401"):
        asyncio.run(adapter.fetch_line_items("2026-09"))
    assert asyncio.run(adapter.validate_connection()) is False


def test_aws_cur_adapter_reads_month_exports(tmp_path: Path) -> None:
    month_dir = tmp_path / "2026-09"
    month_dir.mkdir()
    (month_dir / "cur-00001.csv").write_text(
        "bill_payer_account_id,line_item_usage_account_id,line_item_product_code,line_item_usage_type,"
        "line_item_usage_amount,line_item_unblended_cost,line_item_currency_code,"
        "line_item_usage_start_date,line_item_usage_end_date,pricing_unit,resource_tags_user_team\n"
        "111111111111,222222222222,AmazonEC2,BoxUsage:m5.large,24,2.30,USD,"
        "2026-09-01T00:00:00Z,2026-09-02T00:00:00Z,Hrs,data\n"
        "999999999999,333333333333,AmazonS3,TimedStorage,10,0.23,USD,"
        "2026-09-01T00:00:00Z,2026-09-02T00:00:00Z,GB-Mo,\n",
        encoding="utf-8",
    )
    adapter = AwsCurAdapter(AwsCurConfig(export_dir=tmp_path, payer_account_ids=("111111111111",)))

    result = asyncio.run(adapter.fetch_line_items("2026-09"))

    assert result.row_count == 1
    item = result.line_items[0]
    assert item.subaccount_id == "222222222222"
    assert item.cost == Decimal("2.30")
    assert item.tags == {"team": "data"}
    accounts = asyncio.run(adapter.list_accounts())
    assert [account.id for account in accounts] == ["111111111111", "999999999999"]


def test_aws_athena_query_filters_payers() -> None:
    adapter = AwsCurAdapter(aws_config_from_values("/tmp/cur", "cur_db", "cur_table"))
    sql = adapter.build_athena_query("2026-09", ["111111111111"])
    assert "DATE '2026-09-01'" in sql
    assert "IN ('111111111111')" in sql


def test_registry_requires_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    from billing_console.infra import config

    monkeypatch.setattr(config, "OPENAI_ADMIN_API_KEY", "")
    monkeypatch.setattr(config, "CUSTOM_BILLING_PATH", "")
    with pytest.raises(AdapterConfigError):
        create_adapter_from_env(ProviderType.OPENAI)
    with pytest.raises(AdapterConfigError):
        create_adapter_from_env(ProviderType.GCP)
    with pytest.raises(AdapterConfigError):
        create_adapter_from_env(ProviderType.CUSTOM)
    assert isinstance(create_adapter_from_env(ProviderType.CUSTOM, rows=[]), CustomRowsAdapter)
