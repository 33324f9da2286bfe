from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from billing_console.domain.models import (
    BillingCustomerSnapshot,
    BillingMonthlySummary,
    InvoiceRunCreate,
    PricingRuleCreate,
    PricingRuleType,
)
from billing_console.infra.db import get_engine
from billing_console.services.analytics_service import AnalyticsService, margin_pct
from billing_console.services.errors import ConflictError, NotFoundError
from billing_console.services.invoice_run_service import InvoiceRunService


def _run_month(month: str) -> str:
    service = InvoiceRunService()
    run, _ = service.create_run(InvoiceRunCreate(billing_month=month), actor_id="tester")
    return service.execute_run(run.id, actor_id="tester").id


def _seed_two_months(seed) -> str:
    seed.sku_group("COMPUTE", "vm-core-hours")
    acme = seed.customer("Acme", "acme-prod")
    seed.pricing(
        acme.id,
        PricingRuleCreate(rule_type=PricingRuleType.LIST_DISCOUNT, parameters={"discount_rate": "0.9"}),
    )
    seed.ingest([seed.row("acme-prod", "1000")], "2026-09")
    seed.ingest([seed.row("acme-prod", "1100", usage_start_time="2026-10-04T00:00:00Z")], "2026-10")
    return acme.id


def test_margin_pct() -> None:
    assert margin_pct(Decimal("900"), Decimal("700")) == Decimal("22.22")
    assert margin_pct(Decimal("0"), Decimal("10")) is None


def test_runs_produce_snapshots_with_month_over_month_growth(seed) -> None:
    customer_id = _seed_two_months(seed)
    september_run = _run_month("2026-09")
    october_run = _run_month("2026-10")
    analytics = AnalyticsService()

    september = analytics.month("2026-09")
    assert [row.invoice_run_id for row in september.customers] == [september_run]
    first = september.customers[0]
    assert first.revenue == Decimal("900")
    assert first.raw_cost == Decimal("1000")
    assert first.mom_growth_pct is None
    assert first.gross_margin_pct == Decimal("-11.11")
    assert [(row.product_group, row.provider) for row in september.monthly_summaries] == [("COMPUTE", "CUSTOM")]
    provider = september.providers[0]
    assert provider.provider == "CUSTOM"
    assert provider.estimated_cost == Decimal("700")
    assert provider.margin == Decimal("200")

    october = analytics.month("2026-10", invoice_run_id=october_run)
    assert october.customers[0].revenue == Decimal("990")
    assert october.customers[0].mom_growth_pct == Decimal("10.00")

    history = analytics.customer_history(customer_id)
    assert [row.billing_month for row in history] == ["2026-10", "2026-09"]
    assert [row.billing_month for row in analytics.customer_history(customer_id, limit=1)] == ["2026-10"]


def test_regeneration_replaces_rows(seed) -> None:
    _seed_two_months(seed)
    run_id = _run_month("2026-09")
    analytics = AnalyticsService()

    before = analytics.month("2026-09")
    again = analytics.generate_for_run(run_id)
    rebuilt = analytics.rebuild_for_month("2026-09")
    after = analytics.month("2026-09")

    assert again.customer_rows == 1
    assert [item.invoice_run_id for item in rebuilt] == [run_id]
    assert [row.revenue for row in after.customers] == [row.revenue for row in before.customers]
    with Session(get_engine()) as session:
        assert len(session.exec(select(BillingCustomerSnapshot)).all()) == 1
        assert len(session.exec(select(BillingMonthlySummary)).all()) == 1


def test_generation_requires_succeeded_run(seed) -> None:
    _seed_two_months(seed)
    service = InvoiceRunService()
    queued, _ = service.create_run(InvoiceRunCreate(billing_month="2026-09"), actor_id="tester")

    with pytest.raises(ConflictError):
        AnalyticsService().generate_for_run(queued.id)
    with pytest.raises(NotFoundError):
        AnalyticsService().generate_for_run("missing-run")


def test_empty_month_has_no_rows(seed) -> None:
    empty = AnalyticsService().month("2025-01")
    assert empty.customers == []
    assert empty.monthly_summaries == []
    assert empty.providers == []


def test_analytics_api(seed, billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    customer_id = _seed_two_months(seed)
    run_id = _run_month("2026-09")

    month = billing_client.get("/api/analytics/months/2026-09", headers=auth_headers)
    assert month.status_code == 200
    assert month.json()["customers"][0]["invoice_run_id"] == run_id

    history = billing_client.get(f"/api/analytics/customers/{customer_id}", headers=auth_headers)
    assert [row["billing_month"] for row in history.json()] == ["2026-09"]

    rebuilt = billing_client.post("/api/analytics/months/2026-09:rebuild", headers=auth_headers)
    assert rebuilt.json() == {"billing_month": "2026-09", "runs": [run_id]}
