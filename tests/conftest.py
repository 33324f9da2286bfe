from __future__ import annotations

import asyncio
from collections.abc import Generator
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from billing_console import main as app_main
from billing_console.adapters.custom_adapter import CustomRowsAdapter
from billing_console.domain.models import (
    BindingCreate,
    Credit,
    CreditCreate,
    Customer,
    CustomerCreate,
    IngestionBatch,
    PricingList,
    PricingListCreate,
    PricingRuleCreate,
    ProjectCreate,
    SkuGroup,
    SkuGroupCreate,
    SkuGroupMappingCreate,
)
from billing_console.infra import cache, db
from billing_console.infra.auth import create_access_token
from billing_console.services.catalog_service import CatalogService
from billing_console.services.credit_engine import CreditService
from billing_console.services.customer_service import CustomerService
from billing_console.services.ingestion_service import IngestionService
from billing_console.services.sku_group_service import SkuGroupService

BILLING_MONTH = "2026-09"


@pytest.fixture()
def billing_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[Engine, None, None]:
    db_path = tmp_path / "billing_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    cache.get_cache.cache_clear()
    yield test_engine
    cache.get_cache.cache_clear()
    test_engine.dispose()


@pytest.fixture()
def billing_client(billing_engine: Engine) -> Generator[TestClient, None, None]:
    client = TestClient(app_main.app)
    yield client
    client.close()
    app_main.app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    token = create_access_token(user_id="tester", permissions=["*"])
    return {"Authorization": f"Bearer {token}"}


class BillingSeeder:
    """Builds customers, catalog and cost data through the service layer."""

    def __init__(self) -> None:
        self.customers = CustomerService()
        self.sku_groups = SkuGroupService()
        self.catalog = CatalogService()
        self.credits = CreditService()
        self.ingestion = IngestionService()

    @staticmethod
    def row(
        project_key: str,
        cost: str,
        *,
        meter_id: str = "vm-core-hours",
        product_id: str = "compute",
        account_id: str = "billing-001",
        currency: str = "USD",
        usage_start_time: str = "2026-09-03T00:00:00Z",
        usage_amount: str = "10",
    ) -> dict[str, Any]:
        return {
            "account_id": account_id,
            "subaccount_id": project_key,
            "product_id": product_id,
            "meter_id": meter_id,
            "cost": cost,
            "currency": currency,
            "usage_start_time": usage_start_time,
            "usage_amount": usage_amount,
        }

    def customer(
        self,
        name: str,
        *project_keys: str,
        currency: str = "USD",
        external_id: str | None = None,
    ) -> Customer:
        customer = self.customers.create_customer(
            CustomerCreate(name=name, currency=currency, external_id=external_id)
        )
        for key in project_keys:
            self.customers.create_project(ProjectCreate(project_id=key, name=f"{name} {key}"))
            self.customers.bind_project(customer.id, BindingCreate(project_id=key))
        return customer

    def sku_group(self, code: str, *sku_ids: str) -> SkuGroup:
        group = self.sku_groups.create_group(SkuGroupCreate(code=code, name=code.title()))
        for sku_id in sku_ids:
            self.sku_groups.add_mapping(group.id, SkuGroupMappingCreate(sku_id=sku_id))
        return group

    def pricing(self, customer_id: str, *rules: PricingRuleCreate) -> PricingList:
        pricing_list = self.catalog.create_pricing_list(customer_id, PricingListCreate(name="Standard"))
        for rule in rules:
            self.catalog.add_pricing_rule(pricing_list.id, rule)
        return pricing_list

    def credit(
        self,
        customer_id: str,
        amount: str,
        *,
        currency: str = "USD",
        valid_from: date = date(2026, 9, 1),
        valid_to: date = date(2026, 12, 31),
        allow_carry_over: bool = False,
    ) -> Credit:
        return self.credits.create_credit(
            customer_id,
            CreditCreate(
                total_amount=Decimal(amount),
                currency=currency,
                valid_from=valid_from,
                valid_to=valid_to,
                allow_carry_over=allow_carry_over,
            ),
        )

    def ingest(self, rows: list[dict[str, Any]], month: str = BILLING_MONTH) -> IngestionBatch:
        batch, _ = asyncio.run(self.ingestion.ingest_from_adapter(CustomRowsAdapter(rows=rows), month))
        return batch


@pytest.fixture()
def seed(billing_engine: Engine) -> BillingSeeder:
    return BillingSeeder()
