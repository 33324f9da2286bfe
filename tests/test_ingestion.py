from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from billing_console.adapters.base import AdapterFetchError
from billing_console.adapters.custom_adapter import CustomRowsAdapter
from billing_console.adapters.fake_adapter import FakeBillingAdapter
from billing_console.domain.models import EventRecord, IngestionBatch, LineItem
from billing_console.infra.auth import create_access_token
from billing_console.infra.db import get_engine
from billing_console.infra.events import INGESTION_BATCH_CREATED
from billing_console.services.errors import ValidationError
from billing_console.services.ingestion_service import IngestionService


def test_same_source_data_reuses_batch(seed) -> None:
    service = IngestionService()
    adapter = FakeBillingAdapter(projects_by_account={"acct-1": ["proj-a"]}, days_per_month=2)

    first, created_first = asyncio.run(service.ingest_from_adapter(adapter, "2026-09"))
    second, created_second = asyncio.run(service.ingest_from_adapter(adapter, "2026-09"))

    assert created_first is True
    assert created_second is False
    assert second.id == first.id
    with Session(get_engine()) as session:
        assert len(session.exec(select(IngestionBatch)).all()) == 1
        assert len(session.exec(select(LineItem)).all()) == first.row_count
        events = session.exec(select(EventRecord).where(EventRecord.event_type == INGESTION_BATCH_CREATED)).all()
    assert len(events) == 1
    assert events[0].payload["checksum"] == first.checksum


def test_changed_source_data_creates_new_batch(seed) -> None:
    first = seed.ingest([seed.row("proj-a", "10")])
    second = seed.ingest([seed.row("proj-a", "11")])
    assert first.id != second.id
    assert first.checksum != second.checksum


def test_empty_fetch_is_rejected(seed) -> None:
    with pytest.raises(AdapterFetchError):
        asyncio.run(IngestionService().ingest_from_adapter(CustomRowsAdapter(rows=[]), "2026-09"))


def test_bad_month_is_rejected(seed) -> None:
    with pytest.raises(ValidationError):
        asyncio.run(IngestionService().ingest_from_adapter(FakeBillingAdapter(), "2026-13"))


def test_ingestion_api_flow(billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    payload = {
        "provider": "CUSTOM",
        "month": "2026-09",
        "rows": [
            {
                "account_id": "acct-1",
                "subaccount_id": "proj-a",
                "product_id": "compute",
                "meter_id": "vm-core-hours",
                "cost": "42.00",
                "usage_start_time": "2026-09-10T00:00:00Z",
            }
        ],
    }
    created = billing_client.post("/api/ingestion/batches", json=payload, headers=auth_headers)
    assert created.status_code == 201
    body = created.json()
    assert body["created"] is True
    assert body["batch"]["row_count"] == 1

    repeated = billing_client.post("/api/ingestion/batches", json=payload, headers=auth_headers)
    assert repeated.json()["created"] is False
    assert repeated.json()["batch"]["id"] == body["batch"]["id"]

    listed = billing_client.get("/api/ingestion/batches?month=2026-09", headers=auth_headers)
    assert [item["id"] for item in listed.json()] == [body["batch"]["id"]]

    missing = billing_client.get("/api/ingestion/batches/nope", headers=auth_headers)
    assert missing.status_code == 404


def test_ingestion_api_maps_adapter_errors(billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    empty = billing_client.post(
        "/api/ingestion/batches",
        json={"provider": "CUSTOM", "month": "2026-09", "rows": []},
        headers=auth_headers,
    )
    assert empty.status_code == 502

    unconfigured = billing_client.post(
        "/api/ingestion/batches",
        json={"provider": "GCP", "month": "2026-09"},
        headers=auth_headers,
    )
    assert unconfigured.status_code == 422


def test_ingestion_requires_permission(billing_client: TestClient) -> None:
    token = create_access_token(user_id="viewer", permissions=["billing.read"])
    response = billing_client.post(
        "/api/ingestion/batches",
        json={"provider": "CUSTOM", "month": "2026-09", "rows": []},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 403
