from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from billing_console.domain.models import (
    EventRecord,
    Invoice,
    InvoiceRunCreate,
    PricingRuleCreate,
    PricingRuleType,
)
from billing_console.domain.state_machine import InvoiceStatus
from billing_console.infra.db import get_engine
from billing_console.infra.events import INVOICE_LOCKED
from billing_console.services.errors import ConflictError, NotFoundError
from billing_console.services.invoice_run_service import InvoiceRunService
from billing_console.services.invoice_service import InvoiceService


def _invoice(seed) -> Invoice:
    compute = seed.sku_group("COMPUTE", "vm-core-hours")
    acme = seed.customer("Acme", "acme-prod", external_id="acme-001")
    seed.pricing(
        acme.id,
        PricingRuleCreate(
            rule_type=PricingRuleType.LIST_DISCOUNT,
            sku_group_id=compute.id,
            parameters={"discount_rate": "0.8"},
        ),
    )
    seed.ingest([seed.row("acme-prod", "250"), seed.row("acme-prod", "10", meter_id="egress-gb")])
    runs = InvoiceRunService()
    run, _ = runs.create_run(InvoiceRunCreate(billing_month="2026-09"), actor_id="tester")
    runs.execute_run(run.id, actor_id="tester")
    return InvoiceService().list_invoices(invoice_run_id=run.id)[0]


def test_lock_is_one_way(seed) -> None:
    invoice = _invoice(seed)
    service = InvoiceService()

    locked = service.lock_invoice(invoice.id, actor_id="finance")
    assert locked.locked_at is not None
    assert locked.locked_by == "finance"
    with pytest.raises(ConflictError):
        service.lock_invoice(invoice.id, actor_id="finance")

    with Session(get_engine()) as session:
        events = session.exec(select(EventRecord).where(EventRecord.event_type == INVOICE_LOCKED)).all()
    assert [event.payload["invoice_id"] for event in events] == [invoice.id]


def test_presentation_requires_lock(seed) -> None:
    invoice = _invoice(seed)
    service = InvoiceService()

    with pytest.raises(ConflictError):
        service.build_presentation(invoice.id)

    service.lock_invoice(invoice.id, actor_id="finance")
    presentation = service.build_presentation(invoice.id)

    assert set(presentation) == {"header", "customer", "rows", "summary", "audit"}
    assert presentation["header"]["invoice_number"] == "SIEGER-202609-ACME-0001"
    assert presentation["header"]["locked_by"] == "finance"
    assert presentation["customer"]["external_id"] == "acme-001"
    assert sorted(row["sku_group_code"] for row in presentation["rows"]) == ["COMPUTE", "UNMAPPED"]
    assert presentation["summary"]["raw_total"] == "260"
    assert presentation["summary"]["subtotal"] == "210"
    assert presentation["summary"]["discount"] == "50"
    assert presentation["audit"]["config_snapshot_id"] == invoice.config_snapshot_id


def test_status_transitions(seed) -> None:
    invoice = _invoice(seed)
    service = InvoiceService()

    assert service.transition_status(invoice.id, InvoiceStatus.ISSUED).status == InvoiceStatus.ISSUED
    assert service.transition_status(invoice.id, InvoiceStatus.PAID).status == InvoiceStatus.PAID
    with pytest.raises(ConflictError):
        service.transition_status(invoice.id, InvoiceStatus.CANCELLED)
    with pytest.raises(ConflictError):
        service.transition_status(invoice.id, InvoiceStatus.DRAFT)
    with pytest.raises(NotFoundError):
        service.transition_status("missing", InvoiceStatus.ISSUED)


def test_cancelled_invoice_cannot_be_locked(seed) -> None:
    invoice = _invoice(seed)
    service = InvoiceService()
    service.transition_status(invoice.id, InvoiceStatus.CANCELLED)
    with pytest.raises(ConflictError):
        service.lock_invoice(invoice.id)


def test_config_snapshot_is_kept_per_invoice(seed) -> None:
    invoice = _invoice(seed)
    snapshot = InvoiceService().get_config_snapshot(invoice.id)
    assert snapshot.customer_id == invoice.customer_id
    assert snapshot.invoice_run_id == invoice.invoice_run_id


def test_invoice_api(seed, billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    invoice = _invoice(seed)

    listed = billing_client.get("/api/invoices?billing_month=2026-09", headers=auth_headers)
    assert [item["id"] for item in listed.json()] == [invoice.id]

    detail = billing_client.get(f"/api/invoices/{invoice.id}", headers=auth_headers)
    assert [line["line_number"] for line in detail.json()["line_items"]] == [1, 2]

    early = billing_client.get(f"/api/invoices/{invoice.id}/presentation", headers=auth_headers)
    assert early.status_code == 409

    locked = billing_client.post(f"/api/invoices/{invoice.id}:lock", headers=auth_headers)
    assert locked.status_code == 200
    assert locked.json()["locked_by"] == "tester"
    assert billing_client.post(f"/api/invoices/{invoice.id}:lock", headers=auth_headers).status_code == 409

    presentation = billing_client.get(f"/api/invoices/{invoice.id}/presentation", headers=auth_headers)
    assert presentation.status_code == 200
    assert presentation.json()["summary"]["total_amount"] == "210"

    issued = billing_client.post(
        f"/api/invoices/{invoice.id}:status", json={"status": "ISSUED"}, headers=auth_headers
    )
    assert issued.json()["status"] == "ISSUED"
    backwards = billing_client.post(
        f"/api/invoices/{invoice.id}:status", json={"status": "DRAFT"}, headers=auth_headers
    )
    assert backwards.status_code == 409

    assert billing_client.get("/api/invoices/missing", headers=auth_headers).status_code == 404
