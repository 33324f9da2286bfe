from __future__ import annotations

from decimal import Decimal

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from billing_console.domain.models import AuditAction, AuditLog
from billing_console.infra.auth import TokenError, create_access_token
from billing_console.infra.config import JWT_SECRET


def _post(client: TestClient, path: str, headers: dict[str, str], payload: dict | None = None) -> dict:
    response = client.post(path, json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_catalog_and_run_flow(billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    customer = _post(
        billing_client, "/api/billing/customers", auth_headers, {"name": "Acme Corp", "external_id": "acme-001"}
    )
    project = _post(
        billing_client, "/api/billing/projects", auth_headers, {"project_id": "acme-prod", "name": "Acme prod"}
    )
    binding = _post(
        billing_client, f"/api/billing/customers/{customer['id']}/bindings", auth_headers, {"project_id": "acme-prod"}
    )
    assert binding["project_id"] == project["id"]
    assert project["project_id"] == "acme-prod"

    group = _post(billing_client, "/api/billing/sku-groups", auth_headers, {"code": "COMPUTE", "name": "Compute"})
    _post(billing_client, f"/api/billing/sku-groups/{group['id']}/mappings", auth_headers, {"sku_id": "vm-core-hours"})
    pricing_list = _post(
        billing_client, f"/api/billing/customers/{customer['id']}/pricing-lists", auth_headers, {"name": "2026"}
    )
    assert pricing_list["status"] == "ACTIVE"
    _post(
        billing_client,
        f"/api/billing/pricing-lists/{pricing_list['id']}/rules",
        auth_headers,
        {"rule_type": "LIST_DISCOUNT", "sku_group_id": group["id"], "parameters": {"discount_rate": "0.9"}},
    )
    special = _post(
        billing_client,
        "/api/billing/special-rules",
        auth_headers,
        {"name": "free egress", "rule_type": "EXCLUDE_SKU", "customer_id": customer["id"], "sku_id": "egress-gb"},
    )

    rows = [
        {
            "account_id": "billing-001",
            "subaccount_id": "acme-prod",
            "product_id": product_id,
            "meter_id": meter_id,
            "cost": cost,
            "usage_start_time": "2026-09-12T00:00:00Z",
        }
        for product_id, meter_id, cost in (("compute", "vm-core-hours", "300"), ("network", "egress-gb", "20"))
    ]
    _post(billing_client, "/api/ingestion/batches", auth_headers, {"provider": "CUSTOM", "month": "2026-09", "rows": rows})

    validation = billing_client.get("/api/invoice-runs/validate?billing_month=2026-09", headers=auth_headers)
    assert validation.status_code == 200
    assert validation.json()["ok"] is True

    run = _post(billing_client, "/api/invoice-runs", auth_headers, {"billing_month": "2026-09", "execute_now": True})
    assert run["status"] == "SUCCEEDED"
    assert run["total_invoices"] == 1
    assert Decimal(run["total_amount"]) == Decimal("270")

    repeated = billing_client.post(
        "/api/invoice-runs", json={"billing_month": "2026-09", "execute_now": True}, headers=auth_headers
    )
    assert repeated.status_code == 200
    assert repeated.json()["id"] == run["id"]

    fetched = billing_client.get(f"/api/invoice-runs/{run['id']}", headers=auth_headers)
    assert fetched.json()["source_key"] == "time:2026-09-01T00:00:00.000Z:2026-10-01T00:00:00.000Z"

    effects = billing_client.get(f"/api/billing/invoice-runs/{run['id']}/special-rule-effects", headers=auth_headers)
    assert [(item["rule_id"], Decimal(item["cost_delta"])) for item in effects.json()] == [
        (special["id"], Decimal("-20"))
    ]

    rerun = billing_client.post(f"/api/invoice-runs/{run['id']}:execute", headers=auth_headers)
    assert rerun.status_code == 409


def test_catalog_validation_errors(billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    _post(billing_client, "/api/billing/sku-groups", auth_headers, {"code": "STORAGE", "name": "Storage"})
    duplicate = billing_client.post(
        "/api/billing/sku-groups", json={"code": "STORAGE", "name": "Again"}, headers=auth_headers
    )
    assert duplicate.status_code == 409
    reserved = billing_client.post(
        "/api/billing/sku-groups", json={"code": "UNMAPPED", "name": "Nope"}, headers=auth_headers
    )
    assert reserved.status_code == 409

    incomplete = billing_client.post(
        "/api/billing/special-rules",
        json={"name": "drop", "rule_type": "EXCLUDE_SKU"},
        headers=auth_headers,
    )
    assert incomplete.status_code == 422

    bad_month = billing_client.post("/api/invoice-runs", json={"billing_month": "2026-13"}, headers=auth_headers)
    assert bad_month.status_code == 422

    missing = billing_client.get("/api/invoice-runs/nope", headers=auth_headers)
    assert missing.status_code == 404


def test_special_rule_lifecycle(billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    rule = _post(
        billing_client,
        "/api/billing/special-rules",
        auth_headers,
        {"name": "halve", "rule_type": "OVERRIDE_COST", "parameters": {"cost_multiplier": "0.5"}},
    )
    disabled = billing_client.post(f"/api/billing/special-rules/{rule['id']}:disable", headers=auth_headers)
    assert disabled.json()["enabled"] is False
    enabled = billing_client.post(f"/api/billing/special-rules/{rule['id']}:enable", headers=auth_headers)
    assert enabled.json()["enabled"] is True

    deleted = billing_client.delete(f"/api/billing/special-rules/{rule['id']}", headers=auth_headers)
    assert deleted.status_code == 200
    listed = billing_client.get("/api/billing/special-rules", headers=auth_headers)
    assert listed.json() == []
    with_deleted = billing_client.get("/api/billing/special-rules?include_deleted=true", headers=auth_headers)
    assert [item["id"] for item in with_deleted.json()] == [rule["id"]]


def test_reader_cannot_run_invoices(billing_client: TestClient) -> None:
    token = create_access_token(user_id="viewer", permissions=["billing.read"])
    headers = {"Authorization": f"Bearer {token}"}

    assert billing_client.get("/api/billing/customers", headers=headers).status_code == 200
    denied = billing_client.post("/api/invoice-runs", json={"billing_month": "2026-09"}, headers=headers)
    assert denied.status_code == 403


def test_config_writes_are_audited(billing_engine, billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    created = _post(billing_client, "/api/billing/customers", auth_headers, {"name": "Audited"})
    denied = billing_client.post(
        "/api/billing/sku-groups", json={"code": "UNMAPPED", "name": "Nope"}, headers=auth_headers
    )
    assert denied.status_code == 409

    with Session(billing_engine) as session:
        logs = session.exec(select(AuditLog)).all()
    assert [(log.action, log.target_table, log.target_id) for log in logs] == [
        (AuditAction.CREATE, "customers", created["id"])
    ]
    assert logs[0].actor_id == "tester"
    assert logs[0].detail["route"] == "/api/billing/customers"


def test_lock_is_audited_from_its_event(
    billing_engine, billing_client: TestClient, auth_headers: dict[str, str], seed
) -> None:
    customer = seed.customer("Lockable", "lock-prod")
    seed.ingest([seed.row("lock-prod", "40")])
    run = _post(billing_client, "/api/invoice-runs", auth_headers, {"billing_month": "2026-09", "execute_now": True})
    invoices = billing_client.get(f"/api/invoices?invoice_run_id={run['id']}", headers=auth_headers).json()
    assert [item["customer_id"] for item in invoices] == [customer.id]

    locked = billing_client.post(f"/api/invoices/{invoices[0]['id']}:lock", headers=auth_headers)
    assert locked.status_code == 200

    with Session(billing_engine) as session:
        logs = session.exec(select(AuditLog).where(AuditLog.action == AuditAction.INVOICE_LOCK)).all()
    assert [(log.target_table, log.target_id, log.actor_id) for log in logs] == [
        ("invoices", invoices[0]["id"], "tester")
    ]
    assert logs[0].detail["invoice_number"] == invoices[0]["invoice_number"]


def test_tokens_carry_only_billing_permissions(billing_client: TestClient) -> None:
    with pytest.raises(TokenError, match="Unknown billing permissions"):
        create_access_token(user_id="tester", permissions=["fleet.write"])

    foreign = jwt.encode({"sub": "tester", "iss": "someone-else", "exp": 4102444800}, JWT_SECRET, algorithm="HS256")
    response = billing_client.get("/api/billing/customers", headers={"Authorization": f"Bearer {foreign}"})
    assert response.status_code == 401
