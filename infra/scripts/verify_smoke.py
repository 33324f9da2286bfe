from __future__ import annotations

import asyncio
import os
import time
from typing import Any
from uuid import uuid4

import httpx

from billing_console.adapters.fake_adapter import FakeBillingAdapter
from billing_console.infra.auth import create_access_token


def _assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def _wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    last_status = "n/a"
    last_body = ""
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
            last_status = str(response.status_code)
            last_body = response.text
        except httpx.HTTPError as exc:
            last_status = "http_error"
            last_body = str(exc)
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}, last_status={last_status}, detail={last_body}")


async def _fake_rows(project_id: str, month: str) -> list[dict[str, Any]]:
    adapter = FakeBillingAdapter(projects_by_account={"smoke-billing": [project_id]}, days_per_month=2)
    result = await adapter.fetch_line_items(month)
    return [
        {
            "account_id": item.account_id,
            "subaccount_id": item.subaccount_id,
            "product_id": item.product_id,
            "meter_id": item.meter_id,
            "usage_amount": str(item.usage_amount),
            "usage_unit": item.usage_unit,
            "cost": str(item.cost),
            "currency": item.currency,
            "usage_start_time": item.usage_start_time.isoformat(),
            "usage_end_time": item.usage_end_time.isoformat(),
        }
        for item in result.line_items
    ]


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    month = os.getenv("SMOKE_BILLING_MONTH", "2026-09")
    run_id = uuid4().hex[:8]
    project_id = f"smoke-project-{run_id}"
    headers = _auth_headers(create_access_token(user_id=f"smoke-{run_id}", permissions=["*"]))

    timeout = httpx.Timeout(60.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await _wait_ok(client, "/healthz")
        await _wait_ok(client, "/readyz")

        customer_resp = await client.post(
            "/api/billing/customers",
            json={"name": f"Smoke {run_id}", "external_id": f"smk{run_id}"},
            headers=headers,
        )
        _assert_status(customer_resp, 201)
        customer_id = customer_resp.json()["id"]

        project_resp = await client.post(
            "/api/billing/projects",
            json={"project_id": project_id, "name": project_id},
            headers=headers,
        )
        _assert_status(project_resp, 201)
        binding_resp = await client.post(
            f"/api/billing/customers/{customer_id}/bindings",
            json={"project_id": project_id},
            headers=headers,
        )
        _assert_status(binding_resp, 201)

        rows = await _fake_rows(project_id, month)
        ingest_resp = await client.post(
            "/api/ingestion/batches",
            json={"provider": "CUSTOM", "month": month, "rows": rows},
            headers=headers,
        )
        _assert_status(ingest_resp, 201)
        batch_id = ingest_resp.json()["batch"]["id"]

        run_resp = await client.post(
            "/api/invoice-runs",
            json={"billing_month": month, "ingestion_batch_id": batch_id, "execute_now": True},
            headers=headers,
        )
        _assert_status(run_resp, (200, 201))
        run_payload = run_resp.json()
        if run_payload["status"] != "SUCCEEDED":
            raise RuntimeError(f"invoice run ended as {run_payload['status']}: {run_payload['error_message']}")

        invoices_resp = await client.get(
            "/api/invoices",
            params={"invoice_run_id": run_payload["id"], "customer_id": customer_id},
            headers=headers,
        )
        _assert_status(invoices_resp, 200)
        invoices = invoices_resp.json()
        if len(invoices) != 1:
            raise RuntimeError(f"expected one invoice for smoke customer, got {len(invoices)}")
        invoice_id = invoices[0]["id"]

        lock_resp = await client.post(f"/api/invoices/{invoice_id}:lock", headers=headers)
        _assert_status(lock_resp, 200)
        presentation_resp = await client.get(f"/api/invoices/{invoice_id}/presentation", headers=headers)
        _assert_status(presentation_resp, 200)

        analytics_resp = await client.get(
            f"/api/analytics/months/{month}",
            params={"invoice_run_id": run_payload["id"]},
            headers=headers,
        )
        _assert_status(analytics_resp, 200)

    print(f"verify_smoke: ingestion + invoice run {run_payload['id']} + lock + presentation + analytics ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
