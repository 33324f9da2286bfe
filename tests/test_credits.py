from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from billing_console.domain.models import Credit, CreditAdjustRequest, CreditStatus, LedgerEntryType
from billing_console.infra.db import get_engine
from billing_console.services.credit_engine import apply_credits, load_applicable_credits
from billing_console.services.errors import ConflictError, ValidationError


def _burn(customer_id: str, amount: str, *, currency: str = "USD", month: str = "2026-09"):
    with Session(get_engine(), expire_on_commit=False) as session:
        result = apply_credits(
            session,
            customer_id=customer_id,
            invoice_id="inv-test",
            invoice_run_id="run-test",
            invoice_amount=Decimal(amount),
            billing_month=month,
            currency=currency,
        )
        session.commit()
    return result


def test_credit_creation_writes_allocation(seed) -> None:
    acme = seed.customer("Acme")
    credit = seed.credit(acme.id, "250")

    ledger = seed.credits.list_ledger(credit.id)
    assert [(entry.entry_type, entry.amount, entry.balance_after) for entry in ledger] == [
        (LedgerEntryType.ALLOCATION, Decimal("250"), Decimal("250"))
    ]
    assert credit.status == CreditStatus.ACTIVE


def test_credits_burn_soonest_expiry_first(seed) -> None:
    acme = seed.customer("Acme")
    later = seed.credit(acme.id, "100", valid_to=date(2027, 6, 30))
    sooner = seed.credit(acme.id, "30", valid_to=date(2026, 10, 31))

    result = _burn(acme.id, "50")

    assert result.total_applied == Decimal("50")
    assert result.final_amount == 0
    assert [usage.credit_id for usage in result.credits_used] == [sooner.id, later.id]
    assert seed.credits.get_credit(sooner.id).status == CreditStatus.DEPLETED
    remaining = seed.credits.get_credit(later.id)
    assert remaining.remaining_amount == Decimal("80")
    assert remaining.status == CreditStatus.ACTIVE
    usage = [entry for entry in seed.credits.list_ledger(later.id) if entry.entry_type == LedgerEntryType.USAGE]
    assert usage[0].balance_after == Decimal("80")


def test_same_expiry_burns_oldest_credit_first(seed) -> None:
    acme = seed.customer("Acme")
    newer = seed.credit(acme.id, "40", valid_to=date(2026, 11, 30))
    older = seed.credit(acme.id, "40", valid_to=date(2026, 11, 30))
    with Session(get_engine()) as session:
        for credit_id, created_at in ((older.id, datetime(2026, 1, 5)), (newer.id, datetime(2026, 2, 5))):
            row = session.get(Credit, credit_id)
            row.created_at = created_at
            session.add(row)
        session.commit()

    result = _burn(acme.id, "50")

    assert [(usage.credit_id, usage.applied_amount) for usage in result.credits_used] == [
        (older.id, Decimal("40")),
        (newer.id, Decimal("10")),
    ]


def test_uncovered_amount_stays_on_invoice(seed) -> None:
    acme = seed.customer("Acme")
    seed.credit(acme.id, "40")
    result = _burn(acme.id, "100")
    assert result.total_applied == Decimal("40")
    assert result.final_amount == Decimal("60")


def test_credits_only_burn_matching_currency(seed) -> None:
    acme = seed.customer("Acme")
    seed.credit(acme.id, "40", currency="EUR")

    assert _burn(acme.id, "100", currency="USD").total_applied == 0
    assert _burn(acme.id, "100", currency="MIXED").total_applied == 0
    assert _burn(acme.id, "100", currency="EUR").total_applied == Decimal("40")


def test_carry_over_controls_later_months(seed) -> None:
    acme = seed.customer("Acme")
    seed.credit(acme.id, "10", valid_from=date(2026, 8, 1))
    carried = seed.credit(acme.id, "20", valid_from=date(2026, 8, 1), allow_carry_over=True)

    with Session(get_engine()) as session:
        usable = load_applicable_credits(session, acme.id, "2026-09")
    assert [credit.id for credit in usable] == [carried.id]


def test_adjust_cancel_and_expire(seed) -> None:
    acme = seed.customer("Acme")
    credit = seed.credit(acme.id, "100")

    adjusted = seed.credits.adjust_credit(credit.id, CreditAdjustRequest(amount=Decimal("-25"), note="correction"))
    assert adjusted.remaining_amount == Decimal("75")
    assert adjusted.total_amount == Decimal("75")
    with pytest.raises(ConflictError):
        seed.credits.adjust_credit(credit.id, CreditAdjustRequest(amount=Decimal("-500")))
    with pytest.raises(ValidationError):
        seed.credits.adjust_credit(credit.id, CreditAdjustRequest(amount=Decimal("0")))

    cancelled = seed.credits.cancel_credit(credit.id)
    assert cancelled.status == CreditStatus.CANCELLED
    assert cancelled.remaining_amount == 0
    with pytest.raises(ConflictError):
        seed.credits.cancel_credit(credit.id)

    old = seed.credit(acme.id, "15", valid_from=date(2026, 1, 1), valid_to=date(2026, 3, 31))
    expired = seed.credits.expire_credits(date(2026, 9, 1))
    assert [item.id for item in expired] == [old.id]
    ledger = seed.credits.list_ledger(old.id)
    assert ledger[-1].entry_type == LedgerEntryType.EXPIRY
    assert ledger[-1].amount == Decimal("15")
    assert ledger[-1].balance_after == 0

    summary = seed.credits.credit_summary(acme.id)
    assert summary.active_count == 0
    assert summary.total_remaining == 0


def test_ledger_balances_chain_across_entry_types(seed) -> None:
    acme = seed.customer("Acme")
    credit = seed.credit(acme.id, "100", valid_from=date(2026, 9, 1), valid_to=date(2026, 9, 30))
    _burn(acme.id, "30")
    seed.credits.adjust_credit(credit.id, CreditAdjustRequest(amount=Decimal("10"), note="goodwill"))
    seed.credits.expire_credits(date(2026, 10, 1))

    ledger = seed.credits.list_ledger(credit.id)
    assert [entry.entry_type for entry in ledger] == [
        LedgerEntryType.ALLOCATION,
        LedgerEntryType.USAGE,
        LedgerEntryType.ADJUSTMENT,
        LedgerEntryType.EXPIRY,
    ]
    balance = Decimal("0")
    for entry in ledger:
        if entry.entry_type in (LedgerEntryType.USAGE, LedgerEntryType.EXPIRY):
            balance -= entry.amount
        else:
            balance += entry.amount
        assert entry.balance_after == balance
    assert [entry.balance_after for entry in ledger] == [Decimal("100"), Decimal("70"), Decimal("80"), Decimal("0")]


def test_credit_api(billing_client: TestClient, auth_headers: dict[str, str]) -> None:
    customer = billing_client.post("/api/billing/customers", json={"name": "Acme"}, headers=auth_headers)
    assert customer.status_code == 201
    customer_id = customer.json()["id"]

    created = billing_client.post(
        f"/api/billing/customers/{customer_id}/credits",
        json={"total_amount": "120", "valid_from": "2026-09-01", "valid_to": "2026-12-31"},
        headers=auth_headers,
    )
    assert created.status_code == 201
    credit_id = created.json()["id"]

    inverted = billing_client.post(
        f"/api/billing/customers/{customer_id}/credits",
        json={"total_amount": "5", "valid_from": "2026-12-01", "valid_to": "2026-09-01"},
        headers=auth_headers,
    )
    assert inverted.status_code == 422

    ledger = billing_client.get(f"/api/billing/credits/{credit_id}/ledger", headers=auth_headers)
    assert [entry["entry_type"] for entry in ledger.json()] == ["ALLOCATION"]

    summary = billing_client.get(f"/api/billing/customers/{customer_id}/credits/summary", headers=auth_headers)
    assert summary.json()["by_currency"] == {"USD": "120"}

    cancelled = billing_client.post(f"/api/billing/credits/{credit_id}:cancel", headers=auth_headers)
    assert cancelled.json()["status"] == "CANCELLED"
    again = billing_client.post(f"/api/billing/credits/{credit_id}:cancel", headers=auth_headers)
    assert again.status_code == 409
