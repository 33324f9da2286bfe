"""Credit burn-down against invoice totals.

Every balance change of a credit is mirrored by one append-only ledger entry
whose ``balance_after`` is the credit's remaining amount after the change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from billing_console.domain.models import (
    MIXED_CURRENCY,
    Credit,
    CreditAdjustRequest,
    CreditCreate,
    CreditLedgerEntry,
    CreditStatus,
    CreditSummaryRead,
    Customer,
    LedgerEntryType,
    now_utc,
)
from billing_console.domain.money import ZERO, canonical_decimal
from billing_console.domain.periods import month_dates
from billing_console.infra.db import get_engine
from billing_console.services.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditUsage:
    credit_id: str
    credit_type: str
    applied_amount: Decimal
    remaining_before: Decimal
    remaining_after: Decimal
    ledger_entry_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "credit_id": self.credit_id,
            "credit_type": self.credit_type,
            "applied_amount": canonical_decimal(self.applied_amount),
            "remaining_before": canonical_decimal(self.remaining_before),
            "remaining_after": canonical_decimal(self.remaining_after),
            "ledger_entry_id": self.ledger_entry_id,
        }


@dataclass
class CreditApplicationResult:
    total_applied: Decimal
    final_amount: Decimal
    credits_used: list[CreditUsage] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_applied": canonical_decimal(self.total_applied),
            "final_amount": canonical_decimal(self.final_amount),
            "credits_used": [usage.as_dict() for usage in self.credits_used],
        }


def _is_applicable(credit: Credit, month_start: date, month_end: date) -> bool:
    if credit.valid_from > month_end or credit.valid_to < month_start:
        return False
    if credit.allow_carry_over:
        return True
    return month_start <= credit.valid_from <= month_end


def load_applicable_credits(
    session: Session,
    customer_id: str,
    billing_month: str,
    *,
    currency: str | None = None,
    for_update: bool = False,
) -> list[Credit]:
    """ACTIVE credits with a balance usable in ``billing_month``, soonest expiry first.

    Without carry-over a credit is only usable in the month it starts.
    """
    month_start, month_end = month_dates(billing_month)
    statement = (
        select(Credit)
        .where(Credit.customer_id == customer_id)
        .where(Credit.status == CreditStatus.ACTIVE)
        .where(col(Credit.remaining_amount) > 0)
    )
    if currency is not None:
        statement = statement.where(Credit.currency == currency)
    if for_update:
        statement = statement.with_for_update()
    credits = [credit for credit in session.exec(statement).all() if _is_applicable(credit, month_start, month_end)]
    return sorted(credits, key=lambda credit: (credit.valid_to, credit.created_at.replace(tzinfo=None), credit.id))


def _ledger_entry(
    credit: Credit,
    entry_type: LedgerEntryType,
    amount: Decimal,
    *,
    invoice_run_id: str | None = None,
    invoice_id: str | None = None,
    note: str | None = None,
    actor_id: str | None = None,
) -> CreditLedgerEntry:
    return CreditLedgerEntry(
        credit_id=credit.id,
        entry_type=entry_type,
        amount=amount,
        balance_after=credit.remaining_amount,
        invoice_run_id=invoice_run_id,
        invoice_id=invoice_id,
        note=note,
        created_by=actor_id,
    )


def apply_credits(
    session: Session,
    *,
    customer_id: str,
    invoice_id: str,
    invoice_run_id: str,
    invoice_amount: Decimal,
    billing_month: str,
    currency: str,
) -> CreditApplicationResult:
    """Burn applicable credits against ``invoice_amount`` inside ``session``.

    The caller commits. Running out of credit is not an error: whatever is
    not covered stays on the invoice.
    """
    result = CreditApplicationResult(total_applied=ZERO, final_amount=invoice_amount)
    if invoice_amount <= 0 or currency == MIXED_CURRENCY:
        return result

    outstanding = invoice_amount
    for credit in load_applicable_credits(session, customer_id, billing_month, currency=currency, for_update=True):
        if outstanding <= 0:
            break
        before = credit.remaining_amount
        applied = min(before, outstanding)
        if applied <= 0:
            continue

        credit.remaining_amount = before - applied
        if credit.remaining_amount <= 0:
            credit.remaining_amount = ZERO
            credit.status = CreditStatus.DEPLETED
        credit.updated_at = now_utc()
        entry = _ledger_entry(
            credit,
            LedgerEntryType.USAGE,
            applied,
            invoice_run_id=invoice_run_id,
            invoice_id=invoice_id,
        )
        session.add(credit)
        session.add(entry)

        result.credits_used.append(
            CreditUsage(
                credit_id=credit.id,
                credit_type=str(credit.credit_type),
                applied_amount=applied,
                remaining_before=before,
                remaining_after=credit.remaining_amount,
                ledger_entry_id=entry.id,
            )
        )
        outstanding -= applied
        result.total_applied += applied

    result.final_amount = outstanding
    return result


def capture_credit_snapshot(session: Session, customer_id: str, billing_month: str) -> list[dict[str, Any]]:
    return [
        {
            "credit_id": credit.id,
            "credit_type": str(credit.credit_type),
            "currency": credit.currency,
            "remaining_before": canonical_decimal(credit.remaining_amount),
            "valid_from": credit.valid_from.isoformat(),
            "valid_to": credit.valid_to.isoformat(),
            "allow_carry_over": credit.allow_carry_over,
        }
        for credit in load_applicable_credits(session, customer_id, billing_month)
    ]


class CreditService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _get_credit(session: Session, credit_id: str) -> Credit:
        row = session.get(Credit, credit_id)
        if row is None:
            raise NotFoundError("credit not found")
        return row

    def create_credit(self, customer_id: str, payload: CreditCreate, actor_id: str | None = None) -> Credit:
        if payload.valid_to < payload.valid_from:
            raise ValidationError("valid_to must not be earlier than valid_from")
        with self._session() as session:
            if session.get(Customer, customer_id) is None:
                raise NotFoundError("customer not found")
            credit = Credit(
                customer_id=customer_id,
                credit_type=payload.credit_type,
                total_amount=payload.total_amount,
                remaining_amount=payload.total_amount,
                currency=payload.currency.strip().upper(),
                valid_from=payload.valid_from,
                valid_to=payload.valid_to,
                allow_carry_over=payload.allow_carry_over,
                description=payload.description,
                created_by=actor_id,
            )
            session.add(credit)
            try:
                session.flush()
                session.add(
                    _ledger_entry(
                        credit,
                        LedgerEntryType.ALLOCATION,
                        payload.total_amount,
                        note=payload.description,
                        actor_id=actor_id,
                    )
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("credit could not be created") from exc
            session.refresh(credit)
            return credit

    def adjust_credit(self, credit_id: str, payload: CreditAdjustRequest, actor_id: str | None = None) -> Credit:
        """Apply a signed correction to both the total and the remaining balance."""
        if payload.amount == 0:
            raise ValidationError("adjustment amount must not be zero")
        with self._session() as session:
            credit = self._get_credit(session, credit_id)
            if credit.status in (CreditStatus.EXPIRED, CreditStatus.CANCELLED):
                raise ConflictError(f"cannot adjust a {credit.status} credit")
            remaining = credit.remaining_amount + payload.amount
            if remaining < 0:
                raise ConflictError("adjustment would make the remaining balance negative")
            credit.remaining_amount = remaining
            credit.total_amount = credit.total_amount + payload.amount
            credit.status = CreditStatus.ACTIVE if remaining > 0 else CreditStatus.DEPLETED
            credit.updated_at = now_utc()
            session.add(credit)
            session.add(
                _ledger_entry(
                    credit,
                    LedgerEntryType.ADJUSTMENT,
                    payload.amount,
                    note=payload.note,
                    actor_id=actor_id,
                )
            )
            session.commit()
            session.refresh(credit)
            return credit

    def cancel_credit(self, credit_id: str, actor_id: str | None = None) -> Credit:
        with self._session() as session:
            credit = self._get_credit(session, credit_id)
            if credit.status != CreditStatus.ACTIVE:
                raise ConflictError(f"cannot cancel a {credit.status} credit")
            released = credit.remaining_amount
            credit.remaining_amount = ZERO
            credit.status = CreditStatus.CANCELLED
            credit.updated_at = now_utc()
            session.add(credit)
            if released > 0:
                session.add(
                    _ledger_entry(credit, LedgerEntryType.ADJUSTMENT, -released, note="cancelled", actor_id=actor_id)
                )
            session.commit()
            session.refresh(credit)
            return credit

    def expire_credits(self, as_of: date, actor_id: str | None = None) -> list[Credit]:
        """Expire ACTIVE credits whose ``valid_to`` is before ``as_of``."""
        with self._session() as session:
            lapsed = session.exec(
                select(Credit)
                .where(Credit.status == CreditStatus.ACTIVE)
                .where(col(Credit.valid_to) < as_of)
            ).all()
            now = now_utc()
            for credit in lapsed:
                forfeited = credit.remaining_amount
                credit.remaining_amount = ZERO
                credit.status = CreditStatus.EXPIRED
                credit.updated_at = now
                session.add(credit)
                if forfeited > 0:
                    session.add(
                        _ledger_entry(
                            credit,
                            LedgerEntryType.EXPIRY,
                            forfeited,
                            note=f"expired as of {as_of.isoformat()}",
                            actor_id=actor_id,
                        )
                    )
            session.commit()
            if lapsed:
                logger.info("expired %d credits as of %s", len(lapsed), as_of)
            return list(lapsed)

    def list_credits(self, customer_id: str, *, status: CreditStatus | None = None) -> list[Credit]:
        with self._session() as session:
            statement = select(Credit).where(Credit.customer_id == customer_id)
            if status is not None:
                statement = statement.where(Credit.status == status)
            return sorted(session.exec(statement).all(), key=lambda item: (item.valid_to, item.created_at))

    def get_credit(self, credit_id: str) -> Credit:
        with self._session() as session:
            return self._get_credit(session, credit_id)

    def list_ledger(self, credit_id: str) -> list[CreditLedgerEntry]:
        with self._session() as session:
            _ = self._get_credit(session, credit_id)
            rows = session.exec(select(CreditLedgerEntry).where(CreditLedgerEntry.credit_id == credit_id)).all()
            return sorted(rows, key=lambda item: item.created_at)

    def credit_summary(self, customer_id: str) -> CreditSummaryRead:
        with self._session() as session:
            if session.get(Customer, customer_id) is None:
                raise NotFoundError("customer not found")
            credits = session.exec(select(Credit).where(Credit.customer_id == customer_id)).all()
            usage: list[CreditLedgerEntry] = []
            if credits:
                usage = list(
                    session.exec(
                        select(CreditLedgerEntry)
                        .where(col(CreditLedgerEntry.credit_id).in_([credit.id for credit in credits]))
                        .where(CreditLedgerEntry.entry_type == LedgerEntryType.USAGE)
                    ).all()
                )

        active = [credit for credit in credits if credit.status == CreditStatus.ACTIVE and credit.remaining_amount > 0]
        by_currency: dict[str, Decimal] = {}
        for credit in active:
            by_currency[credit.currency] = by_currency.get(credit.currency, ZERO) + credit.remaining_amount
        return CreditSummaryRead(
            customer_id=customer_id,
            active_count=len(active),
            total_allocated=sum((credit.total_amount for credit in credits), ZERO),
            total_remaining=sum((credit.remaining_amount for credit in active), ZERO),
            total_used=sum((entry.amount for entry in usage), ZERO),
            by_currency={code: canonical_decimal(amount) for code, amount in sorted(by_currency.items())},
        )
