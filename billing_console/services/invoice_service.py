from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session, select

from billing_console.domain.models import (
    ConfigSnapshot,
    Customer,
    Invoice,
    InvoiceDetailRead,
    InvoiceLineItem,
    InvoiceLineItemRead,
    InvoiceRead,
    SpecialRuleEffect,
    now_utc,
)
from billing_console.domain.money import ZERO, canonical_decimal
from billing_console.domain.state_machine import InvoiceStatus, can_invoice_transition
from billing_console.infra.db import get_engine
from billing_console.infra.events import INVOICE_LOCKED, event_bus
from billing_console.services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class InvoiceService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _get_invoice(session: Session, invoice_id: str) -> Invoice:
        row = session.get(Invoice, invoice_id)
        if row is None:
            raise NotFoundError("invoice not found")
        return row

    @staticmethod
    def _line_items(session: Session, invoice_id: str) -> list[InvoiceLineItem]:
        rows = session.exec(select(InvoiceLineItem).where(InvoiceLineItem.invoice_id == invoice_id)).all()
        return sorted(rows, key=lambda item: item.line_number)

    def list_invoices(
        self,
        *,
        billing_month: str | None = None,
        customer_id: str | None = None,
        invoice_run_id: str | None = None,
        status: InvoiceStatus | None = None,
    ) -> list[Invoice]:
        with self._session() as session:
            statement = select(Invoice)
            if billing_month is not None:
                statement = statement.where(Invoice.billing_month == billing_month)
            if customer_id is not None:
                statement = statement.where(Invoice.customer_id == customer_id)
            if invoice_run_id is not None:
                statement = statement.where(Invoice.invoice_run_id == invoice_run_id)
            if status is not None:
                statement = statement.where(Invoice.status == status)
            return sorted(session.exec(statement).all(), key=lambda item: item.invoice_number)

    def get_invoice(self, invoice_id: str) -> Invoice:
        with self._session() as session:
            return self._get_invoice(session, invoice_id)

    def get_invoice_detail(self, invoice_id: str) -> InvoiceDetailRead:
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            lines = self._line_items(session, invoice_id)
        return InvoiceDetailRead(
            **InvoiceRead.model_validate(invoice).model_dump(),
            line_items=[InvoiceLineItemRead.model_validate(line) for line in lines],
        )

    def get_config_snapshot(self, invoice_id: str) -> ConfigSnapshot:
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            if invoice.config_snapshot_id is None:
                raise NotFoundError("invoice has no config snapshot")
            snapshot = session.get(ConfigSnapshot, invoice.config_snapshot_id)
            if snapshot is None:
                raise NotFoundError("config snapshot not found")
            return snapshot

    def lock_invoice(self, invoice_id: str, actor_id: str | None = None) -> Invoice:
        """Freeze an invoice. Locking cannot be undone."""
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            if invoice.locked_at is not None:
                raise ConflictError(f"invoice {invoice.invoice_number} is already locked")
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ConflictError("cannot lock a cancelled invoice")
            invoice.locked_at = now_utc()
            invoice.locked_by = actor_id
            invoice.updated_at = invoice.locked_at
            session.add(invoice)
            session.commit()
            session.refresh(invoice)

        event_bus.emit(
            INVOICE_LOCKED,
            {"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "locked_by": actor_id},
            correlation_id=invoice.invoice_run_id,
            actor_id=actor_id,
        )
        logger.info("invoice %s locked by %s", invoice.invoice_number, actor_id)
        return invoice

    def transition_status(self, invoice_id: str, target: InvoiceStatus) -> Invoice:
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            if not can_invoice_transition(invoice.status, target):
                raise ConflictError(f"cannot move invoice from {invoice.status} to {target}")
            invoice.status = target
            invoice.updated_at = now_utc()
            session.add(invoice)
            session.commit()
            session.refresh(invoice)
            return invoice

    def build_presentation(self, invoice_id: str) -> dict[str, Any]:
        """Read-only aggregate handed to exporters. Only locked invoices qualify."""
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            if invoice.locked_at is None:
                raise ConflictError("invoice must be locked before it can be exported")
            customer = session.get(Customer, invoice.customer_id)
            if customer is None:
                raise NotFoundError("customer not found")
            lines = self._line_items(session, invoice_id)
            effects = session.exec(
                select(SpecialRuleEffect)
                .where(SpecialRuleEffect.invoice_run_id == invoice.invoice_run_id)
                .where(SpecialRuleEffect.customer_id == invoice.customer_id)
            ).all()

        raw_total = sum((line.raw_amount for line in lines), ZERO)
        return {
            "header": {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "billing_month": invoice.billing_month,
                "status": str(invoice.status),
                "currency": invoice.currency,
                "issue_date": invoice.issue_date.isoformat(),
                "due_date": invoice.due_date.isoformat(),
                "locked_at": invoice.locked_at.isoformat(),
                "locked_by": invoice.locked_by,
            },
            "customer": {
                "id": customer.id,
                "name": customer.name,
                "external_id": customer.external_id,
                "payment_terms_days": customer.payment_terms_days,
            },
            "rows": [
                {
                    "line_number": line.line_number,
                    "sku_group_code": line.sku_group_code,
                    "description": line.description,
                    "quantity": canonical_decimal(line.quantity),
                    "unit_price": canonical_decimal(line.unit_price),
                    "raw_amount": canonical_decimal(line.raw_amount),
                    "amount": canonical_decimal(line.amount),
                    "discount_rate": canonical_decimal(line.discount_rate) if line.discount_rate is not None else None,
                }
                for line in lines
            ],
            "summary": {
                "raw_total": canonical_decimal(raw_total),
                "subtotal": canonical_decimal(invoice.subtotal),
                "discount": canonical_decimal(raw_total - invoice.subtotal),
                "tax_amount": canonical_decimal(invoice.tax_amount),
                "credit_amount": canonical_decimal(invoice.credit_amount),
                "total_amount": canonical_decimal(invoice.total_amount),
            },
            "audit": {
                "invoice_run_id": invoice.invoice_run_id,
                "config_snapshot_id": invoice.config_snapshot_id,
                "special_rule_effect_ids": sorted(effect.id for effect in effects),
            },
        }
