"""Post-run analytics: monthly summaries and customer/provider snapshots.

Everything is derived from the invoices of one run, so regenerating a run
replaces its rows instead of adding to them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal

from sqlmodel import Session, col, select

from billing_console.domain.models import (
    AnalyticsMonthRead,
    BillingCustomerSnapshot,
    BillingMonthlySummary,
    BillingProviderSnapshot,
    CustomerSnapshotRead,
    Invoice,
    InvoiceLineItem,
    InvoiceRun,
    MonthlySummaryRead,
    ProviderSnapshotRead,
)
from billing_console.domain.money import ZERO, canonical_decimal, percent_change
from billing_console.domain.periods import previous_month
from billing_console.domain.state_machine import InvoiceRunState, InvoiceStatus
from billing_console.infra import config
from billing_console.infra.db import get_engine
from billing_console.infra.events import ANALYTICS_GENERATED, event_bus
from billing_console.services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

_PCT = Decimal("0.01")


def margin_pct(revenue: Decimal, cost: Decimal) -> Decimal | None:
    if revenue <= 0:
        return None
    return ((revenue - cost) / revenue * 100).quantize(_PCT)


@dataclass
class _SummaryKey:
    raw_cost: Decimal = ZERO
    priced_amount: Decimal = ZERO
    entry_count: int = 0
    currency: str = "USD"


@dataclass
class _ProviderTotals:
    raw_cost: Decimal = ZERO
    revenue: Decimal = ZERO
    customers: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class AnalyticsGeneration:
    invoice_run_id: str
    billing_month: str
    summary_rows: int
    customer_rows: int
    provider_rows: int


def _line_providers(line: InvoiceLineItem) -> Iterable[tuple[str, Decimal, Decimal, int]]:
    providers = line.detail.get("providers") or {}
    if not providers:
        yield "UNKNOWN", line.raw_amount, line.priced_amount, int(line.quantity)
        return
    for name, values in providers.items():
        yield (
            name,
            Decimal(str(values.get("raw_total", "0"))),
            Decimal(str(values.get("priced_total", "0"))),
            int(values.get("entry_count", 0)),
        )


class AnalyticsService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _previous_revenue(session: Session, customer_id: str, billing_month: str) -> Decimal | None:
        rows = session.exec(
            select(BillingCustomerSnapshot)
            .where(BillingCustomerSnapshot.customer_id == customer_id)
            .where(BillingCustomerSnapshot.billing_month == previous_month(billing_month))
        ).all()
        if not rows:
            return None
        return max(rows, key=lambda item: item.created_at).revenue

    def generate_for_run(self, run_id: str) -> AnalyticsGeneration:
        with self._session() as session:
            run = session.get(InvoiceRun, run_id)
            if run is None:
                raise NotFoundError("invoice run not found")
            if run.status != InvoiceRunState.SUCCEEDED:
                raise ConflictError(f"analytics need a SUCCEEDED run, got {run.status}")

            for model in (BillingMonthlySummary, BillingCustomerSnapshot, BillingProviderSnapshot):
                for stale in session.exec(select(model).where(col(model.invoice_run_id) == run_id)).all():
                    session.delete(stale)
            session.flush()

            invoices = session.exec(
                select(Invoice)
                .where(Invoice.invoice_run_id == run_id)
                .where(Invoice.status != InvoiceStatus.CANCELLED)
            ).all()
            lines_by_invoice: dict[str, list[InvoiceLineItem]] = {}
            if invoices:
                lines = session.exec(
                    select(InvoiceLineItem).where(col(InvoiceLineItem.invoice_id).in_([item.id for item in invoices]))
                ).all()
                for line in lines:
                    lines_by_invoice.setdefault(line.invoice_id, []).append(line)

            summaries: dict[tuple[str, str, str], _SummaryKey] = {}
            providers: dict[str, _ProviderTotals] = {}
            customers: dict[str, list[Invoice]] = {}
            raw_by_customer: dict[str, Decimal] = {}

            for invoice in invoices:
                customers.setdefault(invoice.customer_id, []).append(invoice)
                for line in lines_by_invoice.get(invoice.id, []):
                    raw_by_customer[invoice.customer_id] = (
                        raw_by_customer.get(invoice.customer_id, ZERO) + line.raw_amount
                    )
                    for provider, raw, priced, count in _line_providers(line):
                        key = (invoice.customer_id, line.sku_group_code, provider)
                        bucket = summaries.setdefault(key, _SummaryKey(currency=invoice.currency))
                        bucket.raw_cost += raw
                        bucket.priced_amount += priced
                        bucket.entry_count += count

                        totals = providers.setdefault(provider, _ProviderTotals())
                        totals.raw_cost += raw
                        totals.revenue += priced
                        totals.customers.add(invoice.customer_id)

            for (customer_id, product_group, provider), bucket in sorted(summaries.items()):
                session.add(
                    BillingMonthlySummary(
                        invoice_run_id=run_id,
                        billing_month=run.billing_month,
                        customer_id=customer_id,
                        product_group=product_group,
                        provider=provider,
                        currency=bucket.currency,
                        raw_cost=bucket.raw_cost,
                        priced_amount=bucket.priced_amount,
                        entry_count=bucket.entry_count,
                    )
                )

            for customer_id, customer_invoices in sorted(customers.items()):
                revenue = sum((item.subtotal for item in customer_invoices), ZERO)
                raw_cost = raw_by_customer.get(customer_id, ZERO)
                session.add(
                    BillingCustomerSnapshot(
                        invoice_run_id=run_id,
                        billing_month=run.billing_month,
                        customer_id=customer_id,
                        raw_cost=raw_cost,
                        revenue=revenue,
                        credit_amount=sum((item.credit_amount for item in customer_invoices), ZERO),
                        total_amount=sum((item.total_amount for item in customer_invoices), ZERO),
                        invoice_count=len(customer_invoices),
                        mom_growth_pct=percent_change(
                            revenue, self._previous_revenue(session, customer_id, run.billing_month)
                        ),
                        gross_margin_pct=margin_pct(revenue, raw_cost),
                    )
                )

            for provider, totals in sorted(providers.items()):
                estimated = totals.raw_cost * config.ANALYTICS_COST_RATIO
                session.add(
                    BillingProviderSnapshot(
                        invoice_run_id=run_id,
                        billing_month=run.billing_month,
                        provider=provider,
                        raw_cost=totals.raw_cost,
                        revenue=totals.revenue,
                        estimated_cost=estimated,
                        margin=totals.revenue - estimated,
                        margin_pct=margin_pct(totals.revenue, estimated),
                        customer_count=len(totals.customers),
                    )
                )
            session.commit()

        result = AnalyticsGeneration(
            invoice_run_id=run_id,
            billing_month=run.billing_month,
            summary_rows=len(summaries),
            customer_rows=len(customers),
            provider_rows=len(providers),
        )
        event_bus.emit(
            ANALYTICS_GENERATED,
            {
                "invoice_run_id": run_id,
                "billing_month": run.billing_month,
                "summary_rows": result.summary_rows,
                "customer_rows": result.customer_rows,
                "provider_rows": result.provider_rows,
                "revenue": canonical_decimal(sum((item.revenue for item in providers.values()), ZERO)),
            },
            correlation_id=run_id,
        )
        logger.info(
            "analytics for run %s: %d summaries, %d customers, %d providers",
            run_id,
            result.summary_rows,
            result.customer_rows,
            result.provider_rows,
        )
        return result

    def rebuild_for_month(self, billing_month: str) -> list[AnalyticsGeneration]:
        with self._session() as session:
            runs = session.exec(
                select(InvoiceRun)
                .where(InvoiceRun.billing_month == billing_month)
                .where(InvoiceRun.status == InvoiceRunState.SUCCEEDED)
            ).all()
        ordered = sorted(runs, key=lambda item: item.created_at)
        return [self.generate_for_run(run.id) for run in ordered]

    def month(self, billing_month: str, *, invoice_run_id: str | None = None) -> AnalyticsMonthRead:
        """Analytics rows for a month; the latest generated run unless one is named."""
        with self._session() as session:
            if invoice_run_id is None:
                latest = session.exec(
                    select(BillingCustomerSnapshot).where(BillingCustomerSnapshot.billing_month == billing_month)
                ).all()
                if latest:
                    invoice_run_id = max(latest, key=lambda item: item.created_at).invoice_run_id
            if invoice_run_id is None:
                return AnalyticsMonthRead(billing_month=billing_month, monthly_summaries=[], customers=[], providers=[])

            summaries = session.exec(
                select(BillingMonthlySummary).where(BillingMonthlySummary.invoice_run_id == invoice_run_id)
            ).all()
            customers = session.exec(
                select(BillingCustomerSnapshot).where(BillingCustomerSnapshot.invoice_run_id == invoice_run_id)
            ).all()
            providers = session.exec(
                select(BillingProviderSnapshot).where(BillingProviderSnapshot.invoice_run_id == invoice_run_id)
            ).all()
        return AnalyticsMonthRead(
            billing_month=billing_month,
            monthly_summaries=[
                MonthlySummaryRead.model_validate(row)
                for row in sorted(summaries, key=lambda item: (item.customer_id, item.product_group, item.provider))
            ],
            customers=[
                CustomerSnapshotRead.model_validate(row)
                for row in sorted(customers, key=lambda item: item.revenue, reverse=True)
            ],
            providers=[
                ProviderSnapshotRead.model_validate(row) for row in sorted(providers, key=lambda item: item.provider)
            ],
        )

    def customer_history(self, customer_id: str, *, limit: int = 12) -> list[BillingCustomerSnapshot]:
        with self._session() as session:
            rows = session.exec(
                select(BillingCustomerSnapshot).where(BillingCustomerSnapshot.customer_id == customer_id)
            ).all()
        latest: dict[str, BillingCustomerSnapshot] = {}
        for row in rows:
            current = latest.get(row.billing_month)
            if current is None or row.created_at > current.created_at:
                latest[row.billing_month] = row
        return [latest[month] for month in sorted(latest, reverse=True)[:limit]]
