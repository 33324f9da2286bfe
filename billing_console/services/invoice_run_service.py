"""Invoice runs: one execution of the billing pipeline for a billing month.

Per customer, in order: raw total, special rules, pricing, config snapshot,
invoice with its lines (one transaction, number allocated inside it), then
credits in a second transaction. A failing customer is recorded and skipped;
the run carries on with the next one.
"""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, and_, col, or_, select

from billing_console.domain.models import (
    MIXED_CURRENCY,
    UNMAPPED_GROUP_CODE,
    ConfigSnapshot,
    Customer,
    CustomerProjectBinding,
    CustomerStatus,
    IngestionBatch,
    Invoice,
    InvoiceLineItem,
    InvoiceRun,
    InvoiceRunCreate,
    LineItem,
    PricingList,
    PricingListStatus,
    Project,
    RunValidationIssue,
    RunValidationRead,
    SkuGroupMapping,
    now_utc,
)
from billing_console.domain.money import ZERO, canonical_decimal
from billing_console.domain.periods import InvalidBillingMonthError, as_utc, iso_utc_ms, month_window
from billing_console.domain.rules import CostEntry
from billing_console.domain.state_machine import InvoiceRunState, can_transition
from billing_console.infra import config
from billing_console.infra.db import get_engine
from billing_console.infra.events import (
    CREDITS_APPLIED,
    INVOICE_CREATED,
    INVOICE_RUN_COMPLETED,
    INVOICE_RUN_FAILED,
    INVOICE_RUN_STARTED,
    SPECIAL_RULES_APPLIED,
    event_bus,
)
from billing_console.services.analytics_service import AnalyticsService
from billing_console.services.credit_engine import CreditApplicationResult, apply_credits, capture_credit_snapshot
from billing_console.services.customer_service import BillableCustomer, load_billable_customers
from billing_console.services.errors import BillingError, ConflictError, NotFoundError, ValidationError
from billing_console.services.invoice_numbering import allocate_invoice_number, customer_slug
from billing_console.services.pricing_engine import (
    PricingResult,
    capture_pricing_snapshot,
    load_pricing_list,
    price_entries,
)
from billing_console.services.sku_group_service import SkuGroupService, SkuMappingTable, attach_groups
from billing_console.services.special_rules_engine import (
    SpecialRulesResult,
    apply_special_rules,
    capture_special_rules_snapshot,
    describe_moved_entries,
    load_applicable_special_rules,
    record_special_rule_effects,
)

logger = logging.getLogger(__name__)

RUN_IN_PROGRESS = "RUN_IN_PROGRESS"
PREVIOUS_RUN_EXISTS = "PREVIOUS_RUN_EXISTS"
NO_COST_DATA = "NO_COST_DATA"
UNASSIGNED_PROJECTS = "UNASSIGNED_PROJECTS"
UNMAPPED_SKUS = "UNMAPPED_SKUS"
INVALID_CUSTOMER = "INVALID_CUSTOMER"
NO_ACTIVE_CUSTOMERS = "NO_ACTIVE_CUSTOMERS"
CUSTOMERS_WITHOUT_PRICING = "CUSTOMERS_WITHOUT_PRICING"

VALIDATION_SAMPLE_SIZE = 20


class CustomerDeadlineExceeded(BillingError):
    pass


def compute_source_key(billing_month: str, ingestion_batch_id: str | None = None) -> str:
    if ingestion_batch_id:
        return f"batch:{ingestion_batch_id}"
    start, end = month_window(billing_month)
    return f"time:{iso_utc_ms(start)}:{iso_utc_ms(end)}"


def line_item_to_cost_entry(item: LineItem) -> CostEntry:
    return CostEntry(
        line_item_id=item.id,
        provider=str(item.provider),
        billing_account_id=item.account_id,
        project_id=item.subaccount_id or item.account_id,
        service_id=item.product_id,
        sku_id=item.meter_id,
        cost=item.cost,
        currency=item.currency,
        usage_amount=item.usage_amount,
        usage_unit=item.usage_unit,
    )


def _line_description(code: str) -> str:
    if code == UNMAPPED_GROUP_CODE:
        return "Unmapped SKUs (no pricing rule)"
    return f"{code} services"


def _money_map(values: dict[str, Decimal]) -> dict[str, str]:
    return {key: canonical_decimal(value) for key, value in values.items()}


@dataclass
class RunError:
    customer_id: str
    customer_name: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"customer_id": self.customer_id, "customer_name": self.customer_name, "message": self.message}

    def __str__(self) -> str:
        return f"Failed to process customer {self.customer_name}: {self.message}"


@dataclass
class CustomerOutcome:
    invoice_id: str
    invoice_number: str
    currency: str
    pricing: PricingResult
    special_rules: SpecialRulesResult
    credit_amount: Decimal
    total_amount: Decimal
    line_items: list[LineItem] = field(default_factory=list)
    moved: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class _RunTotals:
    invoices: int = 0
    total_amount: Decimal = ZERO
    raw_total_amount: Decimal = ZERO
    customer_count: int = 0
    row_count: int = 0
    credits_applied: Decimal = ZERO
    discount: Decimal = ZERO
    special_rules_delta: Decimal = ZERO
    special_rules_count: int = 0
    pricing_applied: bool = False
    batch_ids: set[str] = field(default_factory=set)
    project_keys: set[str] = field(default_factory=set)
    min_time: datetime | None = None
    max_time: datetime | None = None
    currencies: dict[str, dict[str, Decimal]] = field(default_factory=dict)
    moved: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[RunError] = field(default_factory=list)

    def observe_items(self, items: list[LineItem]) -> None:
        self.customer_count += 1
        self.row_count += len(items)
        for item in items:
            self.batch_ids.add(item.ingestion_batch_id)
            self.raw_total_amount += item.cost
            start = as_utc(item.usage_start_time)
            end = as_utc(item.usage_end_time)
            if self.min_time is None or start < self.min_time:
                self.min_time = start
            if self.max_time is None or end > self.max_time:
                self.max_time = end

    def add_outcome(self, outcome: CustomerOutcome) -> None:
        self.observe_items(outcome.line_items)
        self.invoices += 1
        self.total_amount += outcome.total_amount
        self.credits_applied += outcome.credit_amount
        self.discount += outcome.pricing.raw_total - outcome.pricing.priced_total
        self.pricing_applied = self.pricing_applied or outcome.pricing.pricing_list_id is not None
        self.special_rules_delta += outcome.special_rules.total_cost_delta
        self.special_rules_count += len(outcome.special_rules.rule_results)
        for priced in outcome.pricing.priced_entries:
            bucket = self.currencies.setdefault(priced.entry.currency, {"raw_amount": ZERO, "priced_amount": ZERO})
            bucket["raw_amount"] += priced.raw_cost
            bucket["priced_amount"] += priced.priced_cost
        self.moved.extend(outcome.moved)
        self.warnings.extend(outcome.warnings)

    def metadata(self) -> dict[str, Any]:
        return {
            "pricing_applied": self.pricing_applied,
            "total_discount": canonical_decimal(self.discount),
            "credits_applied": self.credits_applied > 0,
            "total_credits_applied": canonical_decimal(self.credits_applied),
            "special_rules_applied": self.special_rules_count > 0,
            "total_special_rules_delta": canonical_decimal(self.special_rules_delta),
            "special_rules_count": self.special_rules_count,
            "moved_line_items": self.moved,
            "warnings": self.warnings,
        }


def _currency_totals(pricing: PricingResult) -> dict[str, dict[str, Decimal]]:
    totals: dict[str, dict[str, Decimal]] = {}
    for priced in pricing.priced_entries:
        bucket = totals.setdefault(priced.entry.currency, {"raw_amount": ZERO, "priced_amount": ZERO})
        bucket["raw_amount"] += priced.raw_cost
        bucket["priced_amount"] += priced.priced_cost
    return totals


def _invoice_currency(pricing: PricingResult, default: str) -> str:
    currencies = {priced.entry.currency for priced in pricing.priced_entries}
    if not currencies:
        return default
    if len(currencies) == 1:
        return next(iter(currencies))
    return MIXED_CURRENCY


def _build_breakdown(
    pricing: PricingResult,
    special_rules: SpecialRulesResult,
    credits: CreditApplicationResult | None = None,
) -> dict[str, Any]:
    breakdown: dict[str, Any] = {
        "currencies": [
            {"currency": currency, **_money_map(amounts)}
            for currency, amounts in sorted(_currency_totals(pricing).items())
        ],
        "pricing": {
            **pricing.summary_dict(),
            "discount": canonical_decimal(pricing.raw_total - pricing.priced_total),
        },
        "special_rules": {
            "total_cost_delta": canonical_decimal(special_rules.total_cost_delta),
            "rules_applied": special_rules.rules_applied,
            "excluded_count": len(special_rules.excluded_entries),
            "moved": describe_moved_entries(special_rules.moved_entries),
        },
    }
    if credits is not None:
        breakdown["credits"] = credits.as_dict()
    return breakdown


class InvoiceRunService:
    def __init__(
        self,
        sku_groups: SkuGroupService | None = None,
        analytics: AnalyticsService | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        customer_timeout_seconds: float | None = None,
    ) -> None:
        self._sku_groups = sku_groups or SkuGroupService()
        self._analytics = analytics or AnalyticsService()
        self._clock = clock
        self._customer_timeout = (
            config.CUSTOMER_TIMEOUT_SECONDS if customer_timeout_seconds is None else customer_timeout_seconds
        )

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _get_run(session: Session, run_id: str) -> InvoiceRun:
        row = session.get(InvoiceRun, run_id)
        if row is None:
            raise NotFoundError("invoice run not found")
        return row

    def get_run(self, run_id: str) -> InvoiceRun:
        with self._session() as session:
            return self._get_run(session, run_id)

    def list_runs(
        self,
        *,
        billing_month: str | None = None,
        status: InvoiceRunState | None = None,
    ) -> list[InvoiceRun]:
        with self._session() as session:
            statement = select(InvoiceRun)
            if billing_month is not None:
                statement = statement.where(InvoiceRun.billing_month == billing_month)
            if status is not None:
                statement = statement.where(InvoiceRun.status == status)
            return sorted(session.exec(statement).all(), key=lambda item: item.created_at, reverse=True)

    def create_run(self, payload: InvoiceRunCreate, actor_id: str | None = None) -> tuple[InvoiceRun, bool]:
        """Queue a run; returns ``(run, created)``.

        A run with the same month, target customer and source key is returned
        as is. Any other QUEUED or RUNNING run for the month is a conflict.
        """
        source_key = compute_source_key(payload.billing_month, payload.ingestion_batch_id)
        with self._session() as session:
            if payload.target_customer_id is not None and session.get(Customer, payload.target_customer_id) is None:
                raise NotFoundError("target customer not found")
            if payload.ingestion_batch_id is not None:
                batch = session.get(IngestionBatch, payload.ingestion_batch_id)
                if batch is None:
                    raise NotFoundError("ingestion batch not found")

            target_filter = (
                col(InvoiceRun.target_customer_id).is_(None)
                if payload.target_customer_id is None
                else InvoiceRun.target_customer_id == payload.target_customer_id
            )
            existing = session.exec(
                select(InvoiceRun)
                .where(InvoiceRun.billing_month == payload.billing_month)
                .where(target_filter)
                .where(InvoiceRun.source_key == source_key)
            ).first()
            if existing is not None:
                return existing, False

            active = session.exec(
                select(InvoiceRun)
                .where(InvoiceRun.billing_month == payload.billing_month)
                .where(col(InvoiceRun.status).in_([InvoiceRunState.QUEUED, InvoiceRunState.RUNNING]))
            ).first()
            if active is not None:
                raise ConflictError(
                    f"an invoice run for {payload.billing_month} is already {str(active.status).lower()}"
                )

            run = InvoiceRun(
                billing_month=payload.billing_month,
                status=InvoiceRunState.QUEUED,
                target_customer_id=payload.target_customer_id,
                ingestion_batch_id=payload.ingestion_batch_id,
                source_key=source_key,
                created_by=actor_id,
            )
            session.add(run)
            session.commit()
            session.refresh(run)
            logger.info("queued invoice run %s for %s (%s)", run.id, run.billing_month, source_key)
            return run, True

    @staticmethod
    def _source_filter(run: InvoiceRun) -> Any:
        if run.ingestion_batch_id:
            return LineItem.ingestion_batch_id == run.ingestion_batch_id
        start, end = month_window(run.billing_month)
        return and_(col(LineItem.usage_start_time) >= start, col(LineItem.usage_start_time) < end)

    @staticmethod
    def _customer_filter(project_keys: list[str]) -> Any:
        return or_(
            col(LineItem.subaccount_id).in_(project_keys),
            and_(col(LineItem.subaccount_id).is_(None), col(LineItem.account_id).in_(project_keys)),
        )

    def _check_deadline(self, deadline: float, stage: str) -> None:
        if self._clock() > deadline:
            raise CustomerDeadlineExceeded(
                f"customer processing exceeded {self._customer_timeout:g}s before {stage}"
            )

    def execute_run(self, run_id: str, actor_id: str | None = None) -> InvoiceRun:
        with self._session() as session:
            run = self._get_run(session, run_id)
            if not can_transition(run.status, InvoiceRunState.RUNNING):
                raise ConflictError(f"cannot execute a run in status {run.status}")
            start, end = month_window(run.billing_month)
            run.status = InvoiceRunState.RUNNING
            run.started_at = now_utc()
            run.source_key = run.source_key or compute_source_key(run.billing_month, run.ingestion_batch_id)
            run.source_time_range_start = start
            run.source_time_range_end = end
            run.updated_at = now_utc()
            session.add(run)
            session.commit()
            session.refresh(run)

        event_bus.emit(
            INVOICE_RUN_STARTED,
            {"invoice_run_id": run.id, "billing_month": run.billing_month, "source_key": run.source_key},
            correlation_id=run.id,
            actor_id=actor_id,
        )
        logger.info("invoice run %s started for %s", run.id, run.billing_month)

        totals = _RunTotals()
        try:
            mapping_table = self._sku_groups.mapping_table()
            with self._session() as session:
                customers = load_billable_customers(session, run.billing_month, run.target_customer_id)
            for billable in customers:
                totals.project_keys.update(billable.project_keys)
                try:
                    outcome = self._process_customer(run, billable, mapping_table, actor_id)
                except Exception as exc:
                    error = RunError(billable.customer.id, billable.customer.name, str(exc) or type(exc).__name__)
                    totals.errors.append(error)
                    logger.exception("invoice run %s: %s", run.id, error)
                    continue
                if outcome is not None:
                    totals.add_outcome(outcome)
            run = self._finish_run(run.id, totals)
        except Exception as exc:
            logger.exception("invoice run %s failed", run.id)
            run = self._fail_run(run.id, exc, totals)
            event_bus.emit(
                INVOICE_RUN_FAILED,
                {"invoice_run_id": run.id, "error": run.error_message},
                correlation_id=run.id,
                actor_id=actor_id,
            )
            return run

        if run.status == InvoiceRunState.FAILED:
            event_bus.emit(
                INVOICE_RUN_FAILED,
                {"invoice_run_id": run.id, "error": run.error_message, "errors": len(totals.errors)},
                correlation_id=run.id,
                actor_id=actor_id,
            )
            return run

        event_bus.emit(
            INVOICE_RUN_COMPLETED,
            {
                "invoice_run_id": run.id,
                "billing_month": run.billing_month,
                "total_invoices": run.total_invoices,
                "total_amount": canonical_decimal(run.total_amount),
                "errors": len(totals.errors),
            },
            correlation_id=run.id,
            actor_id=actor_id,
        )
        return self._run_analytics(run)

    def _process_customer(
        self,
        run: InvoiceRun,
        billable: BillableCustomer,
        mapping_table: SkuMappingTable,
        actor_id: str | None,
    ) -> CustomerOutcome | None:
        customer = billable.customer
        deadline = self._clock() + self._customer_timeout

        with self._session() as session:
            items = list(
                session.exec(
                    select(LineItem)
                    .where(self._source_filter(run))
                    .where(self._customer_filter(billable.project_keys))
                ).all()
            )
            if not items:
                return None

            entries = attach_groups((line_item_to_cost_entry(item) for item in items), mapping_table)
            self._check_deadline(deadline, "special rules")
            special_rules = load_applicable_special_rules(session, customer.id, run.billing_month)
            special_result = apply_special_rules(entries, special_rules)

            self._check_deadline(deadline, "pricing")
            pricing_list = load_pricing_list(session, customer.id)
            pricing = price_entries(customer.id, special_result.transformed_entries, pricing_list, run.billing_month)

        moved = [
            {"source_customer_id": customer.id, **item}
            for item in describe_moved_entries(special_result.moved_entries)
        ]

        self._check_deadline(deadline, "invoice creation")
        snapshot_config = {
            "billing_month": run.billing_month,
            "special_rules": capture_special_rules_snapshot(special_rules),
            "special_rules_applied": special_result.rules_applied,
            "pricing": capture_pricing_snapshot(pricing_list),
            "captured_at": now_utc().isoformat(),
        }
        invoice = self._write_invoice(run, billable, special_result, pricing, snapshot_config)

        if special_result.rule_results:
            event_bus.emit(
                SPECIAL_RULES_APPLIED,
                {
                    "invoice_run_id": run.id,
                    "customer_id": customer.id,
                    "rules_applied": special_result.rules_applied,
                    "total_cost_delta": canonical_decimal(special_result.total_cost_delta),
                },
                correlation_id=run.id,
                actor_id=actor_id,
            )

        warnings: list[str] = []
        credit_amount = ZERO
        total_amount = invoice.total_amount
        try:
            credits = self._apply_credits(run, invoice, special_result, pricing)
        except Exception as exc:
            logger.exception("credit application failed for invoice %s", invoice.invoice_number)
            warnings.append(f"credits not applied to {invoice.invoice_number}: {exc}")
        else:
            credit_amount = credits.total_applied
            total_amount = credits.final_amount
            if credits.credits_used:
                event_bus.emit(
                    CREDITS_APPLIED,
                    {
                        "invoice_run_id": run.id,
                        "invoice_id": invoice.id,
                        "customer_id": customer.id,
                        **credits.as_dict(),
                    },
                    correlation_id=run.id,
                    actor_id=actor_id,
                )

        event_bus.emit(
            INVOICE_CREATED,
            {
                "invoice_run_id": run.id,
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "customer_id": customer.id,
                "total_amount": canonical_decimal(total_amount),
                "currency": invoice.currency,
            },
            correlation_id=run.id,
            actor_id=actor_id,
        )
        logger.info(
            "generated invoice %s for %s: %s %s",
            invoice.invoice_number,
            customer.name,
            canonical_decimal(total_amount),
            invoice.currency,
        )
        return CustomerOutcome(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            currency=invoice.currency,
            pricing=pricing,
            special_rules=special_result,
            credit_amount=credit_amount,
            total_amount=total_amount,
            line_items=items,
            moved=moved,
            warnings=warnings,
        )

    def _write_invoice(
        self,
        run: InvoiceRun,
        billable: BillableCustomer,
        special_result: SpecialRulesResult,
        pricing: PricingResult,
        snapshot_config: dict[str, Any],
    ) -> Invoice:
        """Insert snapshot, invoice and lines in one transaction.

        A unique violation on the invoice number rolls everything back and the
        number is allocated again.
        """
        customer = billable.customer
        slug = customer_slug(customer.name, customer.external_id)
        last_error: IntegrityError | None = None

        for attempt in range(1, config.INVOICE_INSERT_MAX_ATTEMPTS + 1):
            with self._session() as session:
                try:
                    record_special_rule_effects(session, run.id, customer.id, special_result.rule_results)
                    snapshot = ConfigSnapshot(
                        customer_id=customer.id,
                        invoice_run_id=run.id,
                        billing_month=run.billing_month,
                        config={
                            **snapshot_config,
                            "credits": capture_credit_snapshot(session, customer.id, run.billing_month),
                        },
                    )
                    session.add(snapshot)
                    session.flush()

                    issue_date = now_utc()
                    invoice = Invoice(
                        invoice_run_id=run.id,
                        customer_id=customer.id,
                        config_snapshot_id=snapshot.id,
                        billing_month=run.billing_month,
                        invoice_number=allocate_invoice_number(
                            session,
                            customer_id=customer.id,
                            billing_month=run.billing_month,
                            slug=slug,
                        ),
                        subtotal=pricing.priced_total,
                        tax_amount=ZERO,
                        credit_amount=ZERO,
                        total_amount=pricing.priced_total,
                        currency=_invoice_currency(pricing, customer.currency),
                        breakdown=_build_breakdown(pricing, special_result),
                        issue_date=issue_date,
                        due_date=issue_date + timedelta(days=customer.payment_terms_days),
                    )
                    session.add(invoice)
                    session.flush()

                    for number, group in enumerate(pricing.group_summary.values(), start=1):
                        session.add(
                            InvoiceLineItem(
                                invoice_id=invoice.id,
                                line_number=number,
                                sku_group_code=group.sku_group_code,
                                description=_line_description(group.sku_group_code),
                                quantity=Decimal(group.entry_count),
                                unit_price=group.priced_total / group.entry_count if group.entry_count else ZERO,
                                amount=group.priced_total,
                                raw_amount=group.raw_total,
                                priced_amount=group.priced_total,
                                rule_id=group.rule_id,
                                discount_rate=group.discount_rate,
                                detail={
                                    "entry_count": group.entry_count,
                                    "usage_total": canonical_decimal(group.usage_total),
                                    "currencies": sorted(group.currencies),
                                    "providers": {
                                        name: item.as_dict() for name, item in sorted(group.providers.items())
                                    },
                                },
                            )
                        )
                    session.commit()
                    session.refresh(invoice)
                    return invoice
                except IntegrityError as exc:
                    session.rollback()
                    last_error = exc
                    logger.warning(
                        "invoice insert for customer %s collided (attempt %d/%d)",
                        customer.id,
                        attempt,
                        config.INVOICE_INSERT_MAX_ATTEMPTS,
                    )
        raise ConflictError("could not allocate a unique invoice number") from last_error

    @staticmethod
    def _apply_credits(
        run: InvoiceRun,
        invoice: Invoice,
        special_result: SpecialRulesResult,
        pricing: PricingResult,
    ) -> CreditApplicationResult:
        with Session(get_engine(), expire_on_commit=False) as session:
            result = apply_credits(
                session,
                customer_id=invoice.customer_id,
                invoice_id=invoice.id,
                invoice_run_id=run.id,
                invoice_amount=invoice.subtotal,
                billing_month=run.billing_month,
                currency=invoice.currency,
            )
            row = session.get(Invoice, invoice.id)
            if row is None:
                raise NotFoundError("invoice disappeared before credits were applied")
            row.credit_amount = result.total_applied
            row.total_amount = result.final_amount
            row.breakdown = _build_breakdown(pricing, special_result, result)
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            return result

    def _finish_run(self, run_id: str, totals: _RunTotals) -> InvoiceRun:
        with self._session() as session:
            run = self._get_run(session, run_id)
            failed = bool(totals.errors) and totals.invoices == 0
            start, end = month_window(run.billing_month)
            run.status = InvoiceRunState.FAILED if failed else InvoiceRunState.SUCCEEDED
            run.finished_at = now_utc()
            run.total_invoices = totals.invoices
            run.total_amount = totals.total_amount
            run.raw_total_amount = totals.raw_total_amount
            run.error_message = "; ".join(str(error) for error in totals.errors) or None
            run.error_details = {"errors": [error.as_dict() for error in totals.errors]} if totals.errors else {}
            run.source_ingestion_batch_ids = sorted(totals.batch_ids)
            run.source_time_range_start = totals.min_time or start
            run.source_time_range_end = totals.max_time or end
            run.customer_count = totals.customer_count
            run.project_count = len(totals.project_keys)
            run.row_count = totals.row_count
            run.currency_breakdown = {
                currency: _money_map(amounts) for currency, amounts in sorted(totals.currencies.items())
            }
            run.run_metadata = totals.metadata()
            run.updated_at = now_utc()
            session.add(run)
            session.commit()
            session.refresh(run)
        logger.info(
            "invoice run %s finished %s: %d invoices, %d errors",
            run.id,
            run.status,
            run.total_invoices,
            len(totals.errors),
        )
        return run

    def _fail_run(self, run_id: str, exc: Exception, totals: _RunTotals) -> InvoiceRun:
        with self._session() as session:
            run = self._get_run(session, run_id)
            run.status = InvoiceRunState.FAILED
            run.finished_at = now_utc()
            run.total_invoices = totals.invoices
            run.total_amount = totals.total_amount
            run.raw_total_amount = totals.raw_total_amount
            run.error_message = str(exc) or type(exc).__name__
            run.error_details = {
                "error": run.error_message,
                "traceback": traceback.format_exception(exc),
                "errors": [error.as_dict() for error in totals.errors],
            }
            run.updated_at = now_utc()
            session.add(run)
            session.commit()
            session.refresh(run)
            return run

    def _run_analytics(self, run: InvoiceRun) -> InvoiceRun:
        try:
            self._analytics.generate_for_run(run.id)
        except Exception as exc:
            logger.exception("analytics generation failed for invoice run %s", run.id)
            analytics_state = {"status": "failed", "error": str(exc) or type(exc).__name__}
        else:
            analytics_state = {"status": "generated"}

        with self._session() as session:
            row = self._get_run(session, run.id)
            row.run_metadata = {**row.run_metadata, "analytics": analytics_state}
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def validate_run(self, billing_month: str, target_customer_id: str | None = None) -> RunValidationRead:
        """Pre-run checks. Errors block a run; warnings only inform."""
        errors: list[RunValidationIssue] = []
        warnings: list[RunValidationIssue] = []
        try:
            start, end = month_window(billing_month)
        except InvalidBillingMonthError as exc:
            raise ValidationError(str(exc)) from exc

        with self._session() as session:
            runs = session.exec(select(InvoiceRun).where(InvoiceRun.billing_month == billing_month)).all()
            running = [run for run in runs if run.status == InvoiceRunState.RUNNING]
            if running:
                errors.append(
                    RunValidationIssue(
                        code=RUN_IN_PROGRESS,
                        message="An invoice run is currently in progress for this month",
                        detail={"run_id": running[0].id},
                    )
                )
            succeeded = [run for run in runs if run.status == InvoiceRunState.SUCCEEDED]
            if succeeded:
                warnings.append(
                    RunValidationIssue(
                        code=PREVIOUS_RUN_EXISTS,
                        message="A successful run already exists for this month; running again creates new invoices",
                        detail={"run_ids": [run.id for run in succeeded]},
                    )
                )

            in_month = and_(col(LineItem.usage_start_time) >= start, col(LineItem.usage_start_time) < end)
            line_item_count = session.exec(select(func.count()).select_from(LineItem).where(in_month)).one()
            if line_item_count == 0:
                errors.append(RunValidationIssue(code=NO_COST_DATA, message=f"No cost data found for {billing_month}"))

            bound_keys = set(
                session.exec(
                    select(Project.project_id)
                    .join(CustomerProjectBinding, col(CustomerProjectBinding.project_id) == col(Project.id))
                    .where(col(CustomerProjectBinding.is_active).is_(True))
                ).all()
            )
            project_key = func.coalesce(LineItem.subaccount_id, LineItem.account_id)
            project_costs = session.exec(
                select(project_key, func.sum(LineItem.cost)).where(in_month).group_by(project_key)
            ).all()
            unassigned = sorted(
                ((key, cost) for key, cost in project_costs if key not in bound_keys),
                key=lambda item: item[1],
                reverse=True,
            )
            if unassigned:
                warnings.append(
                    RunValidationIssue(
                        code=UNASSIGNED_PROJECTS,
                        message=f"{len(unassigned)} project(s) with costs are not assigned to any customer",
                        detail={
                            "count": len(unassigned),
                            "total_cost": canonical_decimal(sum((Decimal(cost) for _, cost in unassigned), ZERO)),
                            "projects": [
                                {"project_id": key, "cost": canonical_decimal(Decimal(cost))}
                                for key, cost in unassigned[:VALIDATION_SAMPLE_SIZE]
                            ],
                        },
                    )
                )

            mapped = set(session.exec(select(SkuGroupMapping.sku_id)).all())
            sku_costs = session.exec(
                select(LineItem.meter_id, LineItem.product_id, func.sum(LineItem.cost))
                .where(in_month)
                .group_by(LineItem.meter_id, LineItem.product_id)
            ).all()
            unmapped = sorted(
                (
                    (meter_id, product_id, cost)
                    for meter_id, product_id, cost in sku_costs
                    if meter_id not in mapped and product_id not in mapped
                ),
                key=lambda item: item[2],
                reverse=True,
            )
            if unmapped:
                warnings.append(
                    RunValidationIssue(
                        code=UNMAPPED_SKUS,
                        message=f"{len(unmapped)} SKU(s) are not mapped to any SKU group",
                        detail={
                            "count": len(unmapped),
                            "total_cost": canonical_decimal(sum((Decimal(cost) for _, _, cost in unmapped), ZERO)),
                            "skus": [
                                {"sku_id": meter_id, "service_id": product_id, "cost": canonical_decimal(Decimal(cost))}
                                for meter_id, product_id, cost in unmapped[:VALIDATION_SAMPLE_SIZE]
                            ],
                        },
                    )
                )

            active_customers = session.exec(select(Customer).where(Customer.status == CustomerStatus.ACTIVE)).all()
            if target_customer_id is not None:
                active_customers = [item for item in active_customers if item.id == target_customer_id]
                if not active_customers:
                    errors.append(
                        RunValidationIssue(code=INVALID_CUSTOMER, message="Target customer not found or not active")
                    )
            elif not active_customers:
                errors.append(RunValidationIssue(code=NO_ACTIVE_CUSTOMERS, message="No active customers found"))

            priced_ids = set(
                session.exec(
                    select(PricingList.customer_id).where(PricingList.status == PricingListStatus.ACTIVE)
                ).all()
            )
            unpriced = [item for item in active_customers if item.id not in priced_ids]
            if unpriced:
                warnings.append(
                    RunValidationIssue(
                        code=CUSTOMERS_WITHOUT_PRICING,
                        message=f"{len(unpriced)} customer(s) have no active pricing list",
                        detail={"customers": [{"id": item.id, "name": item.name} for item in unpriced[:10]]},
                    )
                )

        return RunValidationRead(
            billing_month=billing_month,
            ok=not errors,
            errors=errors,
            warnings=warnings,
            stats={
                "line_item_count": int(line_item_count),
                "active_customer_count": len(active_customers),
                "project_count": len(project_costs),
            },
        )
