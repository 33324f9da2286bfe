from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, Numeric, UniqueConstraint
from sqlmodel import Field, SQLModel

from billing_console.domain.state_machine import InvoiceRunState, InvoiceStatus

UNMAPPED_GROUP_CODE = "UNMAPPED"
MIXED_CURRENCY = "MIXED"


def now_utc() -> datetime:
    return datetime.now(UTC)


def _money(nullable: bool = False) -> Column:
    return Column(Numeric(18, 6), nullable=nullable)


class CustomerStatus(StrEnum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    TERMINATED = "TERMINATED"


class ProviderType(StrEnum):
    GCP = "GCP"
    AWS = "AWS"
    OPENAI = "OPENAI"
    CUSTOM = "CUSTOM"


class SourceType(StrEnum):
    BIGQUERY_EXPORT = "BIGQUERY_EXPORT"
    CUR = "CUR"
    USAGE_API = "USAGE_API"
    MANUAL_UPLOAD = "MANUAL_UPLOAD"
    SIMULATED = "SIMULATED"


class SpecialRuleType(StrEnum):
    EXCLUDE_SKU = "EXCLUDE_SKU"
    EXCLUDE_SKU_GROUP = "EXCLUDE_SKU_GROUP"
    OVERRIDE_COST = "OVERRIDE_COST"
    MOVE_TO_CUSTOMER = "MOVE_TO_CUSTOMER"


class PricingRuleType(StrEnum):
    LIST_DISCOUNT = "LIST_DISCOUNT"
    UNIT_PRICE = "UNIT_PRICE"
    TIERED = "TIERED"


class PricingListStatus(StrEnum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class CreditType(StrEnum):
    PROMOTIONAL = "PROMOTIONAL"
    COMMITMENT = "COMMITMENT"
    REFUND = "REFUND"
    GOODWILL = "GOODWILL"
    OTHER = "OTHER"


class CreditStatus(StrEnum):
    ACTIVE = "ACTIVE"
    DEPLETED = "DEPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class LedgerEntryType(StrEnum):
    ALLOCATION = "ALLOCATION"
    USAGE = "USAGE"
    ADJUSTMENT = "ADJUSTMENT"
    EXPIRY = "EXPIRY"


class AuditAction(StrEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    EXPORT = "EXPORT"
    INGEST = "INGEST"
    INVOICE_RUN_START = "INVOICE_RUN_START"
    INVOICE_RUN_COMPLETE = "INVOICE_RUN_COMPLETE"
    INVOICE_RUN_FAIL = "INVOICE_RUN_FAIL"
    INVOICE_CREATE = "INVOICE_CREATE"
    INVOICE_LOCK = "INVOICE_LOCK"
    CREDIT_APPLY = "CREDIT_APPLY"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: AuditAction = Field(index=True)
    target_table: str = Field(index=True)
    target_id: str | None = Field(default=None, index=True)
    ip_address: str | None = None
    user_agent: str | None = None
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    external_id: str | None = Field(default=None, index=True, unique=True)
    name: str = Field(index=True)
    currency: str = Field(default="USD")
    payment_terms_days: int = Field(default=30)
    status: CustomerStatus = Field(default=CustomerStatus.ACTIVE, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Project(SQLModel, table=True):
    __tablename__ = "projects"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    project_id: str = Field(index=True, unique=True)
    name: str
    provider: ProviderType = Field(default=ProviderType.GCP, index=True)
    billing_account_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class CustomerProjectBinding(SQLModel, table=True):
    __tablename__ = "customer_project_bindings"
    __table_args__ = (
        Index("ix_customer_project_bindings_customer_project", "customer_id", "project_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    start_date: date | None = None
    end_date: date | None = None
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class IngestionBatch(SQLModel, table=True):
    __tablename__ = "ingestion_batches"
    __table_args__ = (
        UniqueConstraint(
            "provider",
            "source_type",
            "invoice_month",
            "checksum",
            name="uq_ingestion_batches_source_checksum",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    provider: ProviderType = Field(index=True)
    source_type: SourceType = Field(index=True)
    invoice_month: str = Field(index=True)
    row_count: int = Field(default=0)
    checksum: str = Field(index=True)
    source_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class LineItem(SQLModel, table=True):
    __tablename__ = "line_items"
    __table_args__ = (
        Index("ix_line_items_usage_window", "usage_start_time", "usage_end_time"),
        Index("ix_line_items_batch_subaccount", "ingestion_batch_id", "subaccount_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    ingestion_batch_id: str = Field(foreign_key="ingestion_batches.id", index=True)
    provider: ProviderType = Field(index=True)
    source_type: SourceType
    account_id: str = Field(index=True)
    subaccount_id: str | None = Field(default=None, index=True)
    resource_id: str | None = None
    product_id: str = Field(index=True)
    meter_id: str = Field(index=True)
    usage_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    usage_unit: str = Field(default="")
    cost: Decimal = Field(default=Decimal("0"), sa_column=_money())
    list_cost: Decimal | None = Field(default=None, sa_column=_money(nullable=True))
    currency: str = Field(default="USD")
    usage_start_time: datetime
    usage_end_time: datetime
    invoice_month: str = Field(index=True)
    region: str | None = None
    tags: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    raw_payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc)


class SkuGroup(SQLModel, table=True):
    __tablename__ = "sku_groups"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class SkuGroupMapping(SQLModel, table=True):
    __tablename__ = "sku_group_mappings"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    sku_id: str = Field(index=True, unique=True)
    sku_group_id: str = Field(foreign_key="sku_groups.id", index=True)
    provider: ProviderType | None = None
    description: str | None = None
    created_at: datetime = Field(default_factory=now_utc)


class SpecialRule(SQLModel, table=True):
    __tablename__ = "special_rules"
    __table_args__ = (
        Index("ix_special_rules_customer_enabled", "customer_id", "enabled"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str | None = Field(default=None, foreign_key="customers.id", index=True)
    name: str
    rule_type: SpecialRuleType = Field(index=True)
    sku_id: str | None = None
    sku_group_id: str | None = Field(default=None, foreign_key="sku_groups.id")
    service_id: str | None = None
    project_id: str | None = None
    billing_account_id: str | None = None
    priority: int = Field(default=100)
    enabled: bool = Field(default=True)
    effective_start: date | None = None
    effective_end: date | None = None
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)
    deleted_at: datetime | None = None


class SpecialRuleEffect(SQLModel, table=True):
    __tablename__ = "special_rule_effects"
    __table_args__ = (
        Index("ix_special_rule_effects_run_customer", "invoice_run_id", "customer_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_run_id: str = Field(foreign_key="invoice_runs.id", index=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    rule_id: str = Field(index=True)
    rule_name: str
    rule_type: SpecialRuleType
    affected_row_count: int = Field(default=0)
    cost_delta: Decimal = Field(default=Decimal("0"), sa_column=_money())
    summary: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc)


class PricingList(SQLModel, table=True):
    __tablename__ = "pricing_lists"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    name: str
    status: PricingListStatus = Field(default=PricingListStatus.ACTIVE, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class PricingRule(SQLModel, table=True):
    __tablename__ = "pricing_rules"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    pricing_list_id: str = Field(foreign_key="pricing_lists.id", index=True)
    rule_type: PricingRuleType
    sku_group_id: str | None = Field(default=None, foreign_key="sku_groups.id", index=True)
    priority: int = Field(default=100)
    effective_start: date | None = None
    effective_end: date | None = None
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc)


class Credit(SQLModel, table=True):
    __tablename__ = "credits"
    __table_args__ = (
        Index("ix_credits_customer_status", "customer_id", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    credit_type: CreditType = Field(default=CreditType.PROMOTIONAL)
    total_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    remaining_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    currency: str = Field(default="USD")
    valid_from: date
    valid_to: date
    allow_carry_over: bool = Field(default=False)
    status: CreditStatus = Field(default=CreditStatus.ACTIVE, index=True)
    description: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class CreditLedgerEntry(SQLModel, table=True):
    __tablename__ = "credit_ledger_entries"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    credit_id: str = Field(foreign_key="credits.id", index=True)
    entry_type: LedgerEntryType = Field(index=True)
    amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    balance_after: Decimal = Field(default=Decimal("0"), sa_column=_money())
    invoice_run_id: str | None = Field(default=None, index=True)
    invoice_id: str | None = Field(default=None, index=True)
    note: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class InvoiceRun(SQLModel, table=True):
    __tablename__ = "invoice_runs"
    __table_args__ = (
        Index("ix_invoice_runs_month_status", "billing_month", "status"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    billing_month: str = Field(index=True)
    status: InvoiceRunState = Field(default=InvoiceRunState.QUEUED, index=True)
    target_customer_id: str | None = Field(default=None, index=True)
    ingestion_batch_id: str | None = Field(default=None, index=True)
    source_key: str | None = Field(default=None, index=True)
    created_by: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    total_invoices: int = Field(default=0)
    total_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    raw_total_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    error_message: str | None = None
    error_details: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    source_ingestion_batch_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    source_time_range_start: datetime | None = None
    source_time_range_end: datetime | None = None
    customer_count: int = Field(default=0)
    project_count: int = Field(default=0)
    row_count: int = Field(default=0)
    currency_breakdown: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    run_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Invoice(SQLModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_customer_month", "customer_id", "billing_month"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_run_id: str = Field(foreign_key="invoice_runs.id", index=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    config_snapshot_id: str | None = Field(default=None, foreign_key="config_snapshots.id")
    billing_month: str = Field(index=True)
    invoice_number: str = Field(index=True, unique=True)
    status: InvoiceStatus = Field(default=InvoiceStatus.DRAFT, index=True)
    subtotal: Decimal = Field(default=Decimal("0"), sa_column=_money())
    tax_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    credit_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    total_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    currency: str = Field(default="USD")
    breakdown: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    issue_date: datetime = Field(default_factory=now_utc)
    due_date: datetime
    locked_at: datetime | None = None
    locked_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class InvoiceLineItem(SQLModel, table=True):
    __tablename__ = "invoice_line_items"
    __table_args__ = (
        UniqueConstraint("invoice_id", "line_number", name="uq_invoice_line_items_invoice_line"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_id: str = Field(foreign_key="invoices.id", index=True)
    line_number: int
    sku_group_code: str = Field(index=True)
    description: str
    quantity: Decimal = Field(default=Decimal("0"), sa_column=_money())
    unit_price: Decimal = Field(default=Decimal("0"), sa_column=_money())
    amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    raw_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    priced_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    rule_id: str | None = None
    discount_rate: Decimal | None = Field(default=None, sa_column=_money(nullable=True))
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class ConfigSnapshot(SQLModel, table=True):
    __tablename__ = "config_snapshots"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    invoice_run_id: str = Field(foreign_key="invoice_runs.id", index=True)
    billing_month: str = Field(index=True)
    version: int = Field(default=1)
    config: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_at: datetime = Field(default_factory=now_utc)


class BillingMonthlySummary(SQLModel, table=True):
    __tablename__ = "billing_monthly_summaries"
    __table_args__ = (
        UniqueConstraint(
            "invoice_run_id",
            "customer_id",
            "product_group",
            "provider",
            name="uq_billing_monthly_summaries_run_key",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_run_id: str = Field(foreign_key="invoice_runs.id", index=True)
    billing_month: str = Field(index=True)
    customer_id: str = Field(index=True)
    product_group: str = Field(index=True)
    provider: str = Field(index=True)
    currency: str = Field(default="USD")
    raw_cost: Decimal = Field(default=Decimal("0"), sa_column=_money())
    priced_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    entry_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc)


class BillingCustomerSnapshot(SQLModel, table=True):
    __tablename__ = "billing_customer_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "invoice_run_id",
            "customer_id",
            name="uq_billing_customer_snapshots_run_customer",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_run_id: str = Field(foreign_key="invoice_runs.id", index=True)
    billing_month: str = Field(index=True)
    customer_id: str = Field(index=True)
    raw_cost: Decimal = Field(default=Decimal("0"), sa_column=_money())
    revenue: Decimal = Field(default=Decimal("0"), sa_column=_money())
    credit_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    total_amount: Decimal = Field(default=Decimal("0"), sa_column=_money())
    invoice_count: int = Field(default=0)
    mom_growth_pct: Decimal | None = Field(default=None, sa_column=_money(nullable=True))
    gross_margin_pct: Decimal | None = Field(default=None, sa_column=_money(nullable=True))
    created_at: datetime = Field(default_factory=now_utc)


class BillingProviderSnapshot(SQLModel, table=True):
    __tablename__ = "billing_provider_snapshots"
    __table_args__ = (
        UniqueConstraint(
            "invoice_run_id",
            "provider",
            name="uq_billing_provider_snapshots_run_provider",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_run_id: str = Field(foreign_key="invoice_runs.id", index=True)
    billing_month: str = Field(index=True)
    provider: str = Field(index=True)
    raw_cost: Decimal = Field(default=Decimal("0"), sa_column=_money())
    revenue: Decimal = Field(default=Decimal("0"), sa_column=_money())
    estimated_cost: Decimal = Field(default=Decimal("0"), sa_column=_money())
    margin: Decimal = Field(default=Decimal("0"), sa_column=_money())
    margin_pct: Decimal | None = Field(default=None, sa_column=_money(nullable=True))
    customer_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CustomerCreate(BaseModel):
    name: str
    external_id: str | None = None
    currency: str = "USD"
    payment_terms_days: int = PydanticField(default=30, ge=0, le=365)
    status: CustomerStatus = CustomerStatus.ACTIVE


class CustomerUpdate(BaseModel):
    name: str | None = None
    currency: str | None = None
    payment_terms_days: int | None = PydanticField(default=None, ge=0, le=365)
    status: CustomerStatus | None = None


class CustomerRead(ORMReadModel):
    id: str
    external_id: str | None
    name: str
    currency: str
    payment_terms_days: int
    status: CustomerStatus
    created_at: datetime
    updated_at: datetime


class ProjectCreate(BaseModel):
    project_id: str
    name: str
    provider: ProviderType = ProviderType.GCP
    billing_account_id: str | None = None


class ProjectRead(ORMReadModel):
    id: str
    project_id: str
    name: str
    provider: ProviderType
    billing_account_id: str | None
    created_at: datetime


class BindingCreate(BaseModel):
    project_id: str
    start_date: date | None = None
    end_date: date | None = None


class BindingRead(ORMReadModel):
    id: str
    customer_id: str
    project_id: str
    start_date: date | None
    end_date: date | None
    is_active: bool
    created_at: datetime


class IngestionRequest(BaseModel):
    provider: ProviderType
    month: str = PydanticField(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    account_ids: list[str] | None = None
    rows: list[dict[str, Any]] | None = None


class IngestionBatchRead(ORMReadModel):
    id: str
    provider: ProviderType
    source_type: SourceType
    invoice_month: str
    row_count: int
    checksum: str
    source_metadata: dict[str, Any]
    created_by: str | None
    created_at: datetime


class IngestionResultRead(BaseModel):
    batch: IngestionBatchRead
    created: bool


class SkuGroupCreate(BaseModel):
    code: str
    name: str
    description: str | None = None


class SkuGroupRead(ORMReadModel):
    id: str
    code: str
    name: str
    description: str | None
    created_at: datetime


class SkuGroupMappingCreate(BaseModel):
    sku_id: str
    provider: ProviderType | None = None
    description: str | None = None


class SkuGroupMappingRead(ORMReadModel):
    id: str
    sku_id: str
    sku_group_id: str
    provider: ProviderType | None
    description: str | None
    created_at: datetime


class SpecialRuleCreate(BaseModel):
    name: str
    rule_type: SpecialRuleType
    customer_id: str | None = None
    sku_id: str | None = None
    sku_group_id: str | None = None
    service_id: str | None = None
    project_id: str | None = None
    billing_account_id: str | None = None
    priority: int = 100
    enabled: bool = True
    effective_start: date | None = None
    effective_end: date | None = None
    parameters: dict[str, Any] = PydanticField(default_factory=dict)


class SpecialRuleRead(ORMReadModel):
    id: str
    customer_id: str | None
    name: str
    rule_type: SpecialRuleType
    sku_id: str | None
    sku_group_id: str | None
    service_id: str | None
    project_id: str | None
    billing_account_id: str | None
    priority: int
    enabled: bool
    effective_start: date | None
    effective_end: date | None
    parameters: dict[str, Any]
    created_at: datetime
    deleted_at: datetime | None


class SpecialRuleEffectRead(ORMReadModel):
    id: str
    invoice_run_id: str
    customer_id: str
    rule_id: str
    rule_name: str
    rule_type: SpecialRuleType
    affected_row_count: int
    cost_delta: Decimal
    summary: dict[str, Any]
    created_at: datetime


class PricingListCreate(BaseModel):
    name: str
    activate: bool = True


class PricingListRead(ORMReadModel):
    id: str
    customer_id: str
    name: str
    status: PricingListStatus
    created_at: datetime
    updated_at: datetime


class PricingRuleCreate(BaseModel):
    rule_type: PricingRuleType
    sku_group_id: str | None = None
    priority: int = 100
    effective_start: date | None = None
    effective_end: date | None = None
    parameters: dict[str, Any] = PydanticField(default_factory=dict)


class PricingRuleRead(ORMReadModel):
    id: str
    pricing_list_id: str
    rule_type: PricingRuleType
    sku_group_id: str | None
    priority: int
    effective_start: date | None
    effective_end: date | None
    parameters: dict[str, Any]
    created_at: datetime


class CreditCreate(BaseModel):
    credit_type: CreditType = CreditType.PROMOTIONAL
    total_amount: Decimal = PydanticField(gt=0)
    currency: str = "USD"
    valid_from: date
    valid_to: date
    allow_carry_over: bool = False
    description: str | None = None


class CreditAdjustRequest(BaseModel):
    amount: Decimal
    note: str | None = None


class CreditRead(ORMReadModel):
    id: str
    customer_id: str
    credit_type: CreditType
    total_amount: Decimal
    remaining_amount: Decimal
    currency: str
    valid_from: date
    valid_to: date
    allow_carry_over: bool
    status: CreditStatus
    description: str | None
    created_at: datetime


class CreditLedgerEntryRead(ORMReadModel):
    id: str
    credit_id: str
    entry_type: LedgerEntryType
    amount: Decimal
    balance_after: Decimal
    invoice_run_id: str | None
    invoice_id: str | None
    note: str | None
    created_at: datetime


class CreditSummaryRead(BaseModel):
    customer_id: str
    active_count: int
    total_allocated: Decimal
    total_remaining: Decimal
    total_used: Decimal
    by_currency: dict[str, str]


class InvoiceRunCreate(BaseModel):
    billing_month: str = PydanticField(pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    target_customer_id: str | None = None
    ingestion_batch_id: str | None = None
    execute_now: bool = False


class InvoiceRunRead(ORMReadModel):
    id: str
    billing_month: str
    status: InvoiceRunState
    target_customer_id: str | None
    ingestion_batch_id: str | None
    source_key: str | None
    created_by: str | None
    started_at: datetime | None
    finished_at: datetime | None
    total_invoices: int
    total_amount: Decimal
    raw_total_amount: Decimal
    error_message: str | None
    error_details: dict[str, Any]
    source_ingestion_batch_ids: list[str]
    source_time_range_start: datetime | None
    source_time_range_end: datetime | None
    customer_count: int
    project_count: int
    row_count: int
    currency_breakdown: dict[str, Any]
    run_metadata: dict[str, Any]
    created_at: datetime


class RunValidationIssue(BaseModel):
    code: str
    message: str
    detail: dict[str, Any] = PydanticField(default_factory=dict)


class RunValidationRead(BaseModel):
    billing_month: str
    ok: bool
    errors: list[RunValidationIssue]
    warnings: list[RunValidationIssue]
    stats: dict[str, Any]


class InvoiceRead(ORMReadModel):
    id: str
    invoice_run_id: str
    customer_id: str
    config_snapshot_id: str | None
    billing_month: str
    invoice_number: str
    status: InvoiceStatus
    subtotal: Decimal
    tax_amount: Decimal
    credit_amount: Decimal
    total_amount: Decimal
    currency: str
    breakdown: dict[str, Any]
    issue_date: datetime
    due_date: datetime
    locked_at: datetime | None
    locked_by: str | None
    created_at: datetime


class InvoiceLineItemRead(ORMReadModel):
    id: str
    invoice_id: str
    line_number: int
    sku_group_code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    raw_amount: Decimal
    priced_amount: Decimal
    rule_id: str | None
    discount_rate: Decimal | None
    detail: dict[str, Any]


class InvoiceDetailRead(InvoiceRead):
    line_items: list[InvoiceLineItemRead]


class InvoiceStatusUpdate(BaseModel):
    status: InvoiceStatus


class ConfigSnapshotRead(ORMReadModel):
    id: str
    customer_id: str
    invoice_run_id: str
    billing_month: str
    version: int
    config: dict[str, Any]
    created_at: datetime


class MonthlySummaryRead(ORMReadModel):
    invoice_run_id: str
    billing_month: str
    customer_id: str
    product_group: str
    provider: str
    currency: str
    raw_cost: Decimal
    priced_amount: Decimal
    entry_count: int


class CustomerSnapshotRead(ORMReadModel):
    invoice_run_id: str
    billing_month: str
    customer_id: str
    raw_cost: Decimal
    revenue: Decimal
    credit_amount: Decimal
    total_amount: Decimal
    invoice_count: int
    mom_growth_pct: Decimal | None
    gross_margin_pct: Decimal | None


class ProviderSnapshotRead(ORMReadModel):
    invoice_run_id: str
    billing_month: str
    provider: str
    raw_cost: Decimal
    revenue: Decimal
    estimated_cost: Decimal
    margin: Decimal
    margin_pct: Decimal | None
    customer_count: int


class AnalyticsMonthRead(BaseModel):
    billing_month: str
    monthly_summaries: list[MonthlySummaryRead]
    customers: list[CustomerSnapshotRead]
    providers: list[ProviderSnapshotRead]
