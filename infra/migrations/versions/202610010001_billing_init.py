"""billing console initial schema

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610010001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 6)

TABLES = [
    "billing_provider_snapshots",
    "billing_customer_snapshots",
    "billing_monthly_summaries",
    "invoice_line_items",
    "invoices",
    "config_snapshots",
    "credit_ledger_entries",
    "credits",
    "pricing_rules",
    "pricing_lists",
    "special_rule_effects",
    "invoice_runs",
    "special_rules",
    "sku_group_mappings",
    "sku_groups",
    "line_items",
    "ingestion_batches",
    "customer_project_bindings",
    "projects",
    "customers",
    "audit_logs",
    "events",
]


def _indexes(table: str, *columns: str, unique: tuple[str, ...] = ()) -> None:
    for column in columns:
        op.create_index(f"ix_{table}_{column}", table, [column], unique=column in unique)


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    _indexes("events", "event_type", "ts", "actor_id", "correlation_id")

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("target_table", sa.String(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("audit_logs", "actor_id", "action", "target_table", "target_id", "ts")

    op.create_table(
        "customers",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("payment_terms_days", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("customers", "external_id", "name", "status", "created_at", unique=("external_id",))

    op.create_table(
        "projects",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("billing_account_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("projects", "project_id", "provider", "billing_account_id", "created_at", unique=("project_id",))

    op.create_table(
        "customer_project_bindings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("customer_project_bindings", "customer_id", "project_id", "is_active", "created_at")
    op.create_index(
        "ix_customer_project_bindings_customer_project",
        "customer_project_bindings",
        ["customer_id", "project_id"],
    )

    op.create_table(
        "ingestion_batches",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("invoice_month", sa.String(), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False),
        sa.Column("checksum", sa.String(), nullable=False),
        sa.Column("source_metadata", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider",
            "source_type",
            "invoice_month",
            "checksum",
            name="uq_ingestion_batches_source_checksum",
        ),
    )
    _indexes("ingestion_batches", "provider", "source_type", "invoice_month", "checksum", "created_at")

    op.create_table(
        "line_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("ingestion_batch_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("source_type", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("subaccount_id", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("meter_id", sa.String(), nullable=False),
        sa.Column("usage_amount", MONEY, nullable=False),
        sa.Column("usage_unit", sa.String(), nullable=False),
        sa.Column("cost", MONEY, nullable=False),
        sa.Column("list_cost", MONEY, nullable=True),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("usage_start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invoice_month", sa.String(), nullable=False),
        sa.Column("region", sa.String(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("raw_payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["ingestion_batch_id"], ["ingestion_batches.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes(
        "line_items",
        "ingestion_batch_id",
        "provider",
        "account_id",
        "subaccount_id",
        "product_id",
        "meter_id",
        "invoice_month",
    )
    op.create_index("ix_line_items_usage_window", "line_items", ["usage_start_time", "usage_end_time"])
    op.create_index("ix_line_items_batch_subaccount", "line_items", ["ingestion_batch_id", "subaccount_id"])

    op.create_table(
        "sku_groups",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("sku_groups", "code", "created_at", unique=("code",))

    op.create_table(
        "sku_group_mappings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("sku_id", sa.String(), nullable=False),
        sa.Column("sku_group_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["sku_group_id"], ["sku_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("sku_group_mappings", "sku_id", "sku_group_id", unique=("sku_id",))

    op.create_table(
        "special_rules",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("sku_id", sa.String(), nullable=True),
        sa.Column("sku_group_id", sa.String(), nullable=True),
        sa.Column("service_id", sa.String(), nullable=True),
        sa.Column("project_id", sa.String(), nullable=True),
        sa.Column("billing_account_id", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("effective_start", sa.Date(), nullable=True),
        sa.Column("effective_end", sa.Date(), nullable=True),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["sku_group_id"], ["sku_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("special_rules", "customer_id", "rule_type", "created_at")
    op.create_index("ix_special_rules_customer_enabled", "special_rules", ["customer_id", "enabled"])

    op.create_table(
        "invoice_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("billing_month", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("target_customer_id", sa.String(), nullable=True),
        sa.Column("ingestion_batch_id", sa.String(), nullable=True),
        sa.Column("source_key", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_invoices", sa.Integer(), nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("raw_total_amount", MONEY, nullable=False),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=False),
        sa.Column("source_ingestion_batch_ids", sa.JSON(), nullable=False),
        sa.Column("source_time_range_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("source_time_range_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("customer_count", sa.Integer(), nullable=False),
        sa.Column("project_count", sa.Integer(), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False),
        sa.Column("currency_breakdown", sa.JSON(), nullable=False),
        sa.Column("run_metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes(
        "invoice_runs",
        "billing_month",
        "status",
        "target_customer_id",
        "ingestion_batch_id",
        "source_key",
        "created_at",
    )
    op.create_index("ix_invoice_runs_month_status", "invoice_runs", ["billing_month", "status"])

    op.create_table(
        "special_rule_effects",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_run_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("rule_id", sa.String(), nullable=False),
        sa.Column("rule_name", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("affected_row_count", sa.Integer(), nullable=False),
        sa.Column("cost_delta", MONEY, nullable=False),
        sa.Column("summary", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_run_id"], ["invoice_runs.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("special_rule_effects", "invoice_run_id", "customer_id", "rule_id")
    op.create_index(
        "ix_special_rule_effects_run_customer",
        "special_rule_effects",
        ["invoice_run_id", "customer_id"],
    )

    op.create_table(
        "pricing_lists",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("pricing_lists", "customer_id", "status", "created_at")

    op.create_table(
        "pricing_rules",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("pricing_list_id", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("sku_group_id", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("effective_start", sa.Date(), nullable=True),
        sa.Column("effective_end", sa.Date(), nullable=True),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["pricing_list_id"], ["pricing_lists.id"]),
        sa.ForeignKeyConstraint(["sku_group_id"], ["sku_groups.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("pricing_rules", "pricing_list_id", "sku_group_id")

    op.create_table(
        "credits",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("credit_type", sa.String(), nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("remaining_amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_to", sa.Date(), nullable=False),
        sa.Column("allow_carry_over", sa.Boolean(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("credits", "customer_id", "status", "created_at")
    op.create_index("ix_credits_customer_status", "credits", ["customer_id", "status"])

    op.create_table(
        "credit_ledger_entries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("credit_id", sa.String(), nullable=False),
        sa.Column("entry_type", sa.String(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("invoice_run_id", sa.String(), nullable=True),
        sa.Column("invoice_id", sa.String(), nullable=True),
        sa.Column("note", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["credit_id"], ["credits.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("credit_ledger_entries", "credit_id", "entry_type", "invoice_run_id", "invoice_id", "created_at")

    op.create_table(
        "config_snapshots",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("invoice_run_id", sa.String(), nullable=False),
        sa.Column("billing_month", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["invoice_run_id"], ["invoice_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes("config_snapshots", "customer_id", "invoice_run_id", "billing_month")

    op.create_table(
        "invoices",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_run_id", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("config_snapshot_id", sa.String(), nullable=True),
        sa.Column("billing_month", sa.String(), nullable=False),
        sa.Column("invoice_number", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("subtotal", MONEY, nullable=False),
        sa.Column("tax_amount", MONEY, nullable=False),
        sa.Column("credit_amount", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("breakdown", sa.JSON(), nullable=False),
        sa.Column("issue_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_run_id"], ["invoice_runs.id"]),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["config_snapshot_id"], ["config_snapshots.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _indexes(
        "invoices",
        "invoice_run_id",
        "customer_id",
        "billing_month",
        "invoice_number",
        "status",
        "created_at",
        unique=("invoice_number",),
    )
    op.create_index("ix_invoices_customer_month", "invoices", ["customer_id", "billing_month"])

    op.create_table(
        "invoice_line_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_id", sa.String(), nullable=False),
        sa.Column("line_number", sa.Integer(), nullable=False),
        sa.Column("sku_group_code", sa.String(), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("quantity", MONEY, nullable=False),
        sa.Column("unit_price", MONEY, nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("raw_amount", MONEY, nullable=False),
        sa.Column("priced_amount", MONEY, nullable=False),
        sa.Column("rule_id", sa.String(), nullable=True),
        sa.Column("discount_rate", MONEY, nullable=True),
        sa.Column("detail", sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_id", "line_number", name="uq_invoice_line_items_invoice_line"),
    )
    _indexes("invoice_line_items", "invoice_id", "sku_group_code")

    op.create_table(
        "billing_monthly_summaries",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_run_id", sa.String(), nullable=False),
        sa.Column("billing_month", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("product_group", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False),
        sa.Column("raw_cost", MONEY, nullable=False),
        sa.Column("priced_amount", MONEY, nullable=False),
        sa.Column("entry_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_run_id"], ["invoice_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "invoice_run_id",
            "customer_id",
            "product_group",
            "provider",
            name="uq_billing_monthly_summaries_run_key",
        ),
    )
    _indexes(
        "billing_monthly_summaries",
        "invoice_run_id",
        "billing_month",
        "customer_id",
        "product_group",
        "provider",
    )

    op.create_table(
        "billing_customer_snapshots",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_run_id", sa.String(), nullable=False),
        sa.Column("billing_month", sa.String(), nullable=False),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("raw_cost", MONEY, nullable=False),
        sa.Column("revenue", MONEY, nullable=False),
        sa.Column("credit_amount", MONEY, nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("invoice_count", sa.Integer(), nullable=False),
        sa.Column("mom_growth_pct", MONEY, nullable=True),
        sa.Column("gross_margin_pct", MONEY, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_run_id"], ["invoice_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_run_id", "customer_id", name="uq_billing_customer_snapshots_run_customer"),
    )
    _indexes("billing_customer_snapshots", "invoice_run_id", "billing_month", "customer_id")

    op.create_table(
        "billing_provider_snapshots",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("invoice_run_id", sa.String(), nullable=False),
        sa.Column("billing_month", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("raw_cost", MONEY, nullable=False),
        sa.Column("revenue", MONEY, nullable=False),
        sa.Column("estimated_cost", MONEY, nullable=False),
        sa.Column("margin", MONEY, nullable=False),
        sa.Column("margin_pct", MONEY, nullable=True),
        sa.Column("customer_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_run_id"], ["invoice_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_run_id", "provider", name="uq_billing_provider_snapshots_run_provider"),
    )
    _indexes("billing_provider_snapshots", "invoice_run_id", "billing_month", "provider")


def downgrade() -> None:
    for table in TABLES:
        op.drop_table(table)
