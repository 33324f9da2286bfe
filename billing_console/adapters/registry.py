from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from billing_console.adapters.aws_cur import AwsCurAdapter, aws_config_from_values
from billing_console.adapters.base import AdapterConfigError, BillingSourceAdapter
from billing_console.adapters.custom_adapter import CustomRowsAdapter
from billing_console.adapters.gcp_bigquery import BigQueryRunner, GcpBigQueryAdapter, gcp_config_from_values
from billing_console.adapters.openai_usage import OpenAiUsageAdapter, openai_config_from_values
from billing_console.domain.models import ProviderType
from billing_console.infra import config
from billing_console.infra.cache import TtlCache


def create_adapter_from_env(
    provider: ProviderType,
    *,
    rows: list[Mapping[str, Any]] | None = None,
    bigquery_runner: BigQueryRunner | None = None,
    cache: TtlCache | None = None,
) -> BillingSourceAdapter:
    if provider == ProviderType.GCP:
        if bigquery_runner is None:
            raise AdapterConfigError("GCP adapter requires a BigQuery query runner")
        gcp_config = gcp_config_from_values(
            config.GCP_BILLING_PROJECT_ID,
            config.GCP_BILLING_DATASET,
            config.GCP_BILLING_TABLE,
        )
        return GcpBigQueryAdapter(gcp_config, bigquery_runner, cache=cache)
    if provider == ProviderType.AWS:
        return AwsCurAdapter(
            aws_config_from_values(
                config.AWS_CUR_EXPORT_DIR,
                config.AWS_CUR_DATABASE,
                config.AWS_CUR_TABLE,
            )
        )
    if provider == ProviderType.OPENAI:
        return OpenAiUsageAdapter(
            openai_config_from_values(
                config.OPENAI_ADMIN_API_KEY,
                config.OPENAI_ORGANIZATION_ID,
                base_url=config.OPENAI_API_BASE_URL,
                timeout_seconds=config.OPENAI_REQUEST_TIMEOUT_SECONDS,
            )
        )
    if provider == ProviderType.CUSTOM:
        if rows is not None:
            return CustomRowsAdapter(rows=rows)
        if not config.CUSTOM_BILLING_PATH:
            raise AdapterConfigError("custom adapter requires inline rows or CUSTOM_BILLING_PATH")
        return CustomRowsAdapter(base_path=Path(config.CUSTOM_BILLING_PATH))
    raise AdapterConfigError(f"unknown provider: {provider}")
