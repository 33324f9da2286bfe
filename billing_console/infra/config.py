from __future__ import annotations

import os
from decimal import Decimal

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://billing:billing@db:5432/billing_console",
)
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
JWT_ISSUER = os.getenv("JWT_ISSUER", "billing-console")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

INVOICE_NUMBER_PREFIX = os.getenv("INVOICE_NUMBER_PREFIX", "SIEGER")
INVOICE_NUMBER_MAX_RETRIES = int(os.getenv("INVOICE_NUMBER_MAX_RETRIES", "1"))
INVOICE_INSERT_MAX_ATTEMPTS = int(os.getenv("INVOICE_INSERT_MAX_ATTEMPTS", "5"))
CUSTOMER_TIMEOUT_SECONDS = float(os.getenv("CUSTOMER_TIMEOUT_SECONDS", "300"))
ANALYTICS_COST_RATIO = Decimal(os.getenv("ANALYTICS_COST_RATIO", "0.7"))

CACHE_BACKEND = os.getenv("CACHE_BACKEND", "memory")
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", "300"))

GCP_BILLING_PROJECT_ID = os.getenv("GCP_BILLING_PROJECT_ID", "")
GCP_BILLING_DATASET = os.getenv("GCP_BILLING_DATASET", "")
GCP_BILLING_TABLE = os.getenv("GCP_BILLING_TABLE", "")

AWS_CUR_EXPORT_DIR = os.getenv("AWS_CUR_EXPORT_DIR", "")
AWS_CUR_DATABASE = os.getenv("AWS_CUR_DATABASE", "")
AWS_CUR_TABLE = os.getenv("AWS_CUR_TABLE", "")

OPENAI_ADMIN_API_KEY = os.getenv("OPENAI_ADMIN_API_KEY", "")
OPENAI_ORGANIZATION_ID = os.getenv("OPENAI_ORGANIZATION_ID", "")
OPENAI_API_BASE_URL = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1")
OPENAI_REQUEST_TIMEOUT_SECONDS = float(os.getenv("OPENAI_REQUEST_TIMEOUT_SECONDS", "30"))

CUSTOM_BILLING_PATH = os.getenv("CUSTOM_BILLING_PATH", "")
