"""Invoice numbers: ``PREFIX-YYYYMM-SLUG-NNNN``.

The sequence is the customer's invoice count for the month plus one. The
number is checked against existing invoices in the caller's transaction; a
taken number is retried with the next sequence, and once retries run out a
base-36 timestamp replaces the sequence. The unique constraint on
``invoices.invoice_number`` remains the final guard.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable

from sqlalchemy import func
from sqlmodel import Session, select

from billing_console.domain.models import Invoice
from billing_console.domain.periods import parse_billing_month
from billing_console.infra import config

logger = logging.getLogger(__name__)

SLUG_LENGTH = 4
_NON_ALNUM = re.compile(r"[^A-Z0-9]")
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def customer_slug(name: str, external_id: str | None = None) -> str:
    source = external_id or name
    slug = _NON_ALNUM.sub("", source.upper())[:SLUG_LENGTH]
    return slug.ljust(SLUG_LENGTH, "X")


def format_invoice_number(billing_month: str, slug: str, suffix: int | str, prefix: str | None = None) -> str:
    year, month = parse_billing_month(billing_month)
    tail = f"{suffix:04d}" if isinstance(suffix, int) else suffix
    return f"{prefix or config.INVOICE_NUMBER_PREFIX}-{year:04d}{month:02d}-{slug}-{tail}"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def _number_taken(session: Session, invoice_number: str) -> bool:
    return session.exec(select(Invoice.id).where(Invoice.invoice_number == invoice_number)).first() is not None


def allocate_invoice_number(
    session: Session,
    *,
    customer_id: str,
    billing_month: str,
    slug: str,
    prefix: str | None = None,
    max_retries: int | None = None,
    clock: Callable[[], float] = time.time,
) -> str:
    retries = config.INVOICE_NUMBER_MAX_RETRIES if max_retries is None else max_retries
    existing = session.exec(
        select(func.count())
        .select_from(Invoice)
        .where(Invoice.customer_id == customer_id)
        .where(Invoice.billing_month == billing_month)
    ).one()

    for attempt in range(retries + 1):
        candidate = format_invoice_number(billing_month, slug, int(existing) + 1 + attempt, prefix)
        if not _number_taken(session, candidate):
            return candidate

    stamp = to_base36(int(clock() * 1000))[-SLUG_LENGTH:]
    fallback = format_invoice_number(billing_month, slug, stamp, prefix)
    logger.warning("invoice sequence exhausted for customer %s in %s; using %s", customer_id, billing_month, fallback)
    return fallback
