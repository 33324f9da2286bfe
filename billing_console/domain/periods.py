from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta

BILLING_MONTH_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

OPEN_START = date(1970, 1, 1)
OPEN_END = date(2100, 12, 31)


class InvalidBillingMonthError(ValueError):
    pass


def parse_billing_month(value: str) -> tuple[int, int]:
    match = BILLING_MONTH_PATTERN.match(value.strip())
    if match is None:
        raise InvalidBillingMonthError(f"billing month must be YYYY-MM, got {value!r}")
    return int(match.group(1)), int(match.group(2))


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def month_window(billing_month: str) -> tuple[datetime, datetime]:
    """Return the UTC ``[start, next_month_start)`` window of a billing month."""
    year, month = parse_billing_month(billing_month)
    start = datetime(year, month, 1, tzinfo=UTC)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=UTC)
    else:
        end = datetime(year, month + 1, 1, tzinfo=UTC)
    return start, end


def month_dates(billing_month: str) -> tuple[date, date]:
    """Return the first and last calendar day of a billing month."""
    start, end = month_window(billing_month)
    return start.date(), (end - timedelta(days=1)).date()


def previous_month(billing_month: str) -> str:
    year, month = parse_billing_month(billing_month)
    if month == 1:
        return f"{year - 1}-12"
    return f"{year}-{month - 1:02d}"


def billing_month_of(value: datetime) -> str:
    normalized = as_utc(value)
    return f"{normalized.year}-{normalized.month:02d}"


def date_window_overlaps(
    start: date | None,
    end: date | None,
    window_start: date,
    window_end: date,
) -> bool:
    """Null bounds are unbounded on their side."""
    effective_start = start or OPEN_START
    effective_end = end or OPEN_END
    return effective_start <= window_end and effective_end >= window_start


def iso_utc_ms(value: datetime) -> str:
    normalized = as_utc(value)
    return normalized.strftime("%Y-%m-%dT%H:%M:%S.") + f"{normalized.microsecond // 1000:03d}Z"
