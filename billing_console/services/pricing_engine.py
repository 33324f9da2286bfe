from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from sqlmodel import Session, select

from billing_console.domain.models import (
    UNMAPPED_GROUP_CODE,
    PricingList,
    PricingListStatus,
    PricingRule,
    PricingRuleType,
    now_utc,
)
from billing_console.domain.money import ZERO, canonical_decimal
from billing_console.domain.periods import month_dates
from billing_console.domain.rule_resolution import effective_rules, pricing_precedence, resolve_rule
from billing_console.domain.rules import CostEntry, PricingListSpec, PricingRuleSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedEntry:
    entry: CostEntry
    raw_cost: Decimal
    priced_cost: Decimal
    rule_id: str | None = None
    rule_type: PricingRuleType | None = None
    discount_rate: Decimal | None = None

    @property
    def sku_group_code(self) -> str:
        return self.entry.sku_group_code or UNMAPPED_GROUP_CODE


@dataclass
class ProviderBreakdown:
    raw_total: Decimal = ZERO
    priced_total: Decimal = ZERO
    entry_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "raw_total": canonical_decimal(self.raw_total),
            "priced_total": canonical_decimal(self.priced_total),
            "entry_count": self.entry_count,
        }


@dataclass
class GroupSummary:
    sku_group_code: str
    sku_group_id: str | None = None
    raw_total: Decimal = ZERO
    priced_total: Decimal = ZERO
    usage_total: Decimal = ZERO
    entry_count: int = 0
    rule_id: str | None = None
    discount_rate: Decimal | None = None
    currencies: set[str] = field(default_factory=set)
    providers: dict[str, ProviderBreakdown] = field(default_factory=dict)

    def add(self, priced: PricedEntry) -> None:
        if self.entry_count == 0:
            self.rule_id = priced.rule_id
            self.discount_rate = priced.discount_rate
        self.raw_total += priced.raw_cost
        self.priced_total += priced.priced_cost
        self.usage_total += priced.entry.usage_amount
        self.entry_count += 1
        self.currencies.add(priced.entry.currency)
        provider = self.providers.setdefault(priced.entry.provider, ProviderBreakdown())
        provider.raw_total += priced.raw_cost
        provider.priced_total += priced.priced_cost
        provider.entry_count += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "sku_group_code": self.sku_group_code,
            "raw_total": canonical_decimal(self.raw_total),
            "priced_total": canonical_decimal(self.priced_total),
            "entry_count": self.entry_count,
            "rule_id": self.rule_id,
            "discount_rate": canonical_decimal(self.discount_rate) if self.discount_rate is not None else None,
            "providers": {name: item.as_dict() for name, item in sorted(self.providers.items())},
        }


@dataclass
class PricingResult:
    customer_id: str
    pricing_list_id: str | None
    raw_total: Decimal
    priced_total: Decimal
    priced_entries: list[PricedEntry]
    group_summary: dict[str, GroupSummary]
    rules_used: list[dict[str, Any]]

    def summary_dict(self) -> dict[str, Any]:
        return {
            "pricing_list_id": self.pricing_list_id,
            "raw_total": canonical_decimal(self.raw_total),
            "priced_total": canonical_decimal(self.priced_total),
            "groups": {code: group.as_dict() for code, group in self.group_summary.items()},
            "rules_used": self.rules_used,
        }


def load_pricing_list(session: Session, customer_id: str) -> PricingListSpec | None:
    """The customer's ACTIVE pricing list with its rules, or None."""
    lists = session.exec(
        select(PricingList)
        .where(PricingList.customer_id == customer_id)
        .where(PricingList.status == PricingListStatus.ACTIVE)
    ).all()
    if not lists:
        return None
    if len(lists) > 1:
        logger.warning("customer %s has %d active pricing lists; using the newest", customer_id, len(lists))
    pricing_list = max(lists, key=lambda item: (item.updated_at, item.id))
    rows = session.exec(select(PricingRule).where(PricingRule.pricing_list_id == pricing_list.id)).all()
    rules = sorted((PricingRuleSpec.from_row(row) for row in rows), key=pricing_precedence)
    return PricingListSpec(id=pricing_list.id, name=pricing_list.name, rules=rules)


def select_best_rule(
    sku_group_id: str | None,
    rules: Iterable[PricingRuleSpec],
    month_start: date,
    month_end: date,
) -> PricingRuleSpec | None:
    """Pick the rule for one SKU group in the billing month.

    Only rules whose window overlaps the month qualify. A rule qualifies for
    the group when it targets that group or is a wildcard (no group).
    """
    candidates = effective_rules(rules, month_start, month_end)
    return resolve_rule(
        candidates,
        lambda rule: rule.sku_group_id is None or rule.sku_group_id == sku_group_id,
        sort_key=pricing_precedence,
    )


def _rate_for(rule: PricingRuleSpec, raw_cost: Decimal) -> tuple[Decimal, Decimal | None]:
    parameters = rule.parameters
    if rule.rule_type == PricingRuleType.LIST_DISCOUNT:
        return raw_cost * parameters.discount_rate, parameters.discount_rate
    if rule.rule_type == PricingRuleType.UNIT_PRICE:
        # priced cost stays raw; the unit price is kept for audit
        return raw_cost, parameters.unit_price
    if rule.rule_type == PricingRuleType.TIERED:
        tier = parameters.select_tier(raw_cost)
        if tier is None:
            return raw_cost, None
        if tier.rate is not None:
            return raw_cost * tier.rate, tier.rate
        return raw_cost, tier.unit_price
    return raw_cost, None


def price_entry(
    entry: CostEntry,
    rules: Sequence[PricingRuleSpec],
    month_start: date,
    month_end: date,
) -> PricedEntry:
    rule = select_best_rule(entry.sku_group_id, rules, month_start, month_end)
    if rule is None:
        return PricedEntry(entry=entry, raw_cost=entry.cost, priced_cost=entry.cost)
    priced_cost, rate = _rate_for(rule, entry.cost)
    return PricedEntry(
        entry=entry,
        raw_cost=entry.cost,
        priced_cost=priced_cost,
        rule_id=rule.id,
        rule_type=rule.rule_type,
        discount_rate=rate,
    )


def price_entries(
    customer_id: str,
    entries: Iterable[CostEntry],
    pricing_list: PricingListSpec | None,
    billing_month: str,
) -> PricingResult:
    month_start, month_end = month_dates(billing_month)
    rules = pricing_list.rules if pricing_list is not None else []

    raw_total = ZERO
    priced_total = ZERO
    priced_entries: list[PricedEntry] = []
    groups: dict[str, GroupSummary] = {}
    rules_used: dict[str, dict[str, Any]] = {}

    for entry in entries:
        priced = price_entry(entry, rules, month_start, month_end)
        priced_entries.append(priced)
        raw_total += priced.raw_cost
        priced_total += priced.priced_cost

        code = priced.sku_group_code
        group = groups.get(code)
        if group is None:
            group = groups[code] = GroupSummary(sku_group_code=code, sku_group_id=entry.sku_group_id)
        group.add(priced)

        if priced.rule_id is not None and priced.rule_id not in rules_used:
            rules_used[priced.rule_id] = {
                "rule_id": priced.rule_id,
                "rule_type": str(priced.rule_type),
                "sku_group_code": code,
                "discount_rate": canonical_decimal(priced.discount_rate) if priced.discount_rate is not None else "1",
            }

    ordered = dict(sorted(groups.items(), key=lambda item: (item[0] == UNMAPPED_GROUP_CODE, item[0])))
    return PricingResult(
        customer_id=customer_id,
        pricing_list_id=pricing_list.id if pricing_list is not None else None,
        raw_total=raw_total,
        priced_total=priced_total,
        priced_entries=priced_entries,
        group_summary=ordered,
        rules_used=list(rules_used.values()),
    )


def capture_pricing_snapshot(pricing_list: PricingListSpec | None) -> dict[str, Any]:
    return {
        "pricing_list_id": pricing_list.id if pricing_list is not None else None,
        "pricing_list_name": pricing_list.name if pricing_list is not None else None,
        "rules": [rule.snapshot() for rule in pricing_list.rules] if pricing_list is not None else [],
        "captured_at": now_utc().isoformat(),
    }
