from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from billing_console.domain.models import PricingRuleType, SpecialRuleType
from billing_console.domain.rule_resolution import pricing_precedence, resolve_rule, special_rule_precedence
from billing_console.domain.rules import (
    CostEntry,
    PricingListSpec,
    PricingRuleSpec,
    RuleParameterError,
    SpecialRuleSpec,
    parse_pricing_rule_parameters,
    parse_special_rule_parameters,
)
from billing_console.services.pricing_engine import price_entries, select_best_rule
from billing_console.services.special_rules_engine import apply_special_rules

SEPT_START = date(2026, 9, 1)
SEPT_END = date(2026, 9, 30)


def _entry(line_id: str, cost: str, *, sku_id: str = "sku-1", group: str | None = "grp-compute") -> CostEntry:
    return CostEntry(
        line_item_id=line_id,
        provider="GCP",
        billing_account_id="billing-001",
        project_id="proj-a",
        service_id="compute",
        sku_id=sku_id,
        cost=Decimal(cost),
        currency="USD",
        sku_group_id=group,
        sku_group_code="COMPUTE" if group else None,
    )


def _special(
    rule_id: str,
    rule_type: SpecialRuleType,
    *,
    priority: int = 100,
    created: datetime = datetime(2026, 1, 1, tzinfo=UTC),
    parameters: dict | None = None,
    **match: str,
) -> SpecialRuleSpec:
    return SpecialRuleSpec(
        id=rule_id,
        name=rule_id,
        rule_type=rule_type,
        customer_id=None,
        priority=priority,
        created_at=created,
        parameters=parse_special_rule_parameters(rule_type, parameters),
        **match,
    )


def _pricing(
    rule_id: str,
    rule_type: PricingRuleType,
    parameters: dict,
    *,
    group: str | None = None,
    priority: int = 100,
    start: date | None = None,
    end: date | None = None,
) -> PricingRuleSpec:
    return PricingRuleSpec(
        id=rule_id,
        rule_type=rule_type,
        priority=priority,
        parameters=parse_pricing_rule_parameters(rule_type, parameters),
        sku_group_id=group,
        effective_start=start,
        effective_end=end,
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
    )


def test_pricing_precedence_orders_priority_then_specificity() -> None:
    wildcard_urgent = _pricing("a", PricingRuleType.LIST_DISCOUNT, {"discount_rate": "0.5"}, priority=1)
    specific = _pricing("b", PricingRuleType.LIST_DISCOUNT, {"discount_rate": "0.9"}, group="grp-compute")
    wildcard = _pricing("c", PricingRuleType.LIST_DISCOUNT, {"discount_rate": "0.8"})

    ordered = sorted([wildcard, specific, wildcard_urgent], key=pricing_precedence)
    assert [rule.id for rule in ordered] == ["a", "b", "c"]


def test_special_precedence_breaks_ties_by_creation() -> None:
    older = _special("z-older", SpecialRuleType.EXCLUDE_SKU, created=datetime(2026, 1, 1), sku_id="sku-1")
    newer = _special("a-newer", SpecialRuleType.EXCLUDE_SKU, created=datetime(2026, 2, 1), sku_id="sku-1")
    winner = resolve_rule([newer, older], lambda rule: True, sort_key=special_rule_precedence)
    assert winner is older


def test_resolve_rule_returns_none_without_match() -> None:
    assert resolve_rule([1, 2, 3], lambda value: value > 5) is None


def test_exclude_rule_delta_matches_removed_cost() -> None:
    entries = [_entry("li-1", "100"), _entry("li-2", "40", sku_id="sku-2"), _entry("li-3", "60")]
    rules = [_special("drop-sku-1", SpecialRuleType.EXCLUDE_SKU, sku_id="sku-1")]

    result = apply_special_rules(entries, rules)

    raw = sum(entry.cost for entry in entries)
    transformed = sum(entry.cost for entry in result.transformed_entries)
    assert [entry.line_item_id for entry in result.transformed_entries] == ["li-2"]
    assert raw - transformed == -result.total_cost_delta
    assert result.total_cost_delta == Decimal("-160")
    assert result.rule_results[0].affected_row_count == 2
    assert entries[0].cost == Decimal("100")


def test_override_cost_scales_and_first_rule_wins() -> None:
    entries = [_entry("li-1", "200")]
    rules = [
        _special("half", SpecialRuleType.OVERRIDE_COST, priority=10, parameters={"cost_multiplier": "0.5"}),
        _special("drop", SpecialRuleType.EXCLUDE_SKU, priority=20, sku_id="sku-1"),
    ]

    result = apply_special_rules(entries, rules)

    assert result.transformed_entries[0].cost == Decimal("100.0")
    assert result.total_cost_delta == Decimal("-100.0")
    assert [item["rule_id"] for item in result.rules_applied] == ["half"]


def test_move_to_customer_removes_entries_and_records_target() -> None:
    entries = [_entry("li-1", "30"), _entry("li-2", "70", sku_id="sku-2")]
    rules = [
        _special(
            "move",
            SpecialRuleType.MOVE_TO_CUSTOMER,
            parameters={"target_customer_id": "cust-b"},
            sku_id="sku-2",
        )
    ]

    result = apply_special_rules(entries, rules)

    assert [entry.line_item_id for entry in result.transformed_entries] == ["li-1"]
    assert [entry.line_item_id for entry in result.moved_entries["cust-b"]] == ["li-2"]
    assert result.moved_count == 1


def test_invalid_parameters_are_rejected() -> None:
    with pytest.raises(RuleParameterError):
        parse_special_rule_parameters(SpecialRuleType.OVERRIDE_COST, {"cost_multiplier": "11"})
    with pytest.raises(RuleParameterError):
        parse_pricing_rule_parameters(
            PricingRuleType.TIERED,
            {"tiers": [{"from": "0", "rate": "1"}, {"from": "100", "rate": "0.9"}]},
        )


def test_list_discount_prices_raw_cost() -> None:
    pricing_list = PricingListSpec(
        id="pl-1",
        name="Standard",
        rules=[_pricing("disc", PricingRuleType.LIST_DISCOUNT, {"discount_rate": "0.90"})],
    )
    result = price_entries("cust-a", [_entry("li-1", "1000")], pricing_list, "2026-09")

    assert result.raw_total == Decimal("1000")
    assert result.priced_total == Decimal("900")
    assert result.group_summary["COMPUTE"].rule_id == "disc"
    assert result.rules_used[0]["discount_rate"] == "0.9"


def test_tiered_rate_uses_the_tier_holding_the_amount() -> None:
    tiered = _pricing(
        "tiers",
        PricingRuleType.TIERED,
        {"tiers": [{"from": "0", "to": "1000", "rate": "1.0"}, {"from": "1000", "rate": "0.8"}]},
    )
    pricing_list = PricingListSpec(id="pl-1", name="Volume", rules=[tiered])

    assert price_entries("c", [_entry("li-1", "1500")], pricing_list, "2026-09").priced_total == Decimal("1200")
    assert price_entries("c", [_entry("li-2", "500")], pricing_list, "2026-09").priced_total == Decimal("500")


def test_unit_price_keeps_raw_cost() -> None:
    pricing_list = PricingListSpec(
        id="pl-1",
        name="Unit",
        rules=[_pricing("unit", PricingRuleType.UNIT_PRICE, {"unit_price": "0.02"})],
    )
    priced = price_entries("c", [_entry("li-1", "75")], pricing_list, "2026-09").priced_entries[0]
    assert priced.priced_cost == Decimal("75")
    assert priced.discount_rate == Decimal("0.02")


def test_specific_rule_beats_wildcard_at_equal_priority() -> None:
    wildcard = _pricing("wild", PricingRuleType.LIST_DISCOUNT, {"discount_rate": "0.95"})
    specific = _pricing("spec", PricingRuleType.LIST_DISCOUNT, {"discount_rate": "0.85"}, group="grp-compute")

    chosen = select_best_rule("grp-compute", [wildcard, specific], SEPT_START, SEPT_END)
    assert chosen is not None and chosen.id == "spec"
    fallback = select_best_rule("grp-storage", [wildcard, specific], SEPT_START, SEPT_END)
    assert fallback is not None and fallback.id == "wild"


def test_rules_outside_the_month_are_never_chosen() -> None:
    expired = _pricing(
        "expired",
        PricingRuleType.LIST_DISCOUNT,
        {"discount_rate": "0.5"},
        priority=1,
        start=date(2026, 1, 1),
        end=date(2026, 8, 31),
    )
    future = _pricing(
        "future",
        PricingRuleType.LIST_DISCOUNT,
        {"discount_rate": "0.6"},
        priority=1,
        start=date(2026, 10, 1),
    )
    current = _pricing("current", PricingRuleType.LIST_DISCOUNT, {"discount_rate": "0.9"}, priority=50)

    chosen = select_best_rule("grp-compute", [expired, future, current], SEPT_START, SEPT_END)
    assert chosen is not None and chosen.id == "current"
    assert select_best_rule("grp-compute", [expired, future], SEPT_START, SEPT_END) is None


def test_entries_without_a_rule_pass_through_unmapped() -> None:
    result = price_entries("c", [_entry("li-1", "12", group=None)], None, "2026-09")
    assert result.priced_total == Decimal("12")
    assert list(result.group_summary) == ["UNMAPPED"]
    assert result.pricing_list_id is None
