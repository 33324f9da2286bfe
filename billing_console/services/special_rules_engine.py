"""Pre-pricing transformation of a customer's cost entries.

Special rules run before pricing and credits. Every entry is touched by at
most one rule: the first one, in precedence order, whose match fields all
agree with the entry.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlmodel import Session, col, or_, select

from billing_console.domain.models import SpecialRule, SpecialRuleEffect, SpecialRuleType
from billing_console.domain.money import ZERO, canonical_decimal
from billing_console.domain.periods import month_dates
from billing_console.domain.rule_resolution import effective_rules, order_rules, resolve_rule, special_rule_precedence
from billing_console.domain.rules import CostEntry, SpecialRuleSpec

logger = logging.getLogger(__name__)


@dataclass
class _Tally:
    count: int = 0
    delta: Decimal = ZERO

    def add(self, delta: Decimal) -> None:
        self.count += 1
        self.delta += delta

    def as_dict(self) -> dict[str, Any]:
        return {"count": self.count, "delta": canonical_decimal(self.delta)}


@dataclass
class RuleApplicationResult:
    rule: SpecialRuleSpec
    affected_row_count: int = 0
    cost_delta: Decimal = ZERO
    by_project: dict[str, _Tally] = field(default_factory=dict)
    by_sku: dict[str, _Tally] = field(default_factory=dict)

    def record(self, entry: CostEntry, delta: Decimal) -> None:
        self.affected_row_count += 1
        self.cost_delta += delta
        self.by_project.setdefault(entry.project_id, _Tally()).add(delta)
        self.by_sku.setdefault(entry.sku_id, _Tally()).add(delta)

    def summary(self) -> dict[str, Any]:
        return {
            "by_project": {key: tally.as_dict() for key, tally in sorted(self.by_project.items())},
            "by_sku": {key: tally.as_dict() for key, tally in sorted(self.by_sku.items())},
        }


@dataclass
class SpecialRulesResult:
    transformed_entries: list[CostEntry]
    excluded_entries: list[CostEntry]
    moved_entries: dict[str, list[CostEntry]]
    rule_results: list[RuleApplicationResult]
    total_cost_delta: Decimal

    @property
    def rules_applied(self) -> list[dict[str, Any]]:
        return [
            {
                "rule_id": result.rule.id,
                "rule_name": result.rule.name,
                "rule_type": str(result.rule.rule_type),
                "priority": result.rule.priority,
            }
            for result in self.rule_results
        ]

    @property
    def moved_count(self) -> int:
        return sum(len(items) for items in self.moved_entries.values())


def load_applicable_special_rules(
    session: Session,
    customer_id: str,
    billing_month: str,
) -> list[SpecialRuleSpec]:
    """Customer and global rules that are enabled, not deleted and effective in the month."""
    month_start, month_end = month_dates(billing_month)
    rows = session.exec(
        select(SpecialRule)
        .where(or_(SpecialRule.customer_id == customer_id, col(SpecialRule.customer_id).is_(None)))
        .where(col(SpecialRule.enabled).is_(True))
        .where(col(SpecialRule.deleted_at).is_(None))
    ).all()
    specs = [SpecialRuleSpec.from_row(row) for row in effective_rules(rows, month_start, month_end)]
    return order_rules(specs, special_rule_precedence)


def _transform(rule: SpecialRuleSpec, entry: CostEntry) -> tuple[CostEntry | None, Decimal]:
    if rule.rule_type == SpecialRuleType.OVERRIDE_COST:
        new_cost = entry.cost * rule.parameters.cost_multiplier
        return entry.with_cost(new_cost), new_cost - entry.cost
    return None, -entry.cost


def apply_special_rules(entries: Iterable[CostEntry], rules: Sequence[SpecialRuleSpec]) -> SpecialRulesResult:
    """Apply ``rules`` (already in precedence order) to ``entries``.

    Entries are never mutated; overridden entries are replaced by copies.
    """
    transformed: list[CostEntry] = []
    excluded: list[CostEntry] = []
    moved: dict[str, list[CostEntry]] = {}
    trackers = {rule.id: RuleApplicationResult(rule=rule) for rule in rules}
    total_delta = ZERO

    for entry in entries:
        rule = resolve_rule(rules, lambda candidate: candidate.matches(entry))
        if rule is None:
            transformed.append(entry)
            continue

        replacement, delta = _transform(rule, entry)
        if rule.rule_type == SpecialRuleType.MOVE_TO_CUSTOMER:
            moved.setdefault(rule.parameters.target_customer_id, []).append(entry)
        elif replacement is None:
            excluded.append(entry)
        else:
            transformed.append(replacement)

        trackers[rule.id].record(entry, delta)
        total_delta += delta

    results = [trackers[rule.id] for rule in rules if trackers[rule.id].affected_row_count > 0]
    return SpecialRulesResult(
        transformed_entries=transformed,
        excluded_entries=excluded,
        moved_entries=moved,
        rule_results=results,
        total_cost_delta=total_delta,
    )


def record_special_rule_effects(
    session: Session,
    invoice_run_id: str,
    customer_id: str,
    results: Sequence[RuleApplicationResult],
) -> list[SpecialRuleEffect]:
    rows = [
        SpecialRuleEffect(
            invoice_run_id=invoice_run_id,
            customer_id=customer_id,
            rule_id=result.rule.id,
            rule_name=result.rule.name,
            rule_type=result.rule.rule_type,
            affected_row_count=result.affected_row_count,
            cost_delta=result.cost_delta,
            summary=result.summary(),
        )
        for result in results
    ]
    session.add_all(rows)
    return rows


def capture_special_rules_snapshot(rules: Sequence[SpecialRuleSpec]) -> list[dict[str, Any]]:
    return [rule.snapshot() for rule in rules]


def describe_moved_entries(moved: dict[str, list[CostEntry]]) -> list[dict[str, Any]]:
    return [
        {
            "target_customer_id": target,
            "line_item_ids": [entry.line_item_id for entry in entries],
            "cost": canonical_decimal(sum((entry.cost for entry in entries), ZERO)),
        }
        for target, entries in sorted(moved.items())
    ]
