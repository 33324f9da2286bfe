"""Priority, specificity and effective-window resolution shared by the engines."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date, datetime
from typing import Any, Protocol, TypeVar

from billing_console.domain.periods import date_window_overlaps


class WindowedRule(Protocol):
    @property
    def effective_start(self) -> date | None: ...

    @property
    def effective_end(self) -> date | None: ...


R = TypeVar("R")
W = TypeVar("W", bound=WindowedRule)

_EPOCH = datetime(1970, 1, 1)


def is_effective(rule: WindowedRule, month_start: date, month_end: date) -> bool:
    return date_window_overlaps(rule.effective_start, rule.effective_end, month_start, month_end)


def effective_rules(rules: Iterable[W], month_start: date, month_end: date) -> list[W]:
    return [rule for rule in rules if is_effective(rule, month_start, month_end)]


def _created_key(rule: Any) -> datetime:
    created_at = getattr(rule, "created_at", None)
    return created_at.replace(tzinfo=None) if created_at is not None else _EPOCH


def pricing_precedence(rule: Any) -> tuple[int, int, datetime, str]:
    """Lower priority first; at equal priority a group-specific rule beats a wildcard."""
    specificity = 0 if rule.sku_group_id is not None else 1
    return rule.priority, specificity, _created_key(rule), rule.id


def special_rule_precedence(rule: Any) -> tuple[int, datetime, str]:
    """Lower priority first; ties go to the rule created first."""
    return rule.priority, _created_key(rule), rule.id


def order_rules(rules: Iterable[R], sort_key: Callable[[R], Any]) -> list[R]:
    return sorted(rules, key=sort_key)


def resolve_rule(
    candidates: Iterable[R],
    predicate: Callable[[R], bool],
    sort_key: Callable[[R], Any] | None = None,
) -> R | None:
    """Return the first candidate satisfying ``predicate``.

    Candidates are visited in the order given, or in ``sort_key`` order when one
    is supplied. Returns ``None`` when nothing matches.
    """
    ordered = order_rules(candidates, sort_key) if sort_key is not None else candidates
    for candidate in ordered:
        if predicate(candidate):
            return candidate
    return None
