"""Typed rule parameters and the immutable inputs consumed by the billing engines.

Rule parameters are persisted as JSON. They are parsed into a discriminated
union keyed by the rule type whenever a rule crosses the repository boundary,
so the engines never see untyped payloads.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, TypeAdapter, model_validator
from pydantic import Field as PydanticField
from pydantic import ValidationError as PydanticValidationError

from billing_console.domain.models import (
    PricingRule,
    PricingRuleType,
    SpecialRule,
    SpecialRuleType,
)


class RuleParameterError(ValueError):
    pass


class _FrozenParameters(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


class ExcludeParameters(_FrozenParameters):
    type: Literal[SpecialRuleType.EXCLUDE_SKU, SpecialRuleType.EXCLUDE_SKU_GROUP]


class OverrideCostParameters(_FrozenParameters):
    type: Literal[SpecialRuleType.OVERRIDE_COST]
    cost_multiplier: Decimal = PydanticField(ge=0, le=10)


class MoveToCustomerParameters(_FrozenParameters):
    type: Literal[SpecialRuleType.MOVE_TO_CUSTOMER]
    target_customer_id: str = PydanticField(min_length=1)


SpecialRuleParameters = Annotated[
    ExcludeParameters | OverrideCostParameters | MoveToCustomerParameters,
    PydanticField(discriminator="type"),
]


class ListDiscountParameters(_FrozenParameters):
    type: Literal[PricingRuleType.LIST_DISCOUNT]
    discount_rate: Decimal = PydanticField(ge=0, le=10)


class UnitPriceParameters(_FrozenParameters):
    type: Literal[PricingRuleType.UNIT_PRICE]
    unit_price: Decimal = PydanticField(ge=0)


class PricingTier(_FrozenParameters):
    from_amount: Decimal = PydanticField(alias="from", ge=0)
    to_amount: Decimal | None = PydanticField(default=None, alias="to")
    rate: Decimal | None = PydanticField(default=None, ge=0, le=10)
    unit_price: Decimal | None = PydanticField(default=None, alias="unitPrice", ge=0)

    @model_validator(mode="after")
    def _check_tier(self) -> PricingTier:
        if (self.rate is None) == (self.unit_price is None):
            raise ValueError("tier must define exactly one of rate or unitPrice")
        if self.to_amount is not None and self.to_amount <= self.from_amount:
            raise ValueError("tier upper bound must be greater than its lower bound")
        return self

    def contains(self, amount: Decimal) -> bool:
        if amount < self.from_amount:
            return False
        return self.to_amount is None or amount < self.to_amount


class TieredParameters(_FrozenParameters):
    type: Literal[PricingRuleType.TIERED]
    tiers: tuple[PricingTier, ...] = PydanticField(min_length=1)

    @model_validator(mode="after")
    def _check_ordering(self) -> TieredParameters:
        previous: PricingTier | None = None
        for tier in self.tiers:
            if previous is not None:
                if previous.to_amount is None:
                    raise ValueError("only the last tier may be open ended")
                if tier.from_amount < previous.to_amount:
                    raise ValueError("tiers must be ordered and must not overlap")
            previous = tier
        return self

    def select_tier(self, amount: Decimal) -> PricingTier | None:
        for tier in self.tiers:
            if tier.contains(amount):
                return tier
        top = self.tiers[-1]
        ceiling = top.to_amount if top.to_amount is not None else top.from_amount
        if amount >= ceiling:
            return top
        return None


PricingRuleParameters = Annotated[
    ListDiscountParameters | UnitPriceParameters | TieredParameters,
    PydanticField(discriminator="type"),
]

_special_parameters_adapter: TypeAdapter[Any] = TypeAdapter(SpecialRuleParameters)
_pricing_parameters_adapter: TypeAdapter[Any] = TypeAdapter(PricingRuleParameters)


def parse_special_rule_parameters(rule_type: SpecialRuleType, raw: dict[str, Any] | None) -> Any:
    payload = {**(raw or {}), "type": rule_type}
    try:
        return _special_parameters_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise RuleParameterError(f"invalid {rule_type} parameters: {exc}") from exc


def parse_pricing_rule_parameters(rule_type: PricingRuleType, raw: dict[str, Any] | None) -> Any:
    payload = {**(raw or {}), "type": rule_type}
    try:
        return _pricing_parameters_adapter.validate_python(payload)
    except PydanticValidationError as exc:
        raise RuleParameterError(f"invalid {rule_type} parameters: {exc}") from exc


def dump_parameters(parameters: BaseModel) -> dict[str, Any]:
    return parameters.model_dump(mode="json", by_alias=True, exclude={"type"}, exclude_none=True)


@dataclass(frozen=True)
class CostEntry:
    """One line item as seen by the special-rules and pricing engines."""

    line_item_id: str
    provider: str
    billing_account_id: str
    project_id: str
    service_id: str
    sku_id: str
    cost: Decimal
    currency: str
    usage_amount: Decimal = Decimal("0")
    usage_unit: str = ""
    sku_group_id: str | None = None
    sku_group_code: str | None = None

    def with_cost(self, cost: Decimal) -> CostEntry:
        return replace(self, cost=cost)

    def with_group(self, sku_group_id: str | None, sku_group_code: str | None) -> CostEntry:
        return replace(self, sku_group_id=sku_group_id, sku_group_code=sku_group_code)


@dataclass(frozen=True)
class SpecialRuleSpec:
    id: str
    name: str
    rule_type: SpecialRuleType
    customer_id: str | None
    priority: int
    created_at: datetime
    parameters: Any
    sku_id: str | None = None
    sku_group_id: str | None = None
    service_id: str | None = None
    project_id: str | None = None
    billing_account_id: str | None = None
    effective_start: date | None = None
    effective_end: date | None = None

    @classmethod
    def from_row(cls, row: SpecialRule) -> SpecialRuleSpec:
        return cls(
            id=row.id,
            name=row.name,
            rule_type=row.rule_type,
            customer_id=row.customer_id,
            priority=row.priority,
            created_at=row.created_at,
            parameters=parse_special_rule_parameters(row.rule_type, row.parameters),
            sku_id=row.sku_id,
            sku_group_id=row.sku_group_id,
            service_id=row.service_id,
            project_id=row.project_id,
            billing_account_id=row.billing_account_id,
            effective_start=row.effective_start,
            effective_end=row.effective_end,
        )

    def matches(self, entry: CostEntry) -> bool:
        criteria = (
            (self.sku_id, entry.sku_id),
            (self.sku_group_id, entry.sku_group_id),
            (self.service_id, entry.service_id),
            (self.project_id, entry.project_id),
            (self.billing_account_id, entry.billing_account_id),
        )
        return all(expected is None or expected == actual for expected, actual in criteria)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rule_type": str(self.rule_type),
            "customer_id": self.customer_id,
            "priority": self.priority,
            "match": {
                "sku_id": self.sku_id,
                "sku_group_id": self.sku_group_id,
                "service_id": self.service_id,
                "project_id": self.project_id,
                "billing_account_id": self.billing_account_id,
            },
            "effective_start": self.effective_start.isoformat() if self.effective_start else None,
            "effective_end": self.effective_end.isoformat() if self.effective_end else None,
            "parameters": dump_parameters(self.parameters),
        }


@dataclass(frozen=True)
class PricingRuleSpec:
    id: str
    rule_type: PricingRuleType
    priority: int
    parameters: Any
    sku_group_id: str | None = None
    effective_start: date | None = None
    effective_end: date | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: PricingRule) -> PricingRuleSpec:
        return cls(
            id=row.id,
            rule_type=row.rule_type,
            priority=row.priority,
            parameters=parse_pricing_rule_parameters(row.rule_type, row.parameters),
            sku_group_id=row.sku_group_id,
            effective_start=row.effective_start,
            effective_end=row.effective_end,
            created_at=row.created_at,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_type": str(self.rule_type),
            "sku_group_id": self.sku_group_id,
            "priority": self.priority,
            "effective_start": self.effective_start.isoformat() if self.effective_start else None,
            "effective_end": self.effective_end.isoformat() if self.effective_end else None,
            "parameters": dump_parameters(self.parameters),
        }


@dataclass
class PricingListSpec:
    id: str
    name: str
    rules: list[PricingRuleSpec] = field(default_factory=list)
