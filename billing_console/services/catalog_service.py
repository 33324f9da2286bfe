from __future__ import annotations

from sqlmodel import Session, col, or_, select

from billing_console.domain.models import (
    Customer,
    PricingList,
    PricingListCreate,
    PricingListStatus,
    PricingRule,
    PricingRuleCreate,
    SkuGroup,
    SpecialRule,
    SpecialRuleCreate,
    SpecialRuleEffect,
    SpecialRuleType,
    now_utc,
)
from billing_console.domain.rules import (
    RuleParameterError,
    dump_parameters,
    parse_pricing_rule_parameters,
    parse_special_rule_parameters,
)
from billing_console.infra.db import get_engine
from billing_console.services.errors import ConflictError, NotFoundError, ValidationError


class CatalogService:
    """Pricing lists, pricing rules and special rules.

    Rule parameters are validated against their typed schema here, before they
    are persisted, and stored in canonical form.
    """

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _require_customer(session: Session, customer_id: str) -> Customer:
        row = session.get(Customer, customer_id)
        if row is None:
            raise NotFoundError("customer not found")
        return row

    @staticmethod
    def _require_group(session: Session, sku_group_id: str | None) -> None:
        if sku_group_id is not None and session.get(SkuGroup, sku_group_id) is None:
            raise NotFoundError("sku group not found")

    @staticmethod
    def _check_window(start: object, end: object) -> None:
        if start is not None and end is not None and end < start:  # type: ignore[operator]
            raise ValidationError("effective_end must not be earlier than effective_start")

    def create_pricing_list(self, customer_id: str, payload: PricingListCreate) -> PricingList:
        with self._session() as session:
            self._require_customer(session, customer_id)
            row = PricingList(
                customer_id=customer_id,
                name=payload.name.strip() or "Default",
                status=PricingListStatus.INACTIVE,
            )
            session.add(row)
            session.flush()
            if payload.activate:
                self._activate(session, row)
            session.commit()
            session.refresh(row)
            return row

    @staticmethod
    def _activate(session: Session, target: PricingList) -> None:
        others = session.exec(
            select(PricingList)
            .where(PricingList.customer_id == target.customer_id)
            .where(PricingList.status == PricingListStatus.ACTIVE)
            .where(PricingList.id != target.id)
        ).all()
        now = now_utc()
        for other in others:
            other.status = PricingListStatus.INACTIVE
            other.updated_at = now
            session.add(other)
        target.status = PricingListStatus.ACTIVE
        target.updated_at = now
        session.add(target)

    def activate_pricing_list(self, pricing_list_id: str) -> PricingList:
        with self._session() as session:
            row = session.get(PricingList, pricing_list_id)
            if row is None:
                raise NotFoundError("pricing list not found")
            self._activate(session, row)
            session.commit()
            session.refresh(row)
            return row

    def list_pricing_lists(self, customer_id: str) -> list[PricingList]:
        with self._session() as session:
            self._require_customer(session, customer_id)
            rows = session.exec(select(PricingList).where(PricingList.customer_id == customer_id)).all()
            return sorted(rows, key=lambda item: item.created_at, reverse=True)

    def add_pricing_rule(self, pricing_list_id: str, payload: PricingRuleCreate) -> PricingRule:
        self._check_window(payload.effective_start, payload.effective_end)
        try:
            parameters = parse_pricing_rule_parameters(payload.rule_type, payload.parameters)
        except RuleParameterError as exc:
            raise ValidationError(str(exc)) from exc
        with self._session() as session:
            if session.get(PricingList, pricing_list_id) is None:
                raise NotFoundError("pricing list not found")
            self._require_group(session, payload.sku_group_id)
            row = PricingRule(
                pricing_list_id=pricing_list_id,
                rule_type=payload.rule_type,
                sku_group_id=payload.sku_group_id,
                priority=payload.priority,
                effective_start=payload.effective_start,
                effective_end=payload.effective_end,
                parameters=dump_parameters(parameters),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def list_pricing_rules(self, pricing_list_id: str) -> list[PricingRule]:
        with self._session() as session:
            if session.get(PricingList, pricing_list_id) is None:
                raise NotFoundError("pricing list not found")
            rows = session.exec(select(PricingRule).where(PricingRule.pricing_list_id == pricing_list_id)).all()
            return sorted(rows, key=lambda item: (item.priority, item.created_at))

    def delete_pricing_rule(self, pricing_list_id: str, rule_id: str) -> None:
        with self._session() as session:
            row = session.get(PricingRule, rule_id)
            if row is None or row.pricing_list_id != pricing_list_id:
                raise NotFoundError("pricing rule not found")
            session.delete(row)
            session.commit()

    def create_special_rule(self, payload: SpecialRuleCreate, actor_id: str | None = None) -> SpecialRule:
        self._check_window(payload.effective_start, payload.effective_end)
        try:
            parameters = parse_special_rule_parameters(payload.rule_type, payload.parameters)
        except RuleParameterError as exc:
            raise ValidationError(str(exc)) from exc
        if payload.rule_type == SpecialRuleType.EXCLUDE_SKU and payload.sku_id is None:
            raise ValidationError("EXCLUDE_SKU rules must match a sku_id")
        if payload.rule_type == SpecialRuleType.EXCLUDE_SKU_GROUP and payload.sku_group_id is None:
            raise ValidationError("EXCLUDE_SKU_GROUP rules must match a sku_group_id")

        with self._session() as session:
            if payload.customer_id is not None:
                self._require_customer(session, payload.customer_id)
            self._require_group(session, payload.sku_group_id)
            if payload.rule_type == SpecialRuleType.MOVE_TO_CUSTOMER:
                target = parameters.target_customer_id
                if target == payload.customer_id:
                    raise ConflictError("cannot move costs to the same customer")
                self._require_customer(session, target)
            row = SpecialRule(
                customer_id=payload.customer_id,
                name=payload.name.strip() or str(payload.rule_type),
                rule_type=payload.rule_type,
                sku_id=payload.sku_id,
                sku_group_id=payload.sku_group_id,
                service_id=payload.service_id,
                project_id=payload.project_id,
                billing_account_id=payload.billing_account_id,
                priority=payload.priority,
                enabled=payload.enabled,
                effective_start=payload.effective_start,
                effective_end=payload.effective_end,
                parameters=dump_parameters(parameters),
                created_by=actor_id,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def list_special_rules(
        self,
        *,
        customer_id: str | None = None,
        include_global: bool = True,
        include_deleted: bool = False,
    ) -> list[SpecialRule]:
        with self._session() as session:
            statement = select(SpecialRule)
            if customer_id is not None:
                if include_global:
                    statement = statement.where(
                        or_(SpecialRule.customer_id == customer_id, col(SpecialRule.customer_id).is_(None))
                    )
                else:
                    statement = statement.where(SpecialRule.customer_id == customer_id)
            if not include_deleted:
                statement = statement.where(col(SpecialRule.deleted_at).is_(None))
            rows = session.exec(statement).all()
            return sorted(rows, key=lambda item: (item.priority, item.created_at))

    def set_special_rule_enabled(self, rule_id: str, enabled: bool) -> SpecialRule:
        with self._session() as session:
            row = session.get(SpecialRule, rule_id)
            if row is None or row.deleted_at is not None:
                raise NotFoundError("special rule not found")
            row.enabled = enabled
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def delete_special_rule(self, rule_id: str) -> SpecialRule:
        with self._session() as session:
            row = session.get(SpecialRule, rule_id)
            if row is None or row.deleted_at is not None:
                raise NotFoundError("special rule not found")
            row.deleted_at = now_utc()
            row.enabled = False
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def list_rule_effects(self, invoice_run_id: str, customer_id: str | None = None) -> list[SpecialRuleEffect]:
        with self._session() as session:
            statement = select(SpecialRuleEffect).where(SpecialRuleEffect.invoice_run_id == invoice_run_id)
            if customer_id is not None:
                statement = statement.where(SpecialRuleEffect.customer_id == customer_id)
            rows = session.exec(statement).all()
            return sorted(rows, key=lambda item: (item.customer_id, item.created_at))
