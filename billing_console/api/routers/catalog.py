from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from billing_console.api.deps import HANDLED_ERRORS, Claims, handle_billing_error, require_perm
from billing_console.domain.models import (
    AuditAction,
    PricingListCreate,
    PricingListRead,
    PricingRuleCreate,
    PricingRuleRead,
    SkuGroupCreate,
    SkuGroupMappingCreate,
    SkuGroupMappingRead,
    SkuGroupRead,
    SpecialRuleCreate,
    SpecialRuleEffectRead,
    SpecialRuleRead,
)
from billing_console.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from billing_console.infra.audit import audit_request
from billing_console.services.catalog_service import CatalogService
from billing_console.services.sku_group_service import SkuGroupService

router = APIRouter()


def get_catalog_service() -> CatalogService:
    return CatalogService()


def get_sku_group_service() -> SkuGroupService:
    return SkuGroupService()


Service = Annotated[CatalogService, Depends(get_catalog_service)]
SkuGroups = Annotated[SkuGroupService, Depends(get_sku_group_service)]


@router.post(
    "/sku-groups",
    response_model=SkuGroupRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_sku_group(payload: SkuGroupCreate, groups: SkuGroups) -> SkuGroupRead:
    try:
        return SkuGroupRead.model_validate(groups.create_group(payload))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/sku-groups",
    response_model=list[SkuGroupRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_sku_groups(groups: SkuGroups) -> list[SkuGroupRead]:
    return [SkuGroupRead.model_validate(item) for item in groups.list_groups()]


@router.post(
    "/sku-groups/{group_id}/mappings",
    response_model=SkuGroupMappingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def add_sku_mapping(group_id: str, payload: SkuGroupMappingCreate, groups: SkuGroups) -> SkuGroupMappingRead:
    try:
        return SkuGroupMappingRead.model_validate(groups.add_mapping(group_id, payload))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/sku-groups/{group_id}/mappings",
    response_model=list[SkuGroupMappingRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_sku_mappings(group_id: str, groups: SkuGroups) -> list[SkuGroupMappingRead]:
    return [SkuGroupMappingRead.model_validate(item) for item in groups.list_mappings(group_id)]


@router.delete(
    "/sku-groups/{group_id}/mappings/{mapping_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def delete_sku_mapping(group_id: str, mapping_id: str, groups: SkuGroups) -> Response:
    try:
        groups.delete_mapping(group_id, mapping_id)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/customers/{customer_id}/pricing-lists",
    response_model=PricingListRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_pricing_list(customer_id: str, payload: PricingListCreate, service: Service) -> PricingListRead:
    try:
        return PricingListRead.model_validate(service.create_pricing_list(customer_id, payload))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/customers/{customer_id}/pricing-lists",
    response_model=list[PricingListRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_pricing_lists(customer_id: str, service: Service) -> list[PricingListRead]:
    try:
        return [PricingListRead.model_validate(item) for item in service.list_pricing_lists(customer_id)]
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/pricing-lists/{pricing_list_id}:activate",
    response_model=PricingListRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def activate_pricing_list(pricing_list_id: str, service: Service) -> PricingListRead:
    try:
        return PricingListRead.model_validate(service.activate_pricing_list(pricing_list_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/pricing-lists/{pricing_list_id}/rules",
    response_model=PricingRuleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def add_pricing_rule(
    pricing_list_id: str,
    payload: PricingRuleCreate,
    request: Request,
    service: Service,
) -> PricingRuleRead:
    try:
        row = service.add_pricing_rule(pricing_list_id, payload)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    audit_request(
        request,
        AuditAction.CREATE,
        "pricing_rules",
        row.id,
        detail={"pricing_list_id": pricing_list_id, "rule_type": str(row.rule_type)},
    )
    return PricingRuleRead.model_validate(row)


@router.get(
    "/pricing-lists/{pricing_list_id}/rules",
    response_model=list[PricingRuleRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_pricing_rules(pricing_list_id: str, service: Service) -> list[PricingRuleRead]:
    try:
        return [PricingRuleRead.model_validate(item) for item in service.list_pricing_rules(pricing_list_id)]
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.delete(
    "/pricing-lists/{pricing_list_id}/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def delete_pricing_rule(pricing_list_id: str, rule_id: str, service: Service) -> Response:
    try:
        service.delete_pricing_rule(pricing_list_id, rule_id)
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/special-rules",
    response_model=SpecialRuleRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def create_special_rule(
    payload: SpecialRuleCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> SpecialRuleRead:
    try:
        row = service.create_special_rule(payload, actor_id=claims["sub"])
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise
    audit_request(
        request,
        AuditAction.CREATE,
        "special_rules",
        row.id,
        detail={"rule_type": str(row.rule_type), "customer_id": row.customer_id},
    )
    return SpecialRuleRead.model_validate(row)


@router.get(
    "/special-rules",
    response_model=list[SpecialRuleRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_special_rules(
    service: Service,
    customer_id: str | None = None,
    include_global: bool = True,
    include_deleted: bool = False,
) -> list[SpecialRuleRead]:
    rows = service.list_special_rules(
        customer_id=customer_id,
        include_global=include_global,
        include_deleted=include_deleted,
    )
    return [SpecialRuleRead.model_validate(item) for item in rows]


@router.post(
    "/special-rules/{rule_id}:enable",
    response_model=SpecialRuleRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def enable_special_rule(rule_id: str, service: Service) -> SpecialRuleRead:
    try:
        return SpecialRuleRead.model_validate(service.set_special_rule_enabled(rule_id, True))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.post(
    "/special-rules/{rule_id}:disable",
    response_model=SpecialRuleRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def disable_special_rule(rule_id: str, service: Service) -> SpecialRuleRead:
    try:
        return SpecialRuleRead.model_validate(service.set_special_rule_enabled(rule_id, False))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.delete(
    "/special-rules/{rule_id}",
    response_model=SpecialRuleRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def delete_special_rule(rule_id: str, service: Service) -> SpecialRuleRead:
    try:
        return SpecialRuleRead.model_validate(service.delete_special_rule(rule_id))
    except HANDLED_ERRORS as exc:
        handle_billing_error(exc)
        raise


@router.get(
    "/invoice-runs/{invoice_run_id}/special-rule-effects",
    response_model=list[SpecialRuleEffectRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_special_rule_effects(
    invoice_run_id: str,
    service: Service,
    customer_id: str | None = None,
) -> list[SpecialRuleEffectRead]:
    rows = service.list_rule_effects(invoice_run_id, customer_id)
    return [SpecialRuleEffectRead.model_validate(item) for item in rows]
