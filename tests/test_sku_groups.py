from __future__ import annotations

from decimal import Decimal

import pytest

from billing_console.domain.models import SkuGroupCreate, SkuGroupMappingCreate
from billing_console.domain.rules import CostEntry
from billing_console.infra.cache import MemoryTtlCache, cached
from billing_console.services.errors import ConflictError, NotFoundError
from billing_console.services.sku_group_service import SkuGroupService, attach_groups, resolve_group


def _entry(sku_id: str, service_id: str = "compute") -> CostEntry:
    return CostEntry(
        line_item_id=f"li-{sku_id}",
        provider="GCP",
        billing_account_id="billing-001",
        project_id="proj-a",
        service_id=service_id,
        sku_id=sku_id,
        cost=Decimal("1"),
        currency="USD",
    )


def test_memory_cache_expires_entries() -> None:
    now = [100.0]
    cache = MemoryTtlCache(default_ttl_seconds=10, clock=lambda: now[0])
    cache.set("sku-groups:a", 1)
    cache.set("other", 2, ttl_seconds=60)

    now[0] = 109.0
    assert cache.get("sku-groups:a") == 1
    now[0] = 110.0
    assert cache.get("sku-groups:a") is None

    cache.set("sku-groups:b", 3)
    cache.clear_prefix("sku-groups:")
    assert cache.get("sku-groups:b") is None
    assert cache.get("other") == 2


def test_cached_loads_once() -> None:
    cache = MemoryTtlCache()
    calls: list[int] = []

    def loader() -> int:
        calls.append(1)
        return 42

    assert cached(cache, "answer", loader) == 42
    assert cached(cache, "answer", loader) == 42
    assert calls == [1]


def test_resolution_prefers_meter_over_product() -> None:
    table = {"vm-core-hours": ("grp-1", "COMPUTE"), "storage": ("grp-2", "STORAGE")}

    assert resolve_group(_entry("vm-core-hours", "storage"), table) == ("grp-1", "COMPUTE")
    assert resolve_group(_entry("standard-gb", "storage"), table) == ("grp-2", "STORAGE")
    assert resolve_group(_entry("unknown", "unknown"), table) == (None, "UNMAPPED")
    tagged = attach_groups([_entry("vm-core-hours")], table)
    assert tagged[0].sku_group_code == "COMPUTE"


def test_mapping_table_is_cached_and_invalidated(billing_engine) -> None:
    service = SkuGroupService(cache=MemoryTtlCache())
    group = service.create_group(SkuGroupCreate(code="compute", name="Compute"))
    assert group.code == "COMPUTE"

    assert service.mapping_table() == {}
    service.add_mapping(group.id, SkuGroupMappingCreate(sku_id="vm-core-hours"))
    assert service.mapping_table() == {"vm-core-hours": (group.id, "COMPUTE")}

    with pytest.raises(ConflictError):
        service.add_mapping(group.id, SkuGroupMappingCreate(sku_id="vm-core-hours"))
    with pytest.raises(NotFoundError):
        service.add_mapping("missing", SkuGroupMappingCreate(sku_id="other"))

    mapping = service.list_mappings(group.id)[0]
    service.delete_mapping(group.id, mapping.id)
    assert service.mapping_table() == {}
