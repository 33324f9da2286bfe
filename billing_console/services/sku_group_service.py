from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from billing_console.domain.models import (
    UNMAPPED_GROUP_CODE,
    SkuGroup,
    SkuGroupCreate,
    SkuGroupMapping,
    SkuGroupMappingCreate,
)
from billing_console.domain.rules import CostEntry
from billing_console.infra.cache import TtlCache, get_cache
from billing_console.infra.db import get_engine
from billing_console.services.errors import ConflictError, NotFoundError

MAPPING_CACHE_KEY = "sku-groups:mappings"

SkuMappingTable = dict[str, tuple[str, str]]


def load_mapping_table(session: Session) -> SkuMappingTable:
    rows = session.exec(select(SkuGroupMapping, SkuGroup).where(SkuGroupMapping.sku_group_id == SkuGroup.id)).all()
    return {mapping.sku_id: (group.id, group.code) for mapping, group in rows}


def resolve_group(entry: CostEntry, table: SkuMappingTable) -> tuple[str | None, str]:
    """Meter ids are matched before product ids; anything unmapped lands in ``UNMAPPED``."""
    for key in (entry.sku_id, entry.service_id):
        hit = table.get(key)
        if hit is not None:
            return hit
    return None, UNMAPPED_GROUP_CODE


def attach_groups(entries: Iterable[CostEntry], table: SkuMappingTable) -> list[CostEntry]:
    tagged: list[CostEntry] = []
    for entry in entries:
        group_id, group_code = resolve_group(entry, table)
        tagged.append(entry.with_group(group_id, group_code))
    return tagged


class SkuGroupService:
    def __init__(self, cache: TtlCache | None = None) -> None:
        self._cache = cache if cache is not None else get_cache()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def mapping_table(self, session: Session | None = None) -> SkuMappingTable:
        cached = self._cache.get(MAPPING_CACHE_KEY)
        if cached is not None:
            return {sku_id: (value[0], value[1]) for sku_id, value in cached.items()}
        if session is not None:
            table = load_mapping_table(session)
        else:
            with self._session() as own_session:
                table = load_mapping_table(own_session)
        self._cache.set(MAPPING_CACHE_KEY, {sku_id: list(value) for sku_id, value in table.items()})
        return table

    def invalidate(self) -> None:
        self._cache.delete(MAPPING_CACHE_KEY)

    def create_group(self, payload: SkuGroupCreate) -> SkuGroup:
        code = payload.code.strip().upper()
        if not code:
            raise ConflictError("code cannot be empty")
        if code == UNMAPPED_GROUP_CODE:
            raise ConflictError(f"{UNMAPPED_GROUP_CODE} is reserved")
        with self._session() as session:
            row = SkuGroup(code=code, name=payload.name.strip() or code, description=payload.description)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("sku group code already exists") from exc
            session.refresh(row)
            return row

    def list_groups(self) -> list[SkuGroup]:
        with self._session() as session:
            return sorted(session.exec(select(SkuGroup)).all(), key=lambda item: item.code)

    def get_group(self, group_id: str) -> SkuGroup:
        with self._session() as session:
            row = session.get(SkuGroup, group_id)
            if row is None:
                raise NotFoundError("sku group not found")
            return row

    def add_mapping(self, group_id: str, payload: SkuGroupMappingCreate) -> SkuGroupMapping:
        sku_id = payload.sku_id.strip()
        if not sku_id:
            raise ConflictError("sku_id cannot be empty")
        with self._session() as session:
            if session.get(SkuGroup, group_id) is None:
                raise NotFoundError("sku group not found")
            row = SkuGroupMapping(
                sku_id=sku_id,
                sku_group_id=group_id,
                provider=payload.provider,
                description=payload.description,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("sku is already mapped to a group") from exc
            session.refresh(row)
        self.invalidate()
        return row

    def list_mappings(self, group_id: str) -> list[SkuGroupMapping]:
        with self._session() as session:
            rows = session.exec(select(SkuGroupMapping).where(SkuGroupMapping.sku_group_id == group_id)).all()
            return sorted(rows, key=lambda item: item.sku_id)

    def delete_mapping(self, group_id: str, mapping_id: str) -> None:
        with self._session() as session:
            row = session.get(SkuGroupMapping, mapping_id)
            if row is None or row.sku_group_id != group_id:
                raise NotFoundError("sku mapping not found")
            session.delete(row)
            session.commit()
        self.invalidate()
