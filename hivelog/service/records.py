from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

from hivelog.logging import get_logger
from hivelog.service.errors import ConcurrencyError, NotFoundError, ValidationError
from hivelog.service.ownership import NOT_FOUND_MESSAGES, OwnershipVerifier, ResourceKind
from hivelog.storage.common import HIVE_CHAIN, MAJOR_INSPECTION_CHAIN, OWNER_COLUMN
from hivelog.storage.errors import RowCountMismatch
from hivelog.storage.models import Hive, HiveInspection, Location, MajorInspection

logger = get_logger(__name__)


class RecordStore(Protocol):
    def create_record(self, table: str, **fields: Any) -> Any: ...

    def list_records(self, table: str, parent_key: str, parent_id: str) -> List[Any]: ...

    def list_locations(self, user_id: str) -> List[Any]: ...

    def update_scoped(
        self,
        table: str,
        record_id: str,
        scope_key: str,
        scope_value: str,
        changes: Dict[str, Any],
    ) -> Optional[Any]: ...

    def delete_scoped(
        self, table: str, record_id: str, scope_key: str, scope_value: str
    ) -> bool: ...


class RecordService:
    """CRUD for locations, hives and inspections.

    Callers pass ids that the access pipeline has already verified; writes
    are still scoped by the parent id so a mismatched parent touches nothing.
    """

    def __init__(self, store: RecordStore, ownership: OwnershipVerifier) -> None:
        self.store = store
        self.ownership = ownership

    async def _update(
        self,
        kind: ResourceKind,
        record_id: str,
        scope_key: str,
        scope_value: str,
        changes: Dict[str, Any],
    ) -> Any:
        try:
            record = await asyncio.to_thread(
                self.store.update_scoped,
                kind.value,
                record_id,
                scope_key,
                scope_value,
                changes,
            )
        except RowCountMismatch as exc:
            logger.error(
                "scoped_update_row_count_mismatch",
                table=exc.table,
                affected=exc.affected,
                record_id=record_id,
            )
            raise ConcurrencyError() from exc
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if record is None:
            raise NotFoundError(NOT_FOUND_MESSAGES[kind])
        return record

    async def _delete(
        self, kind: ResourceKind, record_id: str, scope_key: str, scope_value: str
    ) -> None:
        try:
            deleted = await asyncio.to_thread(
                self.store.delete_scoped, kind.value, record_id, scope_key, scope_value
            )
        except RowCountMismatch as exc:
            logger.error(
                "scoped_delete_row_count_mismatch",
                table=exc.table,
                affected=exc.affected,
                record_id=record_id,
            )
            raise ConcurrencyError() from exc
        if not deleted:
            raise NotFoundError(NOT_FOUND_MESSAGES[kind])

    async def _create(self, kind: ResourceKind, **fields: Any) -> Any:
        record = await asyncio.to_thread(self.store.create_record, kind.value, **fields)
        logger.info("record_created", table=kind.value, record_id=record.id)
        return record

    # locations
    async def list_locations(self, principal_id: str) -> List[Location]:
        return await asyncio.to_thread(self.store.list_locations, principal_id)

    async def create_location(self, principal_id: str, fields: Dict[str, Any]) -> Location:
        return await self._create(ResourceKind.LOCATION, user_id=principal_id, **fields)

    async def update_location(
        self, location_id: str, principal_id: str, changes: Dict[str, Any]
    ) -> Location:
        return await self._update(
            ResourceKind.LOCATION, location_id, OWNER_COLUMN, principal_id, changes
        )

    async def delete_location(self, location_id: str, principal_id: str) -> None:
        await self._delete(ResourceKind.LOCATION, location_id, OWNER_COLUMN, principal_id)

    # hives
    async def list_hives(self, location_id: str) -> List[Hive]:
        return await asyncio.to_thread(
            self.store.list_records, "hive", "location_id", location_id
        )

    async def create_hive(self, location_id: str, fields: Dict[str, Any]) -> Hive:
        return await self._create(ResourceKind.HIVE, location_id=location_id, **fields)

    async def update_hive(
        self, hive_id: str, location_id: str, changes: Dict[str, Any]
    ) -> Hive:
        return await self._update(
            ResourceKind.HIVE, hive_id, "location_id", location_id, changes
        )

    async def delete_hive(self, hive_id: str, location_id: str) -> None:
        await self._delete(ResourceKind.HIVE, hive_id, "location_id", location_id)

    # major inspections
    async def list_major_inspections(self, location_id: str) -> List[MajorInspection]:
        return await asyncio.to_thread(
            self.store.list_records, "major_inspection", "location_id", location_id
        )

    async def create_major_inspection(
        self, location_id: str, fields: Dict[str, Any]
    ) -> MajorInspection:
        return await self._create(
            ResourceKind.MAJOR_INSPECTION, location_id=location_id, **fields
        )

    async def update_major_inspection(
        self, major_inspection_id: str, location_id: str, changes: Dict[str, Any]
    ) -> MajorInspection:
        return await self._update(
            ResourceKind.MAJOR_INSPECTION,
            major_inspection_id,
            "location_id",
            location_id,
            changes,
        )

    async def delete_major_inspection(
        self, major_inspection_id: str, location_id: str
    ) -> None:
        await self._delete(
            ResourceKind.MAJOR_INSPECTION, major_inspection_id, "location_id", location_id
        )

    # hive inspections
    async def list_hive_inspections(
        self, parent_key: str, parent_id: str
    ) -> List[HiveInspection]:
        return await asyncio.to_thread(
            self.store.list_records, "hive_inspection", parent_key, parent_id
        )

    async def _require_sibling(
        self, kind: ResourceKind, record_id: Optional[str], location_id: str, principal_id: str
    ) -> None:
        """A hive inspection may only link records under the same owned location."""
        if not record_id:
            raise ValidationError(
                f"{kind.value}_id is required.", detail={"field": f"{kind.value}_id"}
            )
        chain = HIVE_CHAIN if kind is ResourceKind.HIVE else MAJOR_INSPECTION_CHAIN
        await self.ownership.require(chain, (record_id, location_id), principal_id)

    async def create_hive_inspection(
        self,
        location_id: str,
        principal_id: str,
        *,
        major_inspection_id: Optional[str],
        hive_id: Optional[str],
        fields: Dict[str, Any],
    ) -> HiveInspection:
        await self._require_sibling(
            ResourceKind.MAJOR_INSPECTION, major_inspection_id, location_id, principal_id
        )
        await self._require_sibling(ResourceKind.HIVE, hive_id, location_id, principal_id)
        return await self._create(
            ResourceKind.HIVE_INSPECTION,
            major_inspection_id=major_inspection_id,
            hive_id=hive_id,
            **fields,
        )

    async def update_hive_inspection(
        self,
        hive_inspection_id: str,
        scope_key: str,
        scope_value: str,
        changes: Dict[str, Any],
        *,
        location_id: str,
        principal_id: str,
    ) -> HiveInspection:
        if "hive_id" in changes:
            await self._require_sibling(
                ResourceKind.HIVE, changes["hive_id"], location_id, principal_id
            )
        return await self._update(
            ResourceKind.HIVE_INSPECTION, hive_inspection_id, scope_key, scope_value, changes
        )

    async def delete_hive_inspection(
        self, hive_inspection_id: str, scope_key: str, scope_value: str
    ) -> None:
        await self._delete(
            ResourceKind.HIVE_INSPECTION, hive_inspection_id, scope_key, scope_value
        )


def changed_fields(payload: Any, allowed: Sequence[str]) -> Dict[str, Any]:
    """Fields explicitly set on a pydantic update body, limited to ``allowed``."""
    data = payload.model_dump(exclude_unset=True)
    return {key: value for key, value in data.items() if key in allowed}
