"""Transitive ownership checks for nested inspection records.

Each ``verify_*`` method resolves its whole chain in one store call and
returns the loaded leaf record, or ``None`` when any link is broken: a
wrong id at any level, a soft-deleted ancestor, or a different owner.
Callers turn ``None`` into a 404 so that records owned by someone else
look exactly like records that do not exist.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional, Protocol, Sequence

from hivelog.logging import get_logger
from hivelog.service.errors import NotFoundError
from hivelog.storage.common import (
    HIVE_CHAIN,
    HIVE_INSPECTION_VIA_HIVE_CHAIN,
    HIVE_INSPECTION_VIA_MAJOR_CHAIN,
    LOCATION_CHAIN,
    MAJOR_INSPECTION_CHAIN,
    ChainLink,
    OwnershipChain,
)
from hivelog.storage.models import Hive, HiveInspection, Location, MajorInspection

logger = get_logger(__name__)

__all__ = [
    "ChainLink",
    "OwnershipChain",
    "OwnershipStore",
    "OwnershipVerifier",
    "ResourceKind",
    "NOT_FOUND_MESSAGES",
]


class ResourceKind(str, Enum):
    LOCATION = "location"
    HIVE = "hive"
    MAJOR_INSPECTION = "major_inspection"
    HIVE_INSPECTION = "hive_inspection"


NOT_FOUND_MESSAGES = {
    ResourceKind.LOCATION: "Location not found.",
    ResourceKind.HIVE: "Hive not found.",
    ResourceKind.MAJOR_INSPECTION: "Major inspection not found.",
    ResourceKind.HIVE_INSPECTION: "Hive inspection not found.",
}


class OwnershipStore(Protocol):
    def find_owned(
        self, chain: OwnershipChain, ids: Sequence[str], principal_id: str
    ) -> Optional[Any]: ...


class OwnershipVerifier:
    def __init__(self, store: OwnershipStore) -> None:
        self.store = store

    async def resolve(
        self, chain: OwnershipChain, ids: Sequence[str], principal_id: str
    ) -> Optional[Any]:
        """Run ``chain`` against the store; ``ids`` go from leaf to location."""
        if not principal_id or any(not record_id for record_id in ids):
            return None
        record = await asyncio.to_thread(self.store.find_owned, chain, ids, principal_id)
        if record is None:
            logger.info(
                "ownership_chain_broken",
                kind=chain.kind,
                via=chain.tables[1] if len(chain.tables) > 1 else None,
                user_id=principal_id,
            )
        return record

    async def verify_location(
        self, location_id: str, principal_id: str
    ) -> Optional[Location]:
        return await self.resolve(LOCATION_CHAIN, (location_id,), principal_id)

    async def verify_hive(
        self, hive_id: str, location_id: str, principal_id: str
    ) -> Optional[Hive]:
        return await self.resolve(HIVE_CHAIN, (hive_id, location_id), principal_id)

    async def verify_major_inspection(
        self, major_inspection_id: str, location_id: str, principal_id: str
    ) -> Optional[MajorInspection]:
        return await self.resolve(
            MAJOR_INSPECTION_CHAIN, (major_inspection_id, location_id), principal_id
        )

    async def verify_hive_inspection_via_major(
        self,
        hive_inspection_id: str,
        major_inspection_id: str,
        location_id: str,
        principal_id: str,
    ) -> Optional[HiveInspection]:
        return await self.resolve(
            HIVE_INSPECTION_VIA_MAJOR_CHAIN,
            (hive_inspection_id, major_inspection_id, location_id),
            principal_id,
        )

    async def verify_hive_inspection_via_hive(
        self,
        hive_inspection_id: str,
        hive_id: str,
        location_id: str,
        principal_id: str,
    ) -> Optional[HiveInspection]:
        return await self.resolve(
            HIVE_INSPECTION_VIA_HIVE_CHAIN,
            (hive_inspection_id, hive_id, location_id),
            principal_id,
        )

    async def require(
        self, chain: OwnershipChain, ids: Sequence[str], principal_id: str
    ) -> Any:
        record = await self.resolve(chain, ids, principal_id)
        if record is None:
            raise NotFoundError(NOT_FOUND_MESSAGES[ResourceKind(chain.kind)])
        return record
