"""Ownership chain descriptions shared by the memory and postgres stores.

A chain lists the tables from a leaf record up to ``location``, whose
``user_id`` column names the owner. Both stores resolve a chain in one
step: a single JOIN in Postgres, one locked snapshot in memory.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

ROOT_TABLE = "location"
OWNER_COLUMN = "user_id"


@dataclass(frozen=True)
class ChainLink:
    """``table.foreign_key`` references ``parent_table.id``."""

    table: str
    foreign_key: str
    parent_table: str


@dataclass(frozen=True)
class OwnershipChain:
    kind: str
    links: Tuple[ChainLink, ...] = ()

    @property
    def leaf_table(self) -> str:
        return self.links[0].table if self.links else ROOT_TABLE

    @property
    def tables(self) -> Tuple[str, ...]:
        """Tables from leaf to root; ids passed to a lookup follow this order."""
        return (self.leaf_table,) + tuple(link.parent_table for link in self.links)

    def check_ids(self, ids: Sequence[str]) -> None:
        if len(ids) != len(self.tables):
            raise ValueError(
                f"{self.kind} chain expects {len(self.tables)} ids, got {len(ids)}"
            )


LOCATION_CHAIN = OwnershipChain("location")

HIVE_CHAIN = OwnershipChain(
    "hive",
    (ChainLink("hive", "location_id", "location"),),
)

MAJOR_INSPECTION_CHAIN = OwnershipChain(
    "major_inspection",
    (ChainLink("major_inspection", "location_id", "location"),),
)

HIVE_INSPECTION_VIA_MAJOR_CHAIN = OwnershipChain(
    "hive_inspection",
    (
        ChainLink("hive_inspection", "major_inspection_id", "major_inspection"),
        ChainLink("major_inspection", "location_id", "location"),
    ),
)

HIVE_INSPECTION_VIA_HIVE_CHAIN = OwnershipChain(
    "hive_inspection",
    (
        ChainLink("hive_inspection", "hive_id", "hive"),
        ChainLink("hive", "location_id", "location"),
    ),
)


def parent_scope(chain: OwnershipChain) -> Tuple[str, str]:
    """Table and foreign key that scope writes on the chain's leaf."""
    if not chain.links:
        return ROOT_TABLE, OWNER_COLUMN
    first = chain.links[0]
    return first.table, first.foreign_key
