from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional


@dataclass
class User:
    id: str
    username: str
    email: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    roles: List[str] = field(default_factory=list)


@dataclass
class Role:
    id: int
    name: str


@dataclass
class Location:
    id: str
    user_id: str
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Hive:
    id: str
    location_id: str
    hive_name: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class MajorInspection:
    id: str
    location_id: str
    inspection_date: date
    general_notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class HiveInspection:
    id: str
    major_inspection_id: str
    hive_id: str
    inspection_hour: Optional[str] = None
    colony_health_status: Optional[str] = None
    number_of_chambers: Optional[int] = None
    queen_status: Optional[str] = None
    varroa_mites_found: bool = False
    varroa_treatment: bool = False
    sugar_feed_added: bool = False
    raising_new_queen: bool = False
    other_notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


RECORD_TYPES = {
    "location": Location,
    "hive": Hive,
    "major_inspection": MajorInspection,
    "hive_inspection": HiveInspection,
}

# Columns a client may change through an update
MUTABLE_FIELDS = {
    "location": (
        "name",
        "address",
        "latitude",
        "longitude",
        "country",
        "notes",
    ),
    "hive": ("hive_name", "description", "is_active"),
    "major_inspection": ("inspection_date", "general_notes"),
    "hive_inspection": (
        "hive_id",
        "inspection_hour",
        "colony_health_status",
        "number_of_chambers",
        "queen_status",
        "varroa_mites_found",
        "varroa_treatment",
        "sugar_feed_added",
        "raising_new_queen",
        "other_notes",
    ),
}
