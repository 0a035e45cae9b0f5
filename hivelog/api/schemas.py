from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from hivelog.logging import get_correlation_id

MAX_TEXT_LENGTH = 4000
_HOUR_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    request_id: str = Field(default_factory=_request_id)


class ErrorEnvelope(Envelope):
    success: bool = False
    code: str = "server_error"
    stack: Optional[str] = None


def ok(data: Any = None, message: Optional[str] = None) -> Envelope:
    return Envelope(success=True, message=message, data=data)


def _normalize_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return unicodedata.normalize("NFKC", value).strip()


# auth
class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return unicodedata.normalize("NFKC", value).strip().lower()


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return unicodedata.normalize("NFKC", value).strip().lower()


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    username: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return unicodedata.normalize("NFKC", value).strip().lower()


class RoleAssignmentRequest(BaseModel):
    role: str = Field(..., min_length=1, max_length=50)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    roles: List[str]
    created_at: datetime


class RoleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class TokenOut(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int
    user: Optional[UserOut] = None


# records
class LocationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    address: Optional[str] = Field(default=None, max_length=500)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    country: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)

    @field_validator("name", "address", "country", "notes")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_text(value)


class LocationUpdate(LocationCreate):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)


class LocationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    country: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class HiveCreate(BaseModel):
    hive_name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    is_active: bool = True


class HiveUpdate(BaseModel):
    hive_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    is_active: Optional[bool] = None


class HiveOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    hive_name: str
    description: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class MajorInspectionCreate(BaseModel):
    inspection_date: date
    general_notes: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)


class MajorInspectionUpdate(BaseModel):
    inspection_date: Optional[date] = None
    general_notes: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)


class MajorInspectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    location_id: str
    inspection_date: date
    general_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class HiveInspectionFields(BaseModel):
    inspection_hour: Optional[str] = None
    colony_health_status: Optional[str] = Field(default=None, max_length=100)
    number_of_chambers: Optional[int] = Field(default=None, ge=0, le=20)
    queen_status: Optional[str] = Field(default=None, max_length=100)
    varroa_mites_found: Optional[bool] = None
    varroa_treatment: Optional[bool] = None
    sugar_feed_added: Optional[bool] = None
    raising_new_queen: Optional[bool] = None
    other_notes: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)

    @field_validator("inspection_hour")
    @classmethod
    def _validate_hour(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HOUR_RE.match(value):
            raise ValueError("inspection_hour must be HH:MM")
        return value


class HiveInspectionCreate(HiveInspectionFields):
    """Body for both route families; each supplies the id its path lacks."""

    hive_id: Optional[str] = None
    major_inspection_id: Optional[str] = None


class HiveInspectionUpdate(HiveInspectionFields):
    hive_id: Optional[str] = None


class HiveInspectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    major_inspection_id: str
    hive_id: str
    inspection_hour: Optional[str] = None
    colony_health_status: Optional[str] = None
    number_of_chambers: Optional[int] = None
    queen_status: Optional[str] = None
    varroa_mites_found: bool
    varroa_treatment: bool
    sugar_feed_added: bool
    raising_new_queen: bool
    other_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
