from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from hivelog.api.schemas import (
    Envelope,
    HiveCreate,
    HiveInspectionCreate,
    HiveInspectionOut,
    HiveInspectionUpdate,
    HiveOut,
    HiveUpdate,
    LocationCreate,
    LocationOut,
    LocationUpdate,
    LoginRequest,
    LogoutRequest,
    MajorInspectionCreate,
    MajorInspectionOut,
    MajorInspectionUpdate,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    RoleAssignmentRequest,
    RoleOut,
    TokenOut,
    UserOut,
    ok,
)
from hivelog.config import Settings
from hivelog.service.ownership import ResourceKind
from hivelog.service.pipeline import AccessPipeline, OwnershipRequirement, RequestContext
from hivelog.service.records import changed_fields
from hivelog.service.runtime import get_runtime
from hivelog.storage.common import (
    HIVE_CHAIN,
    HIVE_INSPECTION_VIA_HIVE_CHAIN,
    HIVE_INSPECTION_VIA_MAJOR_CHAIN,
    LOCATION_CHAIN,
    MAJOR_INSPECTION_CHAIN,
)
from hivelog.storage.models import MUTABLE_FIELDS

router = APIRouter(prefix="/api")

# Role allow-lists per route family
ALL_ROLES = ("admin", "vet", "spectator", "user")
READ_ROLES = ("admin", "vet", "user")
WRITE_ROLES = ("user", "admin")
ADMIN_ROLES = ("admin",)

OWNS_LOCATION = OwnershipRequirement(LOCATION_CHAIN, ("location_id",))
OWNS_HIVE = OwnershipRequirement(HIVE_CHAIN, ("hive_id", "location_id"))
OWNS_MAJOR_INSPECTION = OwnershipRequirement(
    MAJOR_INSPECTION_CHAIN, ("major_inspection_id", "location_id")
)
OWNS_HIVE_INSPECTION_VIA_MAJOR = OwnershipRequirement(
    HIVE_INSPECTION_VIA_MAJOR_CHAIN,
    ("hive_inspection_id", "major_inspection_id", "location_id"),
)
OWNS_HIVE_INSPECTION_VIA_HIVE = OwnershipRequirement(
    HIVE_INSPECTION_VIA_HIVE_CHAIN, ("hive_inspection_id", "hive_id", "location_id")
)

authenticated = AccessPipeline()
admin_only = AccessPipeline(roles=ADMIN_ROLES)
location_owner = AccessPipeline(ownership=[OWNS_LOCATION])
hive_list_access = AccessPipeline(roles=ALL_ROLES, ownership=[OWNS_LOCATION])
hive_create_access = AccessPipeline(roles=WRITE_ROLES, ownership=[OWNS_LOCATION])
hive_read_access = AccessPipeline(roles=READ_ROLES, ownership=[OWNS_HIVE])
hive_write_access = AccessPipeline(roles=WRITE_ROLES, ownership=[OWNS_HIVE])
major_list_access = AccessPipeline(roles=READ_ROLES, ownership=[OWNS_LOCATION])
major_create_access = AccessPipeline(roles=WRITE_ROLES, ownership=[OWNS_LOCATION])
major_read_access = AccessPipeline(roles=READ_ROLES, ownership=[OWNS_MAJOR_INSPECTION])
major_write_access = AccessPipeline(roles=WRITE_ROLES, ownership=[OWNS_MAJOR_INSPECTION])
via_major_read_access = AccessPipeline(
    roles=READ_ROLES, ownership=[OWNS_HIVE_INSPECTION_VIA_MAJOR]
)
via_major_write_access = AccessPipeline(
    roles=WRITE_ROLES, ownership=[OWNS_HIVE_INSPECTION_VIA_MAJOR]
)
via_hive_read_access = AccessPipeline(
    roles=READ_ROLES, ownership=[OWNS_HIVE_INSPECTION_VIA_HIVE]
)
via_hive_write_access = AccessPipeline(
    roles=WRITE_ROLES, ownership=[OWNS_HIVE_INSPECTION_VIA_HIVE]
)


def _set_session_cookie(response: Response, settings: Settings, access_token: str) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        access_token,
        max_age=settings.access_ttl_seconds,
        httponly=True,
        samesite="strict",
        secure=settings.is_production,
    )


def _set_refresh_cookie(response: Response, settings: Settings, refresh_token: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        max_age=settings.refresh_ttl_seconds,
        httponly=True,
        samesite="strict",
        secure=settings.is_production,
        path="/api/auth",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="strict",
        secure=settings.is_production,
    )
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/api/auth",
        httponly=True,
        samesite="strict",
        secure=settings.is_production,
    )


def _refresh_token_from(
    request: Request,
    settings: Settings,
    body: Optional[RefreshRequest | LogoutRequest],
    header_value: Optional[str],
) -> Optional[str]:
    """Body first, then the refresh cookie, then ``X-Refresh-Token``."""
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(settings.refresh_cookie_name) or header_value


def _hive_inspection_fields(body: HiveInspectionCreate) -> dict:
    data = body.model_dump(exclude_none=True)
    data.pop("hive_id", None)
    data.pop("major_inspection_id", None)
    return data


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = await runtime.auth.register(body.username, body.email, body.password)
    return ok(UserOut.model_validate(user), "User registered successfully.")


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    user, tokens = await runtime.auth.login(body.email, body.password)
    _set_session_cookie(response, runtime.settings, tokens.access_token)
    _set_refresh_cookie(response, runtime.settings, tokens.refresh_token)
    return ok(
        TokenOut(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            user=UserOut.model_validate(user),
        ),
        "Login successful.",
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_header: Optional[str] = Header(None, alias="X-Refresh-Token"),
):
    runtime = get_runtime()
    token = _refresh_token_from(request, runtime.settings, body, refresh_header)
    user, access_token = await runtime.auth.refresh(token)
    _set_session_cookie(response, runtime.settings, access_token)
    return ok(
        TokenOut(
            access_token=access_token,
            expires_in=runtime.settings.access_ttl_seconds,
            user=UserOut.model_validate(user),
        )
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(ctx: RequestContext = Depends(authenticated.dependency())):
    runtime = get_runtime()
    user = await runtime.auth.get_user(ctx.require_principal().id)
    return ok(UserOut.model_validate(user))


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(
    body: ProfileUpdateRequest,
    ctx: RequestContext = Depends(authenticated.dependency()),
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        ctx.require_principal().id,
        username=body.username,
        email=body.email,
        password=body.password,
    )
    return ok(UserOut.model_validate(user), "Profile updated.")


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_header: Optional[str] = Header(None, alias="X-Refresh-Token"),
    ctx: RequestContext = Depends(authenticated.dependency()),
):
    runtime = get_runtime()
    refresh_token = _refresh_token_from(request, runtime.settings, body, refresh_header)
    await runtime.auth.logout(ctx.token, refresh_token)
    _clear_session_cookies(response, runtime.settings)
    return ok(message="Logged out successfully.")


# admin
@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def admin_list_roles(ctx: RequestContext = Depends(admin_only.dependency())):
    roles = await get_runtime().auth.list_roles()
    return ok([RoleOut.model_validate(role) for role in roles])


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(ctx: RequestContext = Depends(admin_only.dependency())):
    users = await get_runtime().auth.list_users()
    return ok([UserOut.model_validate(user) for user in users])


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    user_id: str, ctx: RequestContext = Depends(admin_only.dependency())
):
    user = await get_runtime().auth.get_user(user_id)
    return ok(UserOut.model_validate(user))


@router.post("/admin/users/{user_id}/roles", response_model=Envelope, tags=["admin"])
async def admin_assign_role(
    user_id: str,
    body: RoleAssignmentRequest,
    ctx: RequestContext = Depends(admin_only.dependency()),
):
    user = await get_runtime().auth.assign_role(user_id, body.role)
    return ok(UserOut.model_validate(user), "Role assigned.")


@router.delete(
    "/admin/users/{user_id}/roles/{role_name}", response_model=Envelope, tags=["admin"]
)
async def admin_remove_role(
    user_id: str,
    role_name: str,
    ctx: RequestContext = Depends(admin_only.dependency()),
):
    user = await get_runtime().auth.remove_role(user_id, role_name)
    return ok(UserOut.model_validate(user), "Role removed.")


# locations
@router.get("/locations", response_model=Envelope, tags=["locations"])
async def list_locations(ctx: RequestContext = Depends(authenticated.dependency())):
    rows = await get_runtime().records.list_locations(ctx.require_principal().id)
    return ok([LocationOut.model_validate(row) for row in rows])


@router.post("/locations", response_model=Envelope, status_code=201, tags=["locations"])
async def create_location(
    body: LocationCreate, ctx: RequestContext = Depends(authenticated.dependency())
):
    record = await get_runtime().records.create_location(
        ctx.require_principal().id, body.model_dump()
    )
    return ok(LocationOut.model_validate(record), "Location created.")


@router.get("/locations/{location_id}", response_model=Envelope, tags=["locations"])
async def get_location(
    location_id: str, ctx: RequestContext = Depends(location_owner.dependency())
):
    return ok(LocationOut.model_validate(ctx.resource(ResourceKind.LOCATION)))


@router.put("/locations/{location_id}", response_model=Envelope, tags=["locations"])
async def update_location(
    location_id: str,
    body: LocationUpdate,
    ctx: RequestContext = Depends(location_owner.dependency()),
):
    record = await get_runtime().records.update_location(
        location_id,
        ctx.require_principal().id,
        changed_fields(body, MUTABLE_FIELDS["location"]),
    )
    return ok(LocationOut.model_validate(record), "Location updated.")


@router.delete("/locations/{location_id}", response_model=Envelope, tags=["locations"])
async def delete_location(
    location_id: str, ctx: RequestContext = Depends(location_owner.dependency())
):
    await get_runtime().records.delete_location(location_id, ctx.require_principal().id)
    return ok({"id": location_id}, "Location deleted.")


# hives
@router.get("/locations/{location_id}/hives", response_model=Envelope, tags=["hives"])
async def list_hives(
    location_id: str, ctx: RequestContext = Depends(hive_list_access.dependency())
):
    rows = await get_runtime().records.list_hives(location_id)
    return ok([HiveOut.model_validate(row) for row in rows])


@router.post(
    "/locations/{location_id}/hives",
    response_model=Envelope,
    status_code=201,
    tags=["hives"],
)
async def create_hive(
    location_id: str,
    body: HiveCreate,
    ctx: RequestContext = Depends(hive_create_access.dependency()),
):
    record = await get_runtime().records.create_hive(location_id, body.model_dump())
    return ok(HiveOut.model_validate(record), "Hive created.")


@router.get(
    "/locations/{location_id}/hives/{hive_id}", response_model=Envelope, tags=["hives"]
)
async def get_hive(
    location_id: str,
    hive_id: str,
    ctx: RequestContext = Depends(hive_read_access.dependency()),
):
    return ok(HiveOut.model_validate(ctx.resource(ResourceKind.HIVE)))


@router.put(
    "/locations/{location_id}/hives/{hive_id}", response_model=Envelope, tags=["hives"]
)
async def update_hive(
    location_id: str,
    hive_id: str,
    body: HiveUpdate,
    ctx: RequestContext = Depends(hive_write_access.dependency()),
):
    record = await get_runtime().records.update_hive(
        hive_id, location_id, changed_fields(body, MUTABLE_FIELDS["hive"])
    )
    return ok(HiveOut.model_validate(record), "Hive updated.")


@router.delete(
    "/locations/{location_id}/hives/{hive_id}", response_model=Envelope, tags=["hives"]
)
async def delete_hive(
    location_id: str,
    hive_id: str,
    ctx: RequestContext = Depends(hive_write_access.dependency()),
):
    await get_runtime().records.delete_hive(hive_id, location_id)
    return ok({"id": hive_id}, "Hive deleted.")


# major inspections
@router.get(
    "/locations/{location_id}/major-inspections",
    response_model=Envelope,
    tags=["major-inspections"],
)
async def list_major_inspections(
    location_id: str, ctx: RequestContext = Depends(major_list_access.dependency())
):
    rows = await get_runtime().records.list_major_inspections(location_id)
    return ok([MajorInspectionOut.model_validate(row) for row in rows])


@router.post(
    "/locations/{location_id}/major-inspections",
    response_model=Envelope,
    status_code=201,
    tags=["major-inspections"],
)
async def create_major_inspection(
    location_id: str,
    body: MajorInspectionCreate,
    ctx: RequestContext = Depends(major_create_access.dependency()),
):
    record = await get_runtime().records.create_major_inspection(
        location_id, body.model_dump()
    )
    return ok(MajorInspectionOut.model_validate(record), "Major inspection created.")


@router.get(
    "/locations/{location_id}/major-inspections/{major_inspection_id}",
    response_model=Envelope,
    tags=["major-inspections"],
)
async def get_major_inspection(
    location_id: str,
    major_inspection_id: str,
    ctx: RequestContext = Depends(major_read_access.dependency()),
):
    return ok(MajorInspectionOut.model_validate(ctx.resource(ResourceKind.MAJOR_INSPECTION)))


@router.put(
    "/locations/{location_id}/major-inspections/{major_inspection_id}",
    response_model=Envelope,
    tags=["major-inspections"],
)
async def update_major_inspection(
    location_id: str,
    major_inspection_id: str,
    body: MajorInspectionUpdate,
    ctx: RequestContext = Depends(major_write_access.dependency()),
):
    record = await get_runtime().records.update_major_inspection(
        major_inspection_id,
        location_id,
        changed_fields(body, MUTABLE_FIELDS["major_inspection"]),
    )
    return ok(MajorInspectionOut.model_validate(record), "Major inspection updated.")


@router.delete(
    "/locations/{location_id}/major-inspections/{major_inspection_id}",
    response_model=Envelope,
    tags=["major-inspections"],
)
async def delete_major_inspection(
    location_id: str,
    major_inspection_id: str,
    ctx: RequestContext = Depends(major_write_access.dependency()),
):
    await get_runtime().records.delete_major_inspection(major_inspection_id, location_id)
    return ok({"id": major_inspection_id}, "Major inspection deleted.")


# hive inspections scoped through a major inspection
_VIA_MAJOR = "/locations/{location_id}/major-inspections/{major_inspection_id}/hive-inspections"


@router.get(_VIA_MAJOR, response_model=Envelope, tags=["hive-inspections"])
async def list_hive_inspections_for_major(
    location_id: str,
    major_inspection_id: str,
    ctx: RequestContext = Depends(major_read_access.dependency()),
):
    rows = await get_runtime().records.list_hive_inspections(
        "major_inspection_id", major_inspection_id
    )
    return ok([HiveInspectionOut.model_validate(row) for row in rows])


@router.post(_VIA_MAJOR, response_model=Envelope, status_code=201, tags=["hive-inspections"])
async def create_hive_inspection_for_major(
    location_id: str,
    major_inspection_id: str,
    body: HiveInspectionCreate,
    ctx: RequestContext = Depends(major_write_access.dependency()),
):
    record = await get_runtime().records.create_hive_inspection(
        location_id,
        ctx.require_principal().id,
        major_inspection_id=major_inspection_id,
        hive_id=body.hive_id,
        fields=_hive_inspection_fields(body),
    )
    return ok(HiveInspectionOut.model_validate(record), "Hive inspection created.")


@router.get(
    _VIA_MAJOR + "/{hive_inspection_id}", response_model=Envelope, tags=["hive-inspections"]
)
async def get_hive_inspection_via_major(
    location_id: str,
    major_inspection_id: str,
    hive_inspection_id: str,
    ctx: RequestContext = Depends(via_major_read_access.dependency()),
):
    return ok(HiveInspectionOut.model_validate(ctx.resource(ResourceKind.HIVE_INSPECTION)))


@router.put(
    _VIA_MAJOR + "/{hive_inspection_id}", response_model=Envelope, tags=["hive-inspections"]
)
async def update_hive_inspection_via_major(
    location_id: str,
    major_inspection_id: str,
    hive_inspection_id: str,
    body: HiveInspectionUpdate,
    ctx: RequestContext = Depends(via_major_write_access.dependency()),
):
    record = await get_runtime().records.update_hive_inspection(
        hive_inspection_id,
        "major_inspection_id",
        major_inspection_id,
        changed_fields(body, MUTABLE_FIELDS["hive_inspection"]),
        location_id=location_id,
        principal_id=ctx.require_principal().id,
    )
    return ok(HiveInspectionOut.model_validate(record), "Hive inspection updated.")


@router.delete(
    _VIA_MAJOR + "/{hive_inspection_id}", response_model=Envelope, tags=["hive-inspections"]
)
async def delete_hive_inspection_via_major(
    location_id: str,
    major_inspection_id: str,
    hive_inspection_id: str,
    ctx: RequestContext = Depends(via_major_write_access.dependency()),
):
    await get_runtime().records.delete_hive_inspection(
        hive_inspection_id, "major_inspection_id", major_inspection_id
    )
    return ok({"id": hive_inspection_id}, "Hive inspection deleted.")


# hive inspections scoped through a hive
_VIA_HIVE = "/locations/{location_id}/hives/{hive_id}/inspections"


@router.get(_VIA_HIVE, response_model=Envelope, tags=["hive-inspections"])
async def list_hive_inspections_for_hive(
    location_id: str,
    hive_id: str,
    ctx: RequestContext = Depends(hive_read_access.dependency()),
):
    rows = await get_runtime().records.list_hive_inspections("hive_id", hive_id)
    return ok([HiveInspectionOut.model_validate(row) for row in rows])


@router.post(_VIA_HIVE, response_model=Envelope, status_code=201, tags=["hive-inspections"])
async def create_hive_inspection_for_hive(
    location_id: str,
    hive_id: str,
    body: HiveInspectionCreate,
    ctx: RequestContext = Depends(hive_write_access.dependency()),
):
    record = await get_runtime().records.create_hive_inspection(
        location_id,
        ctx.require_principal().id,
        major_inspection_id=body.major_inspection_id,
        hive_id=hive_id,
        fields=_hive_inspection_fields(body),
    )
    return ok(HiveInspectionOut.model_validate(record), "Hive inspection created.")


@router.get(
    _VIA_HIVE + "/{hive_inspection_id}", response_model=Envelope, tags=["hive-inspections"]
)
async def get_hive_inspection_via_hive(
    location_id: str,
    hive_id: str,
    hive_inspection_id: str,
    ctx: RequestContext = Depends(via_hive_read_access.dependency()),
):
    return ok(HiveInspectionOut.model_validate(ctx.resource(ResourceKind.HIVE_INSPECTION)))


@router.put(
    _VIA_HIVE + "/{hive_inspection_id}", response_model=Envelope, tags=["hive-inspections"]
)
async def update_hive_inspection_via_hive(
    location_id: str,
    hive_id: str,
    hive_inspection_id: str,
    body: HiveInspectionUpdate,
    ctx: RequestContext = Depends(via_hive_write_access.dependency()),
):
    record = await get_runtime().records.update_hive_inspection(
        hive_inspection_id,
        "hive_id",
        hive_id,
        changed_fields(body, MUTABLE_FIELDS["hive_inspection"]),
        location_id=location_id,
        principal_id=ctx.require_principal().id,
    )
    return ok(HiveInspectionOut.model_validate(record), "Hive inspection updated.")


@router.delete(
    _VIA_HIVE + "/{hive_inspection_id}", response_model=Envelope, tags=["hive-inspections"]
)
async def delete_hive_inspection_via_hive(
    location_id: str,
    hive_id: str,
    hive_inspection_id: str,
    ctx: RequestContext = Depends(via_hive_write_access.dependency()),
):
    await get_runtime().records.delete_hive_inspection(
        hive_inspection_id, "hive_id", hive_id
    )
    return ok({"id": hive_inspection_id}, "Hive inspection deleted.")
