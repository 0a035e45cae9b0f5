from datetime import date

import pytest

from hivelog.api.schemas import HiveUpdate, LocationUpdate
from hivelog.service.errors import ConcurrencyError, NotFoundError, ValidationError
from hivelog.service.ownership import OwnershipVerifier
from hivelog.service.records import RecordService, changed_fields
from hivelog.storage.errors import RowCountMismatch
from hivelog.storage.memory import MemoryStore
from hivelog.storage.models import MUTABLE_FIELDS


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def records(store):
    return RecordService(store, OwnershipVerifier(store))


@pytest.fixture
def owner(store):
    return store.create_user("p", "p@example.com", roles=["user"]).id


async def test_location_crud_is_scoped_to_owner(records, owner, store):
    location = await records.create_location(owner, {"name": "Orchard"})
    assert [loc.id for loc in await records.list_locations(owner)] == [location.id]

    intruder = store.create_user("q", "q@example.com").id
    with pytest.raises(NotFoundError):
        await records.update_location(location.id, intruder, {"name": "Mine"})

    updated = await records.update_location(location.id, owner, {"name": "Grove"})
    assert updated.name == "Grove"

    await records.delete_location(location.id, owner)
    assert await records.list_locations(owner) == []
    with pytest.raises(NotFoundError):
        await records.delete_location(location.id, owner)


async def test_immutable_field_update_is_validation_error(records, owner):
    location = await records.create_location(owner, {"name": "Orchard"})
    with pytest.raises(ValidationError):
        await records.update_location(location.id, owner, {"user_id": "someone"})


async def test_row_count_mismatch_becomes_concurrency_error(store, owner):
    class DuplicatingStore(MemoryStore):
        def update_scoped(self, table, record_id, scope_key, scope_value, changes):
            raise RowCountMismatch(table, 2)

    broken = DuplicatingStore()
    service = RecordService(broken, OwnershipVerifier(broken))
    with pytest.raises(ConcurrencyError) as exc_info:
        await service.update_hive("h1", "l1", {"hive_name": "x"})
    assert exc_info.value.status_code == 500


async def test_hive_inspection_requires_siblings_under_same_location(records, store, owner):
    l1 = await records.create_location(owner, {"name": "Orchard"})
    l2 = await records.create_location(owner, {"name": "Meadow"})
    hive_elsewhere = await records.create_hive(l2.id, {"hive_name": "Far"})
    major = await records.create_major_inspection(l1.id, {"inspection_date": date(2024, 6, 1)})

    with pytest.raises(NotFoundError) as exc_info:
        await records.create_hive_inspection(
            l1.id,
            owner,
            major_inspection_id=major.id,
            hive_id=hive_elsewhere.id,
            fields={},
        )
    assert exc_info.value.message == "Hive not found."
    with pytest.raises(ValidationError):
        await records.create_hive_inspection(
            l1.id, owner, major_inspection_id=major.id, hive_id=None, fields={}
        )


async def test_hive_inspection_update_rechecks_moved_hive(records, owner):
    l1 = await records.create_location(owner, {"name": "Orchard"})
    l2 = await records.create_location(owner, {"name": "Meadow"})
    hive = await records.create_hive(l1.id, {"hive_name": "Near"})
    far = await records.create_hive(l2.id, {"hive_name": "Far"})
    major = await records.create_major_inspection(l1.id, {"inspection_date": date(2024, 6, 1)})
    inspection = await records.create_hive_inspection(
        l1.id,
        owner,
        major_inspection_id=major.id,
        hive_id=hive.id,
        fields={"varroa_mites_found": True},
    )
    assert inspection.varroa_mites_found is True

    with pytest.raises(NotFoundError):
        await records.update_hive_inspection(
            inspection.id,
            "major_inspection_id",
            major.id,
            {"hive_id": far.id},
            location_id=l1.id,
            principal_id=owner,
        )


def test_changed_fields_keeps_only_explicitly_set_values():
    body = HiveUpdate(is_active=False)
    assert changed_fields(body, MUTABLE_FIELDS["hive"]) == {"is_active": False}

    body = LocationUpdate(notes=None)
    assert changed_fields(body, MUTABLE_FIELDS["location"]) == {"notes": None}
