from datetime import date

import pytest

from hivelog.service.errors import NotFoundError
from hivelog.service.ownership import OwnershipVerifier
from hivelog.storage.common import (
    HIVE_INSPECTION_VIA_HIVE_CHAIN,
    HIVE_INSPECTION_VIA_MAJOR_CHAIN,
    LOCATION_CHAIN,
)
from hivelog.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def verifier(store):
    return OwnershipVerifier(store)


@pytest.fixture
def tree(store):
    """Two owners; P owns L1 with hives H1, H2 and major inspection M1."""
    owner = store.create_user("p", "p@example.com", roles=["user"])
    other = store.create_user("q", "q@example.com", roles=["user"])
    l1 = store.create_record("location", user_id=owner.id, name="Orchard")
    l2 = store.create_record("location", user_id=other.id, name="Meadow")
    h1 = store.create_record("hive", location_id=l1.id, hive_name="H1")
    h2 = store.create_record("hive", location_id=l1.id, hive_name="H2")
    m1 = store.create_record(
        "major_inspection", location_id=l1.id, inspection_date=date(2024, 5, 1)
    )
    hi = store.create_record(
        "hive_inspection", major_inspection_id=m1.id, hive_id=h1.id, queen_status="seen"
    )
    return {
        "owner": owner.id,
        "other": other.id,
        "l1": l1,
        "l2": l2,
        "h1": h1,
        "h2": h2,
        "m1": m1,
        "hi": hi,
    }


async def test_owner_gets_full_location_record(verifier, tree):
    record = await verifier.verify_location(tree["l1"].id, tree["owner"])
    assert record.id == tree["l1"].id
    assert record.name == "Orchard"


async def test_location_of_other_principal_is_null(verifier, tree):
    assert await verifier.verify_location(tree["l2"].id, tree["owner"]) is None


async def test_hive_inspection_resolves_through_both_chains(verifier, tree):
    via_major = await verifier.verify_hive_inspection_via_major(
        tree["hi"].id, tree["m1"].id, tree["l1"].id, tree["owner"]
    )
    via_hive = await verifier.verify_hive_inspection_via_hive(
        tree["hi"].id, tree["h1"].id, tree["l1"].id, tree["owner"]
    )
    assert via_major.id == via_hive.id == tree["hi"].id
    assert via_major.queen_status == "seen"


async def test_unrelated_hive_under_same_location_breaks_chain(verifier, tree):
    record = await verifier.verify_hive_inspection_via_hive(
        tree["hi"].id, tree["h2"].id, tree["l1"].id, tree["owner"]
    )
    assert record is None


@pytest.mark.parametrize("broken", ["leaf", "major", "location", "principal"])
async def test_any_altered_id_yields_null(verifier, tree, broken):
    ids = {
        "leaf": tree["hi"].id,
        "major": tree["m1"].id,
        "location": tree["l1"].id,
        "principal": tree["owner"],
    }
    ids[broken] = tree["l2"].id if broken == "location" else "does-not-exist"
    if broken == "principal":
        ids[broken] = tree["other"]

    record = await verifier.verify_hive_inspection_via_major(
        ids["leaf"], ids["major"], ids["location"], ids["principal"]
    )
    assert record is None


async def test_soft_deleted_ancestor_breaks_chain(store, verifier, tree):
    assert store.delete_scoped("major_inspection", tree["m1"].id, "location_id", tree["l1"].id)
    record = await verifier.verify_hive_inspection_via_major(
        tree["hi"].id, tree["m1"].id, tree["l1"].id, tree["owner"]
    )
    assert record is None


async def test_empty_ids_short_circuit_without_store_call(tree):
    class ExplodingStore:
        def find_owned(self, chain, ids, principal_id):
            raise AssertionError("store should not be queried")

    verifier = OwnershipVerifier(ExplodingStore())
    assert await verifier.resolve(LOCATION_CHAIN, ("",), tree["owner"]) is None
    assert await verifier.resolve(LOCATION_CHAIN, ("x",), "") is None


async def test_require_raises_not_found(verifier, tree):
    with pytest.raises(NotFoundError) as exc_info:
        await verifier.require(
            HIVE_INSPECTION_VIA_HIVE_CHAIN,
            (tree["hi"].id, tree["h2"].id, tree["l1"].id),
            tree["owner"],
        )
    assert exc_info.value.status_code == 404
    assert exc_info.value.message == "Hive inspection not found."


def test_chain_rejects_wrong_id_count(store):
    with pytest.raises(ValueError):
        store.find_owned(HIVE_INSPECTION_VIA_MAJOR_CHAIN, ("a", "b"), "p")


def test_returned_record_is_a_copy(store, tree):
    record = store.find_owned(LOCATION_CHAIN, (tree["l1"].id,), tree["owner"])
    record.name = "changed"
    assert store.find_owned(LOCATION_CHAIN, (tree["l1"].id,), tree["owner"]).name == "Orchard"
