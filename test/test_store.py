"""Tests for tracker.store: filters, atomic updates, indexes and persistence."""

import asyncio
from datetime import datetime, timezone

import pytest

from tracker.store import (
    TEXT_SCORE,
    DuplicateKeyError,
    InMemoryDocumentStore,
    PushSpec,
    matches,
    sort_documents,
)

T0 = datetime(2026, 3, 10, tzinfo=timezone.utc)


@pytest.fixture
def coll():
    return InMemoryDocumentStore().collection("things")


async def _seed(coll):
    await coll.insert_one({"id": "1", "team": "a", "n": 3, "tags": ["x", "y"], "gone": None})
    await coll.insert_one({"id": "2", "team": "a", "n": 1, "tags": [], "gone": T0})
    await coll.insert_one({"id": "3", "team": "b", "n": 2, "tags": ["y"]})


# ---------------------------------------------------------------------------
# matches / sort
# ---------------------------------------------------------------------------


def test_none_equality_matches_missing_field():
    assert matches({"id": "1"}, {"deleted_at": None})
    assert matches({"id": "1", "deleted_at": None}, {"deleted_at": None})
    assert not matches({"id": "1", "deleted_at": T0}, {"deleted_at": None})


def test_operators():
    doc = {"n": 5, "status": "todo", "labels": ["bug", "ui"]}
    assert matches(doc, {"n": {"$gte": 5, "$lt": 6}})
    assert not matches(doc, {"n": {"$gt": 5}})
    assert matches(doc, {"status": {"$ne": "done"}})
    assert matches(doc, {"status": {"$in": ["todo", "blocked"]}})
    assert matches(doc, {"status": {"$nin": ["done"]}})
    assert matches(doc, {"labels": {"$in": ["bug"]}})
    assert matches(doc, {"labels": "ui"})
    assert not matches(doc, {"labels": {"$in": ["docs"]}})


def test_range_operators_never_match_missing_values():
    assert not matches({"due": None}, {"due": {"$lt": T0}})
    assert not matches({}, {"due": {"$gte": T0}})


def test_sort_documents_multi_key_and_none_first():
    docs = [
        {"id": "b", "p": 1.0},
        {"id": "a", "p": 1.0},
        {"id": "c", "p": None},
        {"id": "d", "p": 0.5},
    ]
    ordered = sort_documents(docs, [("p", 1), ("id", 1)])
    assert [d["id"] for d in ordered] == ["c", "d", "a", "b"]

    ordered = sort_documents(docs, [("p", -1), ("id", 1)])
    assert [d["id"] for d in ordered] == ["a", "b", "d", "c"]


# ---------------------------------------------------------------------------
# reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_find_and_count(coll):
    await _seed(coll)

    active = await coll.find_many({"team": "a", "gone": None}, sort=[("n", 1)])
    assert [d["id"] for d in active] == ["1"]

    assert await coll.count({"tags": "y"}) == 2
    assert await coll.count_by({}, "team") == {"a": 2, "b": 1}
    assert (await coll.find_one({"id": "3"}))["n"] == 2
    assert await coll.find_one({"id": "nope"}) is None


@pytest.mark.asyncio
async def test_returned_documents_are_copies(coll):
    await _seed(coll)
    doc = await coll.find_one({"id": "1"})
    doc["tags"].append("mutated")

    again = await coll.find_one({"id": "1"})
    assert again["tags"] == ["x", "y"]


@pytest.mark.asyncio
async def test_text_search_ranks_by_weight(coll):
    coll.create_text_index({"title": 10, "body": 5})
    await coll.insert_one({"id": "1", "title": "misc", "body": "login page broken"})
    await coll.insert_one({"id": "2", "title": "Login bug", "body": "nothing"})
    await coll.insert_one({"id": "3", "title": "unrelated", "body": "unrelated"})

    found = await coll.find_many({"$text": {"$search": "login"}}, sort=[(TEXT_SCORE, -1)])

    assert [d["id"] for d in found] == ["2", "1"]
    assert all(TEXT_SCORE not in d for d in found)


# ---------------------------------------------------------------------------
# writes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_one_applies_every_operator(coll):
    await coll.insert_one({"id": "1", "v": 1, "log": [1, 2, 3], "gone": T0, "name": "a"})

    updated = await coll.update_one(
        {"id": "1", "v": 1},
        set_fields={"name": "b"},
        inc={"v": 1},
        push={"log": PushSpec(items=(4, 5), keep_last=3)},
        unset=["gone"],
    )

    assert updated == {"id": "1", "v": 2, "log": [3, 4, 5], "gone": None, "name": "b"}


@pytest.mark.asyncio
async def test_update_one_guard_field_miss_writes_nothing(coll):
    await coll.insert_one({"id": "1", "v": 2, "name": "a"})

    assert await coll.update_one({"id": "1", "v": 1}, set_fields={"name": "b"}) is None
    assert (await coll.find_one({"id": "1"}))["name"] == "a"


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(coll):
    await coll.insert_one({"id": "1", "v": 0})

    await asyncio.gather(*(coll.update_one({"id": "1"}, inc={"v": 1}) for _ in range(20)))

    assert (await coll.find_one({"id": "1"}))["v"] == 20


@pytest.mark.asyncio
async def test_insert_duplicate_id_rejected(coll):
    await coll.insert_one({"id": "1"})
    with pytest.raises(DuplicateKeyError):
        await coll.insert_one({"id": "1"})


@pytest.mark.asyncio
async def test_unique_partial_index(coll):
    coll.create_index(["team", "name"], unique=True, partial={"gone": None}, name="team_name")
    await coll.insert_one({"id": "1", "team": "a", "name": "Web", "gone": None})

    with pytest.raises(DuplicateKeyError) as exc:
        await coll.insert_one({"id": "2", "team": "a", "name": "Web", "gone": None})
    assert exc.value.index == "team_name"

    # Other teams and deleted records are outside the index.
    await coll.insert_one({"id": "3", "team": "b", "name": "Web", "gone": None})
    await coll.update_one({"id": "1"}, set_fields={"gone": T0})
    await coll.insert_one({"id": "4", "team": "a", "name": "Web", "gone": None})

    with pytest.raises(DuplicateKeyError):
        await coll.update_one({"id": "1"}, unset=["gone"])


# ---------------------------------------------------------------------------
# persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_persistence_round_trip(tmp_path):
    path = tmp_path / "store.json"
    store = InMemoryDocumentStore(persist_path=path)
    await store.collection("tasks").insert_one({"id": "1", "due": T0, "tags": ["a"]})

    reloaded = InMemoryDocumentStore(persist_path=path)
    doc = await reloaded.collection("tasks").find_one({"id": "1"})

    assert doc == {"id": "1", "due": T0, "tags": ["a"]}
    assert isinstance(doc["due"], datetime)


def test_empty_persist_file_is_ignored(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("")
    store = InMemoryDocumentStore(persist_path=path)
    assert store.collection("tasks").indexes == []
