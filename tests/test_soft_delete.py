"""
Comprehensive tests for soft delete functionality.

Tests cover the soft-delete collection wrapper, the service registry and
reporting, and the lifecycle guarantees the purge pipeline relies on.
"""

import json
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from softpurge.soft_delete import (
    EntityNotFoundError,
    HardDeleteDisabledError,
    LifecycleFieldError,
    QueryOptions,
    SoftDeleteCollection,
    SoftDeleteService,
    UnknownEntityTypeError,
    UnsupportedEntityIdError,
    decode_entity_id,
    encode_entity_id,
    with_soft_delete,
)
from softpurge.storage import SearchNotEnabledError


@pytest.fixture
def users(database, clock):
    """Soft-delete users collection."""
    return with_soft_delete(database.collection("users"), clock=clock)


@pytest.fixture
def service(clock):
    """Service with a 30 day retention window."""
    return SoftDeleteService(timedelta(days=30), clock=clock)


class TestSoftDeleteCollection:
    """Test the soft-delete collection wrapper."""

    @pytest.mark.asyncio
    async def test_insert_stamps_lifecycle_defaults(self, users):
        user_id = await users.insert_one({"email": "ada@example.com"})

        stored = await users.raw_collection.find_one({"_id": user_id})

        assert stored["deleted"] is False
        assert stored["deletedAt"] is None

    @pytest.mark.asyncio
    async def test_soft_delete_hides_from_default_reads(self, users, clock):
        user_id = await users.insert_one({"email": "ada@example.com"})

        deleted = await users.soft_delete(user_id)

        assert deleted["deleted"] is True
        assert deleted["deletedAt"] == clock.now
        assert await users.find({"email": "ada@example.com"}) == []
        assert await users.find_one({"email": "ada@example.com"}) is None
        assert await users.find_by_id(user_id) is None
        assert await users.count() == 0

        visible = await users.find_by_id(user_id, QueryOptions.with_deleted())
        assert visible["_id"] == user_id

    @pytest.mark.asyncio
    async def test_restore_returns_entity_to_default_reads(self, users):
        user_id = await users.insert_one({"email": "ada@example.com"})
        await users.soft_delete(user_id)

        restored = await users.restore(user_id)

        assert restored["deleted"] is False
        assert restored["deletedAt"] is None
        assert (await users.find_by_id(user_id))["_id"] == user_id

    @pytest.mark.asyncio
    async def test_identity_survives_lifecycle(self, users):
        user_id = await users.insert_one({"email": "ada@example.com"})
        await users.soft_delete(user_id)
        await users.restore(user_id)
        await users.soft_delete(user_id)

        trash = await users.find({}, QueryOptions.trash())

        assert [doc["_id"] for doc in trash] == [user_id]

    @pytest.mark.asyncio
    async def test_soft_delete_twice_keeps_first_timestamp(self, users, clock):
        user_id = await users.insert_one({"email": "ada@example.com"})
        first = await users.soft_delete(user_id)
        clock.advance(days=3)

        assert await users.soft_delete(user_id) is None

        stored = await users.find_by_id(user_id, QueryOptions.with_deleted())
        assert stored["deletedAt"] == first["deletedAt"]

    @pytest.mark.asyncio
    async def test_missing_targets_return_none(self, users):
        assert await users.soft_delete("nope") is None
        assert await users.restore("nope") is None

    @pytest.mark.asyncio
    async def test_explicit_deleted_filter_is_honoured(self, users):
        active = await users.insert_one({"n": 1})
        gone = await users.insert_one({"n": 2})
        await users.soft_delete(gone)

        found = await users.find({"deleted": True})

        assert [doc["_id"] for doc in found] == [gone]
        assert active != gone

    @pytest.mark.asyncio
    async def test_trash_view(self, users):
        await users.insert_one({"n": 1})
        gone = await users.insert_one({"n": 2})
        await users.soft_delete(gone)

        trash = await users.find({}, QueryOptions.trash())
        assert [doc["_id"] for doc in trash] == [gone]
        assert await users.count(options=QueryOptions.with_deleted()) == 2

    @pytest.mark.asyncio
    async def test_count_active_and_update_active(self, users):
        await users.insert_many([{"role": "a"}, {"role": "a"}])
        gone = await users.insert_one({"role": "a"})
        await users.soft_delete(gone)

        assert await users.count_active({"role": "a", "deleted": True}) == 2

        result = await users.update_active({"role": "a"}, {"$set": {"role": "b"}})
        assert result.matched_count == 2

        stored = await users.find_by_id(gone, QueryOptions.with_deleted())
        assert stored["role"] == "a"

    @pytest.mark.asyncio
    async def test_update_all_including_deleted(self, users):
        await users.insert_one({"role": "a"})
        gone = await users.insert_one({"role": "a"})
        await users.soft_delete(gone)

        result = await users.update_all_including_deleted({}, {"$set": {"role": "b"}})

        assert result.matched_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "operation",
        ["delete_one", "delete_many", "find_one_and_delete", "find_by_id_and_delete"],
    )
    async def test_hard_delete_family_is_disabled(self, users, operation):
        user_id = await users.insert_one({"email": "ada@example.com"})

        for args in [(), ({},), ({"_id": user_id},), (user_id,)]:
            with pytest.raises(HardDeleteDisabledError) as exc_info:
                getattr(users, operation)(*args)
            assert exc_info.value.operation == operation

        assert await users.count() == 1

    def test_cannot_wrap_twice(self, users):
        with pytest.raises(TypeError):
            with_soft_delete(users)  # type: ignore[arg-type]


class TestAggregateSafe:
    """Test rewritten aggregation."""

    @pytest.mark.asyncio
    async def test_empty_pipeline_excludes_deleted(self, users):
        active = await users.insert_one({"n": 1})
        gone = await users.insert_one({"n": 2})
        await users.soft_delete(gone)

        result = await users.aggregate_safe([])

        assert [doc["_id"] for doc in result] == [active]

    @pytest.mark.asyncio
    async def test_match_pipeline_excludes_deleted(self, users):
        active = await users.insert_one({"value": 10})
        gone = await users.insert_one({"value": 30})
        await users.soft_delete(gone)

        result = await users.aggregate_safe([{"$match": {"value": {"$gte": 10}}}])

        assert [doc["_id"] for doc in result] == [active]

    @pytest.mark.asyncio
    async def test_geo_near_excludes_deleted(self, database, clock):
        places = with_soft_delete(database.collection("places"), clock=clock)
        active = await places.insert_one(
            {"loc": {"type": "Point", "coordinates": [13.40, 52.52]}}
        )
        gone = await places.insert_one(
            {"loc": {"type": "Point", "coordinates": [13.41, 52.52]}}
        )
        await places.soft_delete(gone)

        result = await places.aggregate_safe(
            [
                {
                    "$geoNear": {
                        "near": {"type": "Point", "coordinates": [13.40, 52.52]},
                        "distanceField": "distance",
                        "spherical": True,
                    }
                }
            ]
        )

        assert [doc["_id"] for doc in result] == [active]

    @pytest.mark.asyncio
    async def test_search_pipeline_is_passed_to_engine(self, users):
        with pytest.raises(SearchNotEnabledError):
            await users.aggregate_safe([{"$search": {"text": {"query": "ada"}}}])


class TestLifecycleFields:
    """Test that only soft_delete() and restore() write the lifecycle fields."""

    @pytest.mark.asyncio
    async def test_insert_stamps_active_fields(self, users, clock):
        user_id = await users.insert_one({"n": 1, "deleted": True})
        other_id = await users.insert_one(
            {"n": 2, "deleted": True, "deletedAt": clock.now}
        )
        many = await users.insert_many([{"deletedAt": clock.now}])

        for entity_id in [user_id, other_id, *many]:
            stored = await users.find_by_id(entity_id)
            assert stored is not None
            assert stored["deleted"] is False
            assert stored["deletedAt"] is None

    @pytest.mark.asyncio
    async def test_deleted_iff_deleted_at(self, users):
        ids = [await users.insert_one({"n": n, "deleted": True}) for n in range(3)]
        await users.soft_delete(ids[0])
        await users.soft_delete(ids[1])
        await users.restore(ids[1])

        for doc in await users.find(options=QueryOptions.with_deleted()):
            assert doc["deleted"] == (doc["deletedAt"] is not None)

    @pytest.mark.parametrize(
        "update",
        [
            {"$set": {"deleted": True}},
            {"$set": {"n": 2, "deletedAt": None}},
            {"$unset": {"deletedAt": ""}},
            {"$set": {"deletedAt.year": 2020}},
        ],
    )
    @pytest.mark.asyncio
    async def test_updates_cannot_write_lifecycle_fields(self, users, update):
        user_id = await users.insert_one({"n": 1})

        with pytest.raises(LifecycleFieldError):
            await users.update_active({}, update)
        with pytest.raises(LifecycleFieldError):
            await users.update_many({}, update)
        with pytest.raises(LifecycleFieldError):
            await users.find_one_and_update({"_id": user_id}, update)
        with pytest.raises(LifecycleFieldError):
            await users.update_all_including_deleted({}, update)

        stored = await users.find_by_id(user_id)
        assert (stored["n"], stored["deleted"], stored["deletedAt"]) == (1, False, None)

    @pytest.mark.asyncio
    async def test_error_names_fields(self, users):
        with pytest.raises(LifecycleFieldError) as exc_info:
            await users.update_active({}, {"$set": {"deleted": True}})

        assert exc_info.value.fields == ["deleted"]
        assert "soft_delete()" in str(exc_info.value)


class TestEntityIdValidation:
    """Test that ids which cannot travel in a purge task are rejected early."""

    @pytest.mark.asyncio
    async def test_uuid_and_datetime_ids_accepted(self, users, clock):
        user_id = uuid.uuid4()
        assert await users.insert_one({"_id": user_id}) == user_id
        assert await users.insert_one({"_id": clock.now}) == clock.now

        deleted = await users.soft_delete(user_id)

        assert deleted["deleted"] is True

    @pytest.mark.asyncio
    async def test_unsupported_id_rejected_at_insert(self, users):
        with pytest.raises(UnsupportedEntityIdError, match="tuple"):
            await users.insert_one({"_id": ("tenant", 7)})
        with pytest.raises(UnsupportedEntityIdError):
            await users.insert_many([{"_id": "ok"}, {"_id": True}])

        assert await users.count(options=QueryOptions.with_deleted()) == 0

    @pytest.mark.asyncio
    async def test_soft_delete_of_unsupported_id_leaves_entity_active(self, database):
        listener = AsyncMock()
        users = with_soft_delete(database.collection("users"), [listener])
        await users.raw_collection.insert_one(
            {"_id": ("tenant", 7), "deleted": False, "deletedAt": None}
        )

        with pytest.raises(UnsupportedEntityIdError):
            await users.soft_delete(("tenant", 7))

        stored = await users.find_by_id(("tenant", 7))
        assert stored["deleted"] is False
        listener.on_soft_deleted.assert_not_awaited()


class TestEntityIdEncoding:
    """Test the JSON-safe id encoding used in purge task payloads."""

    def test_plain_ids_pass_through(self):
        assert encode_entity_id("65f0c2a1") == "65f0c2a1"
        assert encode_entity_id(42) == 42
        assert decode_entity_id("65f0c2a1") == "65f0c2a1"

    def test_tagged_ids_decode_to_equal_values(self, clock):
        user_id = uuid.UUID("12345678-1234-5678-1234-567812345678")
        encoded = encode_entity_id(user_id)

        assert encoded == {"$uuid": "12345678-1234-5678-1234-567812345678"}
        assert json.loads(json.dumps(encoded)) == encoded
        assert decode_entity_id(encoded) == user_id
        assert decode_entity_id(encode_entity_id(clock.now)) == clock.now
        assert encode_entity_id(b"\x00\xff") == {"$binary": "00ff"}

    def test_unknown_encodings_rejected(self):
        with pytest.raises(ValueError):
            decode_entity_id({"$oid": "65f0c2a1"})
        with pytest.raises(ValueError):
            decode_entity_id({"$uuid": "not-a-uuid"})
        with pytest.raises(ValueError):
            decode_entity_id(False)


class TestLifecycleListeners:
    """Test listener notification."""

    @pytest.mark.asyncio
    async def test_listeners_are_awaited(self, database, clock):
        listener = AsyncMock()
        users = with_soft_delete(database.collection("users"), [listener], clock=clock)
        user_id = await users.insert_one({"n": 1})

        await users.soft_delete(user_id)
        await users.restore(user_id)

        listener.on_soft_deleted.assert_awaited_once()
        assert listener.on_soft_deleted.await_args.args[0] == "users"
        assert listener.on_soft_deleted.await_args.args[1]["_id"] == user_id
        listener.on_restored.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_notification_when_nothing_changed(self, database, clock):
        listener = AsyncMock()
        users = with_soft_delete(database.collection("users"), [listener], clock=clock)

        await users.soft_delete("missing")

        listener.on_soft_deleted.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_listener_errors_propagate(self, database, clock):
        listener = AsyncMock()
        listener.on_soft_deleted.side_effect = RuntimeError("queue down")
        users = with_soft_delete(database.collection("users"), [listener], clock=clock)
        user_id = await users.insert_one({"n": 1})

        with pytest.raises(RuntimeError, match="queue down"):
            await users.soft_delete(user_id)


class TestSoftDeleteService:
    """Test the service registry and its operations."""

    def test_register_and_get(self, service, database):
        users = service.register(database.collection("users"))

        assert isinstance(users, SoftDeleteCollection)
        assert service.get("users") is users
        assert service.entity_types() == ["users"]

    def test_register_twice_fails(self, service, database):
        service.register(database.collection("users"))
        with pytest.raises(ValueError):
            service.register(database.collection("users"))

    def test_unknown_entity_type(self, service):
        with pytest.raises(UnknownEntityTypeError):
            service.get("ghosts")

    def test_listener_added_later_reaches_collections(self, service, database):
        users = service.register(database.collection("users"))
        listener = AsyncMock()

        service.add_listener(listener)

        assert listener in users._listeners

    @pytest.mark.asyncio
    async def test_delete_and_restore_entity(self, service, database):
        users = service.register(database.collection("users"))
        user_id = await users.insert_one({"n": 1})

        await service.delete_entity("users", user_id)
        assert await users.find_by_id(user_id) is None

        await service.restore_entity("users", user_id)
        assert await users.find_by_id(user_id) is not None

    @pytest.mark.asyncio
    async def test_missing_entity_raises(self, service, database):
        service.register(database.collection("users"))

        with pytest.raises(EntityNotFoundError):
            await service.delete_entity("users", "missing")
        with pytest.raises(EntityNotFoundError):
            await service.restore_entity("users", "missing")

    @pytest.mark.asyncio
    async def test_get_deleted_entities(self, service, database, clock):
        users = service.register(database.collection("users"))
        ids = [await users.insert_one({"n": n}) for n in range(3)]
        for user_id in ids:
            await users.soft_delete(user_id)
            clock.advance(days=1)

        newest_first = await service.get_deleted_entities("users")
        assert [doc["_id"] for doc in newest_first] == list(reversed(ids))

        window = await service.get_deleted_entities(
            "users",
            {"deleted_after": clock.now - timedelta(days=2, hours=1)},
            limit=10,
        )
        assert [doc["_id"] for doc in window] == [ids[2], ids[1]]

        page = await service.get_deleted_entities("users", limit=1, offset=1)
        assert [doc["_id"] for doc in page] == [ids[1]]

    @pytest.mark.asyncio
    async def test_deletion_report(self, service, database, clock):
        users = service.register(database.collection("users"))
        await users.insert_one({"n": 0})
        old = await users.insert_one({"n": 1})
        await users.soft_delete(old)
        clock.advance(days=31)
        recent = await users.insert_one({"n": 2})
        await users.soft_delete(recent)

        report = await service.generate_deletion_report()

        stats = report.by_type["users"]
        assert (stats.active, stats.deleted, stats.overdue) == (1, 2, 1)
        assert report.total_deleted == 2
        assert report.total_overdue == 1
        assert report.retention_days == 30

    def test_purge_cutoff(self, service, clock):
        assert service.purge_cutoff() == clock.now - timedelta(days=30)
