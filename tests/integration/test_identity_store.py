import pytest
import pytest_asyncio

from tests.fakes.builders import opaque, phone
from wabridge.identity.cache import IdentityCache
from wabridge.identity.records import IdentityRecord
from wabridge.identity.store import SqlIdentityStore

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def store(db):
    store = SqlIdentityStore(db)
    await store.ensure_schema()
    return store


@pytest.mark.asyncio
async def test_save_and_load_by_any_identifier(store):
    record = IdentityRecord(phone("5511999999999"), frozenset({opaque("123")}), "Ana")
    await store.save(record)

    assert await store.load(phone("5511999999999")) == record
    assert await store.load(opaque("123")) == record
    assert await store.load(opaque("999")) is None


@pytest.mark.asyncio
async def test_save_is_idempotent_and_moves_aliases(store):
    await store.save(IdentityRecord(phone("5511111111111"), frozenset({opaque("123")})))
    await store.save(IdentityRecord(phone("5511111111111"), frozenset({opaque("123")})))
    await store.save(IdentityRecord(phone("5522222222222"), frozenset({opaque("123")})))

    owner = await store.load(opaque("123"))
    assert owner.canonical_id == phone("5522222222222")


@pytest.mark.asyncio
async def test_delete_removes_record(store):
    await store.save(IdentityRecord(phone("5511111111111")))
    await store.delete(phone("5511111111111"))

    assert await store.load(phone("5511111111111")) is None


@pytest.mark.asyncio
async def test_cache_survives_restart(store):
    cache = IdentityCache(store)
    await cache.upsert(phone("5511999999999"), opaque("123"), "Ana")

    restarted = IdentityCache(store)
    record = await restarted.resolve(opaque("123"))

    assert record.canonical_id == phone("5511999999999")
    assert record.display_name == "Ana"


@pytest.mark.asyncio
async def test_merge_is_persisted(store):
    cache = IdentityCache(store)
    await cache.upsert(phone("5522222222222"), opaque("999"))
    await cache.upsert(phone("5511111111111"), phone("5522222222222"))

    restarted = IdentityCache(store)
    record = await restarted.resolve(opaque("999"))

    assert record.canonical_id == phone("5511111111111")
    assert record.alternate_ids == {phone("5522222222222"), opaque("999")}
