import pytest

from tests.fakes.builders import opaque, phone
from wabridge.events.types import MessageStatus
from wabridge.infra.persistence.message_query_adapter import MessageQueryAdapter, MessageReference

pytestmark = pytest.mark.integration

CHAT = "5511999999999@s.whatsapp.net"


def key(message_id, from_me=False, chat=CHAT, **extra):
    return {"remoteJid": chat, "fromMe": from_me, "id": message_id, **extra}


@pytest.fixture
def adapter(db, message_table):
    return MessageQueryAdapter(db)


@pytest.mark.asyncio
async def test_find_message_by_key(adapter, message_table):
    await message_table("row-1", key("A"), 100, status="DELIVERY_ACK")
    await message_table("row-2", key("A", from_me=True), 110)

    found = await adapter.find_message_by_key(MessageReference("main", phone("5511999999999"), "A", from_me=False))

    assert found.id == "row-1"
    assert found.key["id"] == "A"
    assert found.message_timestamp == 100
    assert found.status == "DELIVERY_ACK"
    assert found.message == {"conversation": "hi"}


@pytest.mark.asyncio
async def test_find_message_matches_alternate_chat_id(adapter, message_table):
    await message_table("row-1", key("A", chat="123@lid", remoteJidAlt=CHAT), 100)

    found = await adapter.find_message_by_key(MessageReference("main", phone("5511999999999"), "A", from_me=False))
    by_opaque = await adapter.find_message_by_key(MessageReference("main", opaque("123"), "A", from_me=False))

    assert found.id == by_opaque.id == "row-1"


@pytest.mark.asyncio
async def test_find_message_respects_instance_scope(adapter, message_table):
    await message_table("row-1", key("A"), 100, instance="other")

    assert await adapter.find_message_by_key(
        MessageReference("main", phone("5511999999999"), "A", from_me=False)
    ) is None


@pytest.mark.asyncio
async def test_string_and_native_booleans_compare_the_same(adapter, message_table):
    await message_table("row-native", key("A", from_me=False), 100, status="DELIVERY_ACK")
    await message_table("row-string", key("B", from_me="false"), 100, status="DELIVERY_ACK")
    await message_table("row-mine", key("C", from_me="true"), 100, status="DELIVERY_ACK")

    unread = await adapter.count_unread(phone("5511999999999"), MessageStatus.DELIVERY_ACK, instance_scope="main")
    mine = await adapter.find_message_by_key(MessageReference("main", phone("5511999999999"), "C", from_me=True))

    assert unread == 2
    assert mine.id == "row-mine"


@pytest.mark.asyncio
async def test_update_status_up_to_timestamp(adapter, message_table):
    await message_table("r1", key("m1"), 100)
    await message_table("r2", key("m2"), 200, status="DELIVERY_ACK")
    await message_table("r3", key("m3"), 300, status="SERVER_ACK")
    await message_table("r4", key("m4"), 400, status="DELIVERY_ACK")
    await message_table("r5", key("m5", from_me=True), 150, status="DELIVERY_ACK")

    updated = await adapter.update_status_for_chat_up_to_timestamp(
        phone("5511999999999"), 300, MessageStatus.READ,
        [None, MessageStatus.DELIVERY_ACK], instance_scope="main",
    )

    assert updated == 2
    assert await adapter.count_unread(phone("5511999999999"), MessageStatus.READ, instance_scope="main") == 2
    assert await adapter.count_unread(phone("5511999999999"), MessageStatus.DELIVERY_ACK, instance_scope="main") == 1
    assert await adapter.count_unread(phone("5511999999999"), None, instance_scope="main") == 0


@pytest.mark.asyncio
async def test_update_with_no_status_filter_is_a_no_op(adapter, message_table):
    await message_table("r1", key("m1"), 100)

    assert await adapter.update_status_for_chat_up_to_timestamp(
        phone("5511999999999"), 300, MessageStatus.READ, [], instance_scope="main",
    ) == 0
