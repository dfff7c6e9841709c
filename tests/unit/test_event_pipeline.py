import asyncio
import json

import httpx
import pytest

from tests.fakes.builders import INSTANCE, upstream_message
from tests.fakes.fake_identity_store import FakeIdentityStore
from tests.fakes.fake_message_store import FakeMessageStore
from wabridge.events.normalizer import EventNormalizer
from wabridge.identity.cache import IdentityCache
from wabridge.identity.resolver import IdentityResolver
from wabridge.infra.persistence.message_query_adapter import StoredMessage
from wabridge.pipeline.event_pipeline import EventPipeline
from wabridge.pipeline.receipts import ReceiptSynchronizer
from wabridge.webhooks.dispatcher import WebhookDispatcher
from wabridge.webhooks.subscriptions import SubscriptionRegistry

ALL_KINDS = [
    "messages.upsert", "messages.update", "chats.update", "connection.update",
    "contacts.update", "groups.update", "call",
]


class Collector:
    def __init__(self):
        self.bodies = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return httpx.Response(200)

    def events(self):
        return [b["event"] for b in self.bodies]


@pytest.fixture
def collector():
    return Collector()


@pytest.fixture
def message_store():
    return FakeMessageStore()


@pytest.fixture
def pipeline(pipeline_config, webhook_config, clock, collector, message_store):
    registry = SubscriptionRegistry()
    registry.load({
        "instance": INSTANCE,
        "subscriptions": [{"recipient_url": "https://hooks.example.org/wa", "enabled_kinds": ALL_KINDS}],
    })
    dispatcher = WebhookDispatcher(
        client=httpx.AsyncClient(transport=httpx.MockTransport(collector)),
        config=webhook_config,
    )
    return EventPipeline(
        INSTANCE,
        EventNormalizer(config=pipeline_config, clock=clock),
        IdentityResolver(IdentityCache()),
        dispatcher,
        registry,
        receipts=ReceiptSynchronizer(message_store),
        config=pipeline_config,
    )


@pytest.mark.asyncio
async def test_messages_flow_to_subscribers_with_canonical_ids(pipeline, collector):
    await pipeline.start()
    pipeline.on_batch("messages.upsert", {"messages": [
        upstream_message("123@lid", "A", remoteJidAlt="5511999999999@s.whatsapp.net"),
    ]})
    pipeline.on_batch("messages.upsert", {"messages": [upstream_message("123@lid", "B")]})
    await pipeline.stop()

    assert collector.events() == ["messages.upsert", "messages.upsert"]
    assert {b["data"]["key"]["remoteJid"] for b in collector.bodies} == {"5511999999999@s.whatsapp.net"}
    assert {b["data"]["key"]["id"] for b in collector.bodies} == {"A", "B"}


@pytest.mark.asyncio
async def test_connection_open_flushes_buffers_and_sets_sender(pipeline, collector):
    await pipeline.start()
    pipeline.on_batch("contacts.update", [{"id": "5511888888888@s.whatsapp.net", "notify": "Bia"}])
    pipeline.on_batch("contacts.update", [{"id": "5511888888888@s.whatsapp.net", "imgUrl": "changed"}])
    pipeline.on_buffered_batch({
        "connection.update": {"connection": "open", "wuid": "5511777777777@s.whatsapp.net"},
    })
    await pipeline.stop()

    assert sorted(collector.events()) == ["connection.update", "contacts.update"]
    assert pipeline.sender == "5511777777777@s.whatsapp.net"
    contacts = next(b for b in collector.bodies if b["event"] == "contacts.update")
    assert contacts["data"] == {"id": "5511888888888@s.whatsapp.net", "notify": "Bia"}


@pytest.mark.asyncio
async def test_sender_is_attached_to_later_events(pipeline, collector):
    pipeline.set_sender("5511777777777@s.whatsapp.net")
    await pipeline.start()
    pipeline.on_batch("call", [{"id": "c1", "from": "5511999999999@s.whatsapp.net", "status": "offer"}])
    await pipeline.stop()

    [body] = collector.bodies
    assert body["event"] == "call"
    assert body["sender"] == "5511777777777@s.whatsapp.net"


@pytest.mark.asyncio
async def test_read_receipt_derives_unread_count(pipeline, collector, message_store):
    chat = "5511999999999@s.whatsapp.net"
    for message_id, ts in (("m1", 100), ("m2", 200)):
        message_store.add(StoredMessage(
            id=f"row-{message_id}", instance_id=INSTANCE,
            key={"remoteJid": chat, "fromMe": False, "id": message_id},
            message_timestamp=ts, status="DELIVERY_ACK",
        ))

    await pipeline.start()
    pipeline.on_batch("messages.update", [
        {"key": {"remoteJid": chat, "fromMe": False, "id": "m1"}, "update": {"status": 4}},
    ])
    await pipeline.stop()

    by_kind = {b["event"]: b["data"] for b in collector.bodies}
    assert by_kind["messages.update"]["messageId"] == "row-m1"
    assert by_kind["chats.update"] == {"id": chat, "unreadMessages": 1}


@pytest.mark.asyncio
async def test_store_failure_still_dispatches(pipeline, collector, message_store):
    message_store.set_failure("find_message_by_key")

    await pipeline.start()
    pipeline.on_batch("messages.update", [
        {"key": {"remoteJid": "5511999999999@s.whatsapp.net", "fromMe": False, "id": "m1"},
         "update": {"status": 4}},
    ])
    await pipeline.stop()

    assert collector.events() == ["messages.update"]
    assert pipeline.sync_failures == 1


@pytest.mark.asyncio
async def test_unknown_and_malformed_batches_are_dropped(pipeline, collector):
    await pipeline.start()
    pipeline.on_batch("bogus.event", {"x": 1})
    pipeline.on_batch("presence.update", {"presences": {}})
    pipeline.on_batch("call", [{"id": "c1", "from": "5511999999999@s.whatsapp.net"}])
    await pipeline.stop()

    assert collector.events() == ["call"]
    assert not pipeline.running


@pytest.mark.asyncio
async def test_stop_waits_for_event_already_in_resolution(
        pipeline_config, webhook_config, clock, collector):
    store = FakeIdentityStore()
    store.set_load_delay(0.3)
    registry = SubscriptionRegistry()
    registry.load({
        "instance": INSTANCE,
        "subscriptions": [{"recipient_url": "https://hooks.example.org/wa", "enabled_kinds": ALL_KINDS}],
    })
    pipeline = EventPipeline(
        INSTANCE,
        EventNormalizer(config=pipeline_config, clock=clock),
        IdentityResolver(IdentityCache(store)),
        WebhookDispatcher(
            client=httpx.AsyncClient(transport=httpx.MockTransport(collector)),
            config=webhook_config,
        ),
        registry,
        config=pipeline_config,
    )

    await pipeline.start()
    pipeline.on_batch("messages.upsert", {"messages": [upstream_message("5511999999999@s.whatsapp.net", "A")]})
    await asyncio.sleep(0.05)
    assert store.was_called("load")
    await pipeline.stop()

    assert collector.events() == ["messages.upsert"]
    assert collector.bodies[0]["data"]["key"]["id"] == "A"
