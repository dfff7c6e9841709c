import json

import httpx
import pytest

from tests.fakes.builders import INSTANCE, group, phone
from wabridge.common.exceptions.exceptions import DeliveryError
from wabridge.events.kinds import EventKind
from wabridge.events.types import NormalizedEvent
from wabridge.webhooks.delivery_log import DeliveryStatus
from wabridge.webhooks.dispatcher import WebhookDispatcher, should_retry_delivery
from wabridge.webhooks.subscriptions import load_subscription_snapshot


class Recipient:
    """MockTransport handler with scripted responses per URL."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        script = self.responses.get(str(request.url))
        result = script.pop(0) if script else 200
        if isinstance(result, Exception):
            raise result
        return httpx.Response(result)

    def urls(self):
        return [str(r.url) for r in self.requests]


class RecordingReporter:
    def __init__(self):
        self.reports = []

    def report(self, outcome, error):
        self.reports.append((outcome, error))


def snapshot(*subscriptions, ignore_groups=False):
    return load_subscription_snapshot({
        "instance": INSTANCE,
        "settings": {"ignore_groups": ignore_groups},
        "subscriptions": list(subscriptions),
    })


def event(kind=EventKind.GROUPS_UPDATE, subject=None, payload=None):
    return NormalizedEvent(
        kind=kind,
        subject_id=subject,
        payload=payload or {"id": "120363041234567890@g.us", "subject": "Team"},
        instance=INSTANCE,
    )


@pytest.fixture
def recipient():
    return Recipient()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def dispatcher(recipient, reporter, webhook_config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recipient))
    return WebhookDispatcher(client=client, config=webhook_config, error_reporter=reporter)


@pytest.mark.asyncio
async def test_delivers_only_to_exact_kind_subscribers(dispatcher, recipient):
    subs = snapshot(
        {"recipient_url": "https://a.example/hook", "enabled_kinds": ["groups.update"]},
        {"recipient_url": "https://b.example/hook", "enabled_kinds": ["groups.upsert", "group-participants.update"]},
    )

    outcomes = await dispatcher.dispatch(event(), subs, sender="5511999999999@s.whatsapp.net")

    assert recipient.urls() == ["https://a.example/hook"]
    assert [o.status for o in outcomes] == [DeliveryStatus.DELIVERED]
    body = json.loads(recipient.requests[0].content)
    assert body["event"] == "groups.update"
    assert body["sender"] == "5511999999999@s.whatsapp.net"
    assert body["data"]["subject"] == "Team"


@pytest.mark.asyncio
async def test_unsubscribed_kind_is_not_delivered(dispatcher, recipient):
    subs = snapshot({"recipient_url": "https://a.example/hook", "enabled_kinds": ["messages.upsert"]})

    assert await dispatcher.dispatch(event(), subs) == []
    assert recipient.requests == []


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once(dispatcher, recipient):
    recipient.responses["https://a.example/hook"] = [503, 200]
    subs = snapshot({"recipient_url": "https://a.example/hook", "enabled_kinds": ["groups.update"]})

    [outcome] = await dispatcher.dispatch(event(), subs)

    assert outcome.delivered
    assert outcome.attempts == 2
    assert len(recipient.requests) == 2


@pytest.mark.asyncio
async def test_persistent_transient_failure_gives_up_after_one_retry(dispatcher, recipient, reporter):
    recipient.responses["https://a.example/hook"] = [500, 502, 200]
    subs = snapshot({"recipient_url": "https://a.example/hook", "enabled_kinds": ["groups.update"]})

    [outcome] = await dispatcher.dispatch(event(), subs)

    assert outcome.status is DeliveryStatus.FAILED
    assert outcome.attempts == 2
    assert outcome.status_code == 502
    assert len(reporter.reports) == 1


@pytest.mark.asyncio
async def test_client_error_is_not_retried(dispatcher, recipient, reporter):
    recipient.responses["https://a.example/hook"] = [404]
    subs = snapshot({"recipient_url": "https://a.example/hook", "enabled_kinds": ["groups.update"]})

    [outcome] = await dispatcher.dispatch(event(), subs)

    assert outcome.status is DeliveryStatus.FAILED
    assert outcome.attempts == 1
    assert outcome.status_code == 404
    assert reporter.reports[0][0] is outcome


@pytest.mark.asyncio
async def test_timeout_is_retried_then_reported(dispatcher, recipient, reporter):
    recipient.responses["https://a.example/hook"] = [
        httpx.ReadTimeout("slow"), httpx.ReadTimeout("slow"),
    ]
    subs = snapshot({"recipient_url": "https://a.example/hook", "enabled_kinds": ["groups.update"]})

    [outcome] = await dispatcher.dispatch(event(), subs)

    assert outcome.status is DeliveryStatus.FAILED
    assert outcome.attempts == 2
    assert "timeout" in outcome.error


@pytest.mark.asyncio
async def test_one_failing_recipient_does_not_affect_others(dispatcher, recipient):
    recipient.responses["https://a.example/hook"] = [httpx.ConnectError("refused")] * 2
    subs = snapshot(
        {"recipient_url": "https://a.example/hook", "enabled_kinds": ["groups.update"]},
        {"recipient_url": "https://b.example/hook", "enabled_kinds": ["groups.update"]},
    )

    outcomes = await dispatcher.dispatch(event(), subs)

    by_url = {o.recipient_url: o for o in outcomes}
    assert by_url["https://a.example/hook"].status is DeliveryStatus.FAILED
    assert by_url["https://b.example/hook"].delivered


@pytest.mark.asyncio
async def test_delivery_log_is_queryable_by_event(dispatcher, recipient):
    recipient.responses["https://b.example/hook"] = [400]
    subs = snapshot(
        {"recipient_url": "https://a.example/hook", "enabled_kinds": ["groups.update"]},
        {"recipient_url": "https://b.example/hook", "enabled_kinds": ["groups.update"]},
    )
    delivered = event()

    await dispatcher.dispatch(delivered, subs)

    log = dispatcher.delivery_log
    assert log.status_of(delivered.event_id) is DeliveryStatus.FAILED
    assert {o.recipient_url: o.status for o in log.get(delivered.event_id)} == {
        "https://a.example/hook": DeliveryStatus.DELIVERED,
        "https://b.example/hook": DeliveryStatus.FAILED,
    }


@pytest.mark.asyncio
async def test_by_events_appends_kind_to_url(dispatcher, recipient):
    subs = snapshot({
        "recipient_url": "https://a.example/hook",
        "enabled_kinds": ["group-participants.update"],
        "by_events": True,
    })
    participants = event(kind=EventKind.GROUP_PARTICIPANTS_UPDATE, subject=group("120363041234567890"),
                         payload={"id": "120363041234567890@g.us", "action": "add", "participants": []})

    await dispatcher.dispatch(participants, subs)

    assert recipient.urls() == ["https://a.example/hook/group-participants-update"]


@pytest.mark.asyncio
async def test_custom_headers_are_sent(dispatcher, recipient):
    subs = snapshot({
        "recipient_url": "https://a.example/hook",
        "enabled_kinds": ["groups.update"],
        "headers": {"Authorization": "Bearer t0ken"},
    })

    await dispatcher.dispatch(event(), subs)

    assert recipient.requests[0].headers["Authorization"] == "Bearer t0ken"


@pytest.mark.asyncio
async def test_ignore_groups_skips_group_messages_but_not_group_metadata(dispatcher, recipient):
    subs = snapshot(
        {"recipient_url": "https://a.example/hook", "enabled_kinds": ["messages.upsert", "groups.update"]},
        ignore_groups=True,
    )
    group_message = event(kind=EventKind.MESSAGES_UPSERT, subject=group("120363041234567890"),
                          payload={"key": {"remoteJid": "120363041234567890@g.us"}})
    direct_message = event(kind=EventKind.MESSAGES_UPSERT, subject=phone("5511999999999"),
                           payload={"key": {"remoteJid": "5511999999999@s.whatsapp.net"}})

    assert await dispatcher.dispatch(group_message, subs) == []
    await dispatcher.dispatch(direct_message, subs)
    await dispatcher.dispatch(event(subject=group("120363041234567890")), subs)

    assert len(recipient.requests) == 2


def test_retry_condition_classifies_failures():
    assert should_retry_delivery(DeliveryError("https://x", "HTTP 503", status_code=503, transient=True))
    assert not should_retry_delivery(DeliveryError("https://x", "HTTP 404", status_code=404, transient=False))
    assert should_retry_delivery(httpx.ConnectTimeout("t"))
    assert not should_retry_delivery(ValueError("x"))
