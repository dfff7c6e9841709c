# =============================================================================
# File: wabridge/webhooks/dispatcher.py
# Description: Webhook dispatcher (normalized events -> subscribed recipients)
# =============================================================================

"""
Webhook Dispatcher

Delivers one resolved event to every enabled subscription whose
enabled_kinds contains the event kind (exact EventKind match).

Delivery:
    - one httpx POST per recipient, each with its own timeout
    - recipients are delivered concurrently, bounded by a semaphore
    - at most one retry, and only for transient failures
      (connect errors, timeouts, 429, 5xx); 4xx responses are permanent
    - every outcome is recorded in the DeliveryLog; failures go to the
      ErrorReporter and never affect other recipients or other events
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from wabridge.common.exceptions.exceptions import DeliveryError
from wabridge.config.logging_config import get_logger
from wabridge.config.webhook_config import WebhookConfig, get_webhook_config
from wabridge.events.kinds import EventKind
from wabridge.events.types import NormalizedEvent
from wabridge.infra.metrics.pipeline_metrics import record_delivery
from wabridge.infra.reliability.retry import mark_permanent, retry_async
from wabridge.webhooks.delivery_log import DeliveryLog, DeliveryOutcome, DeliveryStatus
from wabridge.webhooks.payloads import build_webhook_payload
from wabridge.webhooks.subscriptions import Subscription, SubscriptionSnapshot

log = get_logger("wabridge.webhooks.dispatcher")

# Group metadata stays deliverable when an instance ignores group traffic
_GROUP_METADATA_KINDS = frozenset({
    EventKind.GROUPS_UPSERT,
    EventKind.GROUPS_UPDATE,
    EventKind.GROUP_PARTICIPANTS_UPDATE,
})


class ErrorReporter(Protocol):
    """Receives every failed delivery."""

    def report(self, outcome: DeliveryOutcome, error: BaseException) -> None:
        ...


class LoggingErrorReporter:
    """Default reporter: one warning per failed delivery."""

    def report(self, outcome: DeliveryOutcome, error: BaseException) -> None:
        log.warning(
            f"Webhook delivery failed after {outcome.attempts} attempt(s): {error}",
            extra={
                "event_id": outcome.event_id,
                "event_kind": outcome.kind,
                "recipient_url": outcome.recipient_url,
            },
        )


def should_retry_delivery(error: Exception) -> bool:
    """Retry condition: transient delivery failures only."""
    if isinstance(error, DeliveryError):
        return error.transient
    return isinstance(error, (httpx.TimeoutException, httpx.TransportError))


def is_group_traffic(event: NormalizedEvent) -> bool:
    if event.kind in _GROUP_METADATA_KINDS:
        return False
    return event.subject_id is not None and event.subject_id.is_group


class WebhookDispatcher:
    """Delivers normalized events to subscribed recipients."""

    def __init__(
            self,
            client: Optional[httpx.AsyncClient] = None,
            config: Optional[WebhookConfig] = None,
            delivery_log: Optional[DeliveryLog] = None,
            error_reporter: Optional[ErrorReporter] = None,
    ):
        self._config = config or get_webhook_config()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self._config.request_timeout_seconds,
            headers={"User-Agent": self._config.user_agent},
        )
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_deliveries)
        self._retry_config = self._config.retry_config
        self._retry_config.retry_condition = should_retry_delivery
        self.delivery_log = delivery_log or DeliveryLog(self._config.delivery_log_size)
        self._reporter: ErrorReporter = error_reporter or LoggingErrorReporter()

    async def dispatch(
            self,
            event: NormalizedEvent,
            snapshot: SubscriptionSnapshot,
            sender: Optional[str] = None,
    ) -> List[DeliveryOutcome]:
        """Deliver to every matching subscription. Returns one outcome per recipient."""
        if snapshot.settings.ignore_groups and is_group_traffic(event):
            log.debug(f"Skipping group {event.kind.value} for instance {event.instance} (ignore_groups)")
            return []

        targets = snapshot.matching(event.kind)
        if not targets:
            return []

        payload = build_webhook_payload(event, sender)
        outcomes = await asyncio.gather(*(
            self._deliver(event, subscription, payload) for subscription in targets
        ))
        return list(outcomes)

    async def _deliver(self, event: NormalizedEvent, subscription: Subscription,
                       payload: Dict[str, Any]) -> DeliveryOutcome:
        url = subscription.target_url(event.kind)
        self.delivery_log.record(DeliveryOutcome(
            event_id=event.event_id,
            kind=event.kind.value,
            recipient_url=url,
            status=DeliveryStatus.ATTEMPTED,
        ))

        attempts = 0

        async def attempt() -> int:
            nonlocal attempts
            attempts += 1
            return await self._post(url, subscription, payload)

        start = time.monotonic()
        try:
            status_code = await retry_async(
                attempt,
                retry_config=self._retry_config,
                context=f"webhook {event.kind.value} -> {url}",
            )
            outcome = DeliveryOutcome(
                event_id=event.event_id,
                kind=event.kind.value,
                recipient_url=url,
                status=DeliveryStatus.DELIVERED,
                attempts=attempts,
                status_code=status_code,
            )
            log.debug(f"Delivered {event.kind.value} {event.event_id} to {url} ({status_code})")
        except DeliveryError as e:
            outcome = DeliveryOutcome(
                event_id=event.event_id,
                kind=event.kind.value,
                recipient_url=url,
                status=DeliveryStatus.FAILED,
                attempts=attempts,
                status_code=e.status_code,
                error=str(e),
            )
            self._reporter.report(outcome, e)

        record_delivery(event.kind.value, outcome.delivered, time.monotonic() - start)
        self.delivery_log.record(outcome)
        return outcome

    async def _post(self, url: str, subscription: Subscription, payload: Dict[str, Any]) -> int:
        async with self._semaphore:
            try:
                response = await self._client.post(
                    url,
                    json=payload,
                    headers=subscription.headers or None,
                    timeout=self._config.request_timeout_seconds,
                )
            except httpx.TimeoutException as e:
                raise DeliveryError(url, f"timeout: {e!r}", transient=True) from e
            except httpx.TransportError as e:
                raise DeliveryError(url, f"{type(e).__name__}: {e}", transient=True) from e
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise mark_permanent(DeliveryError(url, f"{type(e).__name__}: {e}", transient=False)) from e

        code = response.status_code
        if code == 429 or code >= 500:
            raise DeliveryError(url, f"HTTP {code}", status_code=code, transient=True)
        if code >= 400:
            raise mark_permanent(DeliveryError(url, f"HTTP {code}", status_code=code, transient=False))
        return code

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
