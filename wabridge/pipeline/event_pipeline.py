# =============================================================================
# File: wabridge/pipeline/event_pipeline.py
# Description: Event pipeline runtime (ingest -> normalize -> resolve -> dispatch)
# =============================================================================

"""
Event Pipeline

Wires the components for one instance:

    on_batch() -> EventNormalizer.ingest()            (sync, no I/O)
    flush loop -> drain_ready() -> IdentityResolver
               -> ReceiptSynchronizer (messages.update)
               -> bounded asyncio.Queue
    N workers  -> WebhookDispatcher.dispatch()

Ingestion never waits on dispatch: the queue decouples them, and a slow
recipient only occupies one worker at a time.

Usage:
    ```python
    pipeline = EventPipeline("main", normalizer, resolver, dispatcher, registry)
    await pipeline.start()
    socket.ev.process(pipeline.on_buffered_batch)
    ...
    await pipeline.stop()
    ```
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Mapping, Optional

from wabridge.config.logging_config import get_logger
from wabridge.config.pipeline_config import PipelineConfig, get_pipeline_config
from wabridge.events.kinds import EventKind
from wabridge.events.normalizer import EventNormalizer
from wabridge.events.types import NormalizedEvent, RawEvent
from wabridge.identity.resolver import IdentityResolver
from wabridge.infra.metrics.pipeline_metrics import wabridge_dispatch_queue_size
from wabridge.pipeline.receipts import ReceiptSynchronizer
from wabridge.webhooks.dispatcher import WebhookDispatcher
from wabridge.webhooks.subscriptions import SubscriptionRegistry

log = get_logger("wabridge.pipeline.event_pipeline")


class EventPipeline:
    """Runtime for one instance's event stream."""

    def __init__(
            self,
            instance: str,
            normalizer: EventNormalizer,
            resolver: IdentityResolver,
            dispatcher: WebhookDispatcher,
            subscriptions: SubscriptionRegistry,
            receipts: Optional[ReceiptSynchronizer] = None,
            config: Optional[PipelineConfig] = None,
    ):
        self.instance = instance
        self._normalizer = normalizer
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._subscriptions = subscriptions
        self._receipts = receipts
        self._config = config or get_pipeline_config()

        self._queue: "asyncio.Queue[NormalizedEvent]" = asyncio.Queue(maxsize=self._config.dispatch_queue_size)
        self._tasks: List[asyncio.Task] = []
        self._flush_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._running = False
        self._sender: Optional[str] = None
        self.sync_failures = 0

    @property
    def sender(self) -> Optional[str]:
        """The instance's own identity, learned from connection.update."""
        return self._sender

    def set_sender(self, sender: Optional[str]) -> None:
        self._sender = sender

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Upstream interface
    # -------------------------------------------------------------------------

    def on_batch(self, event_type: str, payload: Any) -> None:
        """Entry point for the upstream event source."""
        self._normalizer.ingest(RawEvent(instance=self.instance, event_type=event_type, payload=payload))

    def on_buffered_batch(self, events: Mapping[str, Any]) -> None:
        """Entry point for upstream libraries that deliver {event_type: payload} maps."""
        for event_type, payload in events.items():
            self.on_batch(event_type, payload)

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process_ready(self) -> int:
        """Drain the normalizer once, resolve and enqueue. Returns events enqueued."""
        enqueued = 0
        for event in self._normalizer.drain_ready():
            for ready in await self._prepare(event):
                await self._queue.put(ready)
                enqueued += 1
            wabridge_dispatch_queue_size.set(self._queue.qsize())
        return enqueued

    async def _prepare(self, event: NormalizedEvent) -> List[NormalizedEvent]:
        resolved = await self._resolver.resolve(event)

        if resolved.kind is EventKind.CONNECTION_UPDATE:
            wuid = resolved.payload.get("wuid")
            if wuid:
                self._sender = wuid

        if self._receipts is None or resolved.kind is not EventKind.MESSAGES_UPDATE:
            return [resolved]

        result = await self._receipts.synchronize(resolved)
        if not result.ok:
            self.sync_failures += 1
            log.warning(
                f"Dispatching {resolved.kind.value} {resolved.event_id} without store sync: {result.reason}",
                extra={"instance": self.instance, "event_id": resolved.event_id},
            )
        return [result.event, *result.derived_events]

    async def _dispatch_worker(self, worker_id: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                snapshot = self._subscriptions.current(event.instance)
                await self._dispatcher.dispatch(event, snapshot, sender=self._sender)
            except Exception as e:
                log.error(
                    f"Dispatch worker {worker_id} failed on {event.kind.value} {event.event_id}: {e}",
                    exc_info=True,
                    extra={"instance": self.instance, "event_id": event.event_id},
                )
            finally:
                self._queue.task_done()
                wabridge_dispatch_queue_size.set(self._queue.qsize())

    async def _flush_loop(self) -> None:
        interval = self._config.flush_interval_seconds
        while not self._stopping.is_set():
            try:
                await self.process_ready()
            except Exception as e:
                log.error(f"Flush loop iteration failed: {e}", exc_info=True, extra={"instance": self.instance})
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopping.clear()
        for worker_id in range(self._config.dispatch_workers):
            self._tasks.append(asyncio.create_task(
                self._dispatch_worker(worker_id), name=f"wabridge-dispatch-{self.instance}-{worker_id}"
            ))
        self._flush_task = asyncio.create_task(self._flush_loop(), name=f"wabridge-flush-{self.instance}")
        log.info(
            f"Event pipeline started for instance '{self.instance}' "
            f"({self._config.dispatch_workers} dispatch workers)"
        )

    async def join(self) -> None:
        """Wait until every queued event has been dispatched."""
        await self._queue.join()

    async def stop(self) -> None:
        """
        Let the flush loop finish the events it already drained, flush buffered
        events, wait for the queue to drain, then stop workers.
        """
        if not self._running:
            return
        self._running = False
        timeout = self._config.shutdown_timeout_seconds

        self._stopping.set()
        if self._flush_task is not None:
            try:
                await asyncio.wait_for(self._flush_task, timeout=timeout)
            except asyncio.TimeoutError:
                log.warning(
                    "Shutdown timeout: flush loop still resolving, drained events abandoned",
                    extra={"instance": self.instance},
                )
            self._flush_task = None

        self._normalizer.flush()
        await self.process_ready()
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(
                f"Shutdown timeout: {self._queue.qsize()} event(s) left undispatched",
                extra={"instance": self.instance},
            )

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        log.info(f"Event pipeline stopped for instance '{self.instance}'")
