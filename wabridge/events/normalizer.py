# =============================================================================
# File: wabridge/events/normalizer.py
# Description: Event normalizer (raw upstream batches -> NormalizedEvent)
# =============================================================================

"""
Event Normalizer

Turns raw upstream batches into NormalizedEvents keyed by EventKind.

Append-like kinds (messages.upsert, call, ...) are ready immediately.
Mergeable kinds go through a buffer slot per buffer group key
(instance|kind|subject[|discriminator]) with a small state machine:

    IDLE --ingest--> ACCUMULATING --flush signal--> EMITTED --ingest--> ACCUMULATING

Flush signals:
    - flush() (one key or all keys)
    - connection.update reaching "open"
    - idle timeout since the last accumulation (injectable clock)

Merge policy: deep merge, later fields overwrite earlier ones, a field that
is absent (or None) in a later update never erases an accumulated value.

Concurrency:
    - one threading.Lock per slot (single writer per key)
    - a registry lock held only to create or retire slots
    - a drain snapshots and resets a slot under its lock, so a field lands
      either in the drained event or in the next window, never both
"""

from __future__ import annotations

import copy
import threading
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Mapping, Optional

from wabridge.config.logging_config import get_logger
from wabridge.config.pipeline_config import PipelineConfig, get_pipeline_config
from wabridge.events.event_mappings import (
    EXTRACTION_ERRORS,
    UPSTREAM_EVENT_EXTRACTORS,
    ExtractedItem,
)
from wabridge.events.kinds import EventKind
from wabridge.events.types import NormalizedEvent, RawEvent, utc_now
from wabridge.identity.identifiers import Identifier
from wabridge.infra.metrics.pipeline_metrics import (
    record_buffer_merge,
    record_dropped_event,
    record_emitted_event,
    record_raw_event,
    wabridge_buffer_slots,
)

log = get_logger("wabridge.events.normalizer")

Extractor = Callable[[Any], List[ExtractedItem]]


class BufferState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    EMITTED = "emitted"


def deep_merge(target: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge `update` into `target` in place. None values count as absent."""
    for key, value in update.items():
        if value is None:
            continue
        current = target.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            deep_merge(current, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def buffer_group_key(instance: str, kind: EventKind, subject: Optional[Identifier],
                     discriminator: Optional[str] = None) -> str:
    parts = [instance, kind.value, subject.value if subject else "-"]
    if discriminator:
        parts.append(discriminator)
    return "|".join(parts)


class _BufferSlot:
    __slots__ = (
        "key", "kind", "subject", "instance", "lock", "state", "payload",
        "last_seen", "observed_at", "flush_requested", "retired",
    )

    def __init__(self, key: str, kind: EventKind, subject: Optional[Identifier], instance: str):
        self.key = key
        self.kind = kind
        self.subject = subject
        self.instance = instance
        self.lock = threading.Lock()
        self.state = BufferState.IDLE
        self.payload: Dict[str, Any] = {}
        self.last_seen = 0.0
        self.observed_at: Optional[datetime] = None
        self.flush_requested = False
        self.retired = False


class EventNormalizer:
    """
    Raw batch ingestion plus per-key buffering.

    ingest() never blocks on I/O. drain_ready() is a lazy generator; events
    not consumed before the generator is dropped stay available to the next
    drain.
    """

    def __init__(
            self,
            config: Optional[PipelineConfig] = None,
            clock: Callable[[], float] = time.monotonic,
            extractors: Optional[Mapping[str, Extractor]] = None,
    ):
        self._config = config or get_pipeline_config()
        self._clock = clock
        self._extractors = dict(extractors) if extractors is not None else UPSTREAM_EVENT_EXTRACTORS
        self._idle_timeout = self._config.buffer_idle_timeout_seconds

        self._slots: Dict[str, _BufferSlot] = {}
        self._registry_lock = threading.Lock()
        self._ready: Deque[NormalizedEvent] = deque()

        self._stats_lock = threading.Lock()
        self._stats: Dict[str, int] = {
            "ingested": 0,
            "dropped_unknown": 0,
            "dropped_malformed": 0,
            "merged": 0,
            "emitted": 0,
        }

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def ingest(self, raw: RawEvent) -> None:
        extractor = self._extractors.get(raw.event_type)
        record_raw_event(raw.event_type if extractor is not None else "unknown")
        if extractor is None:
            self._count("dropped_unknown")
            record_dropped_event("unknown_kind")
            log.debug(f"Dropped unknown upstream event type '{raw.event_type}'", extra={"instance": raw.instance})
            return

        try:
            items = extractor(raw.payload)
        except EXTRACTION_ERRORS as e:
            self._count("dropped_malformed")
            record_dropped_event("malformed")
            log.warning(
                f"Dropped malformed '{raw.event_type}' batch: {e}",
                extra={"instance": raw.instance},
            )
            return

        malformed = getattr(items, "malformed", 0)
        if malformed:
            self._count("dropped_malformed", malformed)
            record_dropped_event("malformed", malformed)
            log.warning(
                f"Dropped {malformed} malformed item(s) from '{raw.event_type}' batch",
                extra={"instance": raw.instance},
            )

        self._count("ingested")
        flush_all = False
        for item in items:
            if item.kind.mergeable:
                self._accumulate(raw, item)
            else:
                self._ready.append(NormalizedEvent(
                    kind=item.kind,
                    subject_id=item.subject,
                    payload=item.fields,
                    instance=raw.instance,
                    observed_at=raw.received_at,
                ))
            flush_all = flush_all or item.flush_signal

        if flush_all:
            marked = self.flush()
            log.debug(f"Connection open: {marked} buffered slot(s) marked for flush", extra={"instance": raw.instance})

    def _accumulate(self, raw: RawEvent, item: ExtractedItem) -> None:
        key = buffer_group_key(raw.instance, item.kind, item.subject, item.discriminator)
        while True:
            slot = self._slot_for(key, item, raw.instance)
            with slot.lock:
                if slot.retired:
                    continue
                if slot.state is BufferState.ACCUMULATING:
                    self._count("merged")
                    record_buffer_merge(item.kind.value)
                else:
                    slot.state = BufferState.ACCUMULATING
                    slot.payload = {}
                    slot.observed_at = raw.received_at
                deep_merge(slot.payload, item.fields)
                slot.last_seen = self._clock()
                return

    def _slot_for(self, key: str, item: ExtractedItem, instance: str) -> _BufferSlot:
        slot = self._slots.get(key)
        if slot is not None and not slot.retired:
            return slot
        with self._registry_lock:
            slot = self._slots.get(key)
            if slot is None or slot.retired:
                slot = _BufferSlot(key, item.kind, item.subject, instance)
                self._slots[key] = slot
                wabridge_buffer_slots.set(len(self._slots))
            return slot

    # -------------------------------------------------------------------------
    # Flush / drain
    # -------------------------------------------------------------------------

    def flush(self, key: Optional[str] = None) -> int:
        """Request a flush of one key (or every key). Returns slots marked."""
        if key is not None:
            slots = [self._slots[key]] if key in self._slots else []
        else:
            slots = list(self._slots.values())

        marked = 0
        for slot in slots:
            with slot.lock:
                if slot.state is BufferState.ACCUMULATING:
                    slot.flush_requested = True
                    marked += 1
        return marked

    def drain_ready(self) -> Iterator[NormalizedEvent]:
        """
        Yield events ready for resolution.

        Append-like events first (in arrival order), then buffered slots that
        received a flush signal or went idle. The set of candidates is fixed
        when the drain starts, so each call is finite.
        """
        for _ in range(len(self._ready)):
            try:
                event = self._ready.popleft()
            except IndexError:
                break
            self._count("emitted")
            record_emitted_event(event.kind.value)
            yield event

        now = self._clock()
        for slot in list(self._slots.values()):
            event = self._take(slot, now)
            if event is not None:
                self._count("emitted")
                record_emitted_event(event.kind.value)
                yield event

        self._prune()

    def _take(self, slot: _BufferSlot, now: float) -> Optional[NormalizedEvent]:
        with slot.lock:
            if slot.retired or slot.state is not BufferState.ACCUMULATING:
                return None
            if not slot.flush_requested and (now - slot.last_seen) < self._idle_timeout:
                return None
            payload, slot.payload = slot.payload, {}
            slot.state = BufferState.EMITTED
            slot.flush_requested = False
            observed_at = slot.observed_at or utc_now()

        return NormalizedEvent(
            kind=slot.kind,
            subject_id=slot.subject,
            payload=payload,
            instance=slot.instance,
            buffer_group_key=slot.key,
            observed_at=observed_at,
        )

    def _prune(self) -> None:
        if len(self._slots) <= self._config.prune_idle_slots_after:
            return
        with self._registry_lock:
            retired = 0
            for key, slot in list(self._slots.items()):
                with slot.lock:
                    if slot.state is BufferState.ACCUMULATING:
                        continue
                    slot.retired = True
                del self._slots[key]
                retired += 1
            wabridge_buffer_slots.set(len(self._slots))
        log.debug(f"Retired {retired} idle buffer slot(s)")

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def state_of(self, key: str) -> BufferState:
        slot = self._slots.get(key)
        if slot is None or slot.retired:
            return BufferState.IDLE
        return slot.state

    def pending_count(self) -> int:
        """Events ready now plus slots still accumulating."""
        accumulating = sum(1 for s in list(self._slots.values()) if s.state is BufferState.ACCUMULATING)
        return len(self._ready) + accumulating

    def diagnostics(self) -> Dict[str, int]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["buffer_slots"] = len(self._slots)
        stats["ready"] = len(self._ready)
        return stats

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] += amount
