# =============================================================================
# File: wabridge/webhooks/delivery_log.py
# Description: Bounded, queryable record of webhook delivery outcomes
# =============================================================================

"""
Delivery Log

Answers "was this event attempted, delivered or failed, and where?" for
operational debugging. Keeps the outcomes of the most recent N events.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from wabridge.events.types import utc_now


class DeliveryStatus(str, Enum):
    ATTEMPTED = "attempted"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class DeliveryOutcome:
    """Result of delivering one event to one recipient."""
    event_id: str
    kind: str
    recipient_url: str
    status: DeliveryStatus
    attempts: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    recorded_at: datetime = field(default_factory=utc_now)

    @property
    def delivered(self) -> bool:
        return self.status is DeliveryStatus.DELIVERED


class DeliveryLog:
    """Outcomes keyed by event id, then recipient URL (oldest events evicted first)."""

    def __init__(self, capacity: int = 10000):
        self._capacity = max(1, capacity)
        self._entries: "OrderedDict[str, Dict[str, DeliveryOutcome]]" = OrderedDict()
        self._lock = threading.Lock()

    def record(self, outcome: DeliveryOutcome) -> None:
        with self._lock:
            per_event = self._entries.get(outcome.event_id)
            if per_event is None:
                per_event = {}
                self._entries[outcome.event_id] = per_event
            else:
                self._entries.move_to_end(outcome.event_id)
            per_event[outcome.recipient_url] = outcome
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)

    def get(self, event_id: str) -> List[DeliveryOutcome]:
        with self._lock:
            return list(self._entries.get(event_id, {}).values())

    def status_of(self, event_id: str) -> Optional[DeliveryStatus]:
        """Aggregate status: FAILED if any recipient failed, ATTEMPTED while any is in flight."""
        outcomes = self.get(event_id)
        if not outcomes:
            return None
        statuses = {o.status for o in outcomes}
        if DeliveryStatus.FAILED in statuses:
            return DeliveryStatus.FAILED
        if DeliveryStatus.ATTEMPTED in statuses:
            return DeliveryStatus.ATTEMPTED
        return DeliveryStatus.DELIVERED

    def recent(self, status: Optional[DeliveryStatus] = None, limit: int = 100) -> List[DeliveryOutcome]:
        """Most recent outcomes first, optionally filtered by status."""
        with self._lock:
            events = list(self._entries.values())
        result: List[DeliveryOutcome] = []
        for per_event in reversed(events):
            for outcome in per_event.values():
                if status is None or outcome.status is status:
                    result.append(outcome)
                    if len(result) >= limit:
                        return result
        return result

    def __len__(self) -> int:
        return len(self._entries)
